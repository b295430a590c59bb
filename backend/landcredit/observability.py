"""
Structured pipeline events.

Every state transition and external-call outcome is emitted as a leveled
event on the ``landcredit.events`` logger. Fields travel in ``extra`` so a
JSON formatter can pick them up; the message carries them as key=value pairs.
"""
import logging

from .config import LOG_LEVEL

event_logger = logging.getLogger("landcredit.events")


def configure_logging(level: str = LOG_LEVEL) -> None:
    """Install a basic root handler. Idempotent."""
    logging.basicConfig(
        level=level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def emit_event(event: str, level: int = logging.INFO, **fields) -> None:
    rendered = " ".join(f"{k}={v}" for k, v in sorted(fields.items()))
    event_logger.log(
        level,
        f"{event} {rendered}".rstrip(),
        extra={"event": event, "event_fields": fields},
    )
