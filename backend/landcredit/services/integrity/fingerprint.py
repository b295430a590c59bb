"""
Claim Fingerprint

Deterministic SHA-256 fingerprint over a claim's identity fields:
contributor id, submission timestamp, boundary polygon, evidence keys and a
per-claim nonce.

Canonical form (must stay byte-stable, stored fingerprints depend on it):
- seed object {contributorId, createdAt, evidenceCIDs, nonce, polygon}
- keys sorted at every level, no whitespace
- createdAt as UTC ISO-8601 with milliseconds and a Z suffix
- evidenceCIDs sorted lexicographically; polygon rings/points kept as given
- numbers rendered the way JavaScript's JSON.stringify renders them
"""
import hashlib
import json
import math
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Mapping, Optional, Sequence, Tuple, Union
from uuid import uuid4

from ...errors import ClaimValidationError
from ...models.domain import Polygon


PolygonLike = Union[Polygon, Mapping[str, Any]]


# =============================================================================
# CANONICAL JSON
# =============================================================================

def _format_number(value: Union[int, float]) -> str:
    """Shortest round-trip number text, JavaScript notation."""
    if isinstance(value, int):
        return str(value)
    if not math.isfinite(value):
        raise ClaimValidationError(f"Non-finite number in fingerprint input: {value}")
    if value == 0:
        return "0"

    sign = "-" if value < 0 else ""
    digits_tuple, exponent = Decimal(repr(abs(value))).as_tuple()[1:]
    digits = "".join(str(d) for d in digits_tuple).rstrip("0")
    # repr never yields a bare zero here, so digits is non-empty
    exponent += len(digits_tuple) - len(digits)

    k = len(digits)
    n = exponent + k  # decimal point position relative to the digit string

    if k <= n <= 21:
        text = digits + "0" * (n - k)
    elif 0 < n <= 21:
        text = digits[:n] + "." + digits[n:]
    elif -6 < n <= 0:
        text = "0." + "0" * (-n) + digits
    else:
        e = n - 1
        mantissa = digits if k == 1 else digits[0] + "." + digits[1:]
        text = f"{mantissa}e{'+' if e >= 0 else '-'}{abs(e)}"
    return sign + text


def canonicalize(value: Any) -> str:
    """Serialize to canonical JSON: sorted keys, no whitespace."""
    if value is None:
        return "null"
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (int, float)):
        return _format_number(value)
    if isinstance(value, str):
        return json.dumps(value, ensure_ascii=False)
    if isinstance(value, Mapping):
        pairs = [
            f"{json.dumps(str(key), ensure_ascii=False)}:{canonicalize(value[key])}"
            for key in sorted(value, key=str)
        ]
        return "{" + ",".join(pairs) + "}"
    if isinstance(value, (list, tuple)):
        return "[" + ",".join(canonicalize(item) for item in value) + "]"
    raise ClaimValidationError(f"Cannot canonicalize value of type {type(value).__name__}")


def canonical_timestamp(moment: datetime) -> str:
    """UTC, millisecond precision, Z suffix. Naive datetimes are taken as UTC."""
    if moment.tzinfo is not None:
        moment = moment.astimezone(timezone.utc).replace(tzinfo=None)
    return moment.strftime("%Y-%m-%dT%H:%M:%S.") + f"{moment.microsecond // 1000:03d}Z"


def _polygon_seed(polygon: PolygonLike) -> dict:
    if isinstance(polygon, Polygon):
        return {"type": polygon.type, "coordinates": polygon.coordinates}
    return {"type": polygon["type"], "coordinates": polygon["coordinates"]}


# =============================================================================
# FINGERPRINT
# =============================================================================

def generate_fingerprint(
    contributor_id: str,
    submitted_at: datetime,
    polygon: PolygonLike,
    evidence_keys: Sequence[str],
    nonce: Optional[str] = None,
) -> Tuple[str, str]:
    """
    Compute the claim fingerprint.

    Returns (fingerprint, nonce). When no nonce is given a fresh UUID4 is
    generated; the caller must persist it alongside the fingerprint.
    """
    claim_nonce = nonce or str(uuid4())

    seed = {
        "contributorId": contributor_id,
        "createdAt": canonical_timestamp(submitted_at),
        "polygon": _polygon_seed(polygon),
        "evidenceCIDs": sorted(evidence_keys),
        "nonce": claim_nonce,
    }

    digest = hashlib.sha256(canonicalize(seed).encode("utf-8")).hexdigest()
    return digest, claim_nonce


def verify_fingerprint(
    fingerprint: str,
    contributor_id: str,
    submitted_at: datetime,
    polygon: PolygonLike,
    evidence_keys: Sequence[str],
    nonce: str,
) -> bool:
    """Recompute with the stored nonce and compare exactly."""
    expected, _ = generate_fingerprint(
        contributor_id, submitted_at, polygon, evidence_keys, nonce
    )
    return expected == fingerprint
