"""
Claim Audit Trail

Append-only writer for claim_audit_log. Entries are flushed into the
caller's transaction; committing is the caller's job so an entry always
lands together with the change it describes. There is no update or delete.
"""
import logging
from datetime import datetime
from typing import Any, Dict, List, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from ..models.db_models import AuditEvent, ClaimAuditLogDB
from ..models.domain import Actor

logger = logging.getLogger(__name__)

SYSTEM_ACTOR_NAME = "system"


class AuditTrail:
    def __init__(self, db: Session):
        self.db = db

    def append(
        self,
        claim_id: str,
        event: AuditEvent,
        note: Optional[str] = None,
        actor: Optional[Actor] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> ClaimAuditLogDB:
        entry = ClaimAuditLogDB(
            claim_id=claim_id,
            event=event,
            actor_id=actor.id if actor else None,
            actor_name=(actor.display_name or actor.id) if actor else SYSTEM_ACTOR_NAME,
            note=note,
            event_metadata=metadata,
            created_at=datetime.utcnow(),
        )
        try:
            self.db.add(entry)
            self.db.flush()
        except SQLAlchemyError as e:
            logger.warning(f"Audit append failed for claim {claim_id} ({event.value}): {e}")
            raise
        return entry

    def entries_for(self, claim_id: str) -> List[ClaimAuditLogDB]:
        """All entries for a claim in append order."""
        return (
            self.db.query(ClaimAuditLogDB)
            .filter(ClaimAuditLogDB.claim_id == claim_id)
            .order_by(ClaimAuditLogDB.id)
            .all()
        )
