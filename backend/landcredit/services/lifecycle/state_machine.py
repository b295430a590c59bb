"""
Claim State Machine

pending -> verified | rejected. Both outcomes are terminal.

Transitions are executed as a single conditional UPDATE guarded on the
expected current status, so two concurrent finalizations of the same claim
cannot both succeed: the loser affects zero rows and gets
AlreadyFinalizedError.
"""
import logging
from datetime import datetime
from typing import Any, Dict, List

from sqlalchemy.orm import Session

from ...errors import AlreadyFinalizedError, ClaimPipelineError
from ...models.db_models import ClaimDB, ClaimStatus
from ...observability import emit_event


# =============================================================================
# STATE CONFIGURATION
# =============================================================================

STATE_CONFIG = {
    ClaimStatus.PENDING: {
        "description": "Submitted, awaiting verification or review",
        "allowed_transitions": [ClaimStatus.VERIFIED, ClaimStatus.REJECTED],
        "terminal": False,
    },
    ClaimStatus.VERIFIED: {
        "description": "Verified by NDVI analysis or a verifier; credits issued",
        "allowed_transitions": [],
        "terminal": True,
    },
    ClaimStatus.REJECTED: {
        "description": "Failed NDVI analysis or rejected by a verifier",
        "allowed_transitions": [],
        "terminal": True,
    },
}


class InvalidTransitionError(ClaimPipelineError):
    status_code = 409


def allowed_transitions(state: ClaimStatus) -> List[ClaimStatus]:
    return list(STATE_CONFIG[state]["allowed_transitions"])


def is_terminal(state: ClaimStatus) -> bool:
    return STATE_CONFIG[state]["terminal"]


class ClaimStateMachine:
    """Only path by which a claim's status changes."""

    def __init__(self, db: Session):
        self.db = db

    def transition(
        self,
        claim: ClaimDB,
        to_state: ClaimStatus,
        from_state: ClaimStatus = ClaimStatus.PENDING,
        **values: Any,
    ) -> ClaimDB:
        """
        Move claim from from_state to to_state, writing extra column values
        in the same UPDATE.

        Does not commit. The claim instance is expired so the next attribute
        access reads the new row.
        """
        if to_state not in STATE_CONFIG[from_state]["allowed_transitions"]:
            raise InvalidTransitionError(
                f"Invalid transition: {from_state.value} -> {to_state.value}"
            )

        updates: Dict[Any, Any] = {getattr(ClaimDB, k): v for k, v in values.items()}
        updates[ClaimDB.status] = to_state
        updates[ClaimDB.updated_at] = datetime.utcnow()

        rows = (
            self.db.query(ClaimDB)
            .filter(ClaimDB.id == claim.id, ClaimDB.status == from_state)
            .update(updates, synchronize_session=False)
        )

        if rows == 0:
            current = self.db.query(ClaimDB.status).filter(ClaimDB.id == claim.id).scalar()
            status = current.value if current is not None else "removed"
            emit_event(
                "claim.transition_lost",
                level=logging.WARNING,
                claim_id=claim.id,
                target=to_state.value,
                current=status,
            )
            raise AlreadyFinalizedError(claim.id, status)

        self.db.expire(claim)
        emit_event(
            "claim.transitioned",
            claim_id=claim.id,
            from_state=from_state.value,
            to_state=to_state.value,
        )
        return claim
