"""
Credit Issuance Orchestrator

Converts a passing verdict into credits and mints them on the external
ledger.

Guarantees:
- At most one CreditRecord per claim (lookup plus UNIQUE(claim_id)).
- At most one ledger mint per claim. A mint only starts after winning a
  conditional update of claim.mint_state from NOT_STARTED/FAILED to
  IN_FLIGHT, and never once a receipt is stored.
- A failed mint never undoes verification or the CreditRecord. Retrying
  reuses the existing record and only repeats the ledger write.
"""
import json
import logging
from abc import ABC, abstractmethod
from datetime import datetime
from decimal import Decimal, ROUND_FLOOR
from typing import Any, Dict, Optional
from uuid import uuid4

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from ...config import DEFAULT_POLICY, VerificationPolicy
from ...errors import ClaimValidationError, ExternalServiceUnavailableError
from ...models.db_models import AuditEvent, ClaimDB, CreditDB, MintState
from ...models.domain import (
    IssuanceResult, IssuanceStatus, LedgerReceipt, MintRequest, MintResult,
    VerificationVerdict,
)
from ...observability import emit_event
from ..audit_trail import AuditTrail
from ..resilience import call_with_timeout


class LedgerMintService(ABC):
    """External ledger that mints credit tokens to a wallet."""

    @abstractmethod
    def mint(self, request: MintRequest) -> MintResult:
        ...


def _floor_scaled(value: float, scale: int) -> int:
    # Decimal(str()) so 0.3 * 100 floors to 30, not 29
    return int((Decimal(str(value)) * scale).to_integral_value(rounding=ROUND_FLOOR))


def compute_credits(verdict: VerificationVerdict, policy: VerificationPolicy = DEFAULT_POLICY) -> int:
    """floor(delta * credits_per_unit)."""
    return _floor_scaled(verdict.delta, policy.credits_per_unit)


def build_location_payload(claim: ClaimDB) -> str:
    """GeoJSON Feature of the boundary with address properties, as a JSON string."""
    location = claim.location or {}
    return json.dumps({
        "type": "Feature",
        "geometry": claim.boundary,
        "properties": {
            "address": location.get("address") or "",
            "city": location.get("city") or "",
            "state": location.get("state") or "",
            "country": location.get("country") or "",
        },
    })


class CreditIssuanceOrchestrator:
    """
    Records credits for verified claims and drives the ledger mint.

    Args:
        db: session shared with the lifecycle controller
        ledger: mint provider, or None when no ledger is configured
        policy: credit arithmetic and timeouts
        audit: audit writer; defaults to one on the same session
    """

    OPERATION = "ledger_mint"

    def __init__(
        self,
        db: Session,
        ledger: Optional[LedgerMintService] = None,
        policy: VerificationPolicy = DEFAULT_POLICY,
        audit: Optional[AuditTrail] = None,
    ):
        self.db = db
        self.ledger = ledger
        self.policy = policy
        self.audit = audit or AuditTrail(db)

    # =========================================================================
    # CREDIT RECORDS
    # =========================================================================

    def credit_for_claim(self, claim_id: str) -> Optional[CreditDB]:
        return self.db.query(CreditDB).filter(CreditDB.claim_id == claim_id).first()

    def record_credits(self, claim: ClaimDB, amount: int) -> CreditDB:
        """
        Return the claim's CreditRecord, creating it if absent.

        Flushes into the current transaction under a savepoint; does not
        commit. A concurrent insert for the same claim loses on the unique
        claim_id and gets the winner's record back.
        """
        existing = self.credit_for_claim(claim.id)
        if existing is not None:
            return existing

        credit = CreditDB(
            id=str(uuid4()),
            claim_id=claim.id,
            owner_id=claim.contributor_id,
            amount=amount,
            metadata_cid=claim.metadata_cid,
            issued_at=datetime.utcnow(),
        )
        try:
            with self.db.begin_nested():
                self.db.add(credit)
                self.db.flush()
        except IntegrityError:
            existing = self.credit_for_claim(claim.id)
            if existing is None:
                raise
            emit_event(
                "credits.record_conflict",
                level=logging.WARNING,
                claim_id=claim.id,
                credit_id=existing.id,
            )
            return existing

        emit_event("credits.recorded", claim_id=claim.id, credit_id=credit.id, amount=amount)
        return credit

    # =========================================================================
    # ISSUANCE
    # =========================================================================

    def issue(self, claim: ClaimDB, verdict: VerificationVerdict) -> IssuanceResult:
        """
        Issue credits for a passing verdict and mint them.

        Safe to call again for the same claim: the CreditRecord is reused and
        the mint is skipped when already done or in progress.
        """
        if not verdict.passed:
            raise ClaimValidationError("Cannot issue credits for a failed verification")

        amount = compute_credits(verdict, self.policy)
        if amount <= 0:
            emit_event("credits.none", claim_id=claim.id, delta=verdict.delta)
            return IssuanceResult(
                status=IssuanceStatus.NO_CREDITS,
                warnings=["Verification passed but no credits to mint (improvement too small)"],
            )

        credit = self.record_credits(claim, amount)
        self.db.commit()
        return self.mint_for_credit(claim, credit, verdict)

    def mint_for_credit(
        self,
        claim: ClaimDB,
        credit: CreditDB,
        verdict: Optional[VerificationVerdict] = None,
    ) -> IssuanceResult:
        """Mint an existing CreditRecord on the ledger, at most once per claim."""
        if claim.ledger_receipt:
            return IssuanceResult(
                status=IssuanceStatus.ALREADY_MINTED,
                credits=credit.amount,
                credit_id=credit.id,
                receipt=LedgerReceipt.from_dict(claim.ledger_receipt),
            )

        if not claim.wallet_address:
            warning = "No wallet address associated with claim"
            self.audit.append(claim.id, AuditEvent.MINT_SKIPPED, note=warning)
            self.db.commit()
            emit_event("ledger.mint_skipped", level=logging.WARNING, claim_id=claim.id)
            return IssuanceResult(
                status=IssuanceStatus.MINT_SKIPPED,
                credits=credit.amount,
                credit_id=credit.id,
                warnings=[warning],
            )

        if not self._claim_mint_slot(claim):
            self.db.refresh(claim)
            if claim.mint_state == MintState.MINTED and claim.ledger_receipt:
                return IssuanceResult(
                    status=IssuanceStatus.ALREADY_MINTED,
                    credits=credit.amount,
                    credit_id=credit.id,
                    receipt=LedgerReceipt.from_dict(claim.ledger_receipt),
                )
            return IssuanceResult(
                status=IssuanceStatus.MINT_IN_PROGRESS,
                credits=credit.amount,
                credit_id=credit.id,
                warnings=["A ledger mint for this claim is already in progress"],
            )

        request = self._build_request(claim, credit, verdict)
        try:
            result = self._call_ledger(request)
        except ExternalServiceUnavailableError as e:
            return self._record_failure(claim, credit, e.reason)

        return self._record_success(claim, credit, result)

    # =========================================================================
    # INTERNALS
    # =========================================================================

    def _claim_mint_slot(self, claim: ClaimDB) -> bool:
        """Conditional NOT_STARTED/FAILED -> IN_FLIGHT. Commits."""
        rows = (
            self.db.query(ClaimDB)
            .filter(
                ClaimDB.id == claim.id,
                ClaimDB.mint_state.in_([MintState.NOT_STARTED, MintState.FAILED]),
            )
            .update({ClaimDB.mint_state: MintState.IN_FLIGHT}, synchronize_session=False)
        )
        self.db.commit()
        return rows == 1

    def _build_request(
        self,
        claim: ClaimDB,
        credit: CreditDB,
        verdict: Optional[VerificationVerdict],
    ) -> MintRequest:
        if verdict is not None:
            encoded_delta = _floor_scaled(verdict.delta, self.policy.delta_scale)
            verification_payload: Dict[str, Any] = {
                "before": verdict.before,
                "after": verdict.after,
                "delta": verdict.delta,
                "delta_percentage": verdict.delta_percentage,
                "source": verdict.source.value,
                "verified_at": datetime.utcnow().isoformat(),
                "verifier": "system",
            }
        else:
            # Manual approval: no imagery numbers to encode
            encoded_delta = 0
            verification_payload = {
                "verified_at": (claim.verified_at or datetime.utcnow()).isoformat(),
                "verifier": claim.verifier_id,
            }

        return MintRequest(
            recipient=claim.wallet_address,
            amount=credit.amount,
            encoded_delta=encoded_delta,
            claim_id=claim.id,
            location_payload=build_location_payload(claim),
            verification_payload=verification_payload,
        )

    def _call_ledger(self, request: MintRequest) -> MintResult:
        if self.ledger is None:
            raise ExternalServiceUnavailableError(self.OPERATION, "ledger service not configured")

        result = call_with_timeout(
            lambda: self.ledger.mint(request),
            self.policy.ledger_timeout_seconds,
            self.OPERATION,
        )
        if not result.success or not result.transaction_hash:
            raise ExternalServiceUnavailableError(
                self.OPERATION, result.error or "mint reported no transaction"
            )
        return result

    def _record_success(self, claim: ClaimDB, credit: CreditDB, result: MintResult) -> IssuanceResult:
        explorer_url = None
        if self.policy.explorer_tx_url:
            explorer_url = self.policy.explorer_tx_url.format(tx_hash=result.transaction_hash)

        receipt = LedgerReceipt(
            token_id=result.token_id,
            transaction_hash=result.transaction_hash,
            amount=credit.amount,
            contract_address=self.policy.contract_address,
            minted_at=datetime.utcnow(),
            explorer_url=explorer_url,
        )

        claim.ledger_receipt = receipt.to_dict()
        claim.mint_state = MintState.MINTED
        credit.token_id = result.token_id
        self.audit.append(
            claim.id,
            AuditEvent.CREDITS_MINTED,
            note=f"Minted {credit.amount} credits (token {result.token_id}, tx {result.transaction_hash})",
            metadata=receipt.to_dict(),
        )
        self.db.commit()

        emit_event(
            "ledger.minted",
            claim_id=claim.id,
            token_id=result.token_id,
            tx=result.transaction_hash,
            amount=credit.amount,
        )
        return IssuanceResult(
            status=IssuanceStatus.MINTED,
            credits=credit.amount,
            credit_id=credit.id,
            receipt=receipt,
        )

    def _record_failure(self, claim: ClaimDB, credit: CreditDB, reason: str) -> IssuanceResult:
        claim.mint_state = MintState.FAILED
        self.audit.append(
            claim.id,
            AuditEvent.MINT_FAILED,
            note=f"Ledger mint failed: {reason}",
            metadata={"credits": credit.amount},
        )
        self.db.commit()

        emit_event("ledger.mint_failed", level=logging.ERROR, claim_id=claim.id, reason=reason)
        return IssuanceResult(
            status=IssuanceStatus.MINT_FAILED,
            credits=credit.amount,
            credit_id=credit.id,
            warnings=[f"Credits recorded but ledger mint failed: {reason}"],
        )
