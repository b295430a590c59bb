"""
Claim Lifecycle Service

The only component that changes a claim's status. Composes fingerprinting,
NDVI analysis and credit issuance into the create / verify / approve /
reject flows.

Ordering rules:
- Authorization and input validation run before anything is read or
  written.
- The imagery call runs outside any transaction. Its verdict is written only
  by the transaction that moves the claim out of pending, so abandoning a
  request mid-analysis leaves nothing behind.
- Status change, verdict, CreditRecord, listing and the describing audit
  entry commit together. The ledger mint happens after that commit and its
  failure is reported, never rolled back into the verification.
"""
import logging
from datetime import date, datetime
from typing import Any, Dict, List, Optional, Sequence
from uuid import uuid4

from sqlalchemy.orm import Session

from ...config import DEFAULT_POLICY, VerificationPolicy
from ...errors import (
    AlreadyFinalizedError, ClaimValidationError, ForbiddenError, NotFoundError,
)
from ...models.db_models import (
    AuditEvent, ClaimAuditLogDB, ClaimDB, ClaimStatus, CreditDB, ListingStatus,
    MarketplaceListingDB,
)
from ...models.domain import (
    Actor, ClaimSubmission, EvidenceItem, IssuanceResult, ListingOptions, Polygon,
    UserRole, VerificationVerdict,
)
from ...observability import emit_event
from ..audit_trail import AuditTrail
from ..integrity.evidence import extract_evidence_keys
from ..integrity.fingerprint import generate_fingerprint, verify_fingerprint
from ..issuance.credit_issuer import CreditIssuanceOrchestrator, compute_credits
from ..verification.ndvi_analyzer import VegetationChangeAnalyzer
from .state_machine import ClaimStateMachine


def _now_ms() -> datetime:
    """UTC now truncated to milliseconds, the precision the fingerprint binds."""
    now = datetime.utcnow()
    return now.replace(microsecond=now.microsecond // 1000 * 1000)


class ClaimService:
    """
    Claim lifecycle controller.

    Args:
        db: SQLAlchemy session; this service commits and rolls back on it
        analyzer: NDVI analyzer (defaults to one with no imagery provider)
        issuer: credit orchestrator (defaults to one with no ledger)
        policy: verification policy
    """

    def __init__(
        self,
        db: Session,
        analyzer: Optional[VegetationChangeAnalyzer] = None,
        issuer: Optional[CreditIssuanceOrchestrator] = None,
        policy: VerificationPolicy = DEFAULT_POLICY,
    ):
        self.db = db
        self.policy = policy
        self.audit = AuditTrail(db)
        self.state_machine = ClaimStateMachine(db)
        self.analyzer = analyzer or VegetationChangeAnalyzer(policy=policy)
        self.issuer = issuer or CreditIssuanceOrchestrator(db, policy=policy, audit=self.audit)

    # =========================================================================
    # READS
    # =========================================================================

    def get_claim(self, claim_id: str) -> ClaimDB:
        claim = self.db.query(ClaimDB).filter(ClaimDB.id == claim_id).first()
        if claim is None:
            raise NotFoundError(f"Claim {claim_id} not found")
        return claim

    def audit_log(self, claim_id: str) -> List[ClaimAuditLogDB]:
        return self.audit.entries_for(claim_id)

    def get_credit(self, credit_id: str) -> CreditDB:
        credit = self.db.query(CreditDB).filter(CreditDB.id == credit_id).first()
        if credit is None:
            raise NotFoundError(f"Credit {credit_id} not found")
        return credit

    def credit_for_claim(self, claim_id: str) -> CreditDB:
        self.get_claim(claim_id)
        credit = self.issuer.credit_for_claim(claim_id)
        if credit is None:
            raise NotFoundError(f"No credits issued for claim {claim_id}")
        return credit

    def get_listing(self, listing_id: str) -> MarketplaceListingDB:
        listing = (
            self.db.query(MarketplaceListingDB)
            .filter(MarketplaceListingDB.id == listing_id)
            .first()
        )
        if listing is None:
            raise NotFoundError(f"Listing {listing_id} not found")
        return listing

    def listings_for_claim(self, claim_id: str) -> List[MarketplaceListingDB]:
        credit = self.issuer.credit_for_claim(claim_id)
        if credit is None:
            return []
        return (
            self.db.query(MarketplaceListingDB)
            .filter(MarketplaceListingDB.credit_id == credit.id)
            .order_by(MarketplaceListingDB.created_at)
            .all()
        )

    def verify_integrity(self, claim_id: str) -> Dict[str, Any]:
        """Recompute the fingerprint from stored identity fields."""
        claim = self.get_claim(claim_id)
        valid = verify_fingerprint(
            claim.fingerprint,
            claim.contributor_id,
            claim.submitted_at,
            claim.boundary,
            claim.evidence_keys,
            claim.nonce,
        )
        if not valid:
            emit_event("claim.integrity_mismatch", level=logging.ERROR, claim_id=claim.id)
        return {"claim_id": claim.id, "fingerprint": claim.fingerprint, "valid": valid}

    # =========================================================================
    # CREATE / AMEND
    # =========================================================================

    def create_claim(self, actor: Actor, submission: ClaimSubmission) -> ClaimDB:
        """Create a pending claim with its fingerprint bound."""
        if actor.role != UserRole.CONTRIBUTOR:
            raise ForbiddenError("Only contributors can submit claims")
        self._check_window(submission.before_date, submission.after_date)

        evidence_keys = extract_evidence_keys(submission.evidence)
        submitted_at = _now_ms()
        fingerprint, nonce = generate_fingerprint(
            actor.id, submitted_at, submission.boundary, evidence_keys
        )

        claim = ClaimDB(
            id=str(uuid4()),
            contributor_id=actor.id,
            contributor_name=actor.display_name,
            submitted_at=submitted_at,
            boundary=submission.boundary.to_geojson(),
            evidence=[item.to_dict() for item in submission.evidence],
            evidence_keys=evidence_keys,
            fingerprint=fingerprint,
            nonce=nonce,
            status=ClaimStatus.PENDING,
            wallet_address=submission.wallet_address,
            before_date=submission.before_date,
            after_date=submission.after_date,
            location=submission.location.to_dict() if submission.location else None,
            area_hectares=submission.area_hectares,
            description=submission.description,
            metadata_cid=submission.metadata_cid,
            created_at=submitted_at,
            updated_at=submitted_at,
        )

        try:
            self.db.add(claim)
            self.db.flush()
            self.audit.append(
                claim.id,
                AuditEvent.CLAIM_CREATED,
                note=f"Claim submitted with {len(evidence_keys)} evidence item(s)",
                actor=actor,
                metadata={"fingerprint": fingerprint},
            )
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise

        emit_event("claim.created", claim_id=claim.id, contributor_id=actor.id)
        return claim

    def append_evidence(self, claim_id: str, actor: Actor, items: Sequence[EvidenceItem]) -> ClaimDB:
        """
        Add evidence to a pending claim and re-derive its fingerprint with
        the stored nonce. Finalized claims are immutable.
        """
        if not items:
            raise ClaimValidationError("At least one evidence item is required")
        new_keys = extract_evidence_keys(items)

        claim = self.get_claim(claim_id)
        if claim.contributor_id != actor.id:
            raise ForbiddenError("Only the submitting contributor can add evidence")
        if claim.status != ClaimStatus.PENDING:
            raise AlreadyFinalizedError(claim.id, claim.status.value)

        evidence = list(claim.evidence or []) + [item.to_dict() for item in items]
        evidence_keys = list(claim.evidence_keys or []) + new_keys
        fingerprint, _ = generate_fingerprint(
            claim.contributor_id, claim.submitted_at, claim.boundary, evidence_keys, claim.nonce
        )

        try:
            rows = (
                self.db.query(ClaimDB)
                .filter(ClaimDB.id == claim.id, ClaimDB.status == ClaimStatus.PENDING)
                .update(
                    {
                        ClaimDB.evidence: evidence,
                        ClaimDB.evidence_keys: evidence_keys,
                        ClaimDB.fingerprint: fingerprint,
                        ClaimDB.updated_at: datetime.utcnow(),
                    },
                    synchronize_session=False,
                )
            )
            if rows == 0:
                self.db.refresh(claim)
                raise AlreadyFinalizedError(claim.id, claim.status.value)

            self.audit.append(
                claim.id,
                AuditEvent.EVIDENCE_APPENDED,
                note=f"Added {len(new_keys)} evidence item(s)",
                actor=actor,
                metadata={"fingerprint": fingerprint, "added": new_keys},
            )
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise

        self.db.refresh(claim)
        return claim

    # =========================================================================
    # NDVI VERIFICATION
    # =========================================================================

    def request_verification(
        self,
        claim_id: str,
        actor: Optional[Actor] = None,
        before_date: Optional[date] = None,
        after_date: Optional[date] = None,
    ) -> Dict[str, Any]:
        """
        Analyze vegetation change and finalize the claim from the verdict.

        Pass: verified, credits recorded, ledger mint attempted. The
        claim_verified audit entry commits with the transition; the mint runs
        after that commit and writes its own credits_minted, mint_failed or
        mint_skipped entry.
        Fail: rejected with the verdict attached as the reason.
        """
        if actor is not None and not actor.is_verifier:
            raise ForbiddenError("Only verifiers can request verification")

        claim = self.get_claim(claim_id)
        if claim.status != ClaimStatus.PENDING:
            raise AlreadyFinalizedError(claim.id, claim.status.value)

        before_date = before_date or claim.before_date
        after_date = after_date or claim.after_date
        self._check_window(before_date, after_date, required=True)

        boundary = Polygon(coordinates=claim.boundary["coordinates"])
        verdict = self.analyzer.analyze(boundary, before_date, after_date)

        reviewer = {
            "verifier_id": actor.id if actor else None,
            "verifier_name": (actor.display_name or actor.id) if actor else "system",
        }

        try:
            if verdict.passed:
                amount = compute_credits(verdict, self.policy)
                self.state_machine.transition(
                    claim,
                    ClaimStatus.VERIFIED,
                    verification=verdict.to_dict(),
                    credits_issued=amount,
                    verified_at=verdict.analyzed_at,
                    before_date=before_date,
                    after_date=after_date,
                    **reviewer,
                )
                if amount > 0:
                    self.issuer.record_credits(claim, amount)
                self.audit.append(
                    claim.id,
                    AuditEvent.CLAIM_VERIFIED,
                    note=(
                        f"NDVI verification passed ({verdict.source.value}): "
                        f"{verdict.before} -> {verdict.after}, delta {verdict.delta}. "
                        f"Credits issued: {amount}."
                        " Ledger mint outcome follows as a separate entry."
                    ),
                    actor=actor,
                    metadata=verdict.to_dict(),
                )
            else:
                reason = (
                    f"NDVI improvement {verdict.delta} did not exceed "
                    f"threshold {self.policy.pass_threshold}"
                )
                self.state_machine.transition(
                    claim,
                    ClaimStatus.REJECTED,
                    verification=verdict.to_dict(),
                    rejection_reason=reason,
                    verified_at=verdict.analyzed_at,
                    before_date=before_date,
                    after_date=after_date,
                    **reviewer,
                )
                self.audit.append(
                    claim.id,
                    AuditEvent.CLAIM_REJECTED,
                    note=reason,
                    actor=actor,
                    metadata=verdict.to_dict(),
                )
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise

        outcome: Dict[str, Any] = {
            "claim_id": claim.id,
            "status": claim.status.value,
            "verification": verdict.to_dict(),
            "credits_issued": claim.credits_issued,
            "issuance": None,
            "warnings": [],
        }
        if verdict.passed:
            issuance = self.issuer.issue(claim, verdict)
            outcome["issuance"] = issuance.to_dict()
            outcome["warnings"] = list(issuance.warnings)
        return outcome

    # =========================================================================
    # VERIFIER REVIEW
    # =========================================================================

    def approve(
        self,
        claim_id: str,
        actor: Actor,
        credits: int,
        notes: Optional[str] = None,
        listing: Optional[ListingOptions] = None,
    ) -> Dict[str, Any]:
        """
        Verifier approval. Verifies the claim, records the credits and
        optionally opens a marketplace listing, all in one commit.
        """
        if not actor.is_verifier:
            raise ForbiddenError("Only verifiers can approve claims")
        if isinstance(credits, bool) or not isinstance(credits, int) or credits < 1:
            raise ClaimValidationError("Credits must be a whole number of at least 1")
        if listing is not None:
            if listing.price is None or listing.price <= 0:
                raise ClaimValidationError("Listing price must be greater than 0")
            if listing.quantity is None or listing.quantity < 1:
                raise ClaimValidationError("Listing quantity must be at least 1")
            if listing.quantity > credits:
                raise ClaimValidationError("Listing quantity cannot exceed credits issued")

        claim = self.get_claim(claim_id)
        if claim.status != ClaimStatus.PENDING:
            raise AlreadyFinalizedError(claim.id, claim.status.value)

        now = datetime.utcnow()
        listing_row = None
        try:
            self.state_machine.transition(
                claim,
                ClaimStatus.VERIFIED,
                verifier_id=actor.id,
                verifier_name=actor.display_name or actor.id,
                verifier_notes=notes,
                credits_issued=credits,
                verified_at=now,
            )
            credit = self.issuer.record_credits(claim, credits)

            if listing is not None:
                listing_row = MarketplaceListingDB(
                    id=str(uuid4()),
                    seller_id=claim.contributor_id,
                    credit_id=credit.id,
                    price=listing.price,
                    quantity=listing.quantity,
                    status=ListingStatus.ACTIVE,
                    created_at=now,
                )
                self.db.add(listing_row)
                self.db.flush()

            self.audit.append(
                claim.id,
                AuditEvent.CLAIM_APPROVED,
                note=self._approval_note(notes, credits, listing),
                actor=actor,
                metadata={
                    "credits": credits,
                    "credit_id": credit.id,
                    "listing_id": listing_row.id if listing_row else None,
                },
            )
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise

        emit_event("claim.approved", claim_id=claim.id, verifier_id=actor.id, credits=credits)
        return {
            "claim_id": claim.id,
            "status": claim.status.value,
            "verified_at": claim.verified_at.isoformat(),
            "verifier_id": claim.verifier_id,
            "verifier_notes": claim.verifier_notes,
            "credits_issued": claim.credits_issued,
            "credit_id": credit.id,
            "marketplace_listing": {
                "id": listing_row.id,
                "price": listing_row.price,
                "quantity": listing_row.quantity,
                "status": listing_row.status.value,
            } if listing_row else None,
        }

    @staticmethod
    def _approval_note(notes: Optional[str], credits: int, listing: Optional[ListingOptions]) -> str:
        prefix = f"{notes}. " if notes else ""
        if listing is not None:
            listing_text = (
                f"Created marketplace listing: {listing.quantity} credits at ${listing.price:.2f}."
            )
        else:
            listing_text = "No marketplace listing created."
        return f"{prefix}Approved with {credits} credits. {listing_text}"

    def reject(self, claim_id: str, actor: Actor, reason: str) -> Dict[str, Any]:
        if not actor.is_verifier:
            raise ForbiddenError("Only verifiers can reject claims")
        if not reason or not reason.strip():
            raise ClaimValidationError("Rejection reason is required")

        claim = self.get_claim(claim_id)
        if claim.status != ClaimStatus.PENDING:
            raise AlreadyFinalizedError(claim.id, claim.status.value)

        try:
            self.state_machine.transition(
                claim,
                ClaimStatus.REJECTED,
                verifier_id=actor.id,
                verifier_name=actor.display_name or actor.id,
                rejection_reason=reason.strip(),
                verified_at=datetime.utcnow(),
            )
            self.audit.append(
                claim.id,
                AuditEvent.CLAIM_REJECTED,
                note=reason.strip(),
                actor=actor,
            )
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise

        emit_event("claim.rejected", claim_id=claim.id, verifier_id=actor.id)
        return {
            "claim_id": claim.id,
            "status": claim.status.value,
            "rejection_reason": claim.rejection_reason,
            "verifier_id": claim.verifier_id,
        }

    # =========================================================================
    # LEDGER
    # =========================================================================

    def retry_mint(self, claim_id: str, actor: Optional[Actor] = None) -> IssuanceResult:
        """Mint the claim's existing CreditRecord. Never creates a new one."""
        if actor is not None and not actor.is_verifier:
            raise ForbiddenError("Only verifiers can trigger ledger mints")

        claim = self.get_claim(claim_id)
        if claim.status != ClaimStatus.VERIFIED:
            raise ClaimValidationError(f"Only verified claims can be minted (claim is {claim.status.value})")

        credit = self.issuer.credit_for_claim(claim.id)
        if credit is None:
            raise NotFoundError(f"No credits issued for claim {claim.id}")

        verdict = VerificationVerdict.from_dict(claim.verification) if claim.verification else None
        return self.issuer.mint_for_credit(claim, credit, verdict)

    # =========================================================================
    # HELPERS
    # =========================================================================

    @staticmethod
    def _check_window(before: Optional[date], after: Optional[date], required: bool = False) -> None:
        if before is None or after is None:
            if required:
                raise ClaimValidationError("Both before_date and after_date are required")
            return
        if before >= after:
            raise ClaimValidationError("before_date must be earlier than after_date")
