"""
Tests for the claim lifecycle service.

Tests the complete flow from submission to a terminal state:
1. Creation binds a verifiable fingerprint
2. NDVI pass -> verified + credits + one mint (Scenario A)
3. NDVI fail -> rejected, no credits (Scenario B)
4. Non-verifier approval is forbidden (Scenario D)
5. Verifier approval with/without listing
6. Terminal states and lost races raise AlreadyFinalizedError
7. Atomicity of transition + audit
8. Evidence amendments while pending
"""
from datetime import date
from unittest.mock import MagicMock

import pytest
from sqlalchemy.exc import SQLAlchemyError

from landcredit.errors import (
    AlreadyFinalizedError, ClaimValidationError, ForbiddenError,
    MalformedEvidenceError, NotFoundError,
)
from landcredit.models.db_models import (
    AuditEvent, ClaimAuditLogDB, ClaimDB, ClaimStatus, CreditDB, ListingStatus,
    MarketplaceListingDB, MintState,
)
from landcredit.models.domain import (
    ClaimLocation, ClaimSubmission, EvidenceItem, ImageryAnalysis, IssuanceStatus,
    ListingOptions, MintResult,
)
from landcredit.services.integrity.fingerprint import verify_fingerprint
from landcredit.services.issuance.credit_issuer import CreditIssuanceOrchestrator, LedgerMintService
from landcredit.services.lifecycle.claim_service import ClaimService
from landcredit.services.verification.ndvi_analyzer import (
    ImageryAnalysisService,
    VegetationChangeAnalyzer,
)


class FixedImagery(ImageryAnalysisService):
    def __init__(self, before, after):
        self.before = before
        self.after = after
        self.calls = 0

    def analyze(self, boundary, before_date, after_date):
        self.calls += 1
        return ImageryAnalysis(before=self.before, after=self.after)


class RecordingLedger(LedgerMintService):
    def __init__(self, error=None):
        self.error = error
        self.requests = []

    def mint(self, request):
        self.requests.append(request)
        if self.error is not None:
            raise self.error
        return MintResult(success=True, token_id=str(len(self.requests)), transaction_hash="0xabc")


def build_service(db, imagery=None, ledger=None):
    analyzer = VegetationChangeAnalyzer(service=imagery)
    issuer = CreditIssuanceOrchestrator(db, ledger=ledger)
    return ClaimService(db, analyzer=analyzer, issuer=issuer)


@pytest.fixture
def submission(square, evidence):
    return ClaimSubmission(
        boundary=square,
        evidence=evidence,
        wallet_address="0xWallet",
        before_date=date(2023, 1, 1),
        after_date=date(2024, 1, 1),
        location=ClaimLocation(address="1 Forest Rd", city="Curitiba", country="BR"),
        area_hectares=12.5,
    )


@pytest.fixture
def claim(db, contributor, submission):
    return build_service(db).create_claim(contributor, submission)


def audit_events(db, claim_id):
    rows = db.query(ClaimAuditLogDB).filter(ClaimAuditLogDB.claim_id == claim_id).order_by(ClaimAuditLogDB.id).all()
    return [row.event for row in rows]


def fresh_claim(session_factory, claim_id):
    session = session_factory()
    try:
        claim = session.query(ClaimDB).filter(ClaimDB.id == claim_id).one()
        session.expunge(claim)
        return claim
    finally:
        session.close()


# =============================================================================
# TEST: CREATION & INTEGRITY
# =============================================================================

class TestCreateClaim:

    def test_creates_pending_claim_with_fingerprint(self, db, claim, contributor):
        assert claim.status == ClaimStatus.PENDING
        assert claim.mint_state == MintState.NOT_STARTED
        assert claim.contributor_id == contributor.id
        assert claim.evidence_keys == ["bafy-before", "https://files.example.org/after.jpg"]
        assert claim.submitted_at.microsecond % 1000 == 0
        assert verify_fingerprint(
            claim.fingerprint, claim.contributor_id, claim.submitted_at,
            claim.boundary, claim.evidence_keys, claim.nonce,
        )
        assert audit_events(db, claim.id) == [AuditEvent.CLAIM_CREATED]

    def test_only_contributors_create(self, db, verifier, submission):
        with pytest.raises(ForbiddenError):
            build_service(db).create_claim(verifier, submission)
        assert db.query(ClaimDB).count() == 0

    def test_malformed_evidence_creates_nothing(self, db, contributor, square):
        bad = ClaimSubmission(boundary=square, evidence=[EvidenceItem(name="orphan")])
        with pytest.raises(MalformedEvidenceError):
            build_service(db).create_claim(contributor, bad)
        assert db.query(ClaimDB).count() == 0

    def test_inverted_window_rejected(self, db, contributor, square):
        bad = ClaimSubmission(
            boundary=square, evidence=[], before_date=date(2024, 1, 1), after_date=date(2023, 1, 1),
        )
        with pytest.raises(ClaimValidationError):
            build_service(db).create_claim(contributor, bad)

    def test_integrity_check(self, db, claim):
        service = build_service(db)
        assert service.verify_integrity(claim.id)["valid"] is True

        claim.evidence_keys = claim.evidence_keys + ["smuggled"]
        db.commit()
        assert service.verify_integrity(claim.id)["valid"] is False

    def test_missing_claim(self, db):
        with pytest.raises(NotFoundError):
            build_service(db).get_claim("nope")


# =============================================================================
# TEST: NDVI VERIFICATION
# =============================================================================

class TestRequestVerification:

    def test_scenario_a_pass_issues_and_mints(self, db, claim, verifier):
        ledger = RecordingLedger()
        outcome = build_service(db, FixedImagery(0.55, 0.85), ledger).request_verification(claim.id, verifier)

        assert outcome["status"] == "verified"
        assert outcome["credits_issued"] == 30
        assert outcome["verification"]["delta"] == 0.3
        assert outcome["issuance"]["status"] == IssuanceStatus.MINTED.value
        assert outcome["warnings"] == []

        db.refresh(claim)
        assert claim.status == ClaimStatus.VERIFIED
        assert claim.verification["passed"] is True
        assert claim.ledger_receipt["token_id"] == "1"
        assert claim.verifier_id == verifier.id
        assert len(ledger.requests) == 1
        assert db.query(CreditDB).filter(CreditDB.claim_id == claim.id).one().amount == 30
        assert audit_events(db, claim.id) == [
            AuditEvent.CLAIM_CREATED, AuditEvent.CLAIM_VERIFIED, AuditEvent.CREDITS_MINTED,
        ]

    def test_verified_entry_summarizes_credits_and_points_to_mint_entry(self, db, claim, verifier):
        build_service(db, FixedImagery(0.55, 0.85), RecordingLedger()).request_verification(claim.id, verifier)

        verified = db.query(ClaimAuditLogDB).filter(
            ClaimAuditLogDB.claim_id == claim.id,
            ClaimAuditLogDB.event == AuditEvent.CLAIM_VERIFIED,
        ).one()
        assert "Credits issued: 30." in verified.note
        assert "mint outcome follows as a separate entry" in verified.note

    def test_scenario_b_fail_rejects_without_credits(self, db, claim):
        ledger = RecordingLedger()
        outcome = build_service(db, FixedImagery(0.60, 0.65), ledger).request_verification(claim.id)

        assert outcome["status"] == "rejected"
        assert outcome["issuance"] is None

        db.refresh(claim)
        assert claim.status == ClaimStatus.REJECTED
        assert claim.verification["delta"] == 0.05
        assert "0.05" in claim.rejection_reason
        assert claim.credits_issued is None
        assert ledger.requests == []
        assert db.query(CreditDB).count() == 0
        assert audit_events(db, claim.id) == [AuditEvent.CLAIM_CREATED, AuditEvent.CLAIM_REJECTED]

    def test_fallback_verdict_is_recorded(self, db, claim):
        outcome = build_service(db).request_verification(claim.id)
        assert outcome["verification"]["source"] == "fallback"
        assert outcome["verification"]["source_metadata"]["reason"] == "imagery service not configured"

    def test_mint_failure_keeps_verification(self, db, claim):
        ledger = RecordingLedger(error=ConnectionError("rpc down"))
        outcome = build_service(db, FixedImagery(0.55, 0.85), ledger).request_verification(claim.id)

        assert outcome["status"] == "verified"
        assert outcome["issuance"]["status"] == IssuanceStatus.MINT_FAILED.value
        assert any("rpc down" in w for w in outcome["warnings"])

        db.refresh(claim)
        assert claim.status == ClaimStatus.VERIFIED
        assert claim.ledger_receipt is None
        assert db.query(CreditDB).filter(CreditDB.claim_id == claim.id).count() == 1

    def test_retry_mint_after_failure(self, db, claim):
        build_service(db, FixedImagery(0.55, 0.85), RecordingLedger(error=ConnectionError("rpc down"))) \
            .request_verification(claim.id)

        ledger = RecordingLedger()
        service = build_service(db, ledger=ledger)
        result = service.retry_mint(claim.id)
        again = service.retry_mint(claim.id)

        assert result.status == IssuanceStatus.MINTED
        assert again.status == IssuanceStatus.ALREADY_MINTED
        assert len(ledger.requests) == 1
        assert ledger.requests[0].encoded_delta == 300
        assert db.query(CreditDB).filter(CreditDB.claim_id == claim.id).count() == 1

    def test_retry_mint_requires_verified(self, db, claim):
        with pytest.raises(ClaimValidationError):
            build_service(db).retry_mint(claim.id)

    def test_finalized_claim_not_reanalyzed(self, db, claim):
        imagery = FixedImagery(0.55, 0.85)
        service = build_service(db, imagery, RecordingLedger())
        service.request_verification(claim.id)

        with pytest.raises(AlreadyFinalizedError):
            service.request_verification(claim.id)
        assert imagery.calls == 1

    def test_missing_dates(self, db, contributor, square):
        service = build_service(db)
        bare = service.create_claim(contributor, ClaimSubmission(boundary=square, evidence=[]))
        with pytest.raises(ClaimValidationError):
            service.request_verification(bare.id)
        assert service.get_claim(bare.id).status == ClaimStatus.PENDING

    def test_request_dates_override_claim_dates(self, db, contributor, square):
        service = build_service(db, FixedImagery(0.55, 0.85), RecordingLedger())
        bare = service.create_claim(contributor, ClaimSubmission(boundary=square, evidence=[]))
        outcome = service.request_verification(bare.id, before_date=date(2022, 6, 1), after_date=date(2023, 6, 1))
        assert outcome["status"] == "verified"

    def test_non_verifier_actor_forbidden(self, db, claim, contributor):
        with pytest.raises(ForbiddenError):
            build_service(db).request_verification(claim.id, contributor)

    def test_claim_finalized_during_analysis(self, db, claim, verifier, session_factory):
        """A verdict is never attached when another actor finalized first."""

        class RejectingMidway(ImageryAnalysisService):
            def analyze(self, boundary, before_date, after_date):
                other = session_factory()
                try:
                    ClaimService(other).reject(claim_id, verifier, "Duplicate submission")
                finally:
                    other.close()
                return ImageryAnalysis(before=0.55, after=0.85)

        claim_id = claim.id
        ledger = RecordingLedger()
        with pytest.raises(AlreadyFinalizedError):
            build_service(db, RejectingMidway(), ledger).request_verification(claim_id)

        stored = fresh_claim(session_factory, claim_id)
        assert stored.status == ClaimStatus.REJECTED
        assert stored.verification is None
        assert stored.rejection_reason == "Duplicate submission"
        assert ledger.requests == []
        assert db.query(CreditDB).count() == 0


# =============================================================================
# TEST: VERIFIER APPROVAL
# =============================================================================

class TestApprove:

    def test_scenario_d_contributor_cannot_approve(self, db, claim, contributor):
        with pytest.raises(ForbiddenError):
            build_service(db).approve(claim.id, contributor, credits=10)

        db.refresh(claim)
        assert claim.status == ClaimStatus.PENDING
        assert audit_events(db, claim.id) == [AuditEvent.CLAIM_CREATED]

    def test_approve_with_listing(self, db, claim, verifier, contributor):
        result = build_service(db).approve(
            claim.id, verifier, credits=50, notes="Looks good",
            listing=ListingOptions(price=12.5, quantity=20),
        )

        assert result["status"] == "verified"
        assert result["credits_issued"] == 50
        assert result["marketplace_listing"]["quantity"] == 20

        credit = db.query(CreditDB).filter(CreditDB.claim_id == claim.id).one()
        listing = db.query(MarketplaceListingDB).one()
        assert credit.amount == 50
        assert credit.owner_id == contributor.id
        assert listing.credit_id == credit.id
        assert listing.seller_id == contributor.id
        assert listing.status == ListingStatus.ACTIVE

        entries = db.query(ClaimAuditLogDB).filter(ClaimAuditLogDB.claim_id == claim.id).order_by(ClaimAuditLogDB.id).all()
        assert [e.event for e in entries] == [AuditEvent.CLAIM_CREATED, AuditEvent.CLAIM_APPROVED]
        assert entries[-1].note == (
            "Looks good. Approved with 50 credits. "
            "Created marketplace listing: 20 credits at $12.50."
        )
        assert entries[-1].actor_id == verifier.id

    def test_approve_without_listing(self, db, claim, verifier):
        result = build_service(db).approve(claim.id, verifier, credits=5)

        assert result["marketplace_listing"] is None
        assert db.query(MarketplaceListingDB).count() == 0
        note = db.query(ClaimAuditLogDB).order_by(ClaimAuditLogDB.id.desc()).first().note
        assert note == "Approved with 5 credits. No marketplace listing created."

    @pytest.mark.parametrize("credits,listing", [
        (0, None),
        (-3, None),
        (10, ListingOptions(price=0, quantity=1)),
        (10, ListingOptions(price=5.0, quantity=0)),
        (10, ListingOptions(price=5.0, quantity=11)),
    ])
    def test_invalid_input_leaves_claim_pending(self, db, claim, verifier, credits, listing):
        with pytest.raises(ClaimValidationError):
            build_service(db).approve(claim.id, verifier, credits=credits, listing=listing)

        db.refresh(claim)
        assert claim.status == ClaimStatus.PENDING
        assert db.query(CreditDB).count() == 0

    def test_validation_precedes_lookup(self, db, verifier):
        with pytest.raises(ClaimValidationError):
            build_service(db).approve("missing", verifier, credits=0)
        with pytest.raises(NotFoundError):
            build_service(db).approve("missing", verifier, credits=1)

    def test_approve_after_reject(self, db, claim, verifier):
        service = build_service(db)
        service.reject(claim.id, verifier, "Boundary overlaps protected area")

        with pytest.raises(AlreadyFinalizedError) as exc:
            service.approve(claim.id, verifier, credits=10)
        assert "rejected" in str(exc.value)

    def test_audit_failure_rolls_back_transition(self, db, claim, verifier, session_factory):
        service = build_service(db)
        service.audit.append = MagicMock(side_effect=SQLAlchemyError("disk full"))

        with pytest.raises(SQLAlchemyError):
            service.approve(claim.id, verifier, credits=10, listing=ListingOptions(price=1.0, quantity=1))

        stored = fresh_claim(session_factory, claim.id)
        assert stored.status == ClaimStatus.PENDING
        assert stored.credits_issued is None
        assert db.query(CreditDB).count() == 0
        assert db.query(MarketplaceListingDB).count() == 0


# =============================================================================
# TEST: REJECT & RACES
# =============================================================================

class TestRejectAndRaces:

    def test_reject_records_reason(self, db, claim, verifier):
        result = build_service(db).reject(claim.id, verifier, "  Imagery shows no change  ")

        assert result["status"] == "rejected"
        assert result["rejection_reason"] == "Imagery shows no change"
        assert audit_events(db, claim.id)[-1] == AuditEvent.CLAIM_REJECTED

    def test_reject_requires_reason(self, db, claim, verifier):
        with pytest.raises(ClaimValidationError):
            build_service(db).reject(claim.id, verifier, "   ")

    def test_reject_requires_verifier(self, db, claim, contributor):
        with pytest.raises(ForbiddenError):
            build_service(db).reject(claim.id, contributor, "nope")

    def test_terminal_states_are_final(self, db, claim, verifier):
        service = build_service(db)
        service.approve(claim.id, verifier, credits=3)

        with pytest.raises(AlreadyFinalizedError):
            service.reject(claim.id, verifier, "changed my mind")
        with pytest.raises(AlreadyFinalizedError):
            service.approve(claim.id, verifier, credits=3)
        assert db.query(CreditDB).count() == 1

    def test_stale_session_loses_race(self, claim, verifier, session_factory):
        """Two sessions both see pending; only the first finalization wins."""
        first_db = session_factory()
        second_db = session_factory()
        try:
            second = build_service(second_db)
            assert second.get_claim(claim.id).status == ClaimStatus.PENDING

            build_service(first_db).reject(claim.id, verifier, "Duplicate")

            with pytest.raises(AlreadyFinalizedError):
                second.approve(claim.id, verifier, credits=10)
        finally:
            first_db.close()
            second_db.close()

        check = session_factory()
        try:
            transitions = [
                e for e in audit_events(check, claim.id)
                if e in (AuditEvent.CLAIM_APPROVED, AuditEvent.CLAIM_REJECTED, AuditEvent.CLAIM_VERIFIED)
            ]
            assert transitions == [AuditEvent.CLAIM_REJECTED]
            assert check.query(CreditDB).count() == 0
        finally:
            check.close()


# =============================================================================
# TEST: EVIDENCE AMENDMENTS
# =============================================================================

class TestAppendEvidence:

    def test_append_rebinds_fingerprint(self, db, claim, contributor):
        original = claim.fingerprint
        nonce = claim.nonce

        updated = build_service(db).append_evidence(claim.id, contributor, [EvidenceItem(cid="bafy-extra")])

        assert updated.fingerprint != original
        assert updated.nonce == nonce
        assert updated.evidence_keys[-1] == "bafy-extra"
        assert build_service(db).verify_integrity(claim.id)["valid"] is True
        assert audit_events(db, claim.id)[-1] == AuditEvent.EVIDENCE_APPENDED

    def test_only_owner_appends(self, db, claim, verifier):
        with pytest.raises(ForbiddenError):
            build_service(db).append_evidence(claim.id, verifier, [EvidenceItem(cid="x")])

    def test_finalized_claim_is_immutable(self, db, claim, contributor, verifier):
        service = build_service(db)
        service.reject(claim.id, verifier, "No change")
        before = service.get_claim(claim.id).fingerprint

        with pytest.raises(AlreadyFinalizedError):
            service.append_evidence(claim.id, contributor, [EvidenceItem(cid="late")])
        assert service.get_claim(claim.id).fingerprint == before


# =============================================================================
# TEST: STATE MACHINE
# =============================================================================

class TestStateMachine:

    def test_terminal_states(self):
        from landcredit.services.lifecycle.state_machine import allowed_transitions, is_terminal

        assert allowed_transitions(ClaimStatus.PENDING) == [ClaimStatus.VERIFIED, ClaimStatus.REJECTED]
        assert is_terminal(ClaimStatus.VERIFIED)
        assert is_terminal(ClaimStatus.REJECTED)
        assert not is_terminal(ClaimStatus.PENDING)

    def test_transition_out_of_terminal_state_invalid(self):
        from landcredit.services.lifecycle.state_machine import ClaimStateMachine, InvalidTransitionError

        mock_db = MagicMock()
        machine = ClaimStateMachine(mock_db)
        with pytest.raises(InvalidTransitionError):
            machine.transition(MagicMock(id="c1"), ClaimStatus.PENDING, from_state=ClaimStatus.VERIFIED)
        mock_db.query.assert_not_called()

    def test_zero_rows_means_already_finalized(self):
        from landcredit.services.lifecycle.state_machine import ClaimStateMachine

        mock_db = MagicMock()
        mock_db.query.return_value.filter.return_value.update.return_value = 0
        mock_db.query.return_value.filter.return_value.scalar.return_value = ClaimStatus.VERIFIED

        with pytest.raises(AlreadyFinalizedError) as exc:
            ClaimStateMachine(mock_db).transition(MagicMock(id="c1"), ClaimStatus.REJECTED)
        assert exc.value.status == "verified"
        mock_db.expire.assert_not_called()
