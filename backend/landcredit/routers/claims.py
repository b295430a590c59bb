"""
Claims API

Endpoints:
- POST /claims                     Submit a claim (contributor)
- GET  /claims/{id}                Claim with audit log
- GET  /claims/{id}/integrity      Recompute and compare the fingerprint
- POST /claims/{id}/evidence       Add evidence while pending (owner)
- POST /claims/{id}/verify         NDVI verification (verifier)
- POST /claims/{id}/approve        Verifier approval with optional listing
- POST /claims/{id}/reject         Verifier rejection
- POST /claims/{id}/mint           Retry the ledger mint (verifier)
"""
from __future__ import annotations

from datetime import date
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field, field_validator
from sqlalchemy.orm import Session

from ..auth import get_current_actor, require_verifier
from ..config import DEFAULT_POLICY
from ..database import get_db
from ..errors import ClaimPipelineError
from ..models.db_models import ClaimAuditLogDB, ClaimDB, CreditDB, MarketplaceListingDB
from ..models.domain import (
    Actor, ClaimLocation, ClaimSubmission, EvidenceItem, ListingOptions, Polygon,
)
from ..services.issuance.credit_issuer import CreditIssuanceOrchestrator, LedgerMintService
from ..services.lifecycle.claim_service import ClaimService
from ..services.verification.ndvi_analyzer import ImageryAnalysisService, VegetationChangeAnalyzer

router = APIRouter(prefix="/claims", tags=["Claims"])


# =============================================================================
# PROVIDERS
# =============================================================================

def get_imagery_service() -> Optional[ImageryAnalysisService]:
    """Imagery provider. None until a deployment overrides this dependency."""
    return None


def get_ledger_service() -> Optional[LedgerMintService]:
    """Ledger provider. None until a deployment overrides this dependency."""
    return None


def get_claim_service(
    db: Session = Depends(get_db),
    imagery: Optional[ImageryAnalysisService] = Depends(get_imagery_service),
    ledger: Optional[LedgerMintService] = Depends(get_ledger_service),
) -> ClaimService:
    analyzer = VegetationChangeAnalyzer(service=imagery, policy=DEFAULT_POLICY)
    issuer = CreditIssuanceOrchestrator(db, ledger=ledger, policy=DEFAULT_POLICY)
    return ClaimService(db, analyzer=analyzer, issuer=issuer, policy=DEFAULT_POLICY)


# =============================================================================
# REQUEST MODELS
# =============================================================================

class BoundaryModel(BaseModel):
    type: str = "Polygon"
    coordinates: List[List[List[float]]]

    def to_polygon(self) -> Polygon:
        return Polygon.from_geojson(self.model_dump())


class EvidenceModel(BaseModel):
    cid: Optional[str] = None
    url: Optional[str] = None
    name: Optional[str] = None
    type: Optional[str] = None

    def to_item(self) -> EvidenceItem:
        return EvidenceItem(cid=self.cid, url=self.url, name=self.name, type=self.type)


class LocationModel(BaseModel):
    address: Optional[str] = None
    city: Optional[str] = None
    state: Optional[str] = None
    country: Optional[str] = None


class CreateClaimRequest(BaseModel):
    """Request to submit a new claim."""
    boundary: BoundaryModel
    evidence: List[EvidenceModel] = Field(default_factory=list)
    wallet_address: Optional[str] = None
    before_date: Optional[date] = None
    after_date: Optional[date] = None
    location: Optional[LocationModel] = None
    area_hectares: Optional[float] = Field(None, gt=0)
    description: Optional[str] = None
    metadata_cid: Optional[str] = None


class AppendEvidenceRequest(BaseModel):
    evidence: List[EvidenceModel] = Field(..., min_length=1)


class VerifyRequest(BaseModel):
    """Optional analysis window; defaults to the dates on the claim."""
    before_date: Optional[date] = None
    after_date: Optional[date] = None


class ListingRequest(BaseModel):
    price: float = Field(..., gt=0)
    quantity: int = Field(..., ge=1)


class ApproveRequest(BaseModel):
    """Verifier approval."""
    credits: int
    notes: Optional[str] = None
    create_listing: bool = False
    listing: Optional[ListingRequest] = None

    @field_validator("notes")
    @classmethod
    def strip_notes(cls, v: Optional[str]) -> Optional[str]:
        if v is None:
            return v
        return v.strip() or None


class RejectRequest(BaseModel):
    reason: str

    @field_validator("reason")
    @classmethod
    def reason_not_blank(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("Rejection reason is required")
        return v.strip()


# =============================================================================
# SERIALIZATION
# =============================================================================

def serialize_audit_entry(entry: ClaimAuditLogDB) -> Dict[str, Any]:
    return {
        "id": entry.id,
        "event": entry.event.value,
        "actor_id": entry.actor_id,
        "actor_name": entry.actor_name,
        "note": entry.note,
        "metadata": entry.event_metadata,
        "created_at": entry.created_at.isoformat() if entry.created_at else None,
    }


def serialize_claim(claim: ClaimDB, audit_entries: Optional[List[ClaimAuditLogDB]] = None) -> Dict[str, Any]:
    data = {
        "id": claim.id,
        "contributor_id": claim.contributor_id,
        "contributor_name": claim.contributor_name,
        "submitted_at": claim.submitted_at.isoformat(),
        "boundary": claim.boundary,
        "evidence": claim.evidence,
        "fingerprint": claim.fingerprint,
        "nonce": claim.nonce,
        "status": claim.status.value,
        "verification": claim.verification,
        "credits_issued": claim.credits_issued,
        "ledger_receipt": claim.ledger_receipt,
        "mint_state": claim.mint_state.value,
        "wallet_address": claim.wallet_address,
        "before_date": claim.before_date.isoformat() if claim.before_date else None,
        "after_date": claim.after_date.isoformat() if claim.after_date else None,
        "location": claim.location,
        "area_hectares": claim.area_hectares,
        "description": claim.description,
        "metadata_cid": claim.metadata_cid,
        "verifier_id": claim.verifier_id,
        "verifier_name": claim.verifier_name,
        "verifier_notes": claim.verifier_notes,
        "rejection_reason": claim.rejection_reason,
        "verified_at": claim.verified_at.isoformat() if claim.verified_at else None,
    }
    if audit_entries is not None:
        data["audit_log"] = [serialize_audit_entry(e) for e in audit_entries]
    return data


def serialize_credit(credit: CreditDB) -> Dict[str, Any]:
    return {
        "id": credit.id,
        "claim_id": credit.claim_id,
        "owner_id": credit.owner_id,
        "amount": credit.amount,
        "metadata_cid": credit.metadata_cid,
        "token_id": credit.token_id,
        "issued_at": credit.issued_at.isoformat() if credit.issued_at else None,
    }


def serialize_listing(listing: MarketplaceListingDB) -> Dict[str, Any]:
    return {
        "id": listing.id,
        "seller_id": listing.seller_id,
        "credit_id": listing.credit_id,
        "price": listing.price,
        "quantity": listing.quantity,
        "status": listing.status.value,
        "created_at": listing.created_at.isoformat() if listing.created_at else None,
    }


# =============================================================================
# ENDPOINTS
# =============================================================================

@router.post("", status_code=201)
async def create_claim(
    request: CreateClaimRequest,
    actor: Actor = Depends(get_current_actor),
    service: ClaimService = Depends(get_claim_service),
):
    """Submit a land-change claim. The fingerprint is bound at creation."""
    try:
        submission = ClaimSubmission(
            boundary=request.boundary.to_polygon(),
            evidence=[e.to_item() for e in request.evidence],
            wallet_address=request.wallet_address,
            before_date=request.before_date,
            after_date=request.after_date,
            location=ClaimLocation(**request.location.model_dump()) if request.location else None,
            area_hectares=request.area_hectares,
            description=request.description,
            metadata_cid=request.metadata_cid,
        )
        claim = service.create_claim(actor, submission)
    except ClaimPipelineError as e:
        raise HTTPException(status_code=e.status_code, detail=str(e))

    return serialize_claim(claim)


@router.get("/{claim_id}")
async def get_claim(
    claim_id: str,
    actor: Actor = Depends(get_current_actor),
    service: ClaimService = Depends(get_claim_service),
):
    try:
        claim = service.get_claim(claim_id)
    except ClaimPipelineError as e:
        raise HTTPException(status_code=e.status_code, detail=str(e))

    return serialize_claim(claim, service.audit_log(claim_id))


@router.get("/{claim_id}/integrity")
async def check_integrity(
    claim_id: str,
    actor: Actor = Depends(get_current_actor),
    service: ClaimService = Depends(get_claim_service),
):
    """Recompute the fingerprint from the stored identity fields."""
    try:
        return service.verify_integrity(claim_id)
    except ClaimPipelineError as e:
        raise HTTPException(status_code=e.status_code, detail=str(e))


@router.post("/{claim_id}/evidence")
async def append_evidence(
    claim_id: str,
    request: AppendEvidenceRequest,
    actor: Actor = Depends(get_current_actor),
    service: ClaimService = Depends(get_claim_service),
):
    try:
        claim = service.append_evidence(claim_id, actor, [e.to_item() for e in request.evidence])
    except ClaimPipelineError as e:
        raise HTTPException(status_code=e.status_code, detail=str(e))

    return serialize_claim(claim)


@router.post("/{claim_id}/verify")
def verify_claim(
    claim_id: str,
    request: Optional[VerifyRequest] = None,
    actor: Actor = Depends(require_verifier),
    service: ClaimService = Depends(get_claim_service),
):
    """
    Run NDVI verification.

    Blocking: runs in the threadpool because the imagery and ledger calls
    wait on external providers.
    """
    request = request or VerifyRequest()
    try:
        return service.request_verification(
            claim_id,
            actor=actor,
            before_date=request.before_date,
            after_date=request.after_date,
        )
    except ClaimPipelineError as e:
        raise HTTPException(status_code=e.status_code, detail=str(e))


@router.post("/{claim_id}/approve")
async def approve_claim(
    claim_id: str,
    request: ApproveRequest,
    actor: Actor = Depends(get_current_actor),
    service: ClaimService = Depends(get_claim_service),
):
    """Approve with a credit amount and optionally list credits for sale."""
    listing = None
    if request.create_listing:
        if request.listing is None:
            raise HTTPException(status_code=422, detail="Listing price and quantity are required")
        listing = ListingOptions(price=request.listing.price, quantity=request.listing.quantity)
    elif request.listing is not None:
        raise HTTPException(status_code=422, detail="Listing details sent without create_listing")

    try:
        return service.approve(claim_id, actor, request.credits, request.notes, listing)
    except ClaimPipelineError as e:
        raise HTTPException(status_code=e.status_code, detail=str(e))


@router.post("/{claim_id}/reject")
async def reject_claim(
    claim_id: str,
    request: RejectRequest,
    actor: Actor = Depends(get_current_actor),
    service: ClaimService = Depends(get_claim_service),
):
    try:
        return service.reject(claim_id, actor, request.reason)
    except ClaimPipelineError as e:
        raise HTTPException(status_code=e.status_code, detail=str(e))


@router.post("/{claim_id}/mint")
def retry_mint(
    claim_id: str,
    actor: Actor = Depends(require_verifier),
    service: ClaimService = Depends(get_claim_service),
):
    """Retry the ledger mint for an already-recorded credit."""
    try:
        result = service.retry_mint(claim_id, actor)
    except ClaimPipelineError as e:
        raise HTTPException(status_code=e.status_code, detail=str(e))

    return {"claim_id": claim_id, **result.to_dict()}


@router.get("/{claim_id}/credit")
async def get_claim_credit(
    claim_id: str,
    actor: Actor = Depends(get_current_actor),
    service: ClaimService = Depends(get_claim_service),
):
    try:
        credit = service.credit_for_claim(claim_id)
    except ClaimPipelineError as e:
        raise HTTPException(status_code=e.status_code, detail=str(e))

    data = serialize_credit(credit)
    data["listings"] = [serialize_listing(listing) for listing in service.listings_for_claim(claim_id)]
    return data
