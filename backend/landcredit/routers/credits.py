"""
Credits & Listings API (read-only)

- GET /credits/{id}
- GET /listings/{id}
"""
from fastapi import APIRouter, Depends, HTTPException

from ..auth import get_current_actor
from ..errors import ClaimPipelineError
from ..models.domain import Actor
from ..services.lifecycle.claim_service import ClaimService
from .claims import get_claim_service, serialize_credit, serialize_listing

router = APIRouter(tags=["Credits"])


@router.get("/credits/{credit_id}")
async def get_credit(
    credit_id: str,
    actor: Actor = Depends(get_current_actor),
    service: ClaimService = Depends(get_claim_service),
):
    try:
        credit = service.get_credit(credit_id)
    except ClaimPipelineError as e:
        raise HTTPException(status_code=e.status_code, detail=str(e))

    return serialize_credit(credit)


@router.get("/listings/{listing_id}")
async def get_listing(
    listing_id: str,
    actor: Actor = Depends(get_current_actor),
    service: ClaimService = Depends(get_claim_service),
):
    try:
        listing = service.get_listing(listing_id)
    except ClaimPipelineError as e:
        raise HTTPException(status_code=e.status_code, detail=str(e))

    return serialize_listing(listing)
