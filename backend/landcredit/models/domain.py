"""
Land-Change Credit Engine - Domain Models

Plain dataclasses passed between the pipeline components. ORM rows live in
db_models; these are what services compute with and what gets serialized
into the claim's JSON columns.
"""

from __future__ import annotations
import math
from dataclasses import dataclass, field
from datetime import date, datetime
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional

from ..errors import ClaimValidationError


# =============================================================================
# ENUMS
# =============================================================================

class UserRole(str, Enum):
    CONTRIBUTOR = "contributor"
    VERIFIER = "verifier"
    ADMIN = "admin"


class VerdictSource(str, Enum):
    """Where the NDVI numbers came from."""
    EXTERNAL = "external"
    FALLBACK = "fallback"


class IssuanceStatus(str, Enum):
    """Outcome of a credit issuance / ledger mint attempt."""
    MINTED = "minted"
    MINT_FAILED = "mint_failed"
    MINT_SKIPPED = "mint_skipped"
    MINT_IN_PROGRESS = "mint_in_progress"
    ALREADY_MINTED = "already_minted"
    NO_CREDITS = "no_credits"


# =============================================================================
# GEOMETRY & EVIDENCE
# =============================================================================

def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


@dataclass
class Polygon:
    """
    GeoJSON Polygon boundary.

    coordinates is a list of linear rings, each a list of [lon, lat] points.
    Ring and point order are significant and never normalized.
    """
    coordinates: List[List[List[float]]]
    type: str = "Polygon"

    @classmethod
    def from_geojson(cls, data: Mapping[str, Any]) -> "Polygon":
        """Validate a GeoJSON mapping and build a Polygon."""
        if not isinstance(data, Mapping) or data.get("type") != "Polygon":
            raise ClaimValidationError("Boundary must be a GeoJSON Polygon")

        rings = data.get("coordinates")
        if not isinstance(rings, list) or len(rings) == 0:
            raise ClaimValidationError("Polygon must have at least one ring")

        for ring_index, ring in enumerate(rings):
            if not isinstance(ring, list) or len(ring) < 4:
                raise ClaimValidationError(
                    f"Ring {ring_index} must have at least 4 points"
                )
            for point in ring:
                if not isinstance(point, list) or len(point) < 2:
                    raise ClaimValidationError("Each point must be a [lon, lat] pair")
                lon, lat = point[0], point[1]
                if not (_is_number(lon) and _is_number(lat)):
                    raise ClaimValidationError("Coordinates must be numbers")
                if not (math.isfinite(lon) and math.isfinite(lat)):
                    raise ClaimValidationError("Coordinates must be finite")
                if not -180 <= lon <= 180:
                    raise ClaimValidationError(f"Longitude {lon} out of range")
                if not -90 <= lat <= 90:
                    raise ClaimValidationError(f"Latitude {lat} out of range")

        outer = rings[0]
        if outer[0] != outer[-1]:
            raise ClaimValidationError("Polygon outer ring must be closed")

        return cls(coordinates=[[list(p) for p in ring] for ring in rings])

    def to_geojson(self) -> Dict[str, Any]:
        return {"type": self.type, "coordinates": self.coordinates}


@dataclass
class EvidenceItem:
    """A piece of supporting evidence. Either cid or url must be set."""
    cid: Optional[str] = None
    url: Optional[str] = None
    name: Optional[str] = None
    type: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {k: v for k, v in (
            ("cid", self.cid), ("url", self.url), ("name", self.name), ("type", self.type),
        ) if v is not None}


@dataclass
class ClaimLocation:
    """Human-readable location attached to a claim."""
    address: Optional[str] = None
    city: Optional[str] = None
    state: Optional[str] = None
    country: Optional[str] = None

    def to_dict(self) -> Dict[str, Optional[str]]:
        return {
            "address": self.address,
            "city": self.city,
            "state": self.state,
            "country": self.country,
        }


# =============================================================================
# VERIFICATION
# =============================================================================

@dataclass(frozen=True)
class ImageryAnalysis:
    """Raw response of an imagery analysis provider."""
    before: float
    after: float
    improvement: Optional[float] = None
    improvement_pct: Optional[float] = None
    passed: Optional[bool] = None
    source_metadata: Dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class VerificationVerdict:
    """Immutable result of one vegetation-change analysis."""
    before: float
    after: float
    delta: float
    delta_percentage: Optional[float]
    passed: bool
    analyzed_at: datetime
    source: VerdictSource
    source_metadata: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "before": self.before,
            "after": self.after,
            "delta": self.delta,
            "delta_percentage": self.delta_percentage,
            "passed": self.passed,
            "analyzed_at": self.analyzed_at.isoformat(),
            "source": self.source.value,
            "source_metadata": dict(self.source_metadata),
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "VerificationVerdict":
        return cls(
            before=data["before"],
            after=data["after"],
            delta=data["delta"],
            delta_percentage=data.get("delta_percentage"),
            passed=data["passed"],
            analyzed_at=datetime.fromisoformat(data["analyzed_at"]),
            source=VerdictSource(data["source"]),
            source_metadata=dict(data.get("source_metadata") or {}),
        )


# =============================================================================
# LEDGER
# =============================================================================

@dataclass(frozen=True)
class MintRequest:
    recipient: str
    amount: int
    encoded_delta: int
    claim_id: str
    location_payload: str
    verification_payload: Dict[str, Any]


@dataclass(frozen=True)
class MintResult:
    success: bool
    token_id: Optional[str] = None
    transaction_hash: Optional[str] = None
    error: Optional[str] = None


@dataclass(frozen=True)
class LedgerReceipt:
    """Evidence of a successful ledger mint. Never built for a failed one."""
    transaction_hash: str
    amount: int
    minted_at: datetime
    token_id: Optional[str] = None
    contract_address: Optional[str] = None
    explorer_url: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "token_id": self.token_id,
            "transaction_hash": self.transaction_hash,
            "amount": self.amount,
            "contract_address": self.contract_address,
            "minted_at": self.minted_at.isoformat(),
            "explorer_url": self.explorer_url,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "LedgerReceipt":
        return cls(
            token_id=data.get("token_id"),
            transaction_hash=data["transaction_hash"],
            amount=data["amount"],
            contract_address=data.get("contract_address"),
            minted_at=datetime.fromisoformat(data["minted_at"]),
            explorer_url=data.get("explorer_url"),
        )


@dataclass
class IssuanceResult:
    """What happened when credits were issued for a claim."""
    status: IssuanceStatus
    credits: int = 0
    credit_id: Optional[str] = None
    receipt: Optional[LedgerReceipt] = None
    warnings: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "status": self.status.value,
            "credits": self.credits,
            "credit_id": self.credit_id,
            "ledger_receipt": self.receipt.to_dict() if self.receipt else None,
            "warnings": list(self.warnings),
        }


# =============================================================================
# ACTORS & REQUESTS
# =============================================================================

@dataclass(frozen=True)
class Actor:
    """Authenticated caller as seen by the lifecycle controller."""
    id: str
    role: UserRole
    display_name: Optional[str] = None

    @property
    def is_verifier(self) -> bool:
        return self.role == UserRole.VERIFIER


@dataclass(frozen=True)
class ListingOptions:
    """Marketplace listing requested alongside a verifier approval."""
    price: float
    quantity: int


@dataclass
class ClaimSubmission:
    """Everything a contributor supplies when creating a claim."""
    boundary: Polygon
    evidence: List[EvidenceItem]
    wallet_address: Optional[str] = None
    before_date: Optional[date] = None
    after_date: Optional[date] = None
    location: Optional[ClaimLocation] = None
    area_hectares: Optional[float] = None
    description: Optional[str] = None
    metadata_cid: Optional[str] = None
