"""Land-Change Credit Engine - Data Models"""
from .domain import (
    # Enums
    UserRole, VerdictSource, IssuanceStatus,
    # Claim contents
    Polygon, EvidenceItem, ClaimLocation, ClaimSubmission,
    # Verification
    ImageryAnalysis, VerificationVerdict,
    # Ledger
    MintRequest, MintResult, LedgerReceipt, IssuanceResult,
    # Callers
    Actor, ListingOptions,
)

__all__ = [
    "UserRole", "VerdictSource", "IssuanceStatus",
    "Polygon", "EvidenceItem", "ClaimLocation", "ClaimSubmission",
    "ImageryAnalysis", "VerificationVerdict",
    "MintRequest", "MintResult", "LedgerReceipt", "IssuanceResult",
    "Actor", "ListingOptions",
]
