"""
Land-Change Credit Engine - SQLAlchemy ORM Models
Persistent storage for claims, credits, listings and the claim audit log
"""
from datetime import datetime
from enum import Enum
from sqlalchemy import (
    Column, String, Integer, Float, DateTime, Date, Text, JSON, ForeignKey,
    Enum as SQLEnum, UniqueConstraint,
)
from sqlalchemy.orm import relationship

from ..database import Base
from .domain import UserRole


# =============================================================================
# ENUMS
# =============================================================================

class ClaimStatus(str, Enum):
    """Claim lifecycle states. VERIFIED and REJECTED are terminal."""
    PENDING = "pending"
    VERIFIED = "verified"
    REJECTED = "rejected"


class MintState(str, Enum):
    """Progress of the one ledger mint a claim may have."""
    NOT_STARTED = "not_started"
    IN_FLIGHT = "in_flight"
    MINTED = "minted"
    FAILED = "failed"


class ListingStatus(str, Enum):
    ACTIVE = "active"
    SOLD = "sold"
    CANCELLED = "cancelled"


class AuditEvent(str, Enum):
    """Event tags written to the claim audit log."""
    CLAIM_CREATED = "claim_created"
    EVIDENCE_APPENDED = "evidence_appended"
    CLAIM_VERIFIED = "claim_verified"
    CLAIM_APPROVED = "claim_approved"
    CLAIM_REJECTED = "claim_rejected"
    CREDITS_MINTED = "credits_minted"
    MINT_FAILED = "mint_failed"
    MINT_SKIPPED = "mint_skipped"


# =============================================================================
# USERS
# =============================================================================

class UserDB(Base):
    """Account that can act on claims."""
    __tablename__ = "users"

    id = Column(String(36), primary_key=True)  # UUID
    email = Column(String(255), unique=True, nullable=False, index=True)
    display_name = Column(String(200), nullable=True)
    role = Column(SQLEnum(UserRole), nullable=False, default=UserRole.CONTRIBUTOR)
    created_at = Column(DateTime, default=datetime.utcnow)


# =============================================================================
# CLAIMS
# =============================================================================

class ClaimDB(Base):
    """
    A contributor's land-change claim.

    Identity fields (contributor_id, submitted_at, boundary, evidence_keys)
    plus nonce always re-derive the stored fingerprint. They are frozen once
    the claim leaves PENDING.
    """
    __tablename__ = "claims"

    id = Column(String(36), primary_key=True)  # UUID
    contributor_id = Column(String(36), nullable=False, index=True)
    contributor_name = Column(String(200), nullable=True)

    # ==========================================================================
    # IDENTITY FIELDS - bound by the fingerprint
    # ==========================================================================
    submitted_at = Column(DateTime, nullable=False)  # UTC, millisecond precision
    boundary = Column(JSON, nullable=False)  # GeoJSON Polygon
    evidence = Column(JSON, nullable=False, default=list)  # [{cid, url, name, type}]
    evidence_keys = Column(JSON, nullable=False, default=list)  # normalized, input order
    fingerprint = Column(String(64), nullable=False, index=True)
    nonce = Column(String(64), nullable=False)

    # ==========================================================================
    # WORKFLOW
    # ==========================================================================
    status = Column(SQLEnum(ClaimStatus), nullable=False, default=ClaimStatus.PENDING, index=True)
    verification = Column(JSON, nullable=True)  # VerificationVerdict.to_dict()
    credits_issued = Column(Integer, nullable=True)
    ledger_receipt = Column(JSON, nullable=True)  # LedgerReceipt.to_dict()
    mint_state = Column(SQLEnum(MintState), nullable=False, default=MintState.NOT_STARTED)

    # ==========================================================================
    # SUPPLEMENTARY DETAILS
    # ==========================================================================
    wallet_address = Column(String(64), nullable=True)
    before_date = Column(Date, nullable=True)
    after_date = Column(Date, nullable=True)
    location = Column(JSON, nullable=True)  # {address, city, state, country}
    area_hectares = Column(Float, nullable=True)
    description = Column(Text, nullable=True)
    metadata_cid = Column(String(128), nullable=True)

    # ==========================================================================
    # REVIEW
    # ==========================================================================
    verifier_id = Column(String(36), nullable=True)
    verifier_name = Column(String(200), nullable=True)
    verifier_notes = Column(Text, nullable=True)
    rejection_reason = Column(Text, nullable=True)
    verified_at = Column(DateTime, nullable=True)

    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    audit_entries = relationship(
        "ClaimAuditLogDB",
        back_populates="claim",
        order_by="ClaimAuditLogDB.id",
    )


class ClaimAuditLogDB(Base):
    """
    Append-only audit log for claims.
    Entries are never updated or deleted; id order is append order.
    """
    __tablename__ = "claim_audit_log"

    id = Column(Integer, primary_key=True, autoincrement=True)
    claim_id = Column(String(36), ForeignKey("claims.id"), nullable=False, index=True)
    event = Column(SQLEnum(AuditEvent), nullable=False)
    actor_id = Column(String(36), nullable=True)  # None for system actions
    actor_name = Column(String(200), nullable=True)
    note = Column(Text, nullable=True)
    event_metadata = Column(JSON, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)

    claim = relationship("ClaimDB", back_populates="audit_entries")


# =============================================================================
# CREDITS & MARKETPLACE
# =============================================================================

class CreditDB(Base):
    """Credits issued for a verified claim. At most one per claim."""
    __tablename__ = "credits"
    __table_args__ = (UniqueConstraint("claim_id", name="uq_credits_claim_id"),)

    id = Column(String(36), primary_key=True)  # UUID
    claim_id = Column(String(36), ForeignKey("claims.id"), nullable=False)
    owner_id = Column(String(36), nullable=False, index=True)
    amount = Column(Integer, nullable=False)
    metadata_cid = Column(String(128), nullable=True)
    token_id = Column(String(100), nullable=True)  # set after a successful mint
    issued_at = Column(DateTime, default=datetime.utcnow, nullable=False)


class MarketplaceListingDB(Base):
    """Sell offer for credits created at approval time."""
    __tablename__ = "marketplace_listings"

    id = Column(String(36), primary_key=True)  # UUID
    seller_id = Column(String(36), nullable=False, index=True)
    credit_id = Column(String(36), ForeignKey("credits.id"), nullable=False, index=True)
    price = Column(Float, nullable=False)
    quantity = Column(Integer, nullable=False)
    status = Column(SQLEnum(ListingStatus), nullable=False, default=ListingStatus.ACTIVE)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
