"""Claim integrity: fingerprinting and evidence normalization."""
from .evidence import extract_evidence_keys
from .fingerprint import canonicalize, canonical_timestamp, generate_fingerprint, verify_fingerprint

__all__ = [
    "extract_evidence_keys",
    "canonicalize",
    "canonical_timestamp",
    "generate_fingerprint",
    "verify_fingerprint",
]
