"""Credit issuance and ledger minting."""
from .credit_issuer import CreditIssuanceOrchestrator, LedgerMintService, compute_credits

__all__ = ["CreditIssuanceOrchestrator", "LedgerMintService", "compute_credits"]
