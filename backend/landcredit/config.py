"""
Land-Change Credit Engine - Configuration

All tunables are read from the environment once at import time.
"""
import os
from dataclasses import dataclass
from typing import Optional


DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///./landcredit.db")

# JWT
SECRET_KEY = os.getenv("JWT_SECRET_KEY", "landcredit-secret-key-change-in-production")
ALGORITHM = os.getenv("JWT_ALGORITHM", "HS256")
ACCESS_TOKEN_EXPIRE_HOURS = int(os.getenv("ACCESS_TOKEN_EXPIRE_HOURS", "24"))

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")


@dataclass(frozen=True)
class VerificationPolicy:
    """
    Numeric policy for NDVI verification and credit issuance.

    pass_threshold: minimum NDVI improvement (exclusive) for a claim to pass
    credits_per_unit: credits granted per 1.0 of NDVI improvement
    delta_scale: integer scaling applied to the delta in ledger payloads
    """
    pass_threshold: float = 0.10
    credits_per_unit: int = 100
    delta_scale: int = 1000
    imagery_timeout_seconds: float = 30.0
    ledger_timeout_seconds: float = 60.0
    contract_address: Optional[str] = None
    explorer_tx_url: Optional[str] = None

    @classmethod
    def from_env(cls) -> "VerificationPolicy":
        return cls(
            pass_threshold=float(os.getenv("NDVI_PASS_THRESHOLD", "0.10")),
            credits_per_unit=int(os.getenv("CREDITS_PER_NDVI_UNIT", "100")),
            delta_scale=int(os.getenv("NDVI_DELTA_SCALE", "1000")),
            imagery_timeout_seconds=float(os.getenv("IMAGERY_TIMEOUT_SECONDS", "30")),
            ledger_timeout_seconds=float(os.getenv("LEDGER_TIMEOUT_SECONDS", "60")),
            contract_address=os.getenv("LEDGER_CONTRACT_ADDRESS"),
            # e.g. https://amoy.polygonscan.com/tx/{tx_hash}
            explorer_tx_url=os.getenv("LEDGER_EXPLORER_TX_URL"),
        )


DEFAULT_POLICY = VerificationPolicy.from_env()
