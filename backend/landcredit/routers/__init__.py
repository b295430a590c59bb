"""Land-Change Credit Engine - API Routers"""
from .claims import router as claims_router
from .credits import router as credits_router

__all__ = [
    "claims_router",
    "credits_router",
]
