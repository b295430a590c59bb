"""
Land-Change Credit Engine - FastAPI Application

Pipeline:
- Contributor submits a claim -> fingerprint bound -> pending
- NDVI verification or verifier review -> verified | rejected
- Verified -> CreditRecord -> ledger mint (+ optional marketplace listing)
"""
from contextlib import asynccontextmanager
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from .database import init_db
from .observability import configure_logging
from .routers import claims_router, credits_router


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Configure logging and initialize database on startup."""
    configure_logging()
    init_db()
    yield

# Create FastAPI app
app = FastAPI(
    lifespan=lifespan,
    title="Land-Change Credit Engine",
    description="""
    Claim integrity and verification pipeline for land-change credits.

    ## Pipeline
    1. **Submission**: boundary + evidence -> fingerprinted pending claim
    2. **Verification**: NDVI before/after analysis (external or fallback)
    3. **Issuance**: credits recorded once, minted on the ledger once
    4. **Review**: verifiers approve (optionally listing credits) or reject

    ## Key Principles
    - A claim leaves pending exactly once
    - Verdicts and receipts are immutable once attached
    - Every transition writes one audit entry in the same transaction
    """,
    version="1.0.0",
    docs_url="/docs",
    redoc_url="/redoc"
)

# Configure CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],  # Configure appropriately for production
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Include routers
app.include_router(claims_router)
app.include_router(credits_router)


@app.get("/")
async def root():
    """Root endpoint - API information."""
    return {
        "name": "Land-Change Credit Engine",
        "version": "1.0.0",
        "docs": "/docs",
    }


@app.get("/health")
async def health():
    return {"status": "healthy"}


if __name__ == "__main__":
    import uvicorn
    uvicorn.run("landcredit.main:app", host="0.0.0.0", port=8000, reload=True)
