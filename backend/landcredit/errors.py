"""
Error taxonomy for the claim pipeline.

Each error carries the HTTP status the routers translate it to.
"""


class ClaimPipelineError(Exception):
    """Base error for claim lifecycle operations."""
    status_code = 400


class NotFoundError(ClaimPipelineError):
    status_code = 404


class AlreadyFinalizedError(ClaimPipelineError):
    """Claim has left the pending state."""
    status_code = 409

    def __init__(self, claim_id: str, status: str):
        self.claim_id = claim_id
        self.status = status
        super().__init__(f"Claim already {status}")


class ForbiddenError(ClaimPipelineError):
    status_code = 403


class ClaimValidationError(ClaimPipelineError):
    status_code = 422


class MalformedEvidenceError(ClaimValidationError):
    """Evidence item has neither a content identifier nor a URL."""

    def __init__(self, index: int):
        self.index = index
        super().__init__(f"Evidence item {index} has neither cid nor url")


class ExternalServiceUnavailableError(ClaimPipelineError):
    """An external collaborator failed or timed out."""
    status_code = 503

    def __init__(self, operation: str, reason: str):
        self.operation = operation
        self.reason = reason
        super().__init__(f"{operation} unavailable: {reason}")
