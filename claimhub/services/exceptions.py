"""
Service-level exceptions for claim processing.
"""

from typing import Optional


class ClaimsServiceError(Exception):
    """Base exception for claims service errors."""

    pass


class ClaimNotFoundError(ClaimsServiceError):
    """Raised when claim is not found."""

    def __init__(self, claim_id: object):
        super().__init__(f"Claim {claim_id} not found")
        self.claim_id = claim_id


class ClaimValidationError(ClaimsServiceError):
    """Raised when claim validation fails."""

    def __init__(self, message: str, errors: Optional[list[str]] = None):
        super().__init__(message)
        self.errors = errors or []


class ClaimStateError(ClaimsServiceError):
    """Raised when an operation is not allowed in the claim's current status."""

    pass
