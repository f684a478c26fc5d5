"""
Custom Exceptions
HTTP error types raised by the API layer
Source: https://fastapi.tiangolo.com/tutorial/handling-errors/
Verified: 2026-10-19
"""

from typing import Any

from fastapi import HTTPException, status


class NotFoundError(HTTPException):
    """Raised when resource not found"""

    def __init__(self, detail: Any = "Resource not found"):
        super().__init__(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=detail,
        )


class ValidationError(HTTPException):
    """Raised when validation fails"""

    def __init__(self, detail: Any = "Validation error"):
        super().__init__(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail=detail,
        )


class ConflictError(HTTPException):
    """Raised when resource conflict occurs"""

    def __init__(self, detail: Any = "Resource conflict"):
        super().__init__(
            status_code=status.HTTP_409_CONFLICT,
            detail=detail,
        )


class ProcessingError(HTTPException):
    """Raised when synchronous claim processing ends in an error state"""

    def __init__(self, detail: Any = "Claim processing failed"):
        super().__init__(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail=detail,
        )
