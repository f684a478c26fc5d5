"""
Pydantic Schemas for the Claims Hub.
"""

from claimhub.schemas.adjudication import AdjudicationResult, LineAdjudication
from claimhub.schemas.claim import (
    ClaimCancel,
    ClaimCreate,
    ClaimEventResponse,
    ClaimForwardResponse,
    ClaimLineItemCreate,
    ClaimLineItemResponse,
    ClaimListResponse,
    ClaimProcessingResponse,
    ClaimResponse,
    LineItemsAppend,
)
from claimhub.schemas.tracking import (
    ClaimPage,
    ClaimStatistics,
    ClaimStatusView,
    EventSummary,
    ForwardSummary,
    Page,
)

__all__ = [
    "AdjudicationResult",
    "LineAdjudication",
    "ClaimCancel",
    "ClaimCreate",
    "ClaimEventResponse",
    "ClaimForwardResponse",
    "ClaimLineItemCreate",
    "ClaimLineItemResponse",
    "ClaimListResponse",
    "ClaimProcessingResponse",
    "ClaimResponse",
    "LineItemsAppend",
    "ClaimPage",
    "ClaimStatistics",
    "ClaimStatusView",
    "EventSummary",
    "ForwardSummary",
    "Page",
]
