"""
Pydantic Schemas for Claim Tracking.

Read-side views returned by the tracking service.
"""

from datetime import datetime
from typing import Any, Generic, Optional, TypeVar
from uuid import UUID

from pydantic import BaseModel, Field

from claimhub.core.enums import (
    ClaimEventType,
    ClaimStatus,
    ForwardStatus,
    ProcessingPath,
)
from claimhub.schemas.claim import ClaimResponse

T = TypeVar("T")


class Page(BaseModel, Generic[T]):
    """Generic page of results."""

    items: list[T]
    total: int
    page: int
    page_size: int

    @property
    def pages(self) -> int:
        if self.page_size <= 0:
            return 0
        return (self.total + self.page_size - 1) // self.page_size


class EventSummary(BaseModel):
    """Most recent audit event of a claim."""

    event_type: ClaimEventType
    status: ClaimStatus
    timestamp: datetime
    details: Optional[dict[str, Any]] = None
    error_message: Optional[str] = None


class ForwardSummary(BaseModel):
    """Most recent forwarding lineage of a claim."""

    forward_id: UUID
    status: ForwardStatus
    attempt_count: int
    next_attempt: Optional[datetime] = None
    updated_at: datetime


class ClaimStatusView(BaseModel):
    """
    Externally visible status of a claim.

    ``derived_status`` is the claim status implied by the latest forward;
    ``consistent`` is False when the stored claim status disagrees with it.
    """

    claim_id: UUID
    status: ClaimStatus
    processing_path: ProcessingPath
    last_status_update: datetime
    latest_event: Optional[EventSummary] = None
    latest_forward: Optional[ForwardSummary] = None
    derived_status: ClaimStatus
    consistent: bool


class ClaimStatistics(BaseModel):
    """Aggregate counts over all claims, computed per request."""

    total_claims: int = 0
    by_status: dict[str, int] = Field(default_factory=dict)
    by_processing_path: dict[str, int] = Field(default_factory=dict)
    by_payer: dict[str, int] = Field(default_factory=dict)
    stalled_claims: int = 0
    error_claims: int = 0
    failed_claims: int = 0
    needing_attention: int = 0
    generated_at: datetime


ClaimPage = Page[ClaimResponse]
