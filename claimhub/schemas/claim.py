"""
Pydantic Schemas for Claims Management.

Request and response models for claim ingestion, audit trails and
forwarding lineages.
"""

from datetime import date, datetime
from decimal import Decimal
from typing import Any, Optional
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, field_validator

from claimhub.core.enums import (
    ClaimEventType,
    ClaimStatus,
    ClaimType,
    ForwardStatus,
    ProcessingPath,
    TransportMethod,
)
from claimhub.schemas.adjudication import AdjudicationResult


# =============================================================================
# Line Item Schemas
# =============================================================================


class ClaimLineItemCreate(BaseModel):
    """Line item as submitted with a claim."""

    service_code: str = Field(
        ..., min_length=1, max_length=20, description="Procedure / service code"
    )
    description: Optional[str] = Field(None, max_length=500)
    quantity: int = Field(default=1, ge=1, description="Service units")
    unit_price: Decimal = Field(..., ge=0, max_digits=12, decimal_places=2)
    service_date: Optional[date] = None

    @property
    def total_price(self) -> Decimal:
        return (self.unit_price * self.quantity).quantize(Decimal("0.01"))


class ClaimLineItemResponse(BaseModel):
    """Schema for line item response."""

    model_config = ConfigDict(from_attributes=True)

    id: UUID
    claim_id: UUID
    sequence: int
    service_code: str
    description: Optional[str] = None
    quantity: int
    unit_price: Decimal
    total_price: Decimal
    service_date: Optional[date] = None
    adjudication_data: Optional[dict[str, Any]] = None


class LineItemsAppend(BaseModel):
    """Body of ``POST /claims/{id}/line-items``."""

    line_items: list[ClaimLineItemCreate] = Field(..., min_length=1)


# =============================================================================
# Claim Schemas
# =============================================================================


class ClaimCreate(BaseModel):
    """
    Schema for creating a claim.

    Patient and provider are optional at the schema level: a claim missing
    either is accepted and then rejected by the rules engine, leaving an
    audit trail.
    """

    patient_id: Optional[str] = Field(None, max_length=64)
    provider_id: Optional[str] = Field(None, max_length=64)
    payer_id: str = Field(..., min_length=1, max_length=64)
    organization_id: Optional[str] = Field(None, max_length=64)
    claim_type: ClaimType = Field(default=ClaimType.PROFESSIONAL)
    currency: str = Field(default="USD", min_length=3, max_length=3)
    service_date: Optional[date] = None
    line_items: list[ClaimLineItemCreate] = Field(default_factory=list)

    @field_validator("currency")
    @classmethod
    def normalize_currency(cls, v: str) -> str:
        return v.upper()

    @field_validator("patient_id", "provider_id", "organization_id")
    @classmethod
    def blank_to_none(cls, v: Optional[str]) -> Optional[str]:
        if v is not None and not v.strip():
            return None
        return v


class ClaimResponse(BaseModel):
    """Claim snapshot."""

    model_config = ConfigDict(from_attributes=True)

    id: UUID
    patient_id: Optional[str] = None
    provider_id: Optional[str] = None
    payer_id: str
    organization_id: Optional[str] = None
    claim_type: ClaimType
    processing_path: ProcessingPath
    status: ClaimStatus
    total_amount: Decimal
    currency: str
    service_date: Optional[date] = None
    submitted_at: Optional[datetime] = None
    processed_at: Optional[datetime] = None
    last_status_update: datetime
    response_data: Optional[dict[str, Any]] = None
    error_data: Optional[dict[str, Any]] = None
    external_claim_id: Optional[str] = None
    created_at: datetime
    updated_at: datetime
    line_items: list[ClaimLineItemResponse] = Field(default_factory=list)


class ClaimListResponse(BaseModel):
    """Paginated claim listing."""

    items: list[ClaimResponse]
    total: int
    page: int
    page_size: int


# =============================================================================
# Audit Schemas
# =============================================================================


class ClaimEventResponse(BaseModel):
    """Audit event."""

    model_config = ConfigDict(from_attributes=True)

    id: UUID
    claim_id: UUID
    event_type: ClaimEventType
    status: ClaimStatus
    actor: str
    details: Optional[dict[str, Any]] = None
    error_message: Optional[str] = None
    timestamp: datetime
    sequence: int


class ClaimForwardResponse(BaseModel):
    """Forwarding lineage."""

    model_config = ConfigDict(from_attributes=True)

    id: UUID
    claim_id: UUID
    payer_id: str
    transport_method: TransportMethod
    status: ForwardStatus
    attempt_count: int
    next_attempt: Optional[datetime] = None
    tracking_number: Optional[str] = None
    response_data: Optional[dict[str, Any]] = None
    error_details: Optional[dict[str, Any]] = None
    sent_timestamp: Optional[datetime] = None
    response_timestamp: Optional[datetime] = None
    version: int
    created_at: datetime
    updated_at: datetime


# =============================================================================
# Workflow Schemas
# =============================================================================


class ClaimProcessingResponse(BaseModel):
    """Outcome of creating, processing or resubmitting a claim."""

    claim_id: UUID
    status: ClaimStatus
    processing_path: ProcessingPath
    message: str = ""
    forward_id: Optional[UUID] = None
    adjudication: Optional[AdjudicationResult] = None


class ClaimCancel(BaseModel):
    """Body of ``POST /claims/{id}/cancel``."""

    reason: Optional[str] = Field(None, max_length=500)
