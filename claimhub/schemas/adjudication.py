"""
Pydantic Schemas for Internal Claim Adjudication.

Provides:
- LineAdjudication: per-line allowed/patient split
- AdjudicationResult: outcome of the internal rules engine
"""

from datetime import datetime
from decimal import Decimal
from typing import Literal, Optional
from uuid import UUID

from pydantic import BaseModel, Field

from claimhub.core.enums import ClaimStatus


class LineAdjudication(BaseModel):
    """Adjudication detail for one line item."""

    sequence: int = Field(..., ge=1)
    service_code: str
    billed_amount: Decimal = Field(..., description="Line total as billed")
    allowed_amount: Decimal = Field(..., description="Amount allowed by the rules")
    patient_responsibility: Decimal = Field(..., description="Billed minus allowed")


class AdjudicationResult(BaseModel):
    """
    Outcome of internal adjudication.

    ``source`` is ``computed`` when the rules ran, ``cache`` when a fresh
    cached result was reused, and ``None`` for structural rejections.
    """

    success: bool
    claim_id: Optional[UUID] = None
    claim_status: ClaimStatus
    total_billed: Decimal = Decimal("0.00")
    allowed_amount: Decimal = Decimal("0.00")
    patient_responsibility: Decimal = Decimal("0.00")
    line_items: list[LineAdjudication] = Field(default_factory=list)
    errors: list[str] = Field(default_factory=list)
    warnings: list[str] = Field(default_factory=list)
    source: Optional[Literal["computed", "cache"]] = None
    processed_at: Optional[datetime] = None

    def to_cache_payload(self) -> dict:
        """Claim-independent portion of the result, as stored in the rule cache."""
        return self.model_dump(
            mode="json",
            exclude={"claim_id", "source", "processed_at"},
        )
