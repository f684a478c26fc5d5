"""
Claim Models for the dual-path claims pipeline.

Provides:
- Claim: billing claim header
- ClaimLineItem: billed service within a claim
- ClaimEvent: append-only audit record
- ClaimPayerForward: one forwarding lineage to an external payer
- RuleCacheEntry: cached internal adjudication result
"""

from datetime import date, datetime
from decimal import Decimal
from typing import Any, Optional
from uuid import UUID

from sqlalchemy import (
    Date,
    Enum,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    Uuid,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from claimhub.core.enums import (
    ClaimEventType,
    ClaimStatus,
    ClaimType,
    ForwardStatus,
    ProcessingPath,
    TransportMethod,
)
from claimhub.models.base import (
    Base,
    JSONType,
    TimeStampedModel,
    UTCDateTime,
    UUIDModel,
    utcnow,
)


def _enum(enum_cls: type) -> Enum:
    """Portable enum column stored as VARCHAR."""
    return Enum(enum_cls, native_enum=False, length=32, validate_strings=True)


class Claim(Base, UUIDModel, TimeStampedModel):
    """
    Billing claim.

    Created on ingestion and mutated only by the rules engine, the payer
    gateway and the explicit cancel/resubmit operations. Never deleted.
    """

    __tablename__ = "claims"

    # Parties
    patient_id: Mapped[Optional[str]] = mapped_column(
        String(64), nullable=True, index=True, comment="Patient reference"
    )
    provider_id: Mapped[Optional[str]] = mapped_column(
        String(64), nullable=True, index=True, comment="Rendering provider reference"
    )
    payer_id: Mapped[str] = mapped_column(
        String(64), nullable=False, index=True, comment="Payer responsible for the claim"
    )
    organization_id: Mapped[Optional[str]] = mapped_column(
        String(64), nullable=True, comment="Submitting organization"
    )

    # Classification
    claim_type: Mapped[ClaimType] = mapped_column(
        _enum(ClaimType),
        default=ClaimType.PROFESSIONAL,
        nullable=False,
        comment="Type of claim (professional, institutional, etc.)",
    )
    processing_path: Mapped[ProcessingPath] = mapped_column(
        _enum(ProcessingPath),
        default=ProcessingPath.AUTO,
        nullable=False,
        index=True,
        comment="Adjudication path",
    )
    status: Mapped[ClaimStatus] = mapped_column(
        _enum(ClaimStatus),
        default=ClaimStatus.NEW,
        nullable=False,
        index=True,
        comment="Current claim status",
    )

    # Amounts
    total_amount: Mapped[Decimal] = mapped_column(
        Numeric(12, 2), default=Decimal("0.00"), nullable=False
    )
    currency: Mapped[str] = mapped_column(String(3), default="USD", nullable=False)

    # Dates
    service_date: Mapped[Optional[date]] = mapped_column(Date, nullable=True)
    submitted_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime(), nullable=True)
    processed_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime(), nullable=True)
    last_status_update: Mapped[datetime] = mapped_column(
        UTCDateTime(), default=utcnow, nullable=False, index=True
    )

    # Outcome payloads
    response_data: Mapped[Optional[dict[str, Any]]] = mapped_column(JSONType, nullable=True)
    error_data: Mapped[Optional[dict[str, Any]]] = mapped_column(JSONType, nullable=True)
    external_claim_id: Mapped[Optional[str]] = mapped_column(
        String(100), nullable=True, comment="Payer-assigned claim reference"
    )

    line_items: Mapped[list["ClaimLineItem"]] = relationship(
        back_populates="claim",
        cascade="all, delete-orphan",
        order_by="ClaimLineItem.sequence",
        lazy="selectin",
    )

    __table_args__ = (
        Index("ix_claims_status_last_update", "status", "last_status_update"),
    )

    def __repr__(self) -> str:
        return f"<Claim(id={self.id}, payer='{self.payer_id}', status='{self.status}')>"


class ClaimLineItem(Base, UUIDModel, TimeStampedModel):
    """Billed service line. Immutable after adjudication except for adjudication_data."""

    __tablename__ = "claim_line_items"

    claim_id: Mapped[UUID] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("claims.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    sequence: Mapped[int] = mapped_column(Integer, nullable=False)
    service_code: Mapped[str] = mapped_column(String(20), nullable=False)
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    quantity: Mapped[int] = mapped_column(Integer, default=1, nullable=False)
    unit_price: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    total_price: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    service_date: Mapped[Optional[date]] = mapped_column(Date, nullable=True)
    adjudication_data: Mapped[Optional[dict[str, Any]]] = mapped_column(
        JSONType, nullable=True
    )

    claim: Mapped["Claim"] = relationship(back_populates="line_items")

    def __repr__(self) -> str:
        return f"<ClaimLineItem(claim={self.claim_id}, seq={self.sequence}, code='{self.service_code}')>"


class ClaimEvent(Base, UUIDModel):
    """
    Append-only audit record.

    Rows are never updated or deleted. ``sequence`` increases per claim and
    breaks ties between events sharing a timestamp.
    """

    __tablename__ = "claim_events"

    claim_id: Mapped[UUID] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("claims.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    event_type: Mapped[ClaimEventType] = mapped_column(
        _enum(ClaimEventType), nullable=False, index=True
    )
    status: Mapped[ClaimStatus] = mapped_column(
        _enum(ClaimStatus), nullable=False, comment="Claim status at the time of the event"
    )
    actor: Mapped[str] = mapped_column(String(64), default="system", nullable=False)
    details: Mapped[Optional[dict[str, Any]]] = mapped_column(JSONType, nullable=True)
    error_message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    timestamp: Mapped[datetime] = mapped_column(UTCDateTime(), default=utcnow, nullable=False)
    sequence: Mapped[int] = mapped_column(Integer, nullable=False)

    __table_args__ = (
        Index("ix_claim_events_claim_sequence", "claim_id", "sequence"),
    )

    def __repr__(self) -> str:
        return f"<ClaimEvent(claim={self.claim_id}, type='{self.event_type}', seq={self.sequence})>"


class ClaimPayerForward(Base, UUIDModel, TimeStampedModel):
    """
    One forwarding lineage of a claim to an external payer.

    ``version`` is incremented on every status write; writers compare-and-set
    on it so a stale or duplicate dispatch cannot overwrite newer state.
    """

    __tablename__ = "claim_payer_forwards"

    claim_id: Mapped[UUID] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("claims.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    payer_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    transport_method: Mapped[TransportMethod] = mapped_column(
        _enum(TransportMethod), default=TransportMethod.API, nullable=False
    )
    status: Mapped[ForwardStatus] = mapped_column(
        _enum(ForwardStatus), default=ForwardStatus.QUEUED, nullable=False, index=True
    )
    attempt_count: Mapped[int] = mapped_column(Integer, default=1, nullable=False)
    next_attempt: Mapped[Optional[datetime]] = mapped_column(
        UTCDateTime(), nullable=True, index=True
    )
    tracking_number: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    sent_data: Mapped[Optional[dict[str, Any]]] = mapped_column(JSONType, nullable=True)
    response_data: Mapped[Optional[dict[str, Any]]] = mapped_column(JSONType, nullable=True)
    error_details: Mapped[Optional[dict[str, Any]]] = mapped_column(JSONType, nullable=True)
    sent_timestamp: Mapped[Optional[datetime]] = mapped_column(UTCDateTime(), nullable=True)
    response_timestamp: Mapped[Optional[datetime]] = mapped_column(
        UTCDateTime(), nullable=True
    )
    version: Mapped[int] = mapped_column(Integer, default=1, nullable=False)

    __table_args__ = (
        Index("ix_claim_payer_forwards_status_next", "status", "next_attempt"),
    )

    def __repr__(self) -> str:
        return f"<ClaimPayerForward(id={self.id}, claim={self.claim_id}, status='{self.status}', attempt={self.attempt_count})>"


class RuleCacheEntry(Base, UUIDModel, TimeStampedModel):
    """Cached adjudication result keyed by claim content fingerprint. Upserted whole."""

    __tablename__ = "claim_rules_cache"

    cache_key: Mapped[str] = mapped_column(String(64), unique=True, nullable=False)
    claim_type: Mapped[ClaimType] = mapped_column(_enum(ClaimType), nullable=False)
    payer_id: Mapped[str] = mapped_column(String(64), nullable=False)
    result: Mapped[dict[str, Any]] = mapped_column(JSONType, nullable=False)

    def __repr__(self) -> str:
        return f"<RuleCacheEntry(key='{self.cache_key[:12]}', payer='{self.payer_id}')>"
