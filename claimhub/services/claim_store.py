"""
Claim Store.

Provides:
- Claim and line item persistence (atomic claim creation)
- Append-only claim event log
- Payer forward rows with compare-and-set transitions
- Rule result cache rows
- Aggregate queries for tracking

The store holds no business rules. Every claim status change is written in
the same transaction as its audit event.
"""

import logging
from collections.abc import Iterable, Sequence
from datetime import datetime
from decimal import Decimal
from typing import Any, Optional
from uuid import UUID

from pydantic_core import to_jsonable_python
from sqlalchemy import and_, func, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from claimhub.core.enums import (
    ClaimEventType,
    ClaimStatus,
    ClaimType,
    ForwardStatus,
    ProcessingPath,
    TransportMethod,
)
from claimhub.models.base import utcnow
from claimhub.models.claim import (
    Claim,
    ClaimEvent,
    ClaimLineItem,
    ClaimPayerForward,
    RuleCacheEntry,
)
from claimhub.schemas.claim import ClaimCreate, ClaimLineItemCreate
from claimhub.services.claim_state_machine import (
    AWAITING_PAYER_STATUSES,
    DISPATCHABLE_FORWARD_STATUSES,
    TERMINAL_FORWARD_STATUSES,
)

logger = logging.getLogger(__name__)


def _jsonable(value: Optional[dict[str, Any]]) -> Optional[dict[str, Any]]:
    """Convert Decimal/UUID/datetime/enum values for JSON columns."""
    if value is None:
        return None
    return to_jsonable_python(value)


class ClaimStore:
    """
    Durable state for claims, events, forwards and the rule cache.

    Each public method runs in its own transaction.
    """

    def __init__(self, session_maker: async_sessionmaker[AsyncSession]):
        self._session_maker = session_maker

    # =========================================================================
    # Claims
    # =========================================================================

    async def create_claim(
        self,
        data: ClaimCreate,
        processing_path: ProcessingPath = ProcessingPath.AUTO,
        actor: str = "system",
    ) -> Claim:
        """Insert a claim, its line items and the CLAIM_CREATED event atomically."""
        now = utcnow()
        line_items = [
            self._build_line_item(item, sequence)
            for sequence, item in enumerate(data.line_items, start=1)
        ]
        claim = Claim(
            patient_id=data.patient_id,
            provider_id=data.provider_id,
            payer_id=data.payer_id,
            organization_id=data.organization_id,
            claim_type=data.claim_type,
            currency=data.currency,
            service_date=data.service_date,
            processing_path=processing_path,
            status=ClaimStatus.NEW,
            total_amount=sum((li.total_price for li in line_items), Decimal("0.00")),
            last_status_update=now,
            line_items=line_items,
        )

        async with self._session_maker.begin() as session:
            session.add(claim)
            await session.flush()
            await self._append_event(
                session,
                claim.id,
                ClaimEventType.CLAIM_CREATED,
                ClaimStatus.NEW,
                details={
                    "payer_id": data.payer_id,
                    "processing_path": processing_path.value,
                    "line_item_count": len(line_items),
                    "total_amount": claim.total_amount,
                },
                actor=actor,
                timestamp=now,
            )

        logger.info(f"Claim {claim.id} created with {len(line_items)} line items")
        return claim

    @staticmethod
    def _build_line_item(item: ClaimLineItemCreate, sequence: int) -> ClaimLineItem:
        return ClaimLineItem(
            sequence=sequence,
            service_code=item.service_code,
            description=item.description,
            quantity=item.quantity,
            unit_price=item.unit_price,
            total_price=item.total_price,
            service_date=item.service_date,
        )

    async def get_claim(self, claim_id: UUID) -> Optional[Claim]:
        async with self._session_maker() as session:
            return await session.get(Claim, claim_id)

    async def get_line_items(self, claim_id: UUID) -> list[ClaimLineItem]:
        async with self._session_maker() as session:
            result = await session.execute(
                select(ClaimLineItem)
                .where(ClaimLineItem.claim_id == claim_id)
                .order_by(ClaimLineItem.sequence)
            )
            return list(result.scalars().all())

    async def add_line_items(
        self,
        claim_id: UUID,
        items: Sequence[ClaimLineItemCreate],
        actor: str = "system",
    ) -> Optional[Claim]:
        """Append line items and recompute the claim total. None if the claim is unknown."""
        async with self._session_maker.begin() as session:
            claim = await session.get(Claim, claim_id, with_for_update=True)
            if claim is None:
                return None

            next_sequence = max((li.sequence for li in claim.line_items), default=0) + 1
            added = [
                self._build_line_item(item, sequence)
                for sequence, item in enumerate(items, start=next_sequence)
            ]
            claim.line_items.extend(added)
            claim.total_amount = sum(
                (li.total_price for li in claim.line_items), Decimal("0.00")
            )
            await session.flush()
            await self._append_event(
                session,
                claim.id,
                ClaimEventType.LINE_ITEMS_ADDED,
                claim.status,
                details={
                    "added": len(added),
                    "sequences": [li.sequence for li in added],
                    "total_amount": claim.total_amount,
                },
                actor=actor,
            )

        return claim

    @staticmethod
    def _claim_values(values: dict[str, Any]) -> dict[str, Any]:
        for key in ("response_data", "error_data"):
            if key in values:
                values[key] = _jsonable(values[key])
        return values

    async def set_claim_status(
        self,
        claim_id: UUID,
        status: ClaimStatus,
        event_type: ClaimEventType,
        *,
        details: Optional[dict[str, Any]] = None,
        error_message: Optional[str] = None,
        actor: str = "system",
        line_adjudication: Optional[dict[int, dict[str, Any]]] = None,
        now: Optional[datetime] = None,
        **values: Any,
    ) -> ClaimEvent:
        """
        Change a claim's status and append the matching event in one transaction.

        ``line_adjudication`` maps line sequence numbers to adjudication detail
        written onto the line items in the same transaction.
        """
        now = now or utcnow()
        async with self._session_maker.begin() as session:
            await session.execute(
                update(Claim)
                .where(Claim.id == claim_id)
                .values(status=status, last_status_update=now, **self._claim_values(values))
            )
            if line_adjudication:
                for sequence, data in line_adjudication.items():
                    await session.execute(
                        update(ClaimLineItem)
                        .where(
                            ClaimLineItem.claim_id == claim_id,
                            ClaimLineItem.sequence == sequence,
                        )
                        .values(adjudication_data=_jsonable(data))
                    )
            event = await self._append_event(
                session,
                claim_id,
                event_type,
                status,
                details=details,
                error_message=error_message,
                actor=actor,
                timestamp=now,
            )

        logger.debug(f"Claim {claim_id} -> {status.value} ({event_type.value})")
        return event

    async def list_claims(
        self,
        *,
        status: Optional[ClaimStatus] = None,
        payer_id: Optional[str] = None,
        provider_id: Optional[str] = None,
        patient_id: Optional[str] = None,
        offset: int = 0,
        limit: int = 20,
    ) -> tuple[list[Claim], int]:
        """Filtered claim listing, newest first."""
        conditions = []
        if status is not None:
            conditions.append(Claim.status == status)
        if payer_id:
            conditions.append(Claim.payer_id == payer_id)
        if provider_id:
            conditions.append(Claim.provider_id == provider_id)
        if patient_id:
            conditions.append(Claim.patient_id == patient_id)
        return await self._page(conditions, Claim.created_at.desc(), offset, limit)

    async def claims_needing_attention(
        self,
        stale_before: datetime,
        offset: int = 0,
        limit: int = 20,
    ) -> tuple[list[Claim], int]:
        """Claims in a failure status, or SUBMITTED/PENDING with no change since ``stale_before``."""
        return await self._page(
            [self._attention_clause(stale_before)],
            Claim.last_status_update.asc(),
            offset,
            limit,
        )

    @staticmethod
    def _attention_clause(stale_before: datetime):  # type: ignore[no-untyped-def]
        return or_(
            Claim.status.in_([ClaimStatus.ERROR, ClaimStatus.REJECTED, ClaimStatus.FAILED]),
            ClaimStore._stalled_clause(stale_before),
        )

    @staticmethod
    def _stalled_clause(stale_before: datetime):  # type: ignore[no-untyped-def]
        return and_(
            Claim.status.in_([ClaimStatus.PENDING, ClaimStatus.SUBMITTED]),
            Claim.last_status_update < stale_before,
        )

    async def _page(
        self,
        conditions: list,
        order_by: Any,
        offset: int,
        limit: int,
    ) -> tuple[list[Claim], int]:
        async with self._session_maker() as session:
            count_query = select(func.count()).select_from(Claim)
            query = select(Claim)
            if conditions:
                count_query = count_query.where(*conditions)
                query = query.where(*conditions)
            total = (await session.execute(count_query)).scalar_one()
            result = await session.execute(
                query.order_by(order_by, Claim.id).offset(offset).limit(limit)
            )
            return list(result.scalars().all()), total

    # =========================================================================
    # Aggregates
    # =========================================================================

    async def count_claims(self) -> int:
        async with self._session_maker() as session:
            return (await session.execute(select(func.count()).select_from(Claim))).scalar_one()

    async def count_claims_by(self, column_name: str) -> dict[str, int]:
        """Claim counts grouped by ``status``, ``processing_path`` or ``payer_id``."""
        column = {
            "status": Claim.status,
            "processing_path": Claim.processing_path,
            "payer_id": Claim.payer_id,
        }[column_name]
        async with self._session_maker() as session:
            result = await session.execute(select(column, func.count()).group_by(column))
            counts: dict[str, int] = {}
            for key, count in result.all():
                counts[key.value if hasattr(key, "value") else str(key)] = count
            return counts

    async def count_stalled(self, stale_before: datetime) -> int:
        async with self._session_maker() as session:
            result = await session.execute(
                select(func.count()).select_from(Claim).where(self._stalled_clause(stale_before))
            )
            return result.scalar_one()

    async def count_needing_attention(self, stale_before: datetime) -> int:
        async with self._session_maker() as session:
            result = await session.execute(
                select(func.count())
                .select_from(Claim)
                .where(self._attention_clause(stale_before))
            )
            return result.scalar_one()

    # =========================================================================
    # Events
    # =========================================================================

    async def append_event(
        self,
        claim_id: UUID,
        event_type: ClaimEventType,
        status: ClaimStatus,
        *,
        details: Optional[dict[str, Any]] = None,
        error_message: Optional[str] = None,
        actor: str = "system",
    ) -> ClaimEvent:
        async with self._session_maker.begin() as session:
            return await self._append_event(
                session,
                claim_id,
                event_type,
                status,
                details=details,
                error_message=error_message,
                actor=actor,
            )

    async def _append_event(
        self,
        session: AsyncSession,
        claim_id: UUID,
        event_type: ClaimEventType,
        status: ClaimStatus,
        *,
        details: Optional[dict[str, Any]] = None,
        error_message: Optional[str] = None,
        actor: str = "system",
        timestamp: Optional[datetime] = None,
    ) -> ClaimEvent:
        last_sequence = (
            await session.execute(
                select(func.coalesce(func.max(ClaimEvent.sequence), 0)).where(
                    ClaimEvent.claim_id == claim_id
                )
            )
        ).scalar_one()
        event = ClaimEvent(
            claim_id=claim_id,
            event_type=event_type,
            status=status,
            actor=actor,
            details=_jsonable(details),
            error_message=error_message,
            timestamp=timestamp or utcnow(),
            sequence=last_sequence + 1,
        )
        session.add(event)
        await session.flush()
        return event

    async def list_events(
        self,
        claim_id: UUID,
        event_types: Optional[Iterable[ClaimEventType]] = None,
    ) -> list[ClaimEvent]:
        """Events of a claim in the order they were produced."""
        query = select(ClaimEvent).where(ClaimEvent.claim_id == claim_id)
        if event_types is not None:
            query = query.where(ClaimEvent.event_type.in_(list(event_types)))
        async with self._session_maker() as session:
            result = await session.execute(
                query.order_by(ClaimEvent.timestamp, ClaimEvent.sequence)
            )
            return list(result.scalars().all())

    async def latest_event(self, claim_id: UUID) -> Optional[ClaimEvent]:
        async with self._session_maker() as session:
            result = await session.execute(
                select(ClaimEvent)
                .where(ClaimEvent.claim_id == claim_id)
                .order_by(ClaimEvent.sequence.desc())
                .limit(1)
            )
            return result.scalar_one_or_none()

    # =========================================================================
    # Payer Forwards
    # =========================================================================

    async def create_forward(
        self,
        claim_id: UUID,
        payer_id: str,
        *,
        next_attempt: datetime,
        transport_method: TransportMethod = TransportMethod.API,
        claim_status: ClaimStatus,
        event_type: ClaimEventType,
        details: Optional[dict[str, Any]] = None,
        actor: str = "payer_gateway",
        now: Optional[datetime] = None,
    ) -> ClaimPayerForward:
        """Insert a QUEUED forward, update the claim and log the event atomically."""
        now = now or utcnow()
        forward = ClaimPayerForward(
            claim_id=claim_id,
            payer_id=payer_id,
            transport_method=transport_method,
            status=ForwardStatus.QUEUED,
            attempt_count=1,
            next_attempt=next_attempt,
            version=1,
            created_at=now,
            updated_at=now,
        )
        async with self._session_maker.begin() as session:
            session.add(forward)
            await session.flush()
            await session.execute(
                update(Claim)
                .where(Claim.id == claim_id)
                .values(status=claim_status, submitted_at=now, last_status_update=now)
            )
            await self._append_event(
                session,
                claim_id,
                event_type,
                claim_status,
                details={"forward_id": forward.id, **(details or {})},
                actor=actor,
                timestamp=now,
            )
        return forward

    async def get_forward(self, forward_id: UUID) -> Optional[ClaimPayerForward]:
        async with self._session_maker() as session:
            return await session.get(ClaimPayerForward, forward_id)

    async def transition_forward(
        self,
        forward_id: UUID,
        expected_version: int,
        values: dict[str, Any],
        *,
        claim_status: Optional[ClaimStatus] = None,
        event_type: Optional[ClaimEventType] = None,
        details: Optional[dict[str, Any]] = None,
        error_message: Optional[str] = None,
        actor: str = "payer_gateway",
        now: Optional[datetime] = None,
        claim_values: Optional[dict[str, Any]] = None,
    ) -> bool:
        """
        Compare-and-set a forward row on ``version``.

        Returns False, writing nothing, when another writer got there first.
        On success the claim status change (if any) and the event (if any)
        are committed with the forward update.
        """
        now = now or utcnow()
        for key in ("sent_data", "response_data", "error_details"):
            if key in values:
                values[key] = _jsonable(values[key])

        async with self._session_maker.begin() as session:
            result = await session.execute(
                update(ClaimPayerForward)
                .where(
                    ClaimPayerForward.id == forward_id,
                    ClaimPayerForward.version == expected_version,
                )
                .values(version=expected_version + 1, updated_at=now, **values)
                .returning(ClaimPayerForward.claim_id)
            )
            claim_id = result.scalar_one_or_none()
            if claim_id is None:
                logger.info(
                    f"Forward {forward_id} changed concurrently (expected version {expected_version})"
                )
                return False

            if claim_status is not None:
                await session.execute(
                    update(Claim)
                    .where(Claim.id == claim_id)
                    .values(
                        status=claim_status,
                        last_status_update=now,
                        **self._claim_values(dict(claim_values or {})),
                    )
                )
            elif claim_values:
                await session.execute(
                    update(Claim)
                    .where(Claim.id == claim_id)
                    .values(**self._claim_values(dict(claim_values)))
                )

            if event_type is not None:
                event_status = claim_status
                if event_status is None:
                    event_status = (
                        await session.execute(select(Claim.status).where(Claim.id == claim_id))
                    ).scalar_one()
                await self._append_event(
                    session,
                    claim_id,
                    event_type,
                    event_status,
                    details={"forward_id": forward_id, **(details or {})},
                    error_message=error_message,
                    actor=actor,
                    timestamp=now,
                )
        return True

    async def list_forwards(self, claim_id: UUID) -> list[ClaimPayerForward]:
        async with self._session_maker() as session:
            result = await session.execute(
                select(ClaimPayerForward)
                .where(ClaimPayerForward.claim_id == claim_id)
                .order_by(ClaimPayerForward.created_at, ClaimPayerForward.id)
            )
            return list(result.scalars().all())

    async def latest_forward(self, claim_id: UUID) -> Optional[ClaimPayerForward]:
        async with self._session_maker() as session:
            result = await session.execute(
                select(ClaimPayerForward)
                .where(ClaimPayerForward.claim_id == claim_id)
                .order_by(ClaimPayerForward.created_at.desc())
                .limit(1)
            )
            return result.scalar_one_or_none()

    async def active_forward(self, claim_id: UUID) -> Optional[ClaimPayerForward]:
        """The non-terminal forward of a claim, if any."""
        async with self._session_maker() as session:
            result = await session.execute(
                select(ClaimPayerForward)
                .where(
                    ClaimPayerForward.claim_id == claim_id,
                    ClaimPayerForward.status.not_in(list(TERMINAL_FORWARD_STATUSES)),
                )
                .order_by(ClaimPayerForward.created_at.desc())
                .limit(1)
            )
            return result.scalar_one_or_none()

    async def due_forwards(
        self,
        now: datetime,
        stale_sending_before: datetime,
        limit: int = 500,
    ) -> list[ClaimPayerForward]:
        """
        Forwards with work due.

        Dispatchable and awaiting-payer rows are due once ``next_attempt``
        has passed; SENDING rows are due once untouched since
        ``stale_sending_before``.
        """
        due_at = or_(
            ClaimPayerForward.next_attempt.is_(None),
            ClaimPayerForward.next_attempt <= now,
        )
        query = (
            select(ClaimPayerForward)
            .where(
                or_(
                    and_(
                        ClaimPayerForward.status.in_(
                            list(DISPATCHABLE_FORWARD_STATUSES | AWAITING_PAYER_STATUSES)
                        ),
                        due_at,
                    ),
                    and_(
                        ClaimPayerForward.status == ForwardStatus.SENDING,
                        ClaimPayerForward.updated_at <= stale_sending_before,
                    ),
                )
            )
            .order_by(ClaimPayerForward.next_attempt, ClaimPayerForward.id)
            .limit(limit)
        )
        async with self._session_maker() as session:
            result = await session.execute(query)
            return list(result.scalars().all())

    # =========================================================================
    # Rule Cache
    # =========================================================================

    async def get_cache_entry(self, cache_key: str) -> Optional[RuleCacheEntry]:
        async with self._session_maker() as session:
            result = await session.execute(
                select(RuleCacheEntry).where(RuleCacheEntry.cache_key == cache_key)
            )
            return result.scalar_one_or_none()

    async def upsert_cache_entry(
        self,
        cache_key: str,
        claim_type: ClaimType,
        payer_id: str,
        result: dict[str, Any],
        now: Optional[datetime] = None,
    ) -> None:
        """Insert or replace a cache entry as a whole."""
        now = now or utcnow()
        values = {
            "claim_type": claim_type,
            "payer_id": payer_id,
            "result": _jsonable(result),
            "updated_at": now,
        }
        try:
            async with self._session_maker.begin() as session:
                updated = await session.execute(
                    update(RuleCacheEntry)
                    .where(RuleCacheEntry.cache_key == cache_key)
                    .values(**values)
                )
                if updated.rowcount == 0:
                    session.add(RuleCacheEntry(cache_key=cache_key, created_at=now, **values))
        except IntegrityError:
            # Lost an insert race; the row exists now
            async with self._session_maker.begin() as session:
                await session.execute(
                    update(RuleCacheEntry)
                    .where(RuleCacheEntry.cache_key == cache_key)
                    .values(**values)
                )
