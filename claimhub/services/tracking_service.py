"""
Claim Tracking Service.

Provides:
- Status view of a single claim (latest event and forward)
- Claims by status, paginated
- Claims needing attention (failures and stalled submissions)
- Aggregate statistics

Read-side only. Everything is recomputed from the store on each call.
"""

import logging
from collections.abc import Callable
from datetime import datetime, timedelta
from typing import Optional, Union
from uuid import UUID

from claimhub.core.enums import ClaimStatus, ProcessingPath
from claimhub.models.base import utcnow
from claimhub.models.claim import Claim, ClaimPayerForward
from claimhub.schemas.claim import ClaimResponse
from claimhub.schemas.tracking import (
    ClaimPage,
    ClaimStatistics,
    ClaimStatusView,
    EventSummary,
    ForwardSummary,
)
from claimhub.services import claim_state_machine
from claimhub.services.claim_store import ClaimStore
from claimhub.services.exceptions import ClaimNotFoundError

logger = logging.getLogger(__name__)

MAX_PAGE_SIZE = 100

# Claim statuses owned by the claim itself rather than its forward
_SELF_OWNED_STATUSES = frozenset({ClaimStatus.NEW, ClaimStatus.PROCESSING, ClaimStatus.CANCELED})


def determine_claim_status(
    forward: Optional[Union[ClaimPayerForward, ForwardSummary]],
    current: Optional[ClaimStatus] = None,
) -> Optional[ClaimStatus]:
    """
    Claim status implied by a forward.

    Without a forward the claim's own status (``current``) stands.
    """
    if forward is None:
        return current
    return claim_state_machine.determine_claim_status(forward.status)


def _page_bounds(page: int, page_size: int) -> tuple[int, int]:
    page = max(1, page)
    page_size = max(1, min(page_size, MAX_PAGE_SIZE))
    return page, page_size


class ClaimTrackingService:
    """Status queries and statistics over claims."""

    def __init__(
        self,
        store: ClaimStore,
        stale_after: timedelta = timedelta(hours=24),
        clock: Callable[[], datetime] = utcnow,
    ):
        self._store = store
        self._stale_after = stale_after
        self._clock = clock

    def _stale_before(self) -> datetime:
        return self._clock() - self._stale_after

    async def check_claim_status(self, claim_id: UUID) -> ClaimStatusView:
        """
        Current status of a claim with its latest event and forward.

        ``consistent`` is False when the stored status disagrees with the
        status implied by the claim's forward.
        """
        claim = await self._store.get_claim(claim_id)
        if claim is None:
            raise ClaimNotFoundError(claim_id)

        event = await self._store.latest_event(claim_id)
        forward = await self._store.latest_forward(claim_id)
        forward_summary = None
        if forward is not None:
            forward_summary = ForwardSummary(
                forward_id=forward.id,
                status=forward.status,
                attempt_count=forward.attempt_count,
                next_attempt=forward.next_attempt,
                updated_at=forward.updated_at,
            )

        derived = self._derived_status(claim, forward_summary)
        return ClaimStatusView(
            claim_id=claim.id,
            status=claim.status,
            processing_path=claim.processing_path,
            last_status_update=claim.last_status_update,
            latest_event=(
                EventSummary(
                    event_type=event.event_type,
                    status=event.status,
                    timestamp=event.timestamp,
                    details=event.details,
                    error_message=event.error_message,
                )
                if event is not None
                else None
            ),
            latest_forward=forward_summary,
            derived_status=derived,
            consistent=derived == claim.status,
        )

    @staticmethod
    def _derived_status(claim: Claim, forward: Optional[ForwardSummary]) -> ClaimStatus:
        if claim.processing_path != ProcessingPath.EXTERNAL or claim.status in _SELF_OWNED_STATUSES:
            return claim.status
        return determine_claim_status(forward, claim.status) or claim.status

    async def get_claims_by_status(
        self,
        status: ClaimStatus,
        page: int = 1,
        page_size: int = 20,
    ) -> ClaimPage:
        page, page_size = _page_bounds(page, page_size)
        claims, total = await self._store.list_claims(
            status=status,
            offset=(page - 1) * page_size,
            limit=page_size,
        )
        return ClaimPage(
            items=[ClaimResponse.model_validate(c) for c in claims],
            total=total,
            page=page,
            page_size=page_size,
        )

    async def get_claims_needing_attention(
        self,
        page: int = 1,
        page_size: int = 20,
    ) -> ClaimPage:
        """ERROR, REJECTED and FAILED claims, plus SUBMITTED/PENDING claims gone quiet."""
        page, page_size = _page_bounds(page, page_size)
        claims, total = await self._store.claims_needing_attention(
            self._stale_before(),
            offset=(page - 1) * page_size,
            limit=page_size,
        )
        return ClaimPage(
            items=[ClaimResponse.model_validate(c) for c in claims],
            total=total,
            page=page,
            page_size=page_size,
        )

    async def get_claim_statistics(self) -> ClaimStatistics:
        stale_before = self._stale_before()
        by_status = await self._store.count_claims_by("status")
        stats = ClaimStatistics(
            total_claims=await self._store.count_claims(),
            by_status=by_status,
            by_processing_path=await self._store.count_claims_by("processing_path"),
            by_payer=await self._store.count_claims_by("payer_id"),
            stalled_claims=await self._store.count_stalled(stale_before),
            error_claims=by_status.get(ClaimStatus.ERROR.value, 0),
            failed_claims=by_status.get(ClaimStatus.FAILED.value, 0),
            needing_attention=await self._store.count_needing_attention(stale_before),
            generated_at=self._clock(),
        )
        logger.debug(f"Claim statistics: {stats.total_claims} claims")
        return stats
