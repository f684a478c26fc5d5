"""
Claims Service.

Provides:
- Claim ingestion (create + process in one call)
- Processing path selection (internal rules engine or external payer)
- Simulation runs (internal adjudication recorded as SIMULATED)
- Line item management
- Cancel and resubmit workflow
- Claim, event and forward lookups
"""

import logging
from collections.abc import Sequence
from dataclasses import dataclass
from decimal import Decimal
from typing import Optional
from uuid import UUID

from claimhub.core.enums import ClaimEventType, ClaimStatus, ProcessingPath
from claimhub.models.claim import Claim, ClaimEvent, ClaimPayerForward
from claimhub.schemas.adjudication import AdjudicationResult
from claimhub.schemas.claim import ClaimCreate, ClaimLineItemCreate
from claimhub.services.claim_state_machine import claim_state_machine
from claimhub.services.claim_store import ClaimStore
from claimhub.services.exceptions import (
    ClaimNotFoundError,
    ClaimStateError,
    ClaimValidationError,
)
from claimhub.services.payer_gateway import ExternalPayerGateway, SubmissionResult
from claimhub.services.rules_engine import InternalRulesEngine

logger = logging.getLogger(__name__)

ACTOR = "claims_service"

# Statuses in which line items may still change
EDITABLE_STATUSES = frozenset({ClaimStatus.NEW, ClaimStatus.REJECTED, ClaimStatus.ERROR})

RESUBMITTABLE_STATUSES = frozenset(
    {
        ClaimStatus.SIMULATED,
        ClaimStatus.REJECTED,
        ClaimStatus.FAILED,
        ClaimStatus.ERROR,
        ClaimStatus.CANCELED,
    }
)


class ProcessingFailure:
    """Why synchronous processing did not produce a usable outcome."""

    REJECTED = "rejected"
    CONFIGURATION = "configuration"
    INTERNAL_ERROR = "internal_error"


@dataclass
class ProcessingOutcome:
    """Result of routing a claim down its processing path."""

    claim_id: UUID
    status: ClaimStatus
    processing_path: ProcessingPath
    message: str = ""
    adjudication: Optional[AdjudicationResult] = None
    submission: Optional[SubmissionResult] = None
    failure: Optional[str] = None

    @property
    def success(self) -> bool:
        return self.failure is None


class ClaimsService:
    """
    Claim ingestion and workflow.

    Internal claims are finalized synchronously by the rules engine; external
    claims are handed to the payer gateway, which owns them until a terminal
    state.
    """

    def __init__(
        self,
        store: ClaimStore,
        rules_engine: InternalRulesEngine,
        gateway: ExternalPayerGateway,
        auto_internal_threshold: Decimal = Decimal("500.00"),
    ):
        self._store = store
        self._rules_engine = rules_engine
        self._gateway = gateway
        self._auto_internal_threshold = auto_internal_threshold

    # =========================================================================
    # Ingestion
    # =========================================================================

    async def create_claim(self, data: ClaimCreate) -> Claim:
        """Persist a NEW claim without processing it."""
        return await self._store.create_claim(data, actor=ACTOR)

    async def ingest_claim(
        self,
        data: ClaimCreate,
        mode: ProcessingPath = ProcessingPath.AUTO,
        use_cache: bool = True,
        simulate_only: bool = False,
    ) -> ProcessingOutcome:
        """Create a claim and process it down the selected path."""
        claim = await self.create_claim(data)
        return await self.process_claim(
            claim.id, mode=mode, use_cache=use_cache, simulate_only=simulate_only
        )

    async def process_claim(
        self,
        claim_id: UUID,
        mode: ProcessingPath = ProcessingPath.AUTO,
        use_cache: bool = True,
        simulate_only: bool = False,
    ) -> ProcessingOutcome:
        """
        Start processing a NEW claim.

        ``simulate_only`` forces the internal path and records the result as
        SIMULATED instead of COMPLETE.

        Raises:
            ClaimNotFoundError: Unknown claim ID
            ClaimStateError: Claim is not NEW or already has an active forward
        """
        claim = await self._get_claim_or_raise(claim_id)
        if claim.status != ClaimStatus.NEW:
            raise ClaimStateError(
                f"Claim {claim_id} cannot be processed from status {claim.status.value}"
            )
        await self._ensure_no_active_forward(claim_id)

        await self._store.set_claim_status(
            claim_id,
            ClaimStatus.PROCESSING,
            ClaimEventType.PROCESSING_STARTED,
            details={"requested_mode": mode.value, "simulate_only": simulate_only},
            actor=ACTOR,
        )
        return await self._dispatch(claim, mode, use_cache, simulate_only)

    def select_path(self, claim: Claim, mode: ProcessingPath = ProcessingPath.AUTO) -> ProcessingPath:
        """AUTO sends claims below the threshold to the internal engine, others to the payer."""
        if mode != ProcessingPath.AUTO:
            return mode
        if claim.total_amount < self._auto_internal_threshold:
            return ProcessingPath.INTERNAL
        return ProcessingPath.EXTERNAL

    async def _dispatch(
        self,
        claim: Claim,
        mode: ProcessingPath,
        use_cache: bool,
        simulate_only: bool = False,
    ) -> ProcessingOutcome:
        path = ProcessingPath.INTERNAL if simulate_only else self.select_path(claim, mode)
        await self._store.set_claim_status(
            claim.id,
            ClaimStatus.PROCESSING,
            ClaimEventType.PATH_SELECTED,
            details={
                "processing_path": path.value,
                "requested_mode": mode.value,
                "total_amount": claim.total_amount,
                "auto_internal_threshold": self._auto_internal_threshold,
                "simulate_only": simulate_only,
            },
            actor=ACTOR,
            processing_path=path,
        )
        logger.info(f"Claim {claim.id} routed {path.value} (requested {mode.value})")

        if path == ProcessingPath.INTERNAL:
            return await self._process_internal(claim.id, use_cache, simulate_only)
        return await self._process_external(claim.id)

    async def _process_internal(
        self, claim_id: UUID, use_cache: bool, simulate_only: bool = False
    ) -> ProcessingOutcome:
        try:
            result = await self._rules_engine.process_claim(
                claim_id, use_cache=use_cache, simulate=simulate_only
            )
        except Exception as e:
            # The engine has already moved the claim to ERROR
            return ProcessingOutcome(
                claim_id=claim_id,
                status=ClaimStatus.ERROR,
                processing_path=ProcessingPath.INTERNAL,
                message=f"Internal adjudication failed: {e}",
                failure=ProcessingFailure.INTERNAL_ERROR,
            )

        if result.claim_status == ClaimStatus.REJECTED:
            return ProcessingOutcome(
                claim_id=claim_id,
                status=ClaimStatus.REJECTED,
                processing_path=ProcessingPath.INTERNAL,
                message="; ".join(result.errors) or "Claim rejected",
                adjudication=result,
                failure=ProcessingFailure.REJECTED,
            )

        message = "Claim adjudicated"
        if result.claim_status == ClaimStatus.SIMULATED:
            await self._store.append_event(
                claim_id,
                ClaimEventType.SIMULATION_COMPLETED,
                ClaimStatus.SIMULATED,
                details={
                    "source": result.source,
                    "total_billed": str(result.total_billed),
                    "allowed_amount": str(result.allowed_amount),
                    "patient_responsibility": str(result.patient_responsibility),
                },
                actor=ACTOR,
            )
            message = "Claim simulated"
            logger.info(f"Claim {claim_id} simulated: allowed={result.allowed_amount}")
        return ProcessingOutcome(
            claim_id=claim_id,
            status=result.claim_status,
            processing_path=ProcessingPath.INTERNAL,
            message=message,
            adjudication=result,
        )

    async def _process_external(self, claim_id: UUID) -> ProcessingOutcome:
        try:
            submission = await self._gateway.submit_claim(claim_id)
        except Exception as e:
            logger.error(f"Payer submission failed for claim {claim_id}: {e}", exc_info=True)
            await self._record_processing_error(claim_id, e)
            return ProcessingOutcome(
                claim_id=claim_id,
                status=ClaimStatus.ERROR,
                processing_path=ProcessingPath.EXTERNAL,
                message=f"Payer submission failed: {e}",
                failure=ProcessingFailure.INTERNAL_ERROR,
            )

        return ProcessingOutcome(
            claim_id=claim_id,
            status=submission.claim_status,
            processing_path=ProcessingPath.EXTERNAL,
            message=submission.message,
            submission=submission,
            failure=None if submission.success else ProcessingFailure.CONFIGURATION,
        )

    async def _record_processing_error(self, claim_id: UUID, error: Exception) -> None:
        try:
            await self._store.set_claim_status(
                claim_id,
                ClaimStatus.ERROR,
                ClaimEventType.PROCESSING_ERROR,
                details={"error_type": type(error).__name__},
                error_message=str(error),
                actor=ACTOR,
                error_data={"stage": "payer_submission", "message": str(error)},
            )
        except Exception:
            logger.exception(f"Could not record processing error for claim {claim_id}")

    # =========================================================================
    # Workflow
    # =========================================================================

    async def add_line_items(
        self,
        claim_id: UUID,
        items: Sequence[ClaimLineItemCreate],
    ) -> Claim:
        """Append line items to a claim that has not been finalized."""
        if not items:
            raise ClaimValidationError("At least one line item is required")
        claim = await self._get_claim_or_raise(claim_id)
        if claim.status not in EDITABLE_STATUSES:
            raise ClaimStateError(
                f"Line items cannot be added to a claim in status {claim.status.value}"
            )
        updated = await self._store.add_line_items(claim_id, items, actor=ACTOR)
        if updated is None:
            raise ClaimNotFoundError(claim_id)
        return updated

    async def cancel_claim(self, claim_id: UUID, reason: Optional[str] = None) -> Claim:
        """Cancel a claim that is not being forwarded."""
        claim = await self._get_claim_or_raise(claim_id)
        if not claim_state_machine.can_transition(claim.status, ClaimStatus.CANCELED):
            raise ClaimStateError(f"Claim in status {claim.status.value} cannot be canceled")
        await self._ensure_no_active_forward(claim_id)

        await self._store.set_claim_status(
            claim_id,
            ClaimStatus.CANCELED,
            ClaimEventType.CLAIM_CANCELED,
            details={"previous_status": claim.status.value, "reason": reason},
            actor=ACTOR,
        )
        logger.info(f"Claim {claim_id} canceled")
        return await self._get_claim_or_raise(claim_id)

    async def resubmit_claim(
        self,
        claim_id: UUID,
        mode: ProcessingPath = ProcessingPath.AUTO,
        use_cache: bool = True,
        simulate_only: bool = False,
    ) -> ProcessingOutcome:
        """Send a SIMULATED, REJECTED, FAILED, ERROR or CANCELED claim through processing again."""
        claim = await self._get_claim_or_raise(claim_id)
        if claim.status not in RESUBMITTABLE_STATUSES:
            raise ClaimStateError(f"Claim in status {claim.status.value} cannot be resubmitted")
        claim_state_machine.ensure_transition(claim.status, ClaimStatus.PROCESSING)
        await self._ensure_no_active_forward(claim_id)

        await self._store.set_claim_status(
            claim_id,
            ClaimStatus.PROCESSING,
            ClaimEventType.CLAIM_RESUBMITTED,
            details={
                "previous_status": claim.status.value,
                "requested_mode": mode.value,
                "simulate_only": simulate_only,
            },
            actor=ACTOR,
            processed_at=None,
            error_data=None,
        )
        return await self._dispatch(claim, mode, use_cache, simulate_only)

    async def _ensure_no_active_forward(self, claim_id: UUID) -> None:
        active = await self._store.active_forward(claim_id)
        if active is not None:
            raise ClaimStateError(
                f"Claim {claim_id} has an active payer forward ({active.status.value})"
            )

    # =========================================================================
    # Queries
    # =========================================================================

    async def _get_claim_or_raise(self, claim_id: UUID) -> Claim:
        claim = await self._store.get_claim(claim_id)
        if claim is None:
            raise ClaimNotFoundError(claim_id)
        return claim

    async def get_claim(self, claim_id: UUID) -> Claim:
        return await self._get_claim_or_raise(claim_id)

    async def list_claims(
        self,
        status: Optional[ClaimStatus] = None,
        payer_id: Optional[str] = None,
        provider_id: Optional[str] = None,
        patient_id: Optional[str] = None,
        page: int = 1,
        page_size: int = 20,
    ) -> tuple[list[Claim], int]:
        return await self._store.list_claims(
            status=status,
            payer_id=payer_id,
            provider_id=provider_id,
            patient_id=patient_id,
            offset=(page - 1) * page_size,
            limit=page_size,
        )

    async def get_events(self, claim_id: UUID) -> list[ClaimEvent]:
        await self._get_claim_or_raise(claim_id)
        return await self._store.list_events(claim_id)

    async def get_forwards(self, claim_id: UUID) -> list[ClaimPayerForward]:
        await self._get_claim_or_raise(claim_id)
        return await self._store.list_forwards(claim_id)
