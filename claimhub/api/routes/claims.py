"""
Claims Processing API Endpoints.

Provides:
- Claim ingestion (create + process)
- Claim search and lookup
- Status, audit trail and forwarding lineage views
- Line item management
- Cancel / resubmit workflow
- Statistics and needs-attention queries
"""

import logging
from typing import Optional
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Query, status

from claimhub.api.deps import get_claims_service, get_tracking_service
from claimhub.core.enums import ClaimStatus, ProcessingPath
from claimhub.schemas.claim import (
    ClaimCancel,
    ClaimCreate,
    ClaimEventResponse,
    ClaimForwardResponse,
    ClaimListResponse,
    ClaimProcessingResponse,
    ClaimResponse,
    LineItemsAppend,
)
from claimhub.schemas.tracking import ClaimPage, ClaimStatistics, ClaimStatusView
from claimhub.services.claim_state_machine import InvalidTransitionError
from claimhub.services.claims_service import (
    ClaimsService,
    ProcessingFailure,
    ProcessingOutcome,
)
from claimhub.services.exceptions import (
    ClaimNotFoundError,
    ClaimStateError,
    ClaimValidationError,
)
from claimhub.services.tracking_service import ClaimTrackingService
from claimhub.utils.errors import (
    ConflictError,
    NotFoundError,
    ProcessingError,
    ValidationError,
)

logger = logging.getLogger(__name__)

router = APIRouter(
    prefix="/api/v1/claims",
    tags=["claims"],
)


def _outcome_response(outcome: ProcessingOutcome) -> ClaimProcessingResponse:
    """
    Map a processing outcome to the response body, or raise its error status.

    Internal rejections and missing payer connections are 422; internal
    errors are 500. The error body carries claim_id, status and message.
    """
    body = ClaimProcessingResponse(
        claim_id=outcome.claim_id,
        status=outcome.status,
        processing_path=outcome.processing_path,
        message=outcome.message,
        forward_id=outcome.submission.forward_id if outcome.submission else None,
        adjudication=outcome.adjudication,
    )
    if outcome.success:
        return body

    detail = body.model_dump(mode="json", include={"claim_id", "status", "message"})
    if outcome.failure == ProcessingFailure.INTERNAL_ERROR:
        raise ProcessingError(detail=detail)
    if outcome.adjudication is not None:
        detail["errors"] = outcome.adjudication.errors
    raise ValidationError(detail=detail)


# =============================================================================
# Ingestion and Search
# =============================================================================


@router.post(
    "/",
    response_model=ClaimProcessingResponse,
    status_code=status.HTTP_201_CREATED,
)
async def create_claim(
    claim_data: ClaimCreate,
    mode: ProcessingPath = Query(ProcessingPath.AUTO, description="INTERNAL, EXTERNAL or AUTO"),
    use_cache: bool = Query(True, description="Consult the rule result cache (internal path)"),
    simulate_only: bool = Query(
        False, description="Adjudicate internally and record the claim as SIMULATED"
    ),
    service: ClaimsService = Depends(get_claims_service),
) -> ClaimProcessingResponse:
    """
    Create a claim and process it.

    Internal claims come back finalized; external claims come back
    SUBMITTED and are tracked through ``/{claim_id}/status``.
    """
    try:
        outcome = await service.ingest_claim(
            claim_data, mode=mode, use_cache=use_cache, simulate_only=simulate_only
        )
        return _outcome_response(outcome)

    except HTTPException:
        raise
    except ClaimValidationError as e:
        raise ValidationError(detail={"message": str(e), "errors": e.errors})
    except Exception as e:
        logger.error(f"Create claim error: {e}", exc_info=True)
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail=str(e),
        )


@router.get("/", response_model=ClaimListResponse)
async def list_claims(
    page: int = Query(1, ge=1),
    page_size: int = Query(20, ge=1, le=100),
    status_filter: Optional[ClaimStatus] = Query(None, alias="status"),
    payer_id: Optional[str] = None,
    provider_id: Optional[str] = None,
    patient_id: Optional[str] = None,
    service: ClaimsService = Depends(get_claims_service),
) -> ClaimListResponse:
    """List claims with optional filters, newest first."""
    try:
        claims, total = await service.list_claims(
            status=status_filter,
            payer_id=payer_id,
            provider_id=provider_id,
            patient_id=patient_id,
            page=page,
            page_size=page_size,
        )
        return ClaimListResponse(
            items=[ClaimResponse.model_validate(c) for c in claims],
            total=total,
            page=page,
            page_size=page_size,
        )

    except Exception as e:
        logger.error(f"List claims error: {e}", exc_info=True)
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail=str(e),
        )


# =============================================================================
# Tracking
# =============================================================================


@router.get("/statistics", response_model=ClaimStatistics)
async def get_claim_statistics(
    tracking: ClaimTrackingService = Depends(get_tracking_service),
) -> ClaimStatistics:
    """Counts by status, processing path and payer, plus attention counters."""
    try:
        return await tracking.get_claim_statistics()

    except Exception as e:
        logger.error(f"Claim statistics error: {e}", exc_info=True)
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail=str(e),
        )


@router.get("/attention", response_model=ClaimPage)
async def get_claims_needing_attention(
    page: int = Query(1, ge=1),
    page_size: int = Query(20, ge=1, le=100),
    tracking: ClaimTrackingService = Depends(get_tracking_service),
) -> ClaimPage:
    """Failed, rejected and errored claims, plus submissions with no recent progress."""
    try:
        return await tracking.get_claims_needing_attention(page=page, page_size=page_size)

    except Exception as e:
        logger.error(f"Claims needing attention error: {e}", exc_info=True)
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail=str(e),
        )


@router.get("/status/{claim_status}", response_model=ClaimPage)
async def get_claims_by_status(
    claim_status: ClaimStatus,
    page: int = Query(1, ge=1),
    page_size: int = Query(20, ge=1, le=100),
    tracking: ClaimTrackingService = Depends(get_tracking_service),
) -> ClaimPage:
    """Claims currently in one status."""
    try:
        return await tracking.get_claims_by_status(claim_status, page=page, page_size=page_size)

    except Exception as e:
        logger.error(f"Claims by status error: {e}", exc_info=True)
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail=str(e),
        )


# =============================================================================
# Single Claim
# =============================================================================


@router.get("/{claim_id}", response_model=ClaimResponse)
async def get_claim(
    claim_id: UUID,
    service: ClaimsService = Depends(get_claims_service),
) -> ClaimResponse:
    """Get a specific claim with its line items."""
    try:
        claim = await service.get_claim(claim_id)
        return ClaimResponse.model_validate(claim)

    except ClaimNotFoundError:
        raise NotFoundError(detail=f"Claim not found: {claim_id}")
    except Exception as e:
        logger.error(f"Get claim error: {e}", exc_info=True)
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail=str(e),
        )


@router.get("/{claim_id}/status", response_model=ClaimStatusView)
async def get_claim_status(
    claim_id: UUID,
    tracking: ClaimTrackingService = Depends(get_tracking_service),
) -> ClaimStatusView:
    """Current status with the latest event and forward."""
    try:
        return await tracking.check_claim_status(claim_id)

    except ClaimNotFoundError:
        raise NotFoundError(detail=f"Claim not found: {claim_id}")
    except Exception as e:
        logger.error(f"Claim status error: {e}", exc_info=True)
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail=str(e),
        )


@router.get("/{claim_id}/events", response_model=list[ClaimEventResponse])
async def get_claim_events(
    claim_id: UUID,
    service: ClaimsService = Depends(get_claims_service),
) -> list[ClaimEventResponse]:
    """Audit trail of a claim in the order it was written."""
    try:
        events = await service.get_events(claim_id)
        return [ClaimEventResponse.model_validate(e) for e in events]

    except ClaimNotFoundError:
        raise NotFoundError(detail=f"Claim not found: {claim_id}")
    except Exception as e:
        logger.error(f"Claim events error: {e}", exc_info=True)
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail=str(e),
        )


@router.get("/{claim_id}/forwards", response_model=list[ClaimForwardResponse])
async def get_claim_forwards(
    claim_id: UUID,
    service: ClaimsService = Depends(get_claims_service),
) -> list[ClaimForwardResponse]:
    """Payer forwarding lineages of a claim."""
    try:
        forwards = await service.get_forwards(claim_id)
        return [ClaimForwardResponse.model_validate(f) for f in forwards]

    except ClaimNotFoundError:
        raise NotFoundError(detail=f"Claim not found: {claim_id}")
    except Exception as e:
        logger.error(f"Claim forwards error: {e}", exc_info=True)
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail=str(e),
        )


# =============================================================================
# Workflow Endpoints
# =============================================================================


@router.post("/{claim_id}/line-items", response_model=ClaimResponse)
async def add_line_items(
    claim_id: UUID,
    body: LineItemsAppend,
    service: ClaimsService = Depends(get_claims_service),
) -> ClaimResponse:
    """Append line items and recompute the claim total."""
    try:
        claim = await service.add_line_items(claim_id, body.line_items)
        return ClaimResponse.model_validate(claim)

    except ClaimNotFoundError:
        raise NotFoundError(detail=f"Claim not found: {claim_id}")
    except ClaimValidationError as e:
        raise ValidationError(detail={"message": str(e), "errors": e.errors})
    except ClaimStateError as e:
        raise ConflictError(detail=str(e))
    except Exception as e:
        logger.error(f"Add line items error: {e}", exc_info=True)
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail=str(e),
        )


@router.post("/{claim_id}/cancel", response_model=ClaimResponse)
async def cancel_claim(
    claim_id: UUID,
    body: Optional[ClaimCancel] = None,
    service: ClaimsService = Depends(get_claims_service),
) -> ClaimResponse:
    """Cancel a claim that is not with a payer."""
    try:
        claim = await service.cancel_claim(claim_id, reason=body.reason if body else None)
        return ClaimResponse.model_validate(claim)

    except ClaimNotFoundError:
        raise NotFoundError(detail=f"Claim not found: {claim_id}")
    except (ClaimStateError, InvalidTransitionError) as e:
        raise ConflictError(detail=str(e))
    except Exception as e:
        logger.error(f"Cancel claim error: {e}", exc_info=True)
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail=str(e),
        )


@router.post("/{claim_id}/resubmit", response_model=ClaimProcessingResponse)
async def resubmit_claim(
    claim_id: UUID,
    mode: ProcessingPath = Query(ProcessingPath.AUTO, description="INTERNAL, EXTERNAL or AUTO"),
    use_cache: bool = Query(True),
    simulate_only: bool = Query(False),
    service: ClaimsService = Depends(get_claims_service),
) -> ClaimProcessingResponse:
    """Process a SIMULATED, REJECTED, FAILED, ERROR or CANCELED claim again."""
    try:
        outcome = await service.resubmit_claim(
            claim_id, mode=mode, use_cache=use_cache, simulate_only=simulate_only
        )
        return _outcome_response(outcome)

    except HTTPException:
        raise
    except ClaimNotFoundError:
        raise NotFoundError(detail=f"Claim not found: {claim_id}")
    except (ClaimStateError, InvalidTransitionError) as e:
        raise ConflictError(detail=str(e))
    except Exception as e:
        logger.error(f"Resubmit claim error: {e}", exc_info=True)
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail=str(e),
        )
