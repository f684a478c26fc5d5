"""
Internal Rules Engine.

Provides:
- Structural validation of claims (patient, provider, line items)
- Line-level adjudication (allowed amount / patient responsibility split)
- Rule result cache lookup and upsert
- Claim finalization with an INTERNAL_RULES_APPLIED audit event

The allowed-rate split is a placeholder business rule; callers depend only on
the AdjudicationResult contract.
"""

import logging
from collections.abc import Callable, Sequence
from datetime import datetime
from decimal import ROUND_HALF_UP, Decimal
from typing import Optional
from uuid import UUID

from pydantic import ValidationError

from claimhub.core.enums import ClaimEventType, ClaimStatus
from claimhub.models.base import utcnow
from claimhub.models.claim import Claim, ClaimLineItem
from claimhub.schemas.adjudication import AdjudicationResult, LineAdjudication
from claimhub.services.claim_state_machine import claim_state_machine
from claimhub.services.claim_store import ClaimStore
from claimhub.services.exceptions import ClaimNotFoundError, ClaimStateError
from claimhub.services.rule_cache import RuleResultCache, compute_fingerprint

logger = logging.getLogger(__name__)

CENTS = Decimal("0.01")


def validate_claim(claim: Claim, line_items: Sequence[ClaimLineItem]) -> list[str]:
    """Structural validation. An empty list means the claim can be adjudicated."""
    errors = []
    if not claim.patient_id:
        errors.append("Patient is required")
    if not claim.provider_id:
        errors.append("Provider is required")
    if not line_items:
        errors.append("At least one line item is required")
    for item in line_items:
        if item.total_price < 0:
            errors.append(f"Line {item.sequence}: amount must not be negative")
    return errors


class InternalRulesEngine:
    """
    Adjudicates claims locally.

    Only PROCESSING claims are accepted. Every call leaves the claim in
    COMPLETE (SIMULATED for a simulation), REJECTED or ERROR and appends
    exactly one audit event.
    """

    def __init__(
        self,
        store: ClaimStore,
        cache: RuleResultCache,
        allowed_rate: Decimal = Decimal("0.80"),
        cache_enabled: bool = True,
        clock: Callable[[], datetime] = utcnow,
    ):
        self._store = store
        self._cache = cache
        self._allowed_rate = allowed_rate
        self._cache_enabled = cache_enabled
        self._clock = clock

    async def process_claim(
        self,
        claim_id: UUID,
        use_cache: bool = True,
        actor: str = "rules_engine",
        simulate: bool = False,
    ) -> AdjudicationResult:
        """
        Validate and adjudicate a claim.

        With ``simulate`` a successful adjudication leaves the claim SIMULATED
        instead of COMPLETE.

        Raises:
            ClaimNotFoundError: Unknown claim ID
            ClaimStateError: Claim is not PROCESSING
            Exception: Any unexpected failure, after the claim is set to ERROR
        """
        claim = await self._store.get_claim(claim_id)
        if claim is None:
            raise ClaimNotFoundError(claim_id)
        if claim.status != ClaimStatus.PROCESSING:
            raise ClaimStateError(
                f"Claim {claim_id} is {claim.status.value}; only PROCESSING claims are adjudicated"
            )

        line_items = await self._store.get_line_items(claim_id)

        errors = validate_claim(claim, line_items)
        if errors:
            return await self._reject(claim, line_items, errors, actor)

        final_status = ClaimStatus.SIMULATED if simulate else ClaimStatus.COMPLETE
        try:
            return await self._adjudicate(claim, line_items, use_cache, actor, final_status)
        except Exception as e:
            logger.error(f"Internal adjudication failed for claim {claim_id}: {e}", exc_info=True)
            await self._record_error(claim_id, e, actor)
            raise

    # =========================================================================
    # Outcomes
    # =========================================================================

    async def _reject(
        self,
        claim: Claim,
        line_items: Sequence[ClaimLineItem],
        errors: list[str],
        actor: str,
    ) -> AdjudicationResult:
        claim_state_machine.ensure_transition(claim.status, ClaimStatus.REJECTED)
        now = self._clock()
        result = AdjudicationResult(
            success=False,
            claim_id=claim.id,
            claim_status=ClaimStatus.REJECTED,
            total_billed=self._total(line_items),
            errors=errors,
            processed_at=now,
        )
        await self._store.set_claim_status(
            claim.id,
            ClaimStatus.REJECTED,
            ClaimEventType.INTERNAL_RULES_APPLIED,
            details={"outcome": "rejected", "errors": errors},
            error_message="; ".join(errors),
            actor=actor,
            now=now,
            processed_at=now,
            error_data={"stage": "validation", "errors": errors},
        )
        logger.info(f"Claim {claim.id} rejected by internal rules: {errors}")
        return result

    async def _adjudicate(
        self,
        claim: Claim,
        line_items: Sequence[ClaimLineItem],
        use_cache: bool,
        actor: str,
        final_status: ClaimStatus = ClaimStatus.COMPLETE,
    ) -> AdjudicationResult:
        claim_state_machine.ensure_transition(claim.status, final_status)
        cache_key = compute_fingerprint(claim, line_items)
        result: Optional[AdjudicationResult] = None

        if self._cache_enabled and use_cache:
            cached = await self._cache.get(cache_key)
            if cached is not None:
                try:
                    result = AdjudicationResult.model_validate(
                        {**cached, "claim_id": claim.id, "source": "cache"}
                    )
                    logger.debug(f"Rule cache hit for claim {claim.id}")
                except ValidationError as e:
                    logger.warning(
                        f"Unreadable rule cache entry {cache_key[:12]}; recomputing: "
                        f"{e.error_count()} errors"
                    )

        if result is None:
            result = self.evaluate(line_items)
            result.claim_id = claim.id
            result.source = "computed"
            if self._cache_enabled:
                await self._cache.put(
                    cache_key, claim.claim_type, claim.payer_id, result.to_cache_payload()
                )

        now = self._clock()
        result.claim_status = final_status
        result.processed_at = now
        await self._store.set_claim_status(
            claim.id,
            final_status,
            ClaimEventType.INTERNAL_RULES_APPLIED,
            details={
                "outcome": final_status.value.lower(),
                "source": result.source,
                "cache_key": cache_key,
                "total_billed": result.total_billed,
                "allowed_amount": result.allowed_amount,
                "patient_responsibility": result.patient_responsibility,
            },
            actor=actor,
            line_adjudication={
                line.sequence: line.model_dump(mode="json") for line in result.line_items
            },
            now=now,
            processed_at=now,
            response_data=result.model_dump(mode="json"),
            error_data=None,
        )
        logger.info(
            f"Claim {claim.id} adjudicated internally ({result.source}): "
            f"allowed={result.allowed_amount} patient={result.patient_responsibility}"
        )
        return result

    async def _record_error(self, claim_id: UUID, error: Exception, actor: str) -> None:
        try:
            await self._store.set_claim_status(
                claim_id,
                ClaimStatus.ERROR,
                ClaimEventType.INTERNAL_RULES_ERROR,
                details={"error_type": type(error).__name__},
                error_message=str(error),
                actor=actor,
                error_data={"stage": "adjudication", "error": str(error)},
            )
        except Exception:
            logger.error(f"Could not record ERROR status for claim {claim_id}", exc_info=True)

    # =========================================================================
    # Rules
    # =========================================================================

    def evaluate(self, line_items: Sequence[ClaimLineItem]) -> AdjudicationResult:
        """Apply the allowed-rate split to every line and sum the totals."""
        lines = []
        for item in sorted(line_items, key=lambda li: li.sequence):
            billed = Decimal(item.total_price).quantize(CENTS)
            allowed = (billed * self._allowed_rate).quantize(CENTS, rounding=ROUND_HALF_UP)
            lines.append(
                LineAdjudication(
                    sequence=item.sequence,
                    service_code=item.service_code,
                    billed_amount=billed,
                    allowed_amount=allowed,
                    patient_responsibility=billed - allowed,
                )
            )

        return AdjudicationResult(
            success=True,
            claim_status=ClaimStatus.COMPLETE,
            total_billed=sum((line.billed_amount for line in lines), Decimal("0.00")),
            allowed_amount=sum((line.allowed_amount for line in lines), Decimal("0.00")),
            patient_responsibility=sum(
                (line.patient_responsibility for line in lines), Decimal("0.00")
            ),
            line_items=lines,
        )

    @staticmethod
    def _total(line_items: Sequence[ClaimLineItem]) -> Decimal:
        return sum((Decimal(li.total_price) for li in line_items), Decimal("0.00"))
