"""
External Payer Gateway.

Provides:
- Claim submission to external payers (forward lineage creation)
- Immediate or deferred dispatch through the task scheduler
- Send / status-check protocol with capped exponential backoff
- Periodic recovery sweep over the durable forward rows
- Shutdown cleanup of pending timers

Protocol:
    submit_claim -> QUEUED (claim SUBMITTED, EXTERNAL_PAYER_QUEUED)
    send_claim_to_payer -> SENDING -> SENT | ACKNOWLEDGED | COMPLETED | REJECTED
                                   -> FAILED_RETRY (retry scheduled) | FAILED | ERROR
    check_claim_status -> ACKNOWLEDGED (keep polling) | COMPLETED | REJECTED
                       -> FAILED_RETRY | FAILED (payer reported failure)

The durable ``next_attempt`` column, not the in-memory timer, decides when
work is due; the sweep reschedules anything the timers lost.
"""

import asyncio
import contextlib
import logging
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timedelta
from functools import partial
from typing import Any, Optional
from uuid import UUID

from pydantic_core import to_jsonable_python

from claimhub.core.config import ClaimsSettings
from claimhub.core.enums import (
    ClaimEventType,
    ClaimStatus,
    ForwardStatus,
    TransportMethod,
)
from claimhub.gateways.base import (
    PayerAdapter,
    PayerConfigurationError,
    PayerResponse,
)
from claimhub.models.base import utcnow
from claimhub.models.claim import Claim, ClaimPayerForward
from claimhub.services.claim_state_machine import (
    AWAITING_PAYER_STATUSES,
    DISPATCHABLE_FORWARD_STATUSES,
    determine_claim_status,
    forward_state_machine,
    parse_payer_status,
)
from claimhub.services.claim_store import ClaimStore
from claimhub.services.exceptions import ClaimNotFoundError, ClaimStateError
from claimhub.services.payer_directory import PayerConnection, PayerConnectionDirectory
from claimhub.services.scheduler import TaskScheduler

logger = logging.getLogger(__name__)

ACTOR = "payer_gateway"

_OUTCOME_EVENTS = {
    ForwardStatus.COMPLETED: ClaimEventType.EXTERNAL_PAYER_COMPLETED,
    ForwardStatus.REJECTED: ClaimEventType.EXTERNAL_PAYER_REJECTED,
}


@dataclass
class SubmissionResult:
    """Outcome of handing a claim to the gateway."""

    success: bool
    claim_id: UUID
    claim_status: ClaimStatus
    forward_id: Optional[UUID] = None
    message: str = ""
    retryable: bool = True


def build_claim_payload(claim: Claim, attempt: int) -> dict[str, Any]:
    """Payer-agnostic claim payload: header fields plus line items."""
    return to_jsonable_python(
        {
            "claim": {
                "id": claim.id,
                "patient_id": claim.patient_id,
                "provider_id": claim.provider_id,
                "payer_id": claim.payer_id,
                "organization_id": claim.organization_id,
                "claim_type": claim.claim_type,
                "total_amount": str(claim.total_amount),
                "currency": claim.currency,
                "service_date": claim.service_date,
            },
            "line_items": [
                {
                    "sequence": item.sequence,
                    "service_code": item.service_code,
                    "description": item.description,
                    "quantity": item.quantity,
                    "unit_price": str(item.unit_price),
                    "total_price": str(item.total_price),
                    "service_date": item.service_date,
                }
                for item in sorted(claim.line_items, key=lambda li: li.sequence)
            ],
            "attempt": attempt,
        }
    )


class ExternalPayerGateway:
    """
    Owns the forwarding protocol for externally adjudicated claims.

    Every forward write is a compare-and-set on the row version and is
    checked against the forward transition table, so duplicate dispatches
    and re-runs of terminal forwards are no-ops.
    """

    def __init__(
        self,
        store: ClaimStore,
        directory: PayerConnectionDirectory,
        adapter: PayerAdapter,
        scheduler: TaskScheduler,
        settings: ClaimsSettings,
        clock: Callable[[], datetime] = utcnow,
    ):
        self._store = store
        self._directory = directory
        self._adapter = adapter
        self._scheduler = scheduler
        self._settings = settings
        self._clock = clock
        self._periodic_task: Optional[asyncio.Task] = None

    @property
    def scheduler(self) -> TaskScheduler:
        return self._scheduler

    @property
    def directory(self) -> PayerConnectionDirectory:
        return self._directory

    # =========================================================================
    # Submission
    # =========================================================================

    async def submit_claim(self, claim_id: UUID) -> SubmissionResult:
        """
        Create a QUEUED forward for a claim and schedule its dispatch.

        A payer without a registered connection is a configuration error:
        the claim goes to ERROR and no forward row is created. Raises
        ClaimStateError unless the claim is PROCESSING.
        """
        claim = await self._store.get_claim(claim_id)
        if claim is None:
            raise ClaimNotFoundError(claim_id)
        if claim.status != ClaimStatus.PROCESSING:
            raise ClaimStateError(
                f"Claim {claim_id} is {claim.status.value}; only PROCESSING claims are submitted"
            )

        connection = self._directory.get(claim.payer_id)
        if connection is None:
            message = f"No payer connection configured for payer {claim.payer_id}"
            logger.error(f"Claim {claim_id}: {message}")
            await self._store.set_claim_status(
                claim_id,
                ClaimStatus.ERROR,
                ClaimEventType.EXTERNAL_PAYER_ERROR,
                details={
                    "payer_id": claim.payer_id,
                    "reason": "payer_connection_missing",
                    "retryable": False,
                },
                error_message=message,
                actor=ACTOR,
                now=self._clock(),
                error_data={"stage": "payer_configuration", "message": message, "retryable": False},
            )
            return SubmissionResult(
                success=False,
                claim_id=claim_id,
                claim_status=ClaimStatus.ERROR,
                message=message,
                retryable=False,
            )

        now = self._clock()
        next_attempt = now + timedelta(milliseconds=connection.retry_interval_ms)
        forward = await self._store.create_forward(
            claim_id,
            claim.payer_id,
            next_attempt=next_attempt,
            transport_method=(
                TransportMethod.SIMULATED if connection.is_simulated else TransportMethod.API
            ),
            claim_status=ClaimStatus.SUBMITTED,
            event_type=ClaimEventType.EXTERNAL_PAYER_QUEUED,
            details={
                "payer_id": claim.payer_id,
                "attempt_count": 1,
                "next_attempt": next_attempt,
                "supports_real_time": connection.supports_real_time,
            },
            actor=ACTOR,
            now=now,
        )

        delay = 0.0 if connection.supports_real_time else self._settings.GATEWAY_DISPATCH_DELAY_SECONDS
        self._schedule_send(forward.id, delay)
        logger.info(
            f"Claim {claim_id} queued for payer {claim.payer_id} "
            f"(forward {forward.id}, dispatch in {delay}s)"
        )
        return SubmissionResult(
            success=True,
            claim_id=claim_id,
            claim_status=ClaimStatus.SUBMITTED,
            forward_id=forward.id,
            message="Claim queued for external payer",
        )

    def _schedule_send(self, forward_id: UUID, delay: float) -> bool:
        return self._scheduler.schedule(
            forward_id, delay, partial(self.send_claim_to_payer, forward_id)
        )

    def _schedule_check(self, forward_id: UUID, delay: float) -> bool:
        return self._scheduler.schedule(
            forward_id, delay, partial(self.check_claim_status, forward_id)
        )

    # =========================================================================
    # Sending
    # =========================================================================

    def _is_stale_sending(self, forward: ClaimPayerForward, now: datetime) -> bool:
        window = timedelta(seconds=self._settings.GATEWAY_STALE_SENDING_SECONDS)
        return forward.status == ForwardStatus.SENDING and forward.updated_at <= now - window

    async def send_claim_to_payer(self, forward_id: UUID) -> Optional[ForwardStatus]:
        """
        Deliver a forward to its payer.

        No-op unless the forward is QUEUED, FAILED_RETRY or an abandoned
        SENDING. Returns the resulting forward status, or None when the
        forward is unknown or another writer claimed it first.
        """
        forward = await self._store.get_forward(forward_id)
        if forward is None:
            logger.warning(f"Forward {forward_id} not found")
            return None

        now = self._clock()
        if forward.status not in DISPATCHABLE_FORWARD_STATUSES and not self._is_stale_sending(
            forward, now
        ):
            logger.debug(f"Forward {forward_id} is {forward.status.value}; nothing to send")
            return forward.status

        connection = self._directory.get(forward.payer_id)
        if connection is None:
            await self._configuration_error(
                forward, f"No payer connection configured for payer {forward.payer_id}"
            )
            return ForwardStatus.ERROR

        try:
            claim = await self._store.get_claim(forward.claim_id)
            if claim is None:
                raise ClaimNotFoundError(forward.claim_id)

            forward_state_machine.ensure_transition(forward.status, ForwardStatus.SENDING)
            payload = build_claim_payload(claim, forward.attempt_count)
            claimed = await self._store.transition_forward(
                forward_id,
                forward.version,
                {"status": ForwardStatus.SENDING, "sent_data": payload},
                actor=ACTOR,
                now=now,
            )
        except Exception as e:
            logger.exception(f"Error preparing forward {forward_id} for sending")
            return await self._recover_from_error(
                forward_id,
                connection,
                {"error_type": type(e).__name__, "message": str(e), "stage": "prepare"},
            )
        if not claimed:
            return None
        version = forward.version + 1

        try:
            response = await self._adapter.submit_claim(connection, payload)
        except PayerConfigurationError as e:
            await self._configuration_error(
                forward, str(e), status=ForwardStatus.SENDING, version=version
            )
            return ForwardStatus.ERROR
        except Exception as e:
            logger.warning(
                f"Payer call failed for forward {forward_id} (attempt {forward.attempt_count}): {e}"
            )
            response = PayerResponse(
                success=False,
                status="FAILED",
                error_details={"error_type": type(e).__name__, "message": str(e)},
            )

        try:
            return await self._apply_send_response(forward, version, connection, response)
        except Exception as e:
            logger.exception(f"Error recording payer response for forward {forward_id}")
            return await self._recover_from_error(
                forward_id,
                connection,
                {"error_type": type(e).__name__, "message": str(e), "stage": "response"},
            )

    async def _apply_send_response(
        self,
        forward: ClaimPayerForward,
        version: int,
        connection: PayerConnection,
        response: PayerResponse,
    ) -> Optional[ForwardStatus]:
        reported = parse_payer_status(response.status) if response.success else None
        if not response.success or reported == ForwardStatus.FAILED:
            return await self._handle_failure(
                forward.id,
                forward.claim_id,
                version,
                ForwardStatus.SENDING,
                forward.attempt_count,
                connection,
                response.error_details or response.response_data,
            )

        if reported is None:
            reported = ForwardStatus.SENT
        forward_state_machine.ensure_transition(ForwardStatus.SENDING, reported)

        now = self._clock()
        terminal = forward_state_machine.is_terminal(reported)
        claim_status = determine_claim_status(reported)
        tracking_number = response.tracking_id
        claim_values: dict[str, Any] = {}
        if tracking_number:
            claim_values["external_claim_id"] = tracking_number
        if terminal:
            claim_values["processed_at"] = now
            claim_values["response_data"] = response.response_data

        written = await self._store.transition_forward(
            forward.id,
            version,
            {
                "status": reported,
                "tracking_number": tracking_number,
                "response_data": response.response_data,
                "error_details": None,
                "sent_timestamp": now,
                "response_timestamp": now,
                "next_attempt": None if terminal else now + self._check_interval(connection),
            },
            claim_status=claim_status,
            event_type=ClaimEventType.EXTERNAL_PAYER_SENT,
            details={
                "attempt_count": forward.attempt_count,
                "payer_status": response.status,
                "tracking_number": tracking_number,
            },
            actor=ACTOR,
            now=now,
            claim_values=claim_values,
        )
        if not written:
            return None

        if terminal:
            await self._store.append_event(
                forward.claim_id,
                _OUTCOME_EVENTS[reported],
                claim_status,
                details={"forward_id": forward.id, "payer_status": response.status},
                actor=ACTOR,
            )
        else:
            self._schedule_check(forward.id, self._check_interval(connection).total_seconds())

        logger.info(f"Forward {forward.id} sent to payer {connection.payer_id}: {reported.value}")
        return reported

    # =========================================================================
    # Failure handling
    # =========================================================================

    def backoff_delay(self, connection: PayerConnection, attempt_count: int) -> float:
        """
        Seconds until the next attempt after attempt ``attempt_count`` failed.

        delay = min(cap, retry_interval * multiplier ** (attempt_count - 1))
        """
        base = connection.retry_interval_seconds
        delay = base * self._settings.GATEWAY_BACKOFF_MULTIPLIER ** max(0, attempt_count - 1)
        return min(self._settings.GATEWAY_BACKOFF_CAP_SECONDS, delay)

    async def _handle_failure(
        self,
        forward_id: UUID,
        claim_id: UUID,
        version: int,
        current_status: ForwardStatus,
        attempt_count: int,
        connection: PayerConnection,
        error_details: dict[str, Any],
    ) -> Optional[ForwardStatus]:
        now = self._clock()
        message = str(
            error_details.get("message")
            or error_details.get("error_message")
            or error_details.get("reason")
            or "Payer call failed"
        )

        if attempt_count < connection.max_retries:
            forward_state_machine.ensure_transition(current_status, ForwardStatus.FAILED_RETRY)
            delay = self.backoff_delay(connection, attempt_count)
            next_attempt = now + timedelta(seconds=delay)
            written = await self._store.transition_forward(
                forward_id,
                version,
                {
                    "status": ForwardStatus.FAILED_RETRY,
                    "attempt_count": attempt_count + 1,
                    "next_attempt": next_attempt,
                    "error_details": error_details,
                    "response_timestamp": now,
                },
                claim_status=determine_claim_status(ForwardStatus.FAILED_RETRY),
                event_type=ClaimEventType.EXTERNAL_PAYER_RETRY_SCHEDULED,
                details={
                    "failed_attempt": attempt_count,
                    "max_retries": connection.max_retries,
                    "delay_seconds": delay,
                    "next_attempt": next_attempt,
                },
                error_message=message,
                actor=ACTOR,
                now=now,
            )
            if not written:
                return None
            self._schedule_send(forward_id, delay)
            logger.warning(
                f"Forward {forward_id} attempt {attempt_count}/{connection.max_retries} failed; "
                f"retry in {delay:.1f}s"
            )
            return ForwardStatus.FAILED_RETRY

        forward_state_machine.ensure_transition(current_status, ForwardStatus.FAILED)
        written = await self._store.transition_forward(
            forward_id,
            version,
            {
                "status": ForwardStatus.FAILED,
                "next_attempt": None,
                "error_details": error_details,
                "response_timestamp": now,
            },
            claim_status=ClaimStatus.FAILED,
            event_type=ClaimEventType.EXTERNAL_PAYER_FAILED,
            details={"attempt_count": attempt_count, "max_retries": connection.max_retries},
            error_message=message,
            actor=ACTOR,
            now=now,
            claim_values={
                "processed_at": now,
                "error_data": {
                    "stage": "payer_forwarding",
                    "message": message,
                    "attempt_count": attempt_count,
                },
            },
        )
        if not written:
            return None
        logger.error(
            f"Forward {forward_id} failed permanently after {attempt_count} attempts (claim {claim_id})"
        )
        return ForwardStatus.FAILED

    async def _recover_from_error(
        self,
        forward_id: UUID,
        connection: PayerConnection,
        error_details: dict[str, Any],
    ) -> Optional[ForwardStatus]:
        """Push a forward hit by an unexpected error down the failure path."""
        forward = await self._store.get_forward(forward_id)
        if forward is None or forward_state_machine.is_terminal(forward.status):
            return forward.status if forward else None
        return await self._handle_failure(
            forward.id,
            forward.claim_id,
            forward.version,
            forward.status,
            forward.attempt_count,
            connection,
            error_details,
        )

    async def _configuration_error(
        self,
        forward: ClaimPayerForward,
        message: str,
        status: Optional[ForwardStatus] = None,
        version: Optional[int] = None,
    ) -> None:
        """Terminal, non-retryable ERROR for a forward whose payer is not usable."""
        current = status or forward.status
        forward_state_machine.ensure_transition(current, ForwardStatus.ERROR)
        now = self._clock()
        await self._store.transition_forward(
            forward.id,
            version if version is not None else forward.version,
            {
                "status": ForwardStatus.ERROR,
                "next_attempt": None,
                "error_details": {"message": message, "retryable": False},
                "response_timestamp": now,
            },
            claim_status=ClaimStatus.ERROR,
            event_type=ClaimEventType.EXTERNAL_PAYER_ERROR,
            details={"payer_id": forward.payer_id, "retryable": False},
            error_message=message,
            actor=ACTOR,
            now=now,
            claim_values={
                "error_data": {"stage": "payer_configuration", "message": message, "retryable": False}
            },
        )
        logger.error(f"Forward {forward.id}: {message}")

    # =========================================================================
    # Status checks
    # =========================================================================

    def _check_interval(self, connection: PayerConnection) -> timedelta:
        if connection.status_check_interval_ms:
            return timedelta(milliseconds=connection.status_check_interval_ms)
        return timedelta(seconds=self._settings.GATEWAY_STATUS_CHECK_INTERVAL_SECONDS)

    async def check_claim_status(self, forward_id: UUID) -> Optional[ForwardStatus]:
        """
        Poll the payer for a SENT or ACKNOWLEDGED forward.

        Terminal payer outcomes finish the claim, a reported failure goes down
        the retry path, and anything else reschedules the check.
        """
        forward = await self._store.get_forward(forward_id)
        if forward is None:
            logger.warning(f"Forward {forward_id} not found")
            return None
        if forward.status not in AWAITING_PAYER_STATUSES:
            logger.debug(f"Forward {forward_id} is {forward.status.value}; no status check")
            return forward.status

        connection = self._directory.get(forward.payer_id)
        if connection is None:
            await self._configuration_error(
                forward, f"No payer connection configured for payer {forward.payer_id}"
            )
            return ForwardStatus.ERROR

        try:
            response = await self._adapter.check_status(
                connection, str(forward.claim_id), forward.tracking_number
            )
        except PayerConfigurationError as e:
            await self._configuration_error(forward, str(e))
            return ForwardStatus.ERROR
        except Exception as e:
            logger.warning(f"Status check failed for forward {forward_id}: {e}")
            return await self._reschedule_check(forward, connection)

        if not response.success:
            logger.info(f"Payer status unavailable for forward {forward_id}: {response.error_details}")
            return await self._reschedule_check(forward, connection)

        reported = parse_payer_status(response.status)
        if reported == ForwardStatus.FAILED:
            return await self._handle_failure(
                forward.id,
                forward.claim_id,
                forward.version,
                forward.status,
                forward.attempt_count,
                connection,
                response.error_details or response.response_data or {"message": "Payer reported failure"},
            )
        if reported in _OUTCOME_EVENTS:
            return await self._finish(forward, reported, response)
        if reported == ForwardStatus.ACKNOWLEDGED and forward.status == ForwardStatus.SENT:
            return await self._acknowledge(forward, connection, response)
        return await self._reschedule_check(forward, connection)

    async def _finish(
        self,
        forward: ClaimPayerForward,
        reported: ForwardStatus,
        response: PayerResponse,
    ) -> Optional[ForwardStatus]:
        forward_state_machine.ensure_transition(forward.status, reported)
        now = self._clock()
        claim_status = determine_claim_status(reported)
        written = await self._store.transition_forward(
            forward.id,
            forward.version,
            {
                "status": reported,
                "response_data": response.response_data,
                "response_timestamp": now,
                "next_attempt": None,
            },
            claim_status=claim_status,
            event_type=_OUTCOME_EVENTS[reported],
            details={"payer_status": response.status},
            actor=ACTOR,
            now=now,
            claim_values={"processed_at": now, "response_data": response.response_data},
        )
        if not written:
            return None
        logger.info(f"Forward {forward.id} finished: {reported.value}")
        return reported

    async def _acknowledge(
        self,
        forward: ClaimPayerForward,
        connection: PayerConnection,
        response: PayerResponse,
    ) -> Optional[ForwardStatus]:
        forward_state_machine.ensure_transition(forward.status, ForwardStatus.ACKNOWLEDGED)
        now = self._clock()
        interval = self._check_interval(connection)
        written = await self._store.transition_forward(
            forward.id,
            forward.version,
            {
                "status": ForwardStatus.ACKNOWLEDGED,
                "response_data": response.response_data,
                "response_timestamp": now,
                "next_attempt": now + interval,
            },
            claim_status=determine_claim_status(ForwardStatus.ACKNOWLEDGED),
            event_type=ClaimEventType.EXTERNAL_PAYER_ACKNOWLEDGED,
            details={"payer_status": response.status},
            actor=ACTOR,
            now=now,
        )
        if not written:
            return None
        self._schedule_check(forward.id, interval.total_seconds())
        return ForwardStatus.ACKNOWLEDGED

    async def _reschedule_check(
        self, forward: ClaimPayerForward, connection: PayerConnection
    ) -> Optional[ForwardStatus]:
        now = self._clock()
        interval = self._check_interval(connection)
        written = await self._store.transition_forward(
            forward.id,
            forward.version,
            {"next_attempt": now + interval},
            now=now,
        )
        if not written:
            return None
        self._schedule_check(forward.id, interval.total_seconds())
        return forward.status

    # =========================================================================
    # Recovery sweep
    # =========================================================================

    async def process_pending_forwards(self) -> list[UUID]:
        """
        Reschedule every forward with work due.

        Forwards whose ID is pending or running in the scheduler are skipped.
        Returns the IDs that were scheduled.
        """
        now = self._clock()
        stale_before = now - timedelta(seconds=self._settings.GATEWAY_STALE_SENDING_SECONDS)
        forwards = await self._store.due_forwards(now, stale_before)

        scheduled: list[UUID] = []
        for forward in forwards:
            if self._scheduler.is_busy(forward.id):
                continue
            if forward.status in AWAITING_PAYER_STATUSES:
                added = self._schedule_check(forward.id, 0)
            else:
                added = self._schedule_send(forward.id, 0)
            if added:
                scheduled.append(forward.id)

        if scheduled:
            logger.info(f"Recovery sweep scheduled {len(scheduled)} of {len(forwards)} due forwards")
        return scheduled

    def start_periodic_processing(self) -> None:
        """Run the sweep now and then every GATEWAY_SWEEP_INTERVAL_SECONDS."""
        if self._periodic_task is not None and not self._periodic_task.done():
            return
        self._periodic_task = asyncio.create_task(self._periodic_loop())
        logger.info(
            f"Periodic forward processing started "
            f"(every {self._settings.GATEWAY_SWEEP_INTERVAL_SECONDS}s)"
        )

    async def _periodic_loop(self) -> None:
        while True:
            try:
                await self.process_pending_forwards()
            except Exception:
                logger.exception("Pending forward sweep failed")
            await asyncio.sleep(self._settings.GATEWAY_SWEEP_INTERVAL_SECONDS)

    @property
    def is_periodic_running(self) -> bool:
        return self._periodic_task is not None and not self._periodic_task.done()

    async def cleanup(self) -> None:
        """Stop the sweep and cancel pending timers. In-flight payer calls continue."""
        if self._periodic_task is not None:
            self._periodic_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._periodic_task
            self._periodic_task = None
        self._scheduler.cancel_all()
        logger.info("Payer gateway cleaned up")

    async def drain(self, timeout: Optional[float] = None) -> None:
        """Wait for in-flight payer calls to finish."""
        await self._scheduler.drain(timeout)

    def stats(self) -> dict[str, Any]:
        return {
            **self._scheduler.stats(),
            "periodic_running": self.is_periodic_running,
            "payer_connections": len(self._directory),
        }
