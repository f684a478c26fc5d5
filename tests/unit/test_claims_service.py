"""
Unit tests for the claims service: path selection, ingestion and workflow.
"""

from datetime import timedelta
from decimal import Decimal
from uuid import uuid4

import pytest

from claimhub.core.enums import ClaimEventType, ClaimStatus, ForwardStatus, ProcessingPath
from claimhub.schemas.claim import ClaimLineItemCreate
from claimhub.services.claims_service import ClaimsService, ProcessingFailure
from claimhub.services.exceptions import (
    ClaimNotFoundError,
    ClaimStateError,
    ClaimValidationError,
)
from claimhub.services.payer_directory import PayerConnection
from claimhub.services.rule_cache import RuleResultCache
from claimhub.services.rules_engine import InternalRulesEngine
from tests.conftest import make_claim_data


@pytest.fixture
def claims_service(store, gateway, clock) -> ClaimsService:
    rules_engine = InternalRulesEngine(
        store,
        RuleResultCache(store, max_age=timedelta(hours=1), clock=clock),
        allowed_rate=Decimal("0.80"),
        clock=clock,
    )
    return ClaimsService(store, rules_engine, gateway, auto_internal_threshold=Decimal("500.00"))


async def event_types(store, claim_id) -> list[ClaimEventType]:
    events = await store.list_events(claim_id)
    return [e.event_type for e in sorted(events, key=lambda e: e.sequence)]


@pytest.mark.unit
class TestSelectPath:
    """Tests for processing path selection."""

    async def test_auto_below_threshold_is_internal(self, claims_service, claim_factory):
        claim = await claim_factory()
        assert claims_service.select_path(claim) == ProcessingPath.INTERNAL

    async def test_auto_at_threshold_is_external(self, claims_service, claim_factory):
        claim = await claim_factory(lines=[("99215", "500.00", 1)])
        assert claims_service.select_path(claim) == ProcessingPath.EXTERNAL

    async def test_explicit_mode_wins(self, claims_service, claim_factory):
        claim = await claim_factory()
        assert claims_service.select_path(claim, ProcessingPath.EXTERNAL) == ProcessingPath.EXTERNAL


@pytest.mark.unit
class TestIngestClaim:
    """Tests for ClaimsService.ingest_claim."""

    async def test_internal_path_completes(self, claims_service, store):
        outcome = await claims_service.ingest_claim(make_claim_data())

        assert outcome.success is True
        assert outcome.status == ClaimStatus.COMPLETE
        assert outcome.processing_path == ProcessingPath.INTERNAL
        assert outcome.adjudication.allowed_amount == Decimal("120.80")

        claim = await store.get_claim(outcome.claim_id)
        assert claim.status == ClaimStatus.COMPLETE
        assert claim.processing_path == ProcessingPath.INTERNAL
        assert await event_types(store, claim.id) == [
            ClaimEventType.CLAIM_CREATED,
            ClaimEventType.PROCESSING_STARTED,
            ClaimEventType.PATH_SELECTED,
            ClaimEventType.INTERNAL_RULES_APPLIED,
        ]
        assert await store.list_forwards(claim.id) == []

    async def test_external_path_queues_forward(self, claims_service, store):
        outcome = await claims_service.ingest_claim(
            make_claim_data(), mode=ProcessingPath.EXTERNAL
        )

        assert outcome.success is True
        assert outcome.status == ClaimStatus.SUBMITTED
        assert outcome.submission.forward_id is not None

        claim = await store.get_claim(outcome.claim_id)
        assert claim.status == ClaimStatus.SUBMITTED
        assert claim.processing_path == ProcessingPath.EXTERNAL
        forwards = await store.list_forwards(claim.id)
        assert [f.status for f in forwards] == [ForwardStatus.QUEUED]
        assert (await event_types(store, claim.id))[-1] == ClaimEventType.EXTERNAL_PAYER_QUEUED

    async def test_auto_large_claim_goes_external(self, claims_service):
        outcome = await claims_service.ingest_claim(
            make_claim_data(lines=[("99215", "400.00", 2)])
        )
        assert outcome.processing_path == ProcessingPath.EXTERNAL
        assert outcome.status == ClaimStatus.SUBMITTED

    async def test_missing_payer_connection(self, claims_service, store):
        outcome = await claims_service.ingest_claim(
            make_claim_data(payer_id="UNKNOWN"), mode=ProcessingPath.EXTERNAL
        )

        assert outcome.success is False
        assert outcome.failure == ProcessingFailure.CONFIGURATION
        assert outcome.status == ClaimStatus.ERROR
        assert (await store.get_claim(outcome.claim_id)).status == ClaimStatus.ERROR

    async def test_rejected_internally(self, claims_service, store):
        outcome = await claims_service.ingest_claim(make_claim_data(provider_id=None))

        assert outcome.success is False
        assert outcome.failure == ProcessingFailure.REJECTED
        assert outcome.status == ClaimStatus.REJECTED
        assert "Provider is required" in outcome.message

    async def test_gateway_exception_marks_error(self, claims_service, gateway, store, monkeypatch):
        """Test an unexpected gateway error is recorded and reported as internal."""

        async def boom(claim_id):
            raise RuntimeError("gateway down")

        monkeypatch.setattr(gateway, "submit_claim", boom)

        outcome = await claims_service.ingest_claim(
            make_claim_data(), mode=ProcessingPath.EXTERNAL
        )

        assert outcome.failure == ProcessingFailure.INTERNAL_ERROR
        claim = await store.get_claim(outcome.claim_id)
        assert claim.status == ClaimStatus.ERROR
        assert claim.error_data["message"] == "gateway down"
        assert (await store.latest_event(claim.id)).event_type == ClaimEventType.PROCESSING_ERROR

    async def test_rules_engine_exception_is_internal_error(
        self, claims_service, store, monkeypatch
    ):
        def boom(line_items):
            raise RuntimeError("rules exploded")

        monkeypatch.setattr(claims_service._rules_engine, "evaluate", boom)

        outcome = await claims_service.ingest_claim(make_claim_data(), use_cache=False)

        assert outcome.failure == ProcessingFailure.INTERNAL_ERROR
        assert (await store.get_claim(outcome.claim_id)).status == ClaimStatus.ERROR

    async def test_simulation_stays_internal(self, claims_service, gateway, store):
        """Test a simulation is adjudicated locally even when the payer path is requested."""
        outcome = await claims_service.ingest_claim(
            make_claim_data(), mode=ProcessingPath.EXTERNAL, simulate_only=True
        )

        assert outcome.success is True
        assert outcome.status == ClaimStatus.SIMULATED
        assert outcome.processing_path == ProcessingPath.INTERNAL
        assert outcome.adjudication.allowed_amount == Decimal("120.80")

        claim = await store.get_claim(outcome.claim_id)
        assert claim.status == ClaimStatus.SIMULATED
        assert (await event_types(store, claim.id))[-2:] == [
            ClaimEventType.INTERNAL_RULES_APPLIED,
            ClaimEventType.SIMULATION_COMPLETED,
        ]
        event = await store.latest_event(claim.id)
        assert event.details["allowed_amount"] == "120.80"
        assert await store.list_forwards(claim.id) == []


@pytest.mark.unit
class TestProcessClaim:
    """Tests for ClaimsService.process_claim preconditions."""

    async def test_unknown_claim(self, claims_service):
        with pytest.raises(ClaimNotFoundError):
            await claims_service.process_claim(uuid4())

    async def test_only_new_claims(self, claims_service, claim_factory):
        claim = await claim_factory()
        await claims_service.process_claim(claim.id)

        with pytest.raises(ClaimStateError):
            await claims_service.process_claim(claim.id)


@pytest.mark.unit
class TestLineItems:
    """Tests for ClaimsService.add_line_items."""

    async def test_add_to_new_claim(self, claims_service, claim_factory, store):
        claim = await claim_factory()
        updated = await claims_service.add_line_items(
            claim.id,
            [ClaimLineItemCreate(service_code="X1", unit_price=Decimal("5.00"), quantity=3)],
        )

        assert updated.total_amount == Decimal("166.00")
        assert [li.sequence for li in await store.get_line_items(claim.id)] == [1, 2, 3]
        assert (await store.latest_event(claim.id)).event_type == ClaimEventType.LINE_ITEMS_ADDED

    async def test_empty_list_rejected(self, claims_service, claim_factory):
        claim = await claim_factory()
        with pytest.raises(ClaimValidationError):
            await claims_service.add_line_items(claim.id, [])

    async def test_finalized_claim_is_locked(self, claims_service, claim_factory):
        claim = await claim_factory()
        await claims_service.process_claim(claim.id)

        with pytest.raises(ClaimStateError):
            await claims_service.add_line_items(
                claim.id, [ClaimLineItemCreate(service_code="X1", unit_price=Decimal("1.00"))]
            )


@pytest.mark.unit
class TestCancelAndResubmit:
    """Tests for the cancel and resubmit workflow."""

    async def test_cancel_new_claim(self, claims_service, claim_factory, store):
        claim = await claim_factory()
        canceled = await claims_service.cancel_claim(claim.id, reason="duplicate")

        assert canceled.status == ClaimStatus.CANCELED
        event = await store.latest_event(claim.id)
        assert event.event_type == ClaimEventType.CLAIM_CANCELED
        assert event.details == {"previous_status": "NEW", "reason": "duplicate"}

    async def test_cannot_cancel_submitted_claim(self, claims_service):
        outcome = await claims_service.ingest_claim(
            make_claim_data(), mode=ProcessingPath.EXTERNAL
        )
        with pytest.raises(ClaimStateError):
            await claims_service.cancel_claim(outcome.claim_id)

    async def test_resubmit_after_configuration_fix(self, claims_service, directory, store):
        """Test an ERROR claim is forwarded once its payer is configured."""
        outcome = await claims_service.ingest_claim(
            make_claim_data(payer_id="LATE"), mode=ProcessingPath.EXTERNAL
        )
        assert outcome.status == ClaimStatus.ERROR

        directory.register(PayerConnection(payer_id="LATE", endpoint="https://late.example.com"))
        again = await claims_service.resubmit_claim(outcome.claim_id, mode=ProcessingPath.EXTERNAL)

        assert again.success is True
        assert again.status == ClaimStatus.SUBMITTED
        claim = await store.get_claim(outcome.claim_id)
        assert claim.error_data is None
        assert ClaimEventType.CLAIM_RESUBMITTED in await event_types(store, claim.id)

    async def test_resubmit_canceled_claim(self, claims_service, claim_factory):
        claim = await claim_factory()
        await claims_service.cancel_claim(claim.id)

        outcome = await claims_service.resubmit_claim(claim.id)
        assert outcome.status == ClaimStatus.COMPLETE

    async def test_resubmit_simulated_claim(self, claims_service, store):
        """Test a simulated claim can be processed for real afterwards."""
        simulated = await claims_service.ingest_claim(make_claim_data(), simulate_only=True)

        outcome = await claims_service.resubmit_claim(simulated.claim_id)

        assert outcome.status == ClaimStatus.COMPLETE
        assert (await store.get_claim(simulated.claim_id)).status == ClaimStatus.COMPLETE

    async def test_complete_claim_cannot_be_resubmitted(self, claims_service, claim_factory):
        claim = await claim_factory()
        await claims_service.process_claim(claim.id)

        with pytest.raises(ClaimStateError):
            await claims_service.resubmit_claim(claim.id)


@pytest.mark.unit
class TestQueries:
    """Tests for claim lookups."""

    async def test_list_claims_filters(self, claims_service, claim_factory):
        await claim_factory(payer_id="PAYER-A")
        await claim_factory(payer_id="PAYER-B")
        await claim_factory(payer_id="PAYER-B")

        claims, total = await claims_service.list_claims(payer_id="PAYER-B", page=1, page_size=1)
        assert total == 2
        assert len(claims) == 1

    async def test_events_of_unknown_claim(self, claims_service):
        with pytest.raises(ClaimNotFoundError):
            await claims_service.get_events(uuid4())

    async def test_forwards(self, claims_service, store):
        outcome = await claims_service.ingest_claim(
            make_claim_data(), mode=ProcessingPath.EXTERNAL
        )
        forwards = await claims_service.get_forwards(outcome.claim_id)
        assert [f.id for f in forwards] == [outcome.submission.forward_id]
