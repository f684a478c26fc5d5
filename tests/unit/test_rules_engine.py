"""
Unit tests for the internal rules engine and the rule result cache.
"""

from datetime import timedelta
from decimal import Decimal
from unittest.mock import AsyncMock
from uuid import uuid4

import pytest

from claimhub.core.enums import ClaimEventType, ClaimStatus, ForwardStatus
from claimhub.schemas.claim import ClaimLineItemCreate
from claimhub.services.exceptions import ClaimNotFoundError, ClaimStateError
from claimhub.services.rule_cache import RuleResultCache, compute_fingerprint
from claimhub.services.rules_engine import InternalRulesEngine, validate_claim


@pytest.fixture
def cache(store, clock) -> RuleResultCache:
    return RuleResultCache(store, max_age=timedelta(hours=1), clock=clock)


@pytest.fixture
def engine_service(store, cache, clock) -> InternalRulesEngine:
    return InternalRulesEngine(store, cache, allowed_rate=Decimal("0.80"), clock=clock)


@pytest.mark.unit
class TestEvaluate:
    """Tests for the allowed-rate split."""

    async def test_line_split_and_totals(self, engine_service, started_claim_factory, store):
        """Test 80/20 split per line and summed totals."""
        claim = await started_claim_factory(lines=[("99213", "100.00", 1), ("85025", "25.50", 2)])
        result = engine_service.evaluate(await store.get_line_items(claim.id))

        assert result.total_billed == Decimal("151.00")
        assert result.allowed_amount == Decimal("120.80")
        assert result.patient_responsibility == Decimal("30.20")
        assert [line.allowed_amount for line in result.line_items] == [
            Decimal("80.00"),
            Decimal("40.80"),
        ]

    async def test_rounding_half_up(self, engine_service, started_claim_factory, store):
        """Test allowed amounts round half-up to cents and the split stays exact."""
        claim = await started_claim_factory(lines=[("A1", "0.05", 1)])
        result = engine_service.evaluate(await store.get_line_items(claim.id))

        line = result.line_items[0]
        assert line.allowed_amount == Decimal("0.04")
        assert line.allowed_amount + line.patient_responsibility == line.billed_amount


@pytest.mark.unit
class TestValidation:
    """Tests for structural validation."""

    async def test_missing_patient_and_lines(self, started_claim_factory, store):
        claim = await started_claim_factory(patient_id=None, lines=[])
        errors = validate_claim(claim, await store.get_line_items(claim.id))
        assert "Patient is required" in errors
        assert "At least one line item is required" in errors

    async def test_valid_claim(self, started_claim_factory, store):
        claim = await started_claim_factory()
        assert validate_claim(claim, await store.get_line_items(claim.id)) == []


@pytest.mark.unit
class TestProcessClaim:
    """Tests for InternalRulesEngine.process_claim."""

    async def test_unknown_claim(self, engine_service):
        with pytest.raises(ClaimNotFoundError):
            await engine_service.process_claim(uuid4())

    async def test_computed_result_completes_claim(
        self, engine_service, started_claim_factory, store
    ):
        """Test a valid claim is adjudicated, finalized and audited once."""
        claim = await started_claim_factory()
        result = await engine_service.process_claim(claim.id)

        assert result.success is True
        assert result.source == "computed"
        assert result.claim_status == ClaimStatus.COMPLETE

        stored = await store.get_claim(claim.id)
        assert stored.status == ClaimStatus.COMPLETE
        assert stored.processed_at is not None
        assert all(li.adjudication_data for li in stored.line_items)

        events = await store.list_events(claim.id, [ClaimEventType.INTERNAL_RULES_APPLIED])
        assert len(events) == 1
        assert events[0].details["source"] == "computed"

    async def test_identical_claim_served_from_cache(
        self, engine_service, started_claim_factory, store
    ):
        """Test a second identical claim reuses the cached result without changing it."""
        first = await started_claim_factory()
        second = await started_claim_factory()

        computed = await engine_service.process_claim(first.id)
        cached = await engine_service.process_claim(second.id)

        assert cached.source == "cache"
        assert cached.claim_id == second.id
        assert cached.allowed_amount == computed.allowed_amount
        assert cached.patient_responsibility == computed.patient_responsibility
        assert [l.allowed_amount for l in cached.line_items] == [
            l.allowed_amount for l in computed.line_items
        ]
        assert (await store.get_claim(second.id)).status == ClaimStatus.COMPLETE

        event = await store.latest_event(second.id)
        assert event.event_type == ClaimEventType.INTERNAL_RULES_APPLIED
        assert event.details["source"] == "cache"

    async def test_changed_line_misses_cache(self, engine_service, started_claim_factory, store):
        """Test changing a line amount changes the fingerprint."""
        first = await started_claim_factory()
        await engine_service.process_claim(first.id)

        second = await started_claim_factory()
        await store.add_line_items(
            second.id, [ClaimLineItemCreate(service_code="X1", unit_price=Decimal("10.00"))]
        )
        result = await engine_service.process_claim(second.id)

        assert result.source == "computed"
        assert result.total_billed == Decimal("161.00")

    async def test_bypass_cache(self, engine_service, started_claim_factory):
        first = await started_claim_factory()
        second = await started_claim_factory()
        await engine_service.process_claim(first.id)

        result = await engine_service.process_claim(second.id, use_cache=False)
        assert result.source == "computed"

    async def test_stale_cache_entry_is_recomputed(
        self, engine_service, started_claim_factory, clock
    ):
        first = await started_claim_factory()
        await engine_service.process_claim(first.id)

        clock.advance(timedelta(hours=2).total_seconds())
        second = await started_claim_factory()
        result = await engine_service.process_claim(second.id)
        assert result.source == "computed"

    async def test_invalid_claim_rejected_without_cache_write(
        self, engine_service, started_claim_factory, store
    ):
        """Test structural rejection sets REJECTED, records errors and caches nothing."""
        claim = await started_claim_factory(provider_id=None)
        result = await engine_service.process_claim(claim.id)

        assert result.success is False
        assert result.claim_status == ClaimStatus.REJECTED
        assert "Provider is required" in result.errors

        stored = await store.get_claim(claim.id)
        assert stored.status == ClaimStatus.REJECTED
        assert stored.error_data["errors"] == result.errors

        key = compute_fingerprint(stored, await store.get_line_items(claim.id))
        assert await store.get_cache_entry(key) is None

        events = await store.list_events(claim.id, [ClaimEventType.INTERNAL_RULES_APPLIED])
        assert len(events) == 1
        assert events[0].details["outcome"] == "rejected"

    async def test_unexpected_error_marks_claim_error(
        self, engine_service, started_claim_factory, store, monkeypatch
    ):
        """Test an exception during adjudication sets ERROR and is re-raised."""
        claim = await started_claim_factory()

        def boom(line_items):
            raise RuntimeError("rules exploded")

        monkeypatch.setattr(engine_service, "evaluate", boom)

        with pytest.raises(RuntimeError, match="rules exploded"):
            await engine_service.process_claim(claim.id, use_cache=False)

        stored = await store.get_claim(claim.id)
        assert stored.status == ClaimStatus.ERROR
        event = await store.latest_event(claim.id)
        assert event.event_type == ClaimEventType.INTERNAL_RULES_ERROR
        assert event.error_message == "rules exploded"

    async def test_unreadable_cache_entry_is_recomputed(
        self, engine_service, started_claim_factory, store, clock
    ):
        """Test a cached payload that no longer parses is treated as a miss."""
        claim = await started_claim_factory()
        key = compute_fingerprint(claim, await store.get_line_items(claim.id))
        await store.upsert_cache_entry(
            key, claim.claim_type, claim.payer_id, {"legacy": True}, now=clock()
        )

        result = await engine_service.process_claim(claim.id)

        assert result.source == "computed"
        assert result.allowed_amount == Decimal("120.80")
        assert (await store.get_claim(claim.id)).status == ClaimStatus.COMPLETE
        entry = await store.get_cache_entry(key)
        assert entry.result["allowed_amount"] == "120.80"

    async def test_simulation_sets_simulated(self, engine_service, started_claim_factory, store):
        claim = await started_claim_factory()
        result = await engine_service.process_claim(claim.id, simulate=True)

        assert result.success is True
        assert result.claim_status == ClaimStatus.SIMULATED
        assert (await store.get_claim(claim.id)).status == ClaimStatus.SIMULATED
        event = await store.latest_event(claim.id)
        assert event.event_type == ClaimEventType.INTERNAL_RULES_APPLIED
        assert event.details["outcome"] == "simulated"

    async def test_new_claim_is_refused(self, engine_service, claim_factory, store):
        """Test a claim that never entered PROCESSING is left untouched."""
        claim = await claim_factory()

        with pytest.raises(ClaimStateError):
            await engine_service.process_claim(claim.id)

        assert (await store.get_claim(claim.id)).status == ClaimStatus.NEW
        assert await store.list_events(claim.id, [ClaimEventType.INTERNAL_RULES_APPLIED]) == []

    async def test_claim_with_payer_is_refused(
        self, engine_service, gateway, started_claim_factory, store
    ):
        """Test a claim already handed to the payer cannot be finished internally."""
        claim = await started_claim_factory()
        submitted = await gateway.submit_claim(claim.id)
        gateway.scheduler.cancel(submitted.forward_id)

        with pytest.raises(ClaimStateError):
            await engine_service.process_claim(claim.id)

        assert (await store.get_claim(claim.id)).status == ClaimStatus.SUBMITTED
        forward = await store.get_forward(submitted.forward_id)
        assert forward.status == ForwardStatus.QUEUED


@pytest.mark.unit
class TestRuleResultCache:
    """Tests for cache failure handling."""

    async def test_read_failure_is_a_miss(self, clock):
        store = AsyncMock()
        store.get_cache_entry.side_effect = RuntimeError("db down")
        cache = RuleResultCache(store, max_age=timedelta(hours=1), clock=clock)

        assert await cache.get("abc") is None

    async def test_write_failure_is_skipped(self, clock):
        store = AsyncMock()
        store.upsert_cache_entry.side_effect = RuntimeError("db down")
        cache = RuleResultCache(store, max_age=timedelta(hours=1), clock=clock)

        assert await cache.put("abc", "PROFESSIONAL", "PAYER-A", {"success": True}) is False

    async def test_upsert_replaces_whole_entry(self, store, clock):
        cache = RuleResultCache(store, max_age=timedelta(hours=1), clock=clock)
        assert await cache.put("k1", "PROFESSIONAL", "PAYER-A", {"value": 1})
        assert await cache.put("k1", "PROFESSIONAL", "PAYER-A", {"other": 2})

        assert await cache.get("k1") == {"other": 2}

    async def test_fingerprint_ignores_claim_identity(self, started_claim_factory, store):
        first = await started_claim_factory()
        second = await started_claim_factory()
        assert compute_fingerprint(first, await store.get_line_items(first.id)) == (
            compute_fingerprint(second, await store.get_line_items(second.id))
        )
