"""
Pytest Configuration and Fixtures.
Shared test fixtures for all test modules.
"""

from collections.abc import Callable
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Any, Optional, Union

import pytest
from sqlalchemy.ext.asyncio import create_async_engine
from sqlalchemy.pool import StaticPool

from claimhub.core.config import ClaimsSettings
from claimhub.core.enums import ClaimEventType, ClaimStatus
from claimhub.db.connection import build_session_maker, create_tables
from claimhub.gateways.base import PayerAdapter, PayerResponse
from claimhub.models.base import utcnow
from claimhub.schemas.claim import ClaimCreate, ClaimLineItemCreate
from claimhub.services.claim_store import ClaimStore
from claimhub.services.payer_directory import PayerConnection, PayerConnectionDirectory
from claimhub.services.payer_gateway import ExternalPayerGateway
from claimhub.services.scheduler import TaskScheduler


class MutableClock:
    """Test clock that only moves when told to."""

    def __init__(self, start: Optional[datetime] = None):
        self.now = start or utcnow()

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> datetime:
        self.now = self.now + timedelta(seconds=seconds)
        return self.now


class FakePayerAdapter(PayerAdapter):
    """
    Scripted payer.

    ``submit_results`` and ``status_results`` are consumed in order; an
    Exception entry is raised instead of returned. When a script runs out
    the last entry is repeated.
    """

    def __init__(
        self,
        submit_results: Optional[list[Union[PayerResponse, Exception]]] = None,
        status_results: Optional[list[Union[PayerResponse, Exception]]] = None,
    ):
        self.submit_results = list(submit_results or [sent_response()])
        self.status_results = list(status_results or [status_response("IN_PROCESS")])
        self.submitted: list[dict[str, Any]] = []
        self.status_checks: list[tuple[str, Optional[str]]] = []

    @property
    def name(self) -> str:
        return "fake"

    @staticmethod
    def _next(script: list[Union[PayerResponse, Exception]]) -> PayerResponse:
        item = script.pop(0) if len(script) > 1 else script[0]
        if isinstance(item, Exception):
            raise item
        return item

    async def submit_claim(self, connection, payload):  # type: ignore[no-untyped-def]
        self.submitted.append(payload)
        return self._next(self.submit_results)

    async def check_status(self, connection, claim_id, tracking_id):  # type: ignore[no-untyped-def]
        self.status_checks.append((claim_id, tracking_id))
        return self._next(self.status_results)


def sent_response(tracking_id: str = "TRK-1", status: str = "SENT") -> PayerResponse:
    return PayerResponse(
        success=True,
        status=status,
        response_data={"acknowledgment": "SUCCESS", "tracking_id": tracking_id},
    )


def failed_response(message: str = "Payer unavailable") -> PayerResponse:
    return PayerResponse(
        success=False,
        status="FAILED",
        error_details={"error_code": "503", "error_message": message},
    )


def status_response(status: str) -> PayerResponse:
    return PayerResponse(success=True, status=status, response_data={"status": status})


def make_claim_data(
    *,
    payer_id: str = "PAYER-A",
    patient_id: Optional[str] = "PAT-1",
    provider_id: Optional[str] = "PRV-1",
    lines: Optional[list[tuple[str, str, int]]] = None,
) -> ClaimCreate:
    """Claim payload; ``lines`` are (service_code, unit_price, quantity)."""
    if lines is None:
        lines = [("99213", "100.00", 1), ("85025", "25.50", 2)]
    return ClaimCreate(
        patient_id=patient_id,
        provider_id=provider_id,
        payer_id=payer_id,
        line_items=[
            ClaimLineItemCreate(service_code=code, unit_price=Decimal(price), quantity=qty)
            for code, price, qty in lines
        ],
    )


@pytest.fixture
async def engine():
    """In-memory SQLite database shared by every session of one test."""
    engine = create_async_engine(
        "sqlite+aiosqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    await create_tables(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_maker(engine):
    return build_session_maker(engine)


@pytest.fixture
def store(session_maker) -> ClaimStore:
    return ClaimStore(session_maker)


@pytest.fixture
def clock() -> MutableClock:
    return MutableClock()


@pytest.fixture
def claims_settings() -> ClaimsSettings:
    """Settings with timers long enough that nothing fires on its own during a test."""
    return ClaimsSettings(
        _env_file=None,
        GATEWAY_DISPATCH_DELAY_SECONDS=3600.0,
        GATEWAY_STATUS_CHECK_INTERVAL_SECONDS=3600.0,
        GATEWAY_SWEEP_ENABLED=False,
        GATEWAY_STALE_SENDING_SECONDS=600.0,
        PAYER_CONNECTIONS=[],
    )


@pytest.fixture
def payer_connection() -> PayerConnection:
    return PayerConnection(
        payer_id="PAYER-A",
        name="Payer A",
        endpoint="https://payer-a.example.com/claims",
        retry_interval_ms=60_000,
        max_retries=3,
    )


@pytest.fixture
def directory(payer_connection) -> PayerConnectionDirectory:
    return PayerConnectionDirectory([payer_connection])


@pytest.fixture
def fake_adapter() -> FakePayerAdapter:
    return FakePayerAdapter()


@pytest.fixture
async def gateway(store, directory, fake_adapter, claims_settings, clock):
    gateway = ExternalPayerGateway(
        store,
        directory,
        fake_adapter,
        TaskScheduler(),
        claims_settings,
        clock=clock,
    )
    yield gateway
    await gateway.cleanup()
    await gateway.drain(timeout=1.0)


@pytest.fixture
def claim_factory(store) -> Callable[..., Any]:
    """Create a claim through the store and return it."""

    async def _create(**kwargs: Any):  # type: ignore[no-untyped-def]
        return await store.create_claim(make_claim_data(**kwargs))

    return _create


@pytest.fixture
def started_claim_factory(store, claim_factory) -> Callable[..., Any]:
    """Create a claim and move it to PROCESSING, as ingestion does before routing."""

    async def _create(**kwargs: Any):  # type: ignore[no-untyped-def]
        claim = await claim_factory(**kwargs)
        await store.set_claim_status(
            claim.id, ClaimStatus.PROCESSING, ClaimEventType.PROCESSING_STARTED
        )
        return await store.get_claim(claim.id)

    return _create


# Configure pytest markers
def pytest_configure(config):
    """Configure pytest markers."""
    config.addinivalue_line(
        "markers", "unit: mark test as a unit test"
    )
    config.addinivalue_line(
        "markers", "integration: mark test as an integration test"
    )
    config.addinivalue_line(
        "markers", "api: mark test as an API test"
    )
    config.addinivalue_line(
        "markers", "slow: mark test as slow running"
    )
