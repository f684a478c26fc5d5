"""API tests for claim routes.
Runs the full app against an in-memory database and a scripted payer.
"""

from __future__ import annotations

from contextlib import asynccontextmanager
from uuid import uuid4

import pytest
from fastapi.testclient import TestClient
from sqlalchemy.ext.asyncio import create_async_engine
from sqlalchemy.pool import StaticPool

from claimhub.api.main import create_app
from claimhub.core.config import ClaimsSettings
from claimhub.db.connection import build_session_maker, create_tables
from claimhub.services.container import ServiceContainer
from claimhub.services.payer_directory import PayerConnection, PayerConnectionDirectory
from tests.conftest import FakePayerAdapter

CLAIMS_URL = "/api/v1/claims/"


def _services_provider():
    @asynccontextmanager
    async def provide():
        engine = create_async_engine(
            "sqlite+aiosqlite://",
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
        )
        await create_tables(engine)
        settings = ClaimsSettings(
            _env_file=None,
            GATEWAY_DISPATCH_DELAY_SECONDS=3600.0,
            GATEWAY_STATUS_CHECK_INTERVAL_SECONDS=3600.0,
            GATEWAY_SWEEP_ENABLED=False,
        )
        directory = PayerConnectionDirectory(
            [PayerConnection(payer_id="PAYER-A", endpoint="https://payer-a.example.com/claims")]
        )
        services = ServiceContainer.build(
            build_session_maker(engine),
            settings,
            directory=directory,
            adapter=FakePayerAdapter(),
            engine=engine,
        )
        try:
            yield services
        finally:
            await services.close(drain_timeout=1.0)
            await engine.dispose()

    return provide


@pytest.fixture
def client():
    app = create_app(_services_provider())
    with TestClient(app) as test_client:
        yield test_client


def _claim_payload(**overrides) -> dict:
    payload = {
        "patient_id": "PAT-1",
        "provider_id": "PRV-1",
        "payer_id": "PAYER-A",
        "line_items": [
            {"service_code": "99213", "unit_price": "100.00", "quantity": 1},
            {"service_code": "85025", "unit_price": "25.50", "quantity": 2},
        ],
    }
    payload.update(overrides)
    return payload


def _create(client: TestClient, mode: str | None = None, **overrides):
    params = {"mode": mode} if mode else None
    return client.post(CLAIMS_URL, json=_claim_payload(**overrides), params=params)


@pytest.mark.api
class TestCreateClaim:
    """POST /api/v1/claims/"""

    def test_internal_claim_is_adjudicated(self, client):
        response = _create(client)

        assert response.status_code == 201
        body = response.json()
        assert body["status"] == "COMPLETE"
        assert body["processing_path"] == "INTERNAL"
        assert body["forward_id"] is None
        assert body["adjudication"]["allowed_amount"] == "120.80"
        assert body["adjudication"]["patient_responsibility"] == "30.20"

    def test_external_claim_is_queued(self, client):
        response = _create(client, mode="EXTERNAL")

        assert response.status_code == 201
        body = response.json()
        assert body["status"] == "SUBMITTED"
        assert body["processing_path"] == "EXTERNAL"
        assert body["forward_id"]

        forwards = client.get(f"{CLAIMS_URL}{body['claim_id']}/forwards").json()
        assert [f["status"] for f in forwards] == ["QUEUED"]
        assert forwards[0]["id"] == body["forward_id"]

    def test_lowercase_mode(self, client):
        response = _create(client, mode="external")

        assert response.status_code == 201
        assert response.json()["processing_path"] == "EXTERNAL"

    def test_simulate_only(self, client):
        response = client.post(
            CLAIMS_URL,
            json=_claim_payload(),
            params={"mode": "EXTERNAL", "simulate_only": "true"},
        )

        assert response.status_code == 201
        body = response.json()
        assert body["status"] == "SIMULATED"
        assert body["processing_path"] == "INTERNAL"
        assert body["forward_id"] is None

        events = client.get(f"{CLAIMS_URL}{body['claim_id']}/events").json()
        assert events[-1]["event_type"] == "SIMULATION_COMPLETED"

    def test_rejected_claim_is_422(self, client):
        response = _create(client, provider_id=None)

        assert response.status_code == 422
        detail = response.json()["detail"]
        assert detail["status"] == "REJECTED"
        assert "Provider is required" in detail["errors"]
        assert detail["claim_id"]

    def test_missing_payer_connection_is_422(self, client):
        response = _create(client, mode="EXTERNAL", payer_id="UNKNOWN")

        assert response.status_code == 422
        assert response.json()["detail"]["status"] == "ERROR"

    def test_invalid_body(self, client):
        response = client.post(CLAIMS_URL, json={"line_items": []})
        assert response.status_code == 422

    def test_invalid_mode(self, client):
        response = _create(client, mode="SOMEWHERE")
        assert response.status_code == 422


@pytest.mark.api
class TestClaimLookups:
    """GET endpoints for single claims and listings."""

    def test_get_claim(self, client):
        claim_id = _create(client).json()["claim_id"]

        response = client.get(f"{CLAIMS_URL}{claim_id}")

        assert response.status_code == 200
        body = response.json()
        assert body["id"] == claim_id
        assert body["total_amount"] == "151.00"
        assert [li["sequence"] for li in body["line_items"]] == [1, 2]

    def test_unknown_claim_is_404(self, client):
        assert client.get(f"{CLAIMS_URL}{uuid4()}").status_code == 404
        assert client.get(f"{CLAIMS_URL}{uuid4()}/status").status_code == 404
        assert client.get(f"{CLAIMS_URL}{uuid4()}/events").status_code == 404

    def test_events_in_order(self, client):
        claim_id = _create(client).json()["claim_id"]

        events = client.get(f"{CLAIMS_URL}{claim_id}/events").json()

        assert [e["event_type"] for e in events] == [
            "CLAIM_CREATED",
            "PROCESSING_STARTED",
            "PATH_SELECTED",
            "INTERNAL_RULES_APPLIED",
        ]
        assert [e["sequence"] for e in events] == [1, 2, 3, 4]

    def test_status_view(self, client):
        claim_id = _create(client, mode="EXTERNAL").json()["claim_id"]

        body = client.get(f"{CLAIMS_URL}{claim_id}/status").json()

        assert body["status"] == "SUBMITTED"
        assert body["derived_status"] == "SUBMITTED"
        assert body["consistent"] is True
        assert body["latest_event"]["event_type"] == "EXTERNAL_PAYER_QUEUED"
        assert body["latest_forward"]["status"] == "QUEUED"

    def test_list_with_filters(self, client):
        _create(client)
        _create(client, mode="EXTERNAL")
        _create(client, patient_id="PAT-2")

        everything = client.get(CLAIMS_URL).json()
        assert everything["total"] == 3

        submitted = client.get(CLAIMS_URL, params={"status": "SUBMITTED"}).json()
        assert submitted["total"] == 1

        by_patient = client.get(CLAIMS_URL, params={"patient_id": "PAT-2"}).json()
        assert by_patient["total"] == 1
        assert by_patient["items"][0]["patient_id"] == "PAT-2"

    def test_by_status_and_attention(self, client):
        _create(client)
        rejected_id = _create(client, provider_id=None).json()["detail"]["claim_id"]

        complete = client.get(f"{CLAIMS_URL}status/COMPLETE").json()
        assert complete["total"] == 1

        attention = client.get(f"{CLAIMS_URL}attention").json()
        assert [c["id"] for c in attention["items"]] == [rejected_id]

    def test_statistics(self, client):
        _create(client)
        _create(client, mode="EXTERNAL")

        stats = client.get(f"{CLAIMS_URL}statistics").json()

        assert stats["total_claims"] == 2
        assert stats["by_status"] == {"COMPLETE": 1, "SUBMITTED": 1}
        assert stats["by_processing_path"] == {"INTERNAL": 1, "EXTERNAL": 1}


@pytest.mark.api
class TestWorkflow:
    """Line item, cancel and resubmit endpoints."""

    def test_add_line_items_to_rejected_claim(self, client):
        claim_id = _create(client, provider_id=None).json()["detail"]["claim_id"]

        response = client.post(
            f"{CLAIMS_URL}{claim_id}/line-items",
            json={"line_items": [{"service_code": "X1", "unit_price": "10.00"}]},
        )

        assert response.status_code == 200
        assert response.json()["total_amount"] == "161.00"

    def test_add_line_items_to_complete_claim_is_409(self, client):
        claim_id = _create(client).json()["claim_id"]

        response = client.post(
            f"{CLAIMS_URL}{claim_id}/line-items",
            json={"line_items": [{"service_code": "X1", "unit_price": "10.00"}]},
        )
        assert response.status_code == 409

    def test_cancel_errored_claim(self, client):
        claim_id = _create(client, mode="EXTERNAL", payer_id="UNKNOWN").json()["detail"][
            "claim_id"
        ]

        response = client.post(f"{CLAIMS_URL}{claim_id}/cancel", json={"reason": "wrong payer"})

        assert response.status_code == 200
        assert response.json()["status"] == "CANCELED"

    def test_cancel_complete_claim_is_409(self, client):
        claim_id = _create(client).json()["claim_id"]
        assert client.post(f"{CLAIMS_URL}{claim_id}/cancel").status_code == 409

    def test_resubmit_canceled_claim(self, client):
        claim_id = _create(client, mode="EXTERNAL", payer_id="UNKNOWN").json()["detail"][
            "claim_id"
        ]
        client.post(f"{CLAIMS_URL}{claim_id}/cancel")

        response = client.post(
            f"{CLAIMS_URL}{claim_id}/resubmit", params={"mode": "INTERNAL"}
        )

        assert response.status_code == 200
        assert response.json()["status"] == "COMPLETE"

    def test_resubmit_complete_claim_is_409(self, client):
        claim_id = _create(client).json()["claim_id"]
        assert client.post(f"{CLAIMS_URL}{claim_id}/resubmit").status_code == 409

    def test_resubmit_unknown_claim_is_404(self, client):
        assert client.post(f"{CLAIMS_URL}{uuid4()}/resubmit").status_code == 404


@pytest.mark.api
class TestHealth:
    """GET /health"""

    def test_health(self, client):
        response = client.get("/health")

        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "healthy"
        assert body["checks"]["database"] == "healthy"
        assert body["payer_gateway"]["mode"] == "demo"
        assert body["payer_gateway"]["pending"] == 0

    def test_root(self, client):
        assert client.get("/").json()["docs"] in ("/docs", "disabled")
