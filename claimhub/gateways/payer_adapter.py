"""
Payer Adapters.

Provides:
- HttpPayerAdapter: JSON over HTTP with basic / bearer / api-key auth (httpx)
- SimulatedPayerAdapter: randomized payer for connections without an endpoint
- PayerAdapterRouter: picks the adapter per connection and integration mode
"""

import logging
import random
from datetime import datetime, timezone
from typing import Any, Optional
from uuid import uuid4

import httpx

from claimhub.core.config import ClaimsSettings
from claimhub.core.enums import PayerAuthType, TransportMethod
from claimhub.gateways.base import (
    AdapterMode,
    PayerAdapter,
    PayerConfigurationError,
    PayerResponse,
    PayerTimeoutError,
    PayerTransportError,
)
from claimhub.services.payer_directory import PayerConnection

logger = logging.getLogger(__name__)


def build_auth_headers(connection: PayerConnection) -> dict[str, str]:
    """Authentication headers for a payer connection."""
    headers: dict[str, str] = {}
    if connection.auth_type == PayerAuthType.BEARER and connection.token:
        headers["Authorization"] = f"Bearer {connection.token.get_secret_value()}"
    elif (
        connection.auth_type == PayerAuthType.API_KEY
        and connection.api_key_name
        and connection.api_key_value
    ):
        headers[connection.api_key_name] = connection.api_key_value.get_secret_value()
    return headers


class HttpPayerAdapter(PayerAdapter):
    """
    Submits claims to a payer's HTTP endpoint.

    Non-2xx responses are reported as failed PayerResponses; connection
    errors and timeouts are raised as PayerTransportError / PayerTimeoutError.
    """

    def __init__(
        self,
        timeout_seconds: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self._timeout = timeout_seconds
        self._transport = transport
        self._http_client: Optional[httpx.AsyncClient] = None

    @property
    def name(self) -> str:
        return "http"

    def _client(self) -> httpx.AsyncClient:
        if self._http_client is None:
            self._http_client = httpx.AsyncClient(
                timeout=self._timeout,
                transport=self._transport,
                headers={"Content-Type": "application/json"},
            )
        return self._http_client

    @staticmethod
    def _auth(connection: PayerConnection) -> Optional[httpx.BasicAuth]:
        if connection.auth_type == PayerAuthType.BASIC and connection.username and connection.password:
            return httpx.BasicAuth(connection.username, connection.password.get_secret_value())
        return None

    async def submit_claim(
        self, connection: PayerConnection, payload: dict[str, Any]
    ) -> PayerResponse:
        if not connection.endpoint:
            raise PayerConfigurationError(
                f"Payer {connection.payer_id} has no endpoint", payer_id=connection.payer_id
            )

        response = await self._request(
            connection,
            "POST",
            connection.endpoint,
            json=payload,
        )
        data = self._json_body(response)
        if response.is_success:
            return PayerResponse(
                success=True,
                status=str(data.get("status") or "SENT"),
                response_data=data,
            )
        return PayerResponse(
            success=False,
            status="FAILED",
            error_details={
                "status_code": response.status_code,
                "reason": response.reason_phrase,
                "data": data,
            },
        )

    async def check_status(
        self,
        connection: PayerConnection,
        claim_id: str,
        tracking_id: Optional[str],
    ) -> PayerResponse:
        url = self._status_url(connection, claim_id, tracking_id)
        response = await self._request(connection, "GET", url)
        data = self._json_body(response)
        if response.is_success:
            return PayerResponse(success=True, status=data.get("status"), response_data=data)
        return PayerResponse(
            success=False,
            status="ERROR",
            error_details={"status_code": response.status_code, "data": data},
        )

    @staticmethod
    def _status_url(
        connection: PayerConnection, claim_id: str, tracking_id: Optional[str]
    ) -> str:
        reference = tracking_id or claim_id
        if connection.status_endpoint:
            return connection.status_endpoint.format(tracking_id=reference, claim_id=claim_id)
        if not connection.endpoint:
            raise PayerConfigurationError(
                f"Payer {connection.payer_id} has no status endpoint",
                payer_id=connection.payer_id,
            )
        return f"{connection.endpoint.rstrip('/')}/{reference}"

    async def _request(
        self,
        connection: PayerConnection,
        method: str,
        url: str,
        **kwargs: Any,
    ) -> httpx.Response:
        try:
            return await self._client().request(
                method,
                url,
                headers=build_auth_headers(connection),
                auth=self._auth(connection),
                **kwargs,
            )
        except httpx.TimeoutException as e:
            raise PayerTimeoutError(
                f"Payer {connection.payer_id} request timed out",
                payer_id=connection.payer_id,
                original_error=e,
            )
        except httpx.HTTPError as e:
            raise PayerTransportError(
                f"Payer {connection.payer_id} request failed: {e}",
                payer_id=connection.payer_id,
                original_error=e,
            )

    @staticmethod
    def _json_body(response: httpx.Response) -> dict[str, Any]:
        try:
            data = response.json()
        except ValueError:
            return {"body": response.text[:1000]} if response.text else {}
        return data if isinstance(data, dict) else {"body": data}

    async def close(self) -> None:
        if self._http_client is not None:
            await self._http_client.aclose()
            self._http_client = None


class SimulatedPayerAdapter(PayerAdapter):
    """Demo payer: succeeds with a configured probability and reports random outcomes."""

    STATUS_OPTIONS = ("ACKNOWLEDGED", "IN_PROCESS", "COMPLETED", "REJECTED")

    def __init__(self, success_rate: float = 0.9, seed: Optional[int] = None):
        self._success_rate = success_rate
        self._random = random.Random(seed)

    @property
    def name(self) -> str:
        return "simulated"

    async def submit_claim(
        self, connection: PayerConnection, payload: dict[str, Any]
    ) -> PayerResponse:
        now = datetime.now(timezone.utc).isoformat()
        if self._random.random() < self._success_rate:
            return PayerResponse(
                success=True,
                status="SENT",
                response_data={
                    "acknowledgment": "SUCCESS",
                    "tracking_id": str(uuid4()),
                    "timestamp": now,
                },
            )
        return PayerResponse(
            success=False,
            status="FAILED",
            error_details={
                "error_code": "400",
                "error_message": "Simulated payer failure",
                "timestamp": now,
            },
        )

    async def check_status(
        self,
        connection: PayerConnection,
        claim_id: str,
        tracking_id: Optional[str],
    ) -> PayerResponse:
        status = self._random.choice(self.STATUS_OPTIONS)
        return PayerResponse(
            success=True,
            status=status,
            response_data={
                "status": status,
                "tracking_id": tracking_id or str(uuid4()),
                "payer_id": connection.payer_id,
                "claim_id": claim_id,
                "timestamp": datetime.now(timezone.utc).isoformat(),
            },
        )


class PayerAdapterRouter(PayerAdapter):
    """
    Routes each call to the HTTP or simulated adapter.

    Connections without an endpoint are simulated in demo mode and are a
    configuration error in live mode.
    """

    def __init__(
        self,
        http_adapter: PayerAdapter,
        simulated_adapter: PayerAdapter,
        mode: AdapterMode = AdapterMode.DEMO,
    ):
        self._http = http_adapter
        self._simulated = simulated_adapter
        self._mode = mode

    @property
    def name(self) -> str:
        return f"router:{self._mode.value}"

    @property
    def mode(self) -> AdapterMode:
        return self._mode

    def adapter_for(self, connection: PayerConnection) -> PayerAdapter:
        if not connection.is_simulated:
            return self._http
        if self._mode == AdapterMode.DEMO:
            return self._simulated
        raise PayerConfigurationError(
            f"Payer {connection.payer_id} has no endpoint configured (live mode)",
            payer_id=connection.payer_id,
        )

    def transport_method(self, connection: PayerConnection) -> TransportMethod:
        return TransportMethod.SIMULATED if connection.is_simulated else TransportMethod.API

    async def submit_claim(
        self, connection: PayerConnection, payload: dict[str, Any]
    ) -> PayerResponse:
        return await self.adapter_for(connection).submit_claim(connection, payload)

    async def check_status(
        self,
        connection: PayerConnection,
        claim_id: str,
        tracking_id: Optional[str],
    ) -> PayerResponse:
        return await self.adapter_for(connection).check_status(connection, claim_id, tracking_id)

    async def close(self) -> None:
        await self._http.close()
        await self._simulated.close()


def build_adapter_router(settings: ClaimsSettings) -> PayerAdapterRouter:
    """Adapter router configured from claims settings."""
    return PayerAdapterRouter(
        http_adapter=HttpPayerAdapter(timeout_seconds=settings.GATEWAY_HTTP_TIMEOUT_SECONDS),
        simulated_adapter=SimulatedPayerAdapter(
            success_rate=settings.SIMULATED_PAYER_SUCCESS_RATE,
            seed=settings.SIMULATED_PAYER_SEED,
        ),
        mode=AdapterMode.DEMO if settings.is_demo_mode else AdapterMode.LIVE,
    )
