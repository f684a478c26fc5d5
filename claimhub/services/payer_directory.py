"""
Payer Connection Directory.

Registry of per-payer forwarding parameters: endpoint, credentials,
real-time support, retry interval, retry ceiling and status-poll interval.
The registry is derived state, rebuilt from configuration at startup.
"""

import json
import logging
from collections.abc import Iterable
from pathlib import Path
from typing import Any, Optional

from pydantic import BaseModel, Field, SecretStr, model_validator

from claimhub.core.config import ClaimsSettings
from claimhub.core.enums import PayerAuthType

logger = logging.getLogger(__name__)


class PayerConnection(BaseModel):
    """Forwarding parameters for one payer."""

    payer_id: str = Field(..., min_length=1)
    name: str = ""
    endpoint: Optional[str] = Field(None, description="Claim submission URL; None means simulated")
    status_endpoint: Optional[str] = Field(
        None, description="Status URL; may contain {tracking_id} and {claim_id}"
    )
    auth_type: PayerAuthType = PayerAuthType.NONE
    username: Optional[str] = None
    password: Optional[SecretStr] = None
    token: Optional[SecretStr] = None
    api_key_name: Optional[str] = None
    api_key_value: Optional[SecretStr] = None
    supports_real_time: bool = False
    retry_interval_ms: int = Field(default=60_000, gt=0)
    max_retries: int = Field(default=3, ge=1)
    status_check_interval_ms: Optional[int] = Field(default=None, gt=0)

    @model_validator(mode="after")
    def check_credentials(self) -> "PayerConnection":
        if self.auth_type == PayerAuthType.BASIC and not (self.username and self.password):
            raise ValueError("basic auth requires username and password")
        if self.auth_type == PayerAuthType.BEARER and not self.token:
            raise ValueError("bearer auth requires token")
        if self.auth_type == PayerAuthType.API_KEY and not (
            self.api_key_name and self.api_key_value
        ):
            raise ValueError("api_key auth requires api_key_name and api_key_value")
        if not self.name:
            self.name = self.payer_id
        return self

    @property
    def is_simulated(self) -> bool:
        return not self.endpoint

    @property
    def retry_interval_seconds(self) -> float:
        return self.retry_interval_ms / 1000


class PayerConnectionDirectory:
    """In-memory payer connection registry."""

    def __init__(self, connections: Optional[Iterable[PayerConnection]] = None):
        self._connections: dict[str, PayerConnection] = {}
        for connection in connections or ():
            self.register(connection)

    def register(self, connection: PayerConnection) -> None:
        if connection.payer_id in self._connections:
            logger.info(f"Replacing payer connection {connection.payer_id}")
        self._connections[connection.payer_id] = connection

    def unregister(self, payer_id: str) -> Optional[PayerConnection]:
        return self._connections.pop(payer_id, None)

    def get(self, payer_id: str) -> Optional[PayerConnection]:
        """Connection for a payer, or None when the payer is not configured."""
        return self._connections.get(payer_id)

    def list_connections(self) -> list[PayerConnection]:
        return sorted(self._connections.values(), key=lambda c: c.payer_id)

    def __len__(self) -> int:
        return len(self._connections)

    def __contains__(self, payer_id: object) -> bool:
        return payer_id in self._connections

    @classmethod
    def from_settings(cls, settings: ClaimsSettings) -> "PayerConnectionDirectory":
        """Build the directory from CLAIMS_PAYER_CONNECTIONS and CLAIMS_PAYER_CONNECTIONS_FILE."""
        raw: list[dict[str, Any]] = list(settings.PAYER_CONNECTIONS)
        if settings.PAYER_CONNECTIONS_FILE:
            path = Path(settings.PAYER_CONNECTIONS_FILE)
            data = json.loads(path.read_text(encoding="utf-8"))
            if isinstance(data, dict):
                data = data.get("connections", [])
            raw.extend(data)

        directory = cls(PayerConnection.model_validate(item) for item in raw)
        logger.info(f"Loaded {len(directory)} payer connections")
        return directory
