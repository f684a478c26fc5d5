"""
Base Payer Gateway Types.

Provides:
- Payer error hierarchy (configuration vs transport)
- PayerResponse result wrapper
- PayerAdapter abstract transport interface

Configuration errors are never retried; transport errors and any other
exception raised by an adapter go down the retry path.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Any, Optional

if TYPE_CHECKING:
    from claimhub.services.payer_directory import PayerConnection


class AdapterMode(str, Enum):
    """Adapter operating mode."""

    DEMO = "demo"
    LIVE = "live"


class PayerGatewayError(Exception):
    """Base exception for payer gateway errors."""

    retryable: bool = True

    def __init__(
        self,
        message: str,
        payer_id: Optional[str] = None,
        original_error: Optional[Exception] = None,
    ):
        super().__init__(message)
        self.payer_id = payer_id
        self.original_error = original_error


class PayerConfigurationError(PayerGatewayError):
    """Raised when no usable payer connection is registered. Never retried."""

    retryable = False


class PayerTransportError(PayerGatewayError):
    """Raised on network failures and non-success payer responses."""

    pass


class PayerTimeoutError(PayerTransportError):
    """Raised when a payer request times out."""

    pass


@dataclass
class PayerResponse:
    """Result of one payer call."""

    success: bool
    status: Optional[str] = None
    response_data: dict[str, Any] = field(default_factory=dict)
    error_details: dict[str, Any] = field(default_factory=dict)

    @property
    def tracking_id(self) -> Optional[str]:
        value = self.response_data.get("tracking_id") or self.response_data.get("trackingId")
        return str(value) if value else None


class PayerAdapter(ABC):
    """
    Transport to one kind of payer system.

    Adapters report ordinary failures through ``PayerResponse(success=False)``
    and may raise PayerGatewayError subclasses; the gateway treats both the
    same way.
    """

    @property
    @abstractmethod
    def name(self) -> str:
        """Adapter name for logs and forward records."""
        pass

    @abstractmethod
    async def submit_claim(
        self, connection: "PayerConnection", payload: dict[str, Any]
    ) -> PayerResponse:
        """Deliver a claim payload to the payer."""
        pass

    @abstractmethod
    async def check_status(
        self,
        connection: "PayerConnection",
        claim_id: str,
        tracking_id: Optional[str],
    ) -> PayerResponse:
        """Ask the payer for the outcome of a previously sent claim."""
        pass

    async def close(self) -> None:
        """Release transport resources."""
        return None
