"""
Payer gateway transport layer.
"""

from claimhub.gateways.base import (
    AdapterMode,
    PayerAdapter,
    PayerConfigurationError,
    PayerGatewayError,
    PayerResponse,
    PayerTimeoutError,
    PayerTransportError,
)
from claimhub.gateways.payer_adapter import (
    HttpPayerAdapter,
    PayerAdapterRouter,
    SimulatedPayerAdapter,
    build_adapter_router,
)

__all__ = [
    "AdapterMode",
    "PayerAdapter",
    "PayerConfigurationError",
    "PayerGatewayError",
    "PayerResponse",
    "PayerTimeoutError",
    "PayerTransportError",
    "HttpPayerAdapter",
    "PayerAdapterRouter",
    "SimulatedPayerAdapter",
    "build_adapter_router",
]
