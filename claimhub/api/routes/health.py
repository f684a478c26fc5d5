"""
Health Check Routes
Service health monitoring endpoints
Source: https://microservices.io/patterns/observability/health-check-api.html
"""

from typing import Any

from fastapi import APIRouter, Depends

from claimhub.api.config import settings
from claimhub.api.deps import get_container
from claimhub.core.enums import ProviderStatus
from claimhub.db.connection import check_db_connection
from claimhub.services.container import ServiceContainer
from claimhub.utils.logging import get_logger

logger = get_logger(__name__)

router = APIRouter(tags=["Health"])


@router.get("/health")
async def health_check(
    services: ServiceContainer = Depends(get_container),
) -> dict[str, Any]:
    """
    Health check with database status and payer gateway scheduler stats.

    The service is degraded, not down, when the periodic sweep is not
    running: timers still fire but lost work is not recovered.
    """
    db_healthy = await check_db_connection(services.engine)
    gateway_stats = services.gateway.stats()

    if not db_healthy:
        overall = ProviderStatus.UNHEALTHY
    elif services.settings.GATEWAY_SWEEP_ENABLED and not gateway_stats["periodic_running"]:
        overall = ProviderStatus.DEGRADED
    else:
        overall = ProviderStatus.HEALTHY

    if overall != ProviderStatus.HEALTHY:
        logger.warning(f"Health check: {overall.value}")

    return {
        "status": overall.value,
        "service": settings.APP_NAME,
        "version": settings.APP_VERSION,
        "checks": {
            "database": (ProviderStatus.HEALTHY if db_healthy else ProviderStatus.UNHEALTHY).value,
        },
        "payer_gateway": {
            "mode": services.settings.INTEGRATION_MODE.value,
            **gateway_stats,
        },
    }
