"""
Service wiring.

Builds the store, rules engine, payer gateway, tracking and claims services
from one session factory and one settings object. The API lifespan and the
recovery worker both use it.
"""

import logging
from dataclasses import dataclass
from datetime import timedelta

from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from claimhub.core.config import ClaimsSettings
from claimhub.gateways.base import PayerAdapter
from claimhub.gateways.payer_adapter import build_adapter_router
from claimhub.services.claim_store import ClaimStore
from claimhub.services.claims_service import ClaimsService
from claimhub.services.payer_directory import PayerConnectionDirectory
from claimhub.services.payer_gateway import ExternalPayerGateway
from claimhub.services.rule_cache import RuleResultCache
from claimhub.services.rules_engine import InternalRulesEngine
from claimhub.services.scheduler import TaskScheduler
from claimhub.services.tracking_service import ClaimTrackingService

logger = logging.getLogger(__name__)


@dataclass
class ServiceContainer:
    """Process-wide service graph."""

    settings: ClaimsSettings
    store: ClaimStore
    directory: PayerConnectionDirectory
    adapter: PayerAdapter
    rules_engine: InternalRulesEngine
    gateway: ExternalPayerGateway
    tracking: ClaimTrackingService
    claims: ClaimsService
    engine: AsyncEngine | None = None

    @classmethod
    def build(
        cls,
        session_maker: async_sessionmaker[AsyncSession],
        settings: ClaimsSettings,
        directory: PayerConnectionDirectory | None = None,
        adapter: PayerAdapter | None = None,
        engine: AsyncEngine | None = None,
    ) -> "ServiceContainer":
        store = ClaimStore(session_maker)
        directory = directory if directory is not None else PayerConnectionDirectory.from_settings(settings)
        adapter = adapter if adapter is not None else build_adapter_router(settings)

        rules_engine = InternalRulesEngine(
            store,
            RuleResultCache(store, max_age=timedelta(seconds=settings.RULES_CACHE_MAX_AGE_SECONDS)),
            allowed_rate=settings.ALLOWED_AMOUNT_RATE,
            cache_enabled=settings.RULES_CACHE_ENABLED,
        )
        gateway = ExternalPayerGateway(store, directory, adapter, TaskScheduler(), settings)
        tracking = ClaimTrackingService(store, stale_after=timedelta(hours=settings.TRACKING_STALE_HOURS))
        claims = ClaimsService(
            store,
            rules_engine,
            gateway,
            auto_internal_threshold=settings.AUTO_INTERNAL_THRESHOLD,
        )
        logger.info(
            f"Services ready ({settings.INTEGRATION_MODE.value} mode, {len(directory)} payer connections)"
        )
        return cls(
            settings=settings,
            store=store,
            directory=directory,
            adapter=adapter,
            rules_engine=rules_engine,
            gateway=gateway,
            tracking=tracking,
            claims=claims,
            engine=engine,
        )

    async def close(self, drain_timeout: float = 10.0) -> None:
        """Stop gateway timers, let in-flight payer calls finish and release connections."""
        await self.gateway.cleanup()
        await self.gateway.drain(timeout=drain_timeout)
        await self.adapter.close()
