"""
FastAPI Main Application
Entry point for the API server
Source: https://fastapi.tiangolo.com/
"""

from collections.abc import AsyncIterator, Callable
from contextlib import AbstractAsyncContextManager, asynccontextmanager
from typing import Any

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from claimhub.api.config import settings
from claimhub.api.routes import claims, health
from claimhub.core.config import get_claims_settings
from claimhub.db.connection import (
    close_db_connection,
    create_tables,
    get_engine,
    get_session_maker,
)
from claimhub.services.container import ServiceContainer
from claimhub.utils.logging import get_logger, setup_logging

# Setup logging
setup_logging(
    level=settings.LOG_LEVEL,
    log_file=settings.LOG_FILE,
    json_logs=settings.is_production,
)

logger = get_logger(__name__)

ServicesProvider = Callable[[], AbstractAsyncContextManager[ServiceContainer]]


@asynccontextmanager
async def default_services() -> AsyncIterator[ServiceContainer]:
    """Services backed by the configured database."""
    engine = get_engine()
    if settings.DB_CREATE_TABLES:
        await create_tables(engine)

    services = ServiceContainer.build(get_session_maker(), get_claims_settings(), engine=engine)
    try:
        yield services
    finally:
        await services.close()
        await close_db_connection()
        logger.info("Database connections closed")


def create_app(services_provider: ServicesProvider = default_services) -> FastAPI:
    """
    Build the application.

    ``services_provider`` yields the service graph for the lifetime of the
    app; the gateway's recovery sweep is started once it is available.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):  # type: ignore[no-untyped-def]
        """
        Application lifespan manager.

        Source: https://fastapi.tiangolo.com/advanced/events/
        """
        # Startup
        logger.info(f"Starting application in {settings.ENVIRONMENT} mode")
        logger.info(f"Debug mode: {settings.DEBUG}")

        async with services_provider() as services:
            app.state.services = services
            if services.settings.GATEWAY_SWEEP_ENABLED:
                services.gateway.start_periodic_processing()

            yield

            # Shutdown
            logger.info("Shutting down application")

    app = FastAPI(
        title="ClaimHub API",
        description="Dual-path claims pipeline: internal rules engine and external payer forwarding",
        version=settings.APP_VERSION,
        docs_url="/docs" if not settings.is_production else None,  # Disable docs in production
        redoc_url="/redoc" if not settings.is_production else None,
        openapi_url="/openapi.json" if not settings.is_production else None,
        lifespan=lifespan,
    )

    # CORS middleware
    # Source: https://fastapi.tiangolo.com/tutorial/cors/
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.CORS_ORIGINS,
        allow_credentials=settings.CORS_CREDENTIALS,
        allow_methods=settings.CORS_METHODS,
        allow_headers=settings.CORS_HEADERS,
    )

    # Include routers
    app.include_router(health.router)
    app.include_router(claims.router)

    @app.get("/")
    async def root() -> dict[str, Any]:
        """Root endpoint with API information."""
        return {
            "name": settings.APP_NAME,
            "version": settings.APP_VERSION,
            "environment": settings.ENVIRONMENT,
            "docs": "/docs" if not settings.is_production else "disabled",
        }

    return app


app = create_app()
