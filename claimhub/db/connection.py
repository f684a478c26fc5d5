"""
Database Connection Management
Async SQLAlchemy with connection pooling
Source: https://docs.sqlalchemy.org/en/20/orm/extensions/asyncio.html
Verified: 2026-10-19
"""

from sqlalchemy import text
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.pool import NullPool

from claimhub.api.config import settings
from claimhub.models.base import Base
from claimhub.utils.logging import get_logger

logger = get_logger(__name__)


# Global engine instance
# Source: https://docs.sqlalchemy.org/en/20/core/pooling.html#pooling-plain
_engine: AsyncEngine | None = None
_async_session_maker: async_sessionmaker[AsyncSession] | None = None


def get_engine() -> AsyncEngine:
    """
    Get or create the global async engine.

    Returns:
        AsyncEngine instance
    """
    global _engine

    if _engine is None:
        logger.info(f"Creating database engine: {settings.database_url.split('@')[-1]}")

        # NullPool does not accept pool_size/max_overflow/pool_timeout parameters
        # Source: https://docs.sqlalchemy.org/en/20/core/pooling.html
        if settings.is_testing:
            _engine = create_async_engine(
                settings.database_url,
                echo=settings.DEBUG,
                poolclass=NullPool,
            )
        else:
            _engine = create_async_engine(
                settings.database_url,
                echo=settings.DEBUG,
                pool_size=settings.DB_POOL_SIZE,
                max_overflow=settings.DB_MAX_OVERFLOW,
                pool_timeout=settings.DB_POOL_TIMEOUT,
                pool_pre_ping=True,  # Verify connections before using
            )

        logger.info("Database engine created successfully")

    return _engine


def build_session_maker(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    """Session factory used by the claim store."""
    return async_sessionmaker(
        engine,
        class_=AsyncSession,
        expire_on_commit=False,  # Don't expire objects after commit
        autoflush=False,  # Manual flush control
    )


def get_session_maker() -> async_sessionmaker[AsyncSession]:
    """
    Get or create the global session maker.

    Returns:
        Async session maker
    """
    global _async_session_maker

    if _async_session_maker is None:
        _async_session_maker = build_session_maker(get_engine())
        logger.info("Session maker created successfully")

    return _async_session_maker


async def create_tables(engine: AsyncEngine | None = None) -> None:
    """
    Create all tables that do not exist yet.

    Development bootstrap only; production schemas are managed out of band.
    """
    engine = engine or get_engine()
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info("Database tables ensured")


async def close_db_connection() -> None:
    """Close database connection pool."""
    global _engine, _async_session_maker

    if _engine is not None:
        logger.info("Closing database connection pool...")
        await _engine.dispose()
        _engine = None
        _async_session_maker = None
        logger.info("Database connection pool closed")


async def check_db_connection(engine: AsyncEngine | None = None) -> bool:
    """
    Check if database connection is healthy.

    Args:
        engine: Engine to check; defaults to the global engine

    Returns:
        True if connection is healthy, False otherwise
    """
    try:
        engine = engine or get_engine()
        async with engine.connect() as conn:
            await conn.execute(text("SELECT 1"))
        return True
    except Exception as e:
        logger.error(f"Database connection check failed: {e}")
        return False
