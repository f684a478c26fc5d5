"""
Recovery Worker Entry Point.

Runs the payer gateway's pending-forward sweep outside the API process:
queued and retrying forwards are sent, due status checks are polled and
abandoned SENDING forwards are reclaimed. Stops gracefully on SIGINT/SIGTERM.
"""

import asyncio
import signal
import sys
from datetime import datetime, timezone

from claimhub.api.config import settings
from claimhub.core.config import get_claims_settings
from claimhub.db.connection import close_db_connection, get_engine, get_session_maker
from claimhub.services.container import ServiceContainer
from claimhub.utils.logging import get_logger, setup_logging

setup_logging(
    level=settings.LOG_LEVEL,
    log_file=settings.LOG_FILE,
    json_logs=settings.is_production,
)

logger = get_logger(__name__)

# Graceful shutdown flag
shutdown_event = asyncio.Event()

# Seconds to wait for in-flight payer calls at shutdown
DRAIN_TIMEOUT_SECONDS = 30.0


def signal_handler(sig, frame):  # type: ignore[no-untyped-def]  # noqa: ARG001
    """Handle shutdown signals."""
    logger.info(f"Received signal {sig}, initiating graceful shutdown...")
    shutdown_event.set()


async def run_sweeps(services: ServiceContainer) -> None:
    """Run the pending-forward sweep until shutdown."""
    interval = services.settings.GATEWAY_SWEEP_INTERVAL_SECONDS
    logger.info(f"Forward recovery sweep started (every {interval}s)")

    while not shutdown_event.is_set():
        try:
            scheduled = await services.gateway.process_pending_forwards()
            if scheduled:
                logger.info(f"Scheduled {len(scheduled)} forwards")
        except asyncio.CancelledError:
            break
        except Exception as e:
            logger.error(f"Forward sweep error: {e}")

        try:
            await asyncio.wait_for(shutdown_event.wait(), timeout=interval)
        except asyncio.TimeoutError:
            pass


async def health_check_reporter(services: ServiceContainer) -> None:
    """Report worker health status."""
    while not shutdown_event.is_set():
        try:
            await asyncio.sleep(30)
            logger.info(f"Worker health: OK {services.gateway.stats()}")
        except asyncio.CancelledError:
            break


async def main() -> None:
    """Main worker entry point."""
    logger.info("ClaimHub - Forward Recovery Worker")
    logger.info(f"Started at: {datetime.now(timezone.utc).isoformat()}")

    # Register signal handlers
    signal.signal(signal.SIGINT, signal_handler)
    signal.signal(signal.SIGTERM, signal_handler)

    services = ServiceContainer.build(get_session_maker(), get_claims_settings(), engine=get_engine())

    tasks = [
        asyncio.create_task(run_sweeps(services)),
        asyncio.create_task(health_check_reporter(services)),
    ]

    # Wait for shutdown signal
    await shutdown_event.wait()

    logger.info("Shutting down worker...")
    for task in tasks:
        task.cancel()
    await asyncio.gather(*tasks, return_exceptions=True)

    await services.close(drain_timeout=DRAIN_TIMEOUT_SECONDS)
    await close_db_connection()

    logger.info("Worker shutdown complete")


if __name__ == "__main__":
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        logger.info("Worker interrupted")
        sys.exit(0)
