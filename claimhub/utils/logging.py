"""
Logging Configuration
Structured logging with loguru
Source: https://github.com/Delgan/loguru
Verified: 2026-10-19
"""

import logging
import sys
from pathlib import Path

from loguru import logger


class InterceptHandler(logging.Handler):
    """
    Route stdlib ``logging`` records into loguru.

    Service modules log through ``logging.getLogger(__name__)``; this handler
    makes sure those records share the loguru sinks configured below.

    Source: https://loguru.readthedocs.io/en/stable/overview.html#entirely-compatible-with-standard-logging
    """

    def emit(self, record: logging.LogRecord) -> None:
        try:
            level: str | int = logger.level(record.levelname).name
        except ValueError:
            level = record.levelno

        frame, depth = logging.currentframe(), 2
        while frame and frame.f_code.co_filename == logging.__file__:
            frame = frame.f_back
            depth += 1

        logger.opt(depth=depth, exception=record.exc_info).log(level, record.getMessage())


def setup_logging(
    level: str = "INFO",
    log_file: str | None = None,
    json_logs: bool = False,
) -> None:
    """
    Configure application logging.

    Args:
        level: Log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        log_file: Optional log file path
        json_logs: Whether to output JSON format (useful for production)
    """

    # Remove default logger
    logger.remove()

    if json_logs:
        # JSON format for production (machine-readable)
        logger.add(
            sys.stderr,
            format="{message}",
            level=level,
            serialize=True,
        )
    else:
        # Human-readable format for development
        logger.add(
            sys.stderr,
            format="<green>{time:YYYY-MM-DD HH:mm:ss}</green> | <level>{level: <8}</level> | <cyan>{name}</cyan>:<cyan>{function}</cyan>:<cyan>{line}</cyan> - <level>{message}</level>",
            level=level,
            colorize=True,
        )

    if log_file:
        log_path = Path(log_file)
        log_path.parent.mkdir(parents=True, exist_ok=True)

        logger.add(
            log_file,
            rotation="100 MB",
            retention="30 days",
            compression="zip",
            format="{time:YYYY-MM-DD HH:mm:ss} | {level: <8} | {name}:{function}:{line} - {message}",
            level=level,
            serialize=json_logs,
        )

    # Services log through the stdlib; send those records to the sinks above
    logging.basicConfig(handlers=[InterceptHandler()], level=0, force=True)

    logger.info(f"Logging configured: level={level}, json_logs={json_logs}")


def get_logger(name: str = __name__):  # type: ignore[no-untyped-def]
    """
    Get a logger instance.

    Args:
        name: Logger name (typically __name__)

    Returns:
        Configured logger instance

    Example:
        >>> from claimhub.utils.logging import get_logger
        >>> logger = get_logger(__name__)
        >>> logger.info("Gateway started")
    """
    return logger.bind(name=name)
