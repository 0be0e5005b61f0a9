"""Structured Logging Configuration.

This module configures structlog with JSON output and context binding.
Outputs JSON format for production log aggregation.

Configuration:
- JSON output format (one object per line on stdout)
- Context binding support (channel_id, destination_id, generation)
- Log levels: DEBUG, INFO, WARNING, ERROR, CRITICAL

Usage:
    from streamcore.utils.logging import configure_logging, get_logger

    configure_logging()  # once, at process start
    log = get_logger(__name__)
    log.info("playout_started", channel_id="abc", items=12)
"""

import logging
import sys

import structlog

from streamcore.config import get_log_level


def configure_logging(level: str | None = None) -> None:
    """Configure structlog processors and the stdlib root handler.

    Args:
        level: Log level name. Defaults to LOG_LEVEL from the environment.
    """
    level_name = (level or get_log_level()).upper()
    numeric_level = logging.getLevelName(level_name)
    if not isinstance(numeric_level, int):
        numeric_level = logging.INFO

    logging.basicConfig(format="%(message)s", stream=sys.stdout, level=numeric_level)

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(numeric_level),
        logger_factory=structlog.PrintLoggerFactory(file=sys.stdout),
        cache_logger_on_first_use=True,
    )


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    """Get a structured logger instance for the given module.

    Args:
        name: Module name (typically __name__)

    Returns:
        structlog logger bound to the module name
    """
    return structlog.get_logger(name)
