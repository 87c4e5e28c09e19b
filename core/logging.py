"""
Structured logging configuration.

Uses structlog for machine-readable, context-rich logging.
Development renders colored console lines; every other environment emits
one JSON object per line. Database driver loggers share the same stream.
"""

import logging
import sys
from typing import TYPE_CHECKING, Any

import structlog
from structlog.types import Processor


if TYPE_CHECKING:
    from core.config import Settings


# Standard-library loggers of the drivers we talk to
DRIVER_LOGGERS = ("sqlalchemy.engine", "sqlalchemy.pool", "asyncpg", "clickhouse_connect")


def _resolve_level(name: str) -> int:
    level = logging.getLevelName(name.upper())
    return level if isinstance(level, int) else logging.INFO


def configure_logging(settings: "Settings") -> None:
    """
    Configure structlog and the driver loggers from settings.

    Driver loggers stay at WARNING unless ``settings.debug`` is on,
    in which case they follow ``settings.log_level``.
    """
    level = _resolve_level(settings.log_level)

    shared_processors: list[Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.StackInfoRenderer(),
        structlog.processors.TimeStamper(fmt="iso", utc=True),
    ]

    if settings.is_development:
        renderer: list[Processor] = [structlog.dev.ConsoleRenderer(colors=True)]
    else:
        renderer = [
            structlog.processors.dict_tracebacks,
            structlog.processors.JSONRenderer(),
        ]

    structlog.configure(
        processors=shared_processors + renderer,
        wrapper_class=structlog.make_filtering_bound_logger(level),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(file=sys.stdout),
        cache_logger_on_first_use=True,
    )

    logging.basicConfig(
        format="%(levelname)s %(name)s %(message)s",
        level=level,
        handlers=[logging.StreamHandler(sys.stdout)],
    )
    driver_level = level if settings.debug else max(level, logging.WARNING)
    for name in DRIVER_LOGGERS:
        logging.getLogger(name).setLevel(driver_level)


def get_logger(name: str | None = None, **initial_context: Any) -> structlog.BoundLogger:
    """
    Get a logger, optionally with bound context.

    Usage:
        logger = get_logger(__name__, backend="clickhouse")
        logger.info("Event batch saved", count=500)
    """
    logger = structlog.get_logger(name)
    if initial_context:
        logger = logger.bind(**initial_context)
    return logger
