"""
Structured logging configuration using structlog.
JSON lines outside development; a console renderer for local and test runs.
"""

import logging
import sys
from typing import cast

import structlog
from structlog.types import Processor

from membership_admin.core.config import get_settings

# Never below WARNING, whatever log_level says
_QUIET_LOGGERS = ("aiosqlite", "asyncio", "sqlalchemy.engine.Engine")


def configure_logging(level: str | None = None) -> None:
    """
    Configure structured logging for the application.

    ``level`` overrides ``settings.log_level`` (used by the test suite).
    """
    settings = get_settings()
    effective_level = level or settings.log_level

    shared_processors: list[Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.UnicodeDecoder(),
    ]

    if settings.environment in ("development", "test"):
        processors = shared_processors + [structlog.dev.ConsoleRenderer(colors=sys.stdout.isatty())]
    else:
        processors = shared_processors + [
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(),
        ]

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=getattr(logging, effective_level),
    )
    for name in _QUIET_LOGGERS:
        logging.getLogger(name).setLevel(max(logging.WARNING, logging.getLogger().level))


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    """Get a structured logger instance with the given name."""
    return cast(structlog.stdlib.BoundLogger, structlog.get_logger(name))
