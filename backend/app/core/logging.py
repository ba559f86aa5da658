"""
Structured logging setup.

All application modules log through structlog:

    logger = get_logger(__name__)
    logger.info("job_claimed", job_id=42, capability="transcription")

Events are snake_case names; context goes into keyword arguments so the
JSON renderer can index them.
"""

import logging
import sys

import structlog

from app.core.config import settings

_configured = False


def setup_logging() -> None:
    """
    Configure structlog and the stdlib root logger.

    Safe to call more than once; only the first call has an effect.
    """
    global _configured
    if _configured:
        return

    level = getattr(logging, settings.LOG_LEVEL)

    # Route stdlib loggers (uvicorn, celery, sqlalchemy, and our own modules
    # that use logging.getLogger) through the same level and stream.
    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=level,
    )

    if settings.LOG_FORMAT == "json":
        renderer = structlog.processors.JSONRenderer()
    else:
        renderer = structlog.dev.ConsoleRenderer()

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.StackInfoRenderer(),
            structlog.dev.set_exc_info,
            structlog.processors.format_exc_info,
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            renderer,
        ],
        wrapper_class=structlog.make_filtering_bound_logger(level),
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )

    _configured = True


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    """Return a structlog logger bound to the module name."""
    return structlog.get_logger(name)
