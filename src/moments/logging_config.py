"""Structured logging for the achievement engine and its workers."""

import logging

import structlog

from moments.config import Settings

# Libraries that are noisy at INFO when the engine runs under arq
_QUIET_LOGGERS = ("sqlalchemy.engine", "arq.jobs", "asyncio")


def setup_logging(settings: Settings, component: str = "engine") -> None:
    """Configure structlog once per process.

    `component` is bound into every event so worker and library logs can
    be told apart after aggregation.
    """
    renderer: structlog.types.Processor = (
        structlog.processors.JSONRenderer() if settings.log_format == "json" else structlog.dev.ConsoleRenderer()
    )

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.add_log_level,
            structlog.stdlib.add_logger_name,
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            renderer,
        ],
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )
    structlog.contextvars.clear_contextvars()
    structlog.contextvars.bind_contextvars(
        component=component,
        environment=settings.environment,
        version=settings.app_version,
    )

    level = getattr(logging, settings.log_level.upper(), logging.INFO)
    logging.basicConfig(level=level, format="%(message)s")
    for name in _QUIET_LOGGERS:
        logging.getLogger(name).setLevel(max(level, logging.WARNING))
