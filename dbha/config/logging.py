"""
Structured logging configuration using structlog.

Every event carries the identity of the member that emitted it, so logs of
all pods of a replica group can be merged and still read as one timeline.
JSON in production, colored console output elsewhere.
"""
import logging
import sys
from typing import Any, List

import structlog
from structlog.types import EventDict, Processor

from dbha.config.settings import Settings


def add_severity_level(logger: Any, method_name: str, event_dict: EventDict) -> EventDict:
    """Add severity level for Google Cloud Logging compatibility."""
    if "level" in event_dict:
        event_dict["severity"] = event_dict["level"].upper()
    return event_dict


def _renderer(settings: Settings) -> Processor:
    if settings.is_production:
        return structlog.processors.JSONRenderer()
    return structlog.dev.ConsoleRenderer(colors=sys.stdout.isatty())


def configure_logging(settings: Settings) -> None:
    """Configure structlog and the stdlib root logger for this member."""
    processors: List[Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.processors.StackInfoRenderer(),
        add_severity_level,
        structlog.processors.format_exc_info,
        _renderer(settings),
    ]

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    # Identity of this member, attached to every event
    structlog.contextvars.clear_contextvars()
    structlog.contextvars.bind_contextvars(
        app=settings.app_name,
        version=settings.app_version,
        pod=settings.pod_name,
        cluster=settings.cluster_comp_name,
        db_type=settings.db_type,
    )

    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=getattr(logging, settings.log_level),
    )

    # Client libraries are chatty at INFO
    for noisy in ("kubernetes_asyncio", "aiohttp.access", "psycopg", "uvicorn.access"):
        logging.getLogger(noisy).setLevel(logging.WARNING)


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    """
    Get a structlog logger.

    Args:
        name: Logger name (typically __name__ of the module)
    """
    return structlog.get_logger(name)
