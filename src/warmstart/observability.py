"""Structured logging setup.

Every warmstart module logs through ``structlog.get_logger(__name__)`` with
snake_case event names and key/value context. Entry points call
:func:`configure_logging` once per process, before the first invocation.
"""

import logging
from typing import Any, Optional

import structlog

from warmstart.config import LogFormat, WarmstartSettings

__all__ = ["configure_logging"]


def configure_logging(settings: Optional[WarmstartSettings] = None) -> None:
    """Configure structlog for the process."""
    settings = settings or WarmstartSettings()
    processors: list[Any] = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
    ]
    if settings.log_format is LogFormat.JSON:
        processors.extend([
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(),
        ])
    else:
        processors.append(structlog.dev.ConsoleRenderer())

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(
            getattr(logging, settings.log_level.value, logging.INFO)
        ),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )
