"""
Structured logging setup (structlog, JSON lines).
"""

import logging
from typing import Optional

import structlog

from checkout_engine.config import settings


def configure_logging(level: Optional[str] = None) -> None:
    """Configure structlog once for the whole engine."""
    level_name = (level or settings.LOG_LEVEL).upper()
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(
            getattr(logging, level_name, logging.INFO)
        ),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )
