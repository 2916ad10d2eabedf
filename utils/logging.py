"""
Structured logging setup.

structlog renders human-readable console output in development and one
JSON object per line when logging.json is enabled.
"""
from __future__ import annotations

import logging
import sys

import structlog

from config.settings import LoggingConfig, get_settings


def configure_logging(config: LoggingConfig = None) -> None:
    """Configure structlog processors and the stdlib root level."""
    config = config or get_settings().logging
    level = getattr(logging, str(config.level).upper(), logging.INFO)

    logging.basicConfig(format="%(message)s", stream=sys.stdout, level=level)

    shared_processors: list = [
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
    ]

    if config.json:
        shared_processors.append(structlog.processors.JSONRenderer())
    else:
        shared_processors.append(structlog.dev.ConsoleRenderer())

    structlog.configure(
        processors=shared_processors,
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )
