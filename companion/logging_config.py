"""Structured logging setup.

Production output is single-line JSON for log shipping; development output
uses the structlog console renderer.
"""
import logging
import sys
from typing import Optional

import structlog

from companion.config import get_settings


def configure_logging(level: Optional[str] = None, json_output: Optional[bool] = None) -> None:
    """
    Configure structlog and the stdlib root logger.

    Args:
        level: Log level name (defaults to settings.log_level)
        json_output: Force JSON rendering (defaults to non-development environments)
    """
    settings = get_settings()
    level_name = (level or settings.log_level).upper()
    log_level = getattr(logging, level_name, logging.INFO)

    if json_output is None:
        json_output = settings.log_json or settings.environment != "development"

    renderer = (
        structlog.processors.JSONRenderer(ensure_ascii=False)
        if json_output
        else structlog.dev.ConsoleRenderer()
    )

    logging.basicConfig(format="%(message)s", stream=sys.stdout, level=log_level)

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            renderer,
        ],
        wrapper_class=structlog.make_filtering_bound_logger(log_level),
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


def get_logger(name: str):
    """Get a structlog logger bound to a module name."""
    return structlog.get_logger(name)
