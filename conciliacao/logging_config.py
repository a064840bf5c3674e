"""
Logging setup: structlog rendered through the standard logging module.
"""

import logging
import sys
from typing import Optional

import structlog

from .config import get_settings


def setup_logging(log_to_file: bool = False, level: Optional[str] = None) -> None:
    """Configure logging to console and, optionally, to ``log_dir/app.log``."""
    settings = get_settings()

    handlers = [logging.StreamHandler(sys.stdout)]
    if log_to_file:
        settings.log_dir.mkdir(parents=True, exist_ok=True)
        handlers.append(
            logging.FileHandler(settings.log_dir / "app.log", encoding="utf-8")
        )

    logging.basicConfig(
        level=(level or settings.app_log_level).upper(),
        format="%(message)s",
        handlers=handlers,
        force=True,
    )

    renderer = (
        structlog.processors.JSONRenderer()
        if settings.is_production
        else structlog.dev.ConsoleRenderer(colors=False)
    )

    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.UnicodeDecoder(),
            renderer,
        ],
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )
