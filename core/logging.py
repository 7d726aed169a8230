"""
Logging setup for the engine.

Modules log through ``logging.getLogger(__name__)``; applications embedding the
engine call ``setup_logging`` once at startup.
"""

import logging

from .config import Settings, get_settings


def setup_logging(settings: Settings | None = None) -> None:
    """Configure the root logger from settings."""
    settings = settings or get_settings()
    level = logging.DEBUG if settings.debug else getattr(logging, settings.log_level.upper(), logging.INFO)
    logging.basicConfig(level=level, format=settings.log_format)

    # httpx logs every request at INFO; keep that out of engine logs
    logging.getLogger("httpx").setLevel(logging.WARNING)
