"""Logging configuration helpers."""

import logging
from logging.config import dictConfig

from .config import get_settings


def configure_logging(level: str | None = None) -> None:
    """Configure application-wide logging settings."""

    resolved_level = (level or get_settings().log_level).upper()
    if resolved_level not in logging.getLevelNamesMapping():
        resolved_level = "INFO"

    logging_config = {
        "version": 1,
        "disable_existing_loggers": False,
        "formatters": {
            "standard": {
                "format": "%(asctime)s | %(levelname)s | %(name)s | %(message)s",
            }
        },
        "handlers": {
            "console": {
                "class": "logging.StreamHandler",
                "formatter": "standard",
                "level": resolved_level,
            }
        },
        "loggers": {
            "httpx": {"level": "WARNING"},
        },
        "root": {
            "handlers": ["console"],
            "level": resolved_level,
        },
    }
    dictConfig(logging_config)
