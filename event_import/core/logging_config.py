"""
Application-wide logging configuration helpers.

Every module logs through ``logging.getLogger(__name__)``; this module wires
those loggers to a single stdout handler with a shared line format.
"""
from __future__ import annotations

import logging
from logging.config import dictConfig
from typing import Optional

from event_import.core.config import settings


_is_configured = False


def configure_logging(level: Optional[str] = None) -> None:
    """
    Configure root and package loggers if they have not been configured yet.

    Args:
        level: Optional log level override (e.g., "DEBUG", "INFO").
    """
    global _is_configured

    if _is_configured:
        return

    log_level = (level or settings.log_level or "INFO").upper()

    dictConfig(
        {
            "version": 1,
            "disable_existing_loggers": False,
            "formatters": {
                "standard": {
                    "format": "%(asctime)s | %(levelname)-7s | %(name)s | %(message)s",
                    "datefmt": "%Y-%m-%d %H:%M:%S",
                }
            },
            "handlers": {
                "console": {
                    "class": "logging.StreamHandler",
                    "formatter": "standard",
                    "level": log_level,
                    "stream": "ext://sys.stdout",
                }
            },
            "root": {
                "handlers": ["console"],
                "level": log_level,
            },
        }
    )

    logging.getLogger("event_import").setLevel(log_level)
    # SQL echo stays off unless explicitly requested
    logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)

    _is_configured = True
