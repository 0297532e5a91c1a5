"""
Application-wide logging configuration helpers.

All modules log through ``logging.getLogger(__name__)``; this module wires the
root handler once so import pipeline messages share one stdout format.
"""
from __future__ import annotations

import logging
import time
from logging.config import dictConfig
from typing import Optional


_is_configured = False


class UTCFormatter(logging.Formatter):
    """Formatter that renders timestamps in UTC instead of server local time."""

    converter = time.gmtime


def configure_logging(level: Optional[str] = None, timezone: str = "local") -> None:
    """
    Configure root and application loggers if they have not been configured yet.

    Args:
        level: Optional log level override (e.g., "DEBUG", "INFO").
        timezone: "local" keeps server time, "UTC" renders timestamps in UTC.
    """
    global _is_configured

    if _is_configured:
        return

    log_level = (level or "INFO").upper()
    line_format = "%(asctime)s | %(levelname)-7s | %(name)s | %(message)s"
    date_format = "%Y-%m-%d %H:%M:%S"
    if timezone.upper() == "UTC":
        formatter = {"()": UTCFormatter, "fmt": line_format, "datefmt": date_format}
    else:
        formatter = {"format": line_format, "datefmt": date_format}

    dictConfig(
        {
            "version": 1,
            "disable_existing_loggers": False,
            "formatters": {"standard": formatter},
            "handlers": {
                "console": {
                    "class": "logging.StreamHandler",
                    "formatter": "standard",
                    "level": log_level,
                }
            },
            "root": {
                "handlers": ["console"],
                "level": log_level,
            },
        }
    )

    logging.getLogger("app").setLevel(log_level)
    # The advisor HTTP client logs every request at INFO.
    logging.getLogger("httpx").setLevel(logging.WARNING)

    _is_configured = True
