"""
Logging setup for the service.

One console handler on the root logger; the ``tollsync`` namespace follows
the configured level while SQLAlchemy and the multipart parser stay at
WARNING unless SQL echo is requested.
"""
from __future__ import annotations

from logging.config import dictConfig
from typing import Optional

LOG_FORMAT = "%(asctime)s | %(levelname)-7s | %(name)s | %(message)s"

_is_configured = False


def configure_logging(level: Optional[str] = None, sql_echo: bool = False) -> None:
    """
    Install the logging configuration once per process.

    Args:
        level: Level name for the application loggers, "INFO" when omitted
        sql_echo: Log every SQL statement issued by SQLAlchemy
    """
    global _is_configured

    if _is_configured:
        return

    app_level = (level or "INFO").upper()

    dictConfig(
        {
            "version": 1,
            "disable_existing_loggers": False,
            "formatters": {
                "standard": {"format": LOG_FORMAT, "datefmt": "%Y-%m-%d %H:%M:%S"},
            },
            "handlers": {
                "console": {"class": "logging.StreamHandler", "formatter": "standard"},
            },
            "loggers": {
                "tollsync": {"level": app_level},
                "sqlalchemy.engine": {"level": "INFO" if sql_echo else "WARNING"},
                "multipart": {"level": "WARNING"},
            },
            "root": {"handlers": ["console"], "level": app_level},
        }
    )

    _is_configured = True
