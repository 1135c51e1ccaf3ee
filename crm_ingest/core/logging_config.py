"""
Logging setup for the API process and its import worker threads.

Every module logs through ``logging.getLogger(__name__)``. Lines carry the
thread name, so rows logged by ``bulk-import_N`` pool threads can be told
apart from request handlers.
"""
from __future__ import annotations

import logging
from logging.config import dictConfig
from typing import Optional

LOG_FORMAT = "%(asctime)s | %(levelname)-7s | %(threadName)s | %(name)s | %(message)s"

_is_configured = False


def configure_logging(level: Optional[str] = None, sql_echo: bool = False) -> bool:
    """
    Install the console handler and logger levels once per process.

    Args:
        level: Level for the root and ``crm_ingest`` loggers (default "INFO").
        sql_echo: Log every statement from ``sqlalchemy.engine``; otherwise
            only its warnings come through.

    Returns:
        True if this call configured logging, False if it was already done.
    """
    global _is_configured

    if _is_configured:
        return False

    log_level = (level or "INFO").upper()

    dictConfig(
        {
            "version": 1,
            "disable_existing_loggers": False,
            "formatters": {
                "standard": {"format": LOG_FORMAT, "datefmt": "%Y-%m-%d %H:%M:%S"},
            },
            "handlers": {
                "console": {
                    "class": "logging.StreamHandler",
                    "formatter": "standard",
                    "level": log_level,
                }
            },
            "loggers": {
                "crm_ingest": {"level": log_level},
                "sqlalchemy.engine": {"level": "INFO" if sql_echo else "WARNING"},
            },
            "root": {"handlers": ["console"], "level": log_level},
        }
    )

    _is_configured = True
    return True
