"""Central logging configuration.

Applies a root stdout handler so all module loggers emit INFO-level logs
without per-module setup. Keeps uvicorn loggers visible for the remote
endpoint and avoids duplicate handlers on reloads.
"""
from __future__ import annotations
import logging
from logging.config import dictConfig

_DICT_CONFIG = {
    "version": 1,
    "disable_existing_loggers": False,
    "formatters": {
        "default": {
            "format": "%(asctime)s %(levelname)s:%(name)s:%(message)s",
        }
    },
    "handlers": {
        "console": {
            "class": "logging.StreamHandler",
            "level": "INFO",
            "formatter": "default",
            "stream": "ext://sys.stdout",
        }
    },
    "root": {"level": "INFO", "handlers": ["console"]},
    "loggers": {
        "uvicorn": {"level": "INFO", "handlers": ["console"], "propagate": False},
        "uvicorn.error": {"level": "INFO", "handlers": ["console"], "propagate": False},
        "uvicorn.access": {"level": "INFO", "handlers": ["console"], "propagate": False},
        # httpx logs every request at INFO; the sync processor logs its own outcome
        "httpx": {"level": "WARNING"},
    },
}


def configure_logging(level: str | None = None) -> None:
    """Configure application-wide logging once.

    If the root logger already has handlers, return to prevent duplicate output
    (important under reloaders and pytest's log capture).
    """
    root = logging.getLogger()
    if root.handlers:
        if level:
            root.setLevel(level.upper())
        return
    dictConfig(_DICT_CONFIG)
    if level:
        root.setLevel(level.upper())
