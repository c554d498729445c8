"""JSON structured logging configuration."""
from __future__ import annotations

import logging
import sys

from pythonjsonlogger.json import JsonFormatter

from tweetcache.config import Settings, settings as default_settings


def setup_logging(config: Settings | None = None) -> None:
    """Route every record through one JSON handler on stdout.

    ``extra={"step": ...}`` on a call lands as a top-level field, and each
    line carries the service name so API and worker output can share a sink.
    """
    config = config or default_settings
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(
        JsonFormatter(
            fmt="%(asctime)s %(levelname)s %(name)s %(message)s",
            rename_fields={"asctime": "timestamp", "levelname": "level", "name": "logger"},
            static_fields={"service": config.LOG_SERVICE_NAME},
        )
    )

    root = logging.getLogger()
    root.handlers.clear()
    root.addHandler(handler)
    root.setLevel(config.APP_LOG_LEVEL.upper())

    for name, level in config.LOG_QUIET_LOGGERS.items():
        logging.getLogger(name).setLevel(level.upper())
