"""JSON logging for the paysettle service."""
from __future__ import annotations

import logging
from typing import Optional

from pythonjsonlogger.json import JsonFormatter

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s %(message)s"

# Libraries whose INFO output would drown the settlement records.
_QUIET_LOGGERS = ("sqlalchemy.engine", "uvicorn.access", "stripe")


def setup_logging(level: str = "INFO", *, service: str = "paysettle") -> None:
    """Send every record to stderr as one JSON object.

    Values passed through ``extra=`` become top-level keys, so settlement logs can be
    filtered on ``provider``, ``event_id`` or ``outcome``.
    """

    root_logger = logging.getLogger()
    for handler in list(root_logger.handlers):
        root_logger.removeHandler(handler)
    root_logger.setLevel(level.upper())

    handler = logging.StreamHandler()
    handler.setFormatter(
        JsonFormatter(
            LOG_FORMAT,
            rename_fields={"asctime": "timestamp", "levelname": "level", "name": "logger"},
            static_fields={"service": service},
        )
    )
    root_logger.addHandler(handler)

    for name in _QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)


def get_logger(name: str, level: Optional[str] = None) -> logging.Logger:
    logger = logging.getLogger(name)
    if level is not None:
        logger.setLevel(level.upper())
    return logger


__all__ = ["LOG_FORMAT", "setup_logging", "get_logger"]
