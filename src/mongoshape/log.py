"""Logging setup and once-only warnings."""

from __future__ import annotations

import logging
import sys
from typing import Any

LOGGER_NAME = "mongoshape"
LOG_FORMAT = "[mongoshape %(levelname)s | %(asctime)s] %(name)s: %(message)s"
DATE_FORMAT = "%H:%M:%S"

_LEVELS = {
    "error": logging.ERROR,
    "warn": logging.WARNING,
    "warning": logging.WARNING,
    "info": logging.INFO,
    "debug": logging.DEBUG,
}


def parse_level(level: str | int) -> int:
    if isinstance(level, int):
        return level
    try:
        return _LEVELS[level.lower()]
    except KeyError:
        raise ValueError(
            f"Unknown log level '{level}'; expected one of {sorted(_LEVELS)}"
        ) from None


def configure_logging(level: str | int = "info", stream: Any = None) -> logging.Logger:
    """Attach a single stream handler to the package logger."""
    logger = logging.getLogger(LOGGER_NAME)
    logger.setLevel(parse_level(level))
    for handler in list(logger.handlers):
        if getattr(handler, "_mongoshape", False):
            logger.removeHandler(handler)
    handler = logging.StreamHandler(stream or sys.stderr)
    handler.setFormatter(logging.Formatter(LOG_FORMAT, DATE_FORMAT))
    handler._mongoshape = True  # type: ignore[attr-defined]
    logger.addHandler(handler)
    return logger


class WarningRegistry:
    """Remembers which warnings an owner has already emitted."""

    def __init__(self, logger: logging.Logger) -> None:
        self._logger = logger
        self._emitted: set[str] = set()

    def warn_once(self, key: str, message: str, *args: Any) -> bool:
        if key in self._emitted:
            return False
        self._emitted.add(key)
        self._logger.warning(message, *args)
        return True

    def emitted(self, key: str) -> bool:
        return key in self._emitted
