"""Logger setup shared by the web layer and the live client."""

from __future__ import annotations

import logging
import os
import sys
from typing import Optional

_FMT = "%(asctime)s %(levelname)s %(name)s: %(message)s"
_DATEFMT = "%Y-%m-%d %H:%M:%S"

# names handed out by get_logger, so set_level can reach them later
_CONFIGURED: set = set()
_LEVEL_OVERRIDE: Optional[int] = None


def _parse_level(raw: Optional[str]) -> int:
    lvl = getattr(logging, (raw or "INFO").strip().upper(), logging.INFO)
    if not isinstance(lvl, int):
        lvl = logging.INFO
    return lvl


def get_logger(name: str, level: Optional[str] = None) -> logging.Logger:
    """Return a stdout logger configured once per name."""
    log = logging.getLogger(name)
    if log.handlers:
        return log
    handler = logging.StreamHandler(stream=sys.stdout)
    handler.setFormatter(logging.Formatter(fmt=_FMT, datefmt=_DATEFMT))
    if level is None and _LEVEL_OVERRIDE is not None:
        log.setLevel(_LEVEL_OVERRIDE)
    else:
        log.setLevel(_parse_level(
            level
            or os.getenv("TRADEWATCH_LOG_LEVEL")
            or os.getenv("LOG_LEVEL")
        ))
    handler.setLevel(logging.NOTSET)
    log.addHandler(handler)
    log.propagate = False
    _CONFIGURED.add(name)
    return log


def set_level(level: str) -> int:
    """Apply ``level`` to every logger from get_logger, now and later."""
    global _LEVEL_OVERRIDE
    lvl = _parse_level(level)
    _LEVEL_OVERRIDE = lvl
    for name in _CONFIGURED:
        logging.getLogger(name).setLevel(lvl)
    return lvl


class ViewLoggerAdapter(logging.LoggerAdapter):
    """Adapter that prefixes live-client logs with the view label."""

    def __init__(self, logger: logging.Logger, view_label: str):
        super().__init__(logger, {"view_label": view_label})
        self._view_label = view_label

    def process(self, msg, kwargs):
        return f"[{self._view_label}] {msg}", kwargs
