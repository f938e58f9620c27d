"""Environment helper utilities."""

from __future__ import annotations

import logging
import os


_FALSE_VALUES = {"0", "false", "no", "off"}


def get_bool_env(name: str, *, default: bool = False) -> bool:
    """Return True/False for an environment flag."""
    raw = os.getenv(name)
    if raw is None:
        return default
    value = raw.strip().lower()
    if not value:
        return default
    return value not in _FALSE_VALUES


def get_log_level_env(name: str, *, default: int = logging.INFO) -> int:
    """Read a level name (``DEBUG``) or number (``10``) from the environment."""
    raw = (os.getenv(name) or "").strip()
    if not raw:
        return default
    if raw.isdigit():
        return int(raw)
    level = logging.getLevelName(raw.upper())
    return level if isinstance(level, int) else default
