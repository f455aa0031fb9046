"""
Apply log level from env.

Single log level for all bridge loggers, taken from EBUSD_LOG_LEVEL (name or
number), INFO if unset or unknown.
"""

from __future__ import annotations

import logging
import os

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


def _parse_level(raw: str) -> int:
    if not raw or not str(raw).strip():
        return logging.INFO
    raw = str(raw).strip().upper()
    if raw.isdigit():
        return int(raw)
    return int(getattr(logging, raw, logging.INFO))


def level_from_env() -> int:
    return _parse_level(os.environ.get("EBUSD_LOG_LEVEL", ""))


def apply_log_level(level: int) -> None:
    """Set root logger level so all loggers (bridge and paho) use this level."""
    logging.getLogger().setLevel(level)


def configure_logging() -> None:
    logging.basicConfig(level=logging.INFO, format=LOG_FORMAT)
    apply_log_level(level_from_env())
