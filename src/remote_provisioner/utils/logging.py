"""Logging helpers."""

from __future__ import annotations

import logging
import os
from typing import Optional

_LOGGING_CONFIGURED = False


def get_logger(name: Optional[str] = None) -> logging.Logger:
    global _LOGGING_CONFIGURED
    if not _LOGGING_CONFIGURED:
        logging.basicConfig(
            level=os.getenv("REMOTE_PROVISIONER_LOG_LEVEL", "INFO").upper(),
            format="[%(asctime)s] %(levelname)s %(name)s - %(message)s",
        )
        _LOGGING_CONFIGURED = True
    return logging.getLogger(name)


def set_level(level: str) -> None:
    """Adjust the root level after the first `get_logger` call (CLI --log-level)."""
    get_logger().setLevel(getattr(logging, level.upper(), logging.INFO))
