"""Loguru sink setup for the engine."""

from __future__ import annotations

import sys
from typing import Optional

from loguru import logger

from .config import config


def configure_logging(level: Optional[str] = None, sink=sys.stderr) -> int:
    """
    Replace loguru's default handler with the engine's stderr sink.

    Args:
        level: Minimum level (defaults to config.logging.log_level)
        sink: Where log lines go (stderr unless overridden)

    Returns:
        Handler id, usable with logger.remove()
    """
    logger.remove()
    return logger.add(
        sink,
        level=(level or config.logging.log_level).upper(),
        format=config.logging.log_format,
    )
