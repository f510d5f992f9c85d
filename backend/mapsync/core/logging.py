"""Loguru sink configuration shared by the service and the sync engine."""

from __future__ import annotations

import sys
from typing import TYPE_CHECKING

from loguru import logger

if TYPE_CHECKING:
    from mapsync.core import config

LOG_FORMAT = (
    "<green>{time:YYYY-MM-DD HH:mm:ss.SSS}</green> | "
    "<level>{level: <8}</level> | "
    "<cyan>{name}</cyan>:<cyan>{function}</cyan> - <level>{message}</level>"
)


def configure_logging(settings: config.Settings) -> int:
    """Replace the default loguru sink with one at the configured level.

    Args:
        settings: Application settings providing ``log_level``.

    Returns:
        The loguru handler id of the installed stderr sink.
    """
    logger.remove()
    return logger.add(
        sys.stderr,
        level=settings.log_level.upper(),
        format=LOG_FORMAT,
    )
