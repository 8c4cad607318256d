"""Loguru sink configuration shared by the API, workers and CLI."""

from __future__ import annotations

import sys
from typing import TYPE_CHECKING

from loguru import logger

if TYPE_CHECKING:
    from config import Settings

CONSOLE_FORMAT = (
    "<dim>{time:HH:mm:ss}</dim> | <level>{level: <8}</level> | "
    "<cyan>{name}</cyan> | {message}"
)
FILE_FORMAT = "{time:YYYY-MM-DD HH:mm:ss.SSS} | {level: <8} | {name}:{line} | {extra} | {message}"


def configure_logging(settings: Settings, level: str | None = None) -> None:
    """
    Replace loguru's default handler with deckforge sinks.

    Args:
        settings: Source of log_level and log_file
        level: Override for the stderr level (CLI --verbose / --quiet)
    """
    logger.remove()
    logger.add(
        sys.stderr,
        level=(level or settings.log_level).upper(),
        format=CONSOLE_FORMAT,
    )

    if settings.log_file:
        logger.add(
            settings.log_file,
            level=settings.log_level.upper(),
            format=FILE_FORMAT,
            rotation="10 MB",
            retention=5,
            enqueue=True,
        )
