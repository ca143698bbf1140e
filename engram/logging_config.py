"""Loguru logging setup for the CLI."""

import os
import sys

from loguru import logger


def setup_logging(level: str | None = None) -> None:
    """Replace loguru's default handler with one stderr sink at `level` (default: $LOG_LEVEL or INFO)."""
    level = (level or os.environ.get("LOG_LEVEL", "INFO")).upper()

    logger.remove()
    logger.add(
        sys.stderr,
        format="<level>{time:YYYY-MM-DD HH:mm:ss} | {name}:{function}:{line} | {message}</level>",
        level=level,
        colorize=True,
        backtrace=True,
        diagnose=True,
    )
