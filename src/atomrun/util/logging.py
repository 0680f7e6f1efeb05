from __future__ import annotations

import sys
from pathlib import Path

from loguru import logger

LOG_FORMAT = (
    "<green>{time:YYYY-MM-DD HH:mm:ss}</green> | "
    "<level>{level: <8}</level> | "
    "<cyan>{name}</cyan>:<cyan>{function}</cyan>:<cyan>{line}</cyan> | "
    "<level>{message}</level>"
)


def configure_logging(log_file: Path | None = None, *, level: str = "WARNING") -> None:
    """Replace loguru's default handler with a stderr sink and an optional run log file."""
    logger.remove()
    logger.add(sys.stderr, level=level, format=LOG_FORMAT, colorize=True)
    if log_file is not None:
        logger.add(log_file, level="DEBUG", format=LOG_FORMAT, encoding="utf-8")
