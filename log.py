# =============================================================================
# log.py
# Loguru sink configuration. Library modules only import `logger` from
# loguru; the entry point calls setup_logging() once.
# =============================================================================

import sys
from pathlib import Path
from typing import Optional, Union

from loguru import logger

CONSOLE_FORMAT = (
    "<green>{time:YYYY-MM-DD HH:mm:ss}</green> | "
    "<level>{level:<8}</level> | "
    "<cyan>{name}</cyan>:<cyan>{function}</cyan>:<cyan>{line}</cyan> | "
    "<level>{message}</level>"
)

FILE_FORMAT = (
    "{time:YYYY-MM-DD HH:mm:ss} | {level:<8} | "
    "{name}:{function}:{line} | {message}"
)


def setup_logging(level: str = "INFO", log_file: Optional[Union[str, Path]] = None):
    """Replace loguru's default handler with a console sink and an optional file sink."""
    logger.remove()
    logger.add(sys.stderr, format=CONSOLE_FORMAT, level=level.upper(), colorize=True)
    if log_file:
        logger.add(
            str(log_file),
            format=FILE_FORMAT,
            level="DEBUG",
            rotation="1 day",
            retention="14 days",
        )
