"""Logging configuration for shelfsync."""

import sys
from pathlib import Path

from loguru import logger

LOG_FILENAME = "shelfsync.log"
FILE_FORMAT = "{time:YYYY-MM-DD HH:mm:ss.SSS} | {level: <8} | {name}:{line} | {message}"


def configure_logging(*, verbose: bool = False, log_dir: Path | None = None) -> None:
    """Configure loguru: terse console output, plus a debug log file in ``log_dir``.

    The file keeps the sync history (state transitions, replays, conflicts)
    that the console only shows with ``--verbose``.
    """
    logger.remove()
    level = "DEBUG" if verbose else "INFO"
    logger.add(sys.stderr, level=level, format="{level.icon} {message}")
    if log_dir is not None:
        logger.add(
            log_dir / LOG_FILENAME,
            level="DEBUG",
            format=FILE_FORMAT,
            rotation="1 MB",
            retention=3,
        )
