"""Logging configuration for proccompose."""

from __future__ import annotations

import sys
from pathlib import Path

from loguru import logger

CONSOLE_FORMAT = (
    "<level>{level: <8}</level> | <cyan>{name}</cyan>:<cyan>{function}</cyan> - <level>{message}</level>"
)
FILE_FORMAT = "{time:YYYY-MM-DD HH:mm:ss.SSS} | {level: <8} | {name}:{function}:{line} - {message}"


def setup_logging(
    level: str = "INFO",
    verbose: bool = False,
    log_file: Path | None = None,
    rotation: str = "10 MB",
    retention: int = 5,
) -> None:
    """Setup logging configuration.

    Args:
        level: Minimum level for the console sink.
        verbose: Shortcut for ``level="DEBUG"``.
        log_file: Optional file sink for the orchestrator's own log.
        rotation: loguru rotation for the file sink.
        retention: Number of rotated files kept.
    """
    logger.remove()

    if verbose:
        level = "DEBUG"

    # Console logging
    logger.add(
        sys.stderr,
        format=CONSOLE_FORMAT,
        level=level.upper(),
        colorize=True,
    )

    if log_file is not None:
        log_file.parent.mkdir(parents=True, exist_ok=True)
        logger.add(
            log_file,
            format=FILE_FORMAT,
            level="DEBUG",
            rotation=rotation,
            retention=retention,
        )
