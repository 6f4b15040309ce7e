"""Utility functions for ai-database."""

import sys
from pathlib import Path

from loguru import logger

from ai_database.config import AIDatabaseConfig


def setup_logging(
    log_level: str | None = None,
    log_file: str | Path | None = None,
    console: bool = True,
) -> None:
    """Configure loguru sinks.

    Args:
        log_level: Minimum level for every sink; defaults to AIDatabaseConfig().log_level
        log_file: Optional file to write rotated logs to
        console: Whether to log to stderr
    """
    log_level = (log_level or AIDatabaseConfig().log_level).upper()
    logger.remove()

    if console:
        logger.add(sys.stderr, level=log_level, backtrace=True, diagnose=False, colorize=True)

    if log_file:
        log_path = Path(log_file).expanduser()
        log_path.parent.mkdir(parents=True, exist_ok=True)
        logger.add(
            str(log_path),
            level=log_level,
            rotation="10 MB",
            retention="10 days",
            backtrace=True,
            diagnose=False,
            enqueue=True,
        )

    logger.info(f"Logging configured: level={log_level}, file={log_file}")
