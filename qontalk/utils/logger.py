"""Logging configuration using loguru.

- Console sink is always enabled at ``settings.log_level``
- When ``settings.log_dir`` is set, logs also go to ``<log_dir>/qontalk.log``
  (size-based rotation) and errors to ``<log_dir>/errors.log``
"""

import sys
from pathlib import Path

from loguru import logger

from qontalk.config import settings


def setup_logger():
    """Configure loguru sinks for the engine.

    Log Files (only when ``settings.log_dir`` is set):
    - qontalk.log: Main log (rotates at 50MB, keeps 30 days)
    - errors.log: Error-only log (rotates at 10MB, keeps 90 days)
    """
    # Remove default handler
    logger.remove()

    log_format = (
        "<green>{time:YYYY-MM-DD HH:mm:ss}</green> | "
        "<level>{level: <8}</level> | "
        "<cyan>{name}</cyan>:<cyan>{function}</cyan>:<cyan>{line}</cyan> | "
        "<level>{message}</level>"
    )

    logger.add(
        sys.stderr,
        format=log_format,
        level=settings.log_level,
        colorize=True,
    )

    if settings.log_dir:
        log_dir = Path(settings.log_dir)
        log_dir.mkdir(parents=True, exist_ok=True)

        logger.add(
            str(log_dir / "qontalk.log"),
            format=log_format,
            level="INFO",
            rotation="50 MB",
            retention="30 days",
            compression="zip",
            enqueue=True,
            backtrace=True,
            diagnose=True,
        )

        logger.add(
            str(log_dir / "errors.log"),
            format=log_format,
            level="ERROR",
            rotation="10 MB",
            retention="90 days",
            compression="zip",
            enqueue=True,
            backtrace=True,
            diagnose=True,
        )

    return logger


# Initialize logger
log = setup_logger()
