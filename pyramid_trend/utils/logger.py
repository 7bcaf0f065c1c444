"""Loguru Logger Configuration
==============================

Configures logging with:
- Console output with colors
- File rotation
- JSON format option
- Level filtering

Author: PyramidTrend Team
"""
import sys
from pathlib import Path
from loguru import logger
from typing import Optional


def setup_logger(
    log_level: str = "INFO",
    log_file: Optional[str] = None,
    rotation: str = "10 MB",
    retention: str = "7 days",
    json_format: bool = False,
    console: bool = True
):
    """Setup loguru logger

    Args:
        log_level: Minimum log level
        log_file: Path to log file (None = no file logging)
        rotation: When to rotate (size or time)
        retention: How long to keep old logs
        json_format: Use loguru's serialized JSON records for the file sink
        console: Enable console output
    """
    logger.remove()

    console_format = (
        "<green>{time:YYYY-MM-DD HH:mm:ss}</green> | "
        "<level>{level: <8}</level> | "
        "<cyan>{extra[symbol]}</cyan> | "
        "<cyan>{name}</cyan>:<cyan>{function}</cyan>:<cyan>{line}</cyan> | "
        "<level>{message}</level>"
    )

    file_format = (
        "{time:YYYY-MM-DD HH:mm:ss.SSS} | "
        "{level: <8} | "
        "{extra[symbol]} | "
        "{name}:{function}:{line} | "
        "{message}"
    )

    # Records logged without a bound symbol still format cleanly
    logger.configure(extra={"symbol": "-"})

    if console:
        logger.add(
            sys.stderr,
            format=console_format,
            level=log_level,
            colorize=True,
            backtrace=True,
            diagnose=True
        )

    if log_file:
        log_path = Path(log_file)
        log_path.parent.mkdir(parents=True, exist_ok=True)

        logger.add(
            str(log_path),
            format=file_format,
            level=log_level,
            rotation=rotation,
            retention=retention,
            compression="gz",
            serialize=json_format,
            enqueue=True,  # Thread-safe
            backtrace=True,
            diagnose=True
        )

    logger.info(f"Logger configured: level={log_level}, file={log_file}")
