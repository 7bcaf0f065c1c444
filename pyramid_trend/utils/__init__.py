"""Utilities Module

Components:
- Logger: Loguru configuration
"""

from .logger import setup_logger

__all__ = [
    "setup_logger",
]
