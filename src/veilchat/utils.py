"""
VeilChat - Utility functions.

Provides logging setup and timestamp helpers shared by the core modules.
"""

import logging
from datetime import datetime, timezone
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Optional

from .config import Config
from .constants import (
    LOG_BACKUP_COUNT,
    LOG_DATE_FORMAT,
    LOG_FILENAME,
    LOG_FORMAT,
    LOG_MAX_BYTES,
    LOGS_DIR,
)

logger = logging.getLogger(__name__)


def utc_now() -> str:
    """Return the current UTC time as an ISO 8601 string."""
    return datetime.now(timezone.utc).isoformat()


def format_timestamp(iso_timestamp: str, format_str: str = "%Y-%m-%d %H:%M:%S") -> str:
    """
    Format an ISO timestamp to a human-readable string.

    Args:
        iso_timestamp: ISO 8601 timestamp string
        format_str: strftime format string

    Returns:
        Formatted timestamp string, or original if parsing fails
    """
    try:
        dt = datetime.fromisoformat(iso_timestamp.replace("Z", "+00:00"))
        return dt.strftime(format_str)
    except (ValueError, TypeError, AttributeError) as e:
        logger.debug(f"Failed to parse timestamp '{iso_timestamp}': {e}")
        return iso_timestamp


def setup_logging(config: Config, data_dir: Optional[Path] = None) -> logging.Logger:
    """
    Configure the ``veilchat`` logger from the ``[logging]`` config section.

    Console output goes to stderr; file output rotates under
    ``<data_dir>/logs``. Calling this twice replaces the previous handlers.

    Args:
        config: Loaded configuration
        data_dir: Overrides the configured data directory (optional)

    Returns:
        The configured package logger
    """
    package_logger = logging.getLogger("veilchat")

    level_name = str(config.get("logging", "level", "INFO")).upper()
    level = getattr(logging, level_name, logging.INFO)
    package_logger.setLevel(level)

    for handler in list(package_logger.handlers):
        package_logger.removeHandler(handler)
        handler.close()

    formatter = logging.Formatter(LOG_FORMAT, datefmt=LOG_DATE_FORMAT)

    if config.get("logging", "console_logging", True):
        console = logging.StreamHandler()
        console.setFormatter(formatter)
        package_logger.addHandler(console)

    if config.get("logging", "file_logging", False):
        logs_dir = (data_dir or config.data_dir) / LOGS_DIR
        logs_dir.mkdir(parents=True, exist_ok=True)
        file_handler = RotatingFileHandler(
            logs_dir / LOG_FILENAME,
            maxBytes=LOG_MAX_BYTES,
            backupCount=LOG_BACKUP_COUNT,
            encoding="utf-8",
        )
        file_handler.setFormatter(formatter)
        package_logger.addHandler(file_handler)

    return package_logger
