"""
Category-aware logging utility for livefeed

Provides logging functionality with category filtering and log level control.
Logs can be filtered by category (resolver, connection, events, diagnostics, system)
and log level (DEBUG, INFO, WARN, ERROR).

Usage:
    from livefeed.utils.logging import get_logger

    logger = get_logger(__name__, category='resolver')
    logger.info('Room ID resolved')
"""

import logging
from typing import Optional

from livefeed.config import settings


LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"

# Log level hierarchy (lower number = more verbose)
LOG_LEVELS = {
    "DEBUG": logging.DEBUG,
    "INFO": logging.INFO,
    "WARN": logging.WARNING,
    "WARNING": logging.WARNING,
    "ERROR": logging.ERROR,
    "CRITICAL": logging.CRITICAL,
}

# Third-party loggers that are too chatty at INFO
NOISY_LOGGERS = ("httpx", "httpcore", "websockets")


def _parse_categories(raw: Optional[str]) -> Optional[list]:
    if not raw:
        return None
    return [cat.strip().lower() for cat in raw.split(",") if cat.strip()]


# If not set, show all categories (default behavior)
_allowed_categories = _parse_categories(settings.log_categories)


class CategoryFilter(logging.Filter):
    """Filter logs by category if LOG_CATEGORIES is set."""

    def __init__(self, category: Optional[str] = None):
        super().__init__()
        self.category = category.lower() if category else "system"

    def filter(self, record: logging.LogRecord) -> bool:
        if _allowed_categories is None:
            return True
        return self.category in _allowed_categories


def get_logger(name: str, category: Optional[str] = None) -> logging.Logger:
    """
    Get a logger with category filtering support.

    Args:
        name: Logger name (typically __name__)
        category: Category for filtering (e.g., 'resolver', 'connection')
                  If None, defaults to 'system'

    Returns:
        Logger instance with category filter applied
    """
    logger = logging.getLogger(name)

    log_level = LOG_LEVELS.get(settings.log_level.upper(), logging.INFO)
    logger.setLevel(log_level)

    # Remove existing category filters to avoid duplicates
    logger.filters = [f for f in logger.filters if not isinstance(f, CategoryFilter)]
    logger.addFilter(CategoryFilter(category))

    return logger


def configure_logging(level: Optional[str] = None) -> None:
    """Configure root logging once at process start."""
    logging.basicConfig(
        level=LOG_LEVELS.get((level or settings.log_level).upper(), logging.INFO),
        format=LOG_FORMAT,
    )
    for noisy in NOISY_LOGGERS:
        logging.getLogger(noisy).setLevel(logging.WARNING)


def mask_secret(value: Optional[str], visible: int = 8) -> Optional[str]:
    """Return a display-safe preview of a secret."""
    if not value:
        return None
    if len(value) <= visible:
        return "***"
    return f"{value[:visible]}..."
