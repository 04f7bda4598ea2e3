"""
Category-aware logging for ttv-analytics

Every logger belongs to one category. LOG_CATEGORIES (comma-separated)
narrows output to the listed categories; unset means everything is shown.

    system      startup, shutdown, HTTP host
    twitch_api  Helix requests, retries, failures
    crawl       follower crawl stages
    sessions    identity rows and session reconcile
    poller      presence poll loop

Usage:
    from ttv_analytics.utils.logging import get_logger

    logger = get_logger(__name__, category="crawl")
"""

import logging
from typing import FrozenSet, Optional

from ttv_analytics.config import settings

CATEGORIES = frozenset({"system", "twitch_api", "crawl", "sessions", "poller"})
DEFAULT_CATEGORY = "system"
LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"

# Held at WARNING: httpx logs one INFO line per request
NOISY_LIBRARIES = ("httpx", "httpcore")


def parse_categories(value: Optional[str]) -> Optional[FrozenSet[str]]:
    """
    Turn "crawl, Sessions" into {"crawl", "sessions"}.

    Returns None (no filtering) for an unset or blank value. Unknown names
    are kept and reported with a warning.
    """
    if not value or not value.strip():
        return None

    parsed = frozenset(part.strip().lower() for part in value.split(",") if part.strip())
    unknown = parsed - CATEGORIES
    if unknown:
        logging.getLogger(__name__).warning(
            "Unknown log categories in LOG_CATEGORIES: %s", ", ".join(sorted(unknown))
        )
    return parsed or None


def resolve_level(name: str) -> int:
    """Map a level name (WARN accepted) to its logging constant, INFO if unknown."""
    upper = name.strip().upper()
    if upper == "WARN":
        upper = "WARNING"
    level = logging.getLevelName(upper)
    return level if isinstance(level, int) else logging.INFO


_allowed_categories = parse_categories(settings.log_categories)


class CategoryFilter(logging.Filter):
    """Drops records whose logger category is not in LOG_CATEGORIES."""

    def __init__(self, category: Optional[str] = None):
        super().__init__()
        self.category = (category or DEFAULT_CATEGORY).lower()

    def filter(self, record: logging.LogRecord) -> bool:
        if _allowed_categories is None:
            return True
        return self.category in _allowed_categories


def configure_logging(level: Optional[str] = None) -> None:
    """Root handler setup for the service entry point."""
    logging.basicConfig(level=resolve_level(level or settings.log_level), format=LOG_FORMAT)
    for name in NOISY_LIBRARIES:
        logging.getLogger(name).setLevel(logging.WARNING)


def get_logger(name: str, category: Optional[str] = None) -> logging.Logger:
    """
    Get a logger tagged with a category.

    Calling it again for the same name replaces the category rather than
    stacking filters.
    """
    logger = logging.getLogger(name)
    logger.setLevel(resolve_level(settings.log_level))
    logger.filters = [f for f in logger.filters if not isinstance(f, CategoryFilter)]
    logger.addFilter(CategoryFilter(category))
    return logger
