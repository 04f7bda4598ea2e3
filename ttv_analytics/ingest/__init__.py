"""
Ingest layer: follower crawl and presence polling
"""

from .crawler import FollowerCrawler
from .poller import PresencePoller

__all__ = ["FollowerCrawler", "PresencePoller"]
