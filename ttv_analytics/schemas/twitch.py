"""
Twitch Helix Schemas

Pydantic models for the slices of Helix responses the crawl needs.
"""

from __future__ import annotations

from enum import Enum
from typing import List, Optional

from pydantic import BaseModel


class FollowDirection(str, Enum):
    """Which side of the follow edge to list."""

    FOLLOWING = "following"  # accounts the user follows
    FOLLOWERS = "followers"  # accounts following the user


class Follow(BaseModel):
    """A single follow edge: from_* follows to_*."""

    from_id: str
    from_login: str
    to_id: str
    to_login: str


class FollowPage(BaseModel):
    """One page of follow edges plus the cursor for the next page."""

    follows: List[Follow]
    cursor: Optional[str] = None


class LiveStream(BaseModel):
    """A channel that is currently broadcasting."""

    user_id: str
    user_login: str
    game_name: str = ""
