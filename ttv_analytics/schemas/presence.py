"""
Presence Schemas

Observations produced by the follower crawl, crawl results, poller status,
and request/response models for the tracking API.
"""

from __future__ import annotations

from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field


class Observation(BaseModel):
    """One sighting of a user in a channel's chat while a game was on."""

    model_config = ConfigDict(frozen=True)

    username: str
    channel: str
    game: str


class CrawlResult(BaseModel):
    """Outcome of one four-stage follower crawl."""

    channel: str
    observations: List[Observation] = Field(default_factory=list)
    follower_count: int = 0
    followed_count: int = 0
    live_count: int = 0
    skipped_followers: int = 0
    skipped_channels: int = 0
    error: Optional[str] = None


class ViewerLocation(BaseModel):
    """Live chats a single user is currently sitting in."""

    username: str
    following_count: int = 0
    live_following_count: int = 0
    channels: List[str] = Field(default_factory=list)


class PollStatus(BaseModel):
    """Observable state of a presence poller."""

    channel: str
    is_running: bool = False
    progress: int = 0
    polls_completed: int = 0
    last_poll_started_at: Optional[datetime] = None
    last_poll_finished_at: Optional[datetime] = None
    last_success_at: Optional[datetime] = None
    last_observation_count: Optional[int] = None
    last_error: Optional[str] = None


class TrackingRequest(BaseModel):
    channel: str = Field(min_length=1)


class SessionResponse(BaseModel):
    """A stored presence session."""

    model_config = ConfigDict(from_attributes=True)

    id: int
    user_id: int
    channel_id: int
    game_id: int
    joined_at: datetime
    left_at: datetime
