from typing import Dict, List, Optional, Union

import pytest

from ttv_analytics.config import Settings
from ttv_analytics.schemas.twitch import Follow, FollowDirection, LiveStream


class FakeTwitchClient:
    """In-memory stand-in for TwitchClient used by crawl and poller tests.

    Default graph: oxcanteven is followed by f1..f5. f2's follow list cannot
    be fetched. streamerA (Path of Exile) has f1 and f3 in chat, streamerB
    (no game) has f4.
    """

    def __init__(self):
        self.is_configured = True
        self.user_ids: Dict[str, str] = {
            "oxcanteven": "1",
            "f1": "11",
            "f2": "12",
            "f3": "13",
            "f4": "14",
            "f5": "15",
            "streamera": "100",
            "streamerb": "101",
        }
        self.followers: Dict[str, Optional[List[str]]] = {
            "1": ["f1", "f2", "f3", "f4", "f5"],
        }
        self.following: Dict[str, Union[None, List[str], Exception]] = {
            "11": ["100"],
            "12": None,
            "13": ["100", "101"],
            "14": ["101"],
            "15": [],
        }
        self.streams: Dict[str, LiveStream] = {
            "100": LiveStream(user_id="100", user_login="streamerA", game_name="Path of Exile"),
            "101": LiveStream(user_id="101", user_login="streamerB"),
        }
        self.chatters: Dict[str, Optional[List[str]]] = {
            "streamera": ["F1", "f3", "randomviewer"],
            "streamerb": ["f4"],
        }

        self.follow_calls: List[tuple] = []
        self.live_batches: List[List[str]] = []
        self.chatter_calls: List[tuple] = []

    async def resolve_user_id(self, username: str) -> Optional[str]:
        return self.user_ids.get(username.strip().lower())

    async def get_follows(self, user_id: str, direction: FollowDirection):
        self.follow_calls.append((user_id, direction))
        if direction == FollowDirection.FOLLOWERS:
            logins = self.followers.get(user_id, [])
            if logins is None:
                return None
            return [
                Follow(from_id=self.user_ids[login], from_login=login, to_id=user_id, to_login="")
                for login in logins
            ]

        ids = self.following.get(user_id, [])
        if isinstance(ids, Exception):
            raise ids
        if ids is None:
            return None
        return [Follow(from_id=user_id, from_login="", to_id=i, to_login="") for i in ids]

    async def get_live_status(self, user_ids):
        self.live_batches.append(list(user_ids))
        return [self.streams[i] for i in user_ids if i in self.streams]

    async def get_chatters(self, channel: str, broadcaster_id: Optional[str] = None):
        self.chatter_calls.append((channel, broadcaster_id))
        return self.chatters.get(channel.strip().lower())

    async def aclose(self):
        return None


@pytest.fixture(autouse=True)
def settings_env(monkeypatch):
    """Set test environment variables."""
    monkeypatch.setenv("DATABASE_URL", "sqlite+aiosqlite:///:memory:")
    monkeypatch.setenv("TWITCH_CLIENT_ID", "test-client-id")
    monkeypatch.setenv("TWITCH_BOT_TOKEN", "oauth:test-token")
    yield


@pytest.fixture
def test_settings():
    """Settings isolated from any local .env file."""
    return Settings(
        _env_file=None,
        twitch_client_id="test-client-id",
        twitch_bot_token="oauth:test-token",
        twitch_moderator_id="999",
        twitch_api_base="https://twitch.test/helix",
        twitch_retry_backoff_seconds=0,
        twitch_max_attempts=3,
        presence_poll_interval_seconds=3600,
        disconnect_tolerance_minutes=30,
        crawl_concurrency=2,
    )


@pytest.fixture
def fake_twitch():
    return FakeTwitchClient()
