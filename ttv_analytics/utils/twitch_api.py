"""
Twitch Helix client

The query surface the follower crawl runs on: chat rosters, follow lists,
live status and login -> user id lookups. Every call carries a timeout and
transient failures (429/5xx, transport errors) are retried with backoff.
Failures are logged and reported as ``None`` so callers can skip the item.
"""

import asyncio
from typing import (
    Any,
    Awaitable,
    Callable,
    Dict,
    List,
    Optional,
    Sequence,
    Tuple,
    TypeVar,
)

import httpx

from ttv_analytics.config import Settings
from ttv_analytics.schemas.twitch import Follow, FollowDirection, FollowPage, LiveStream
from ttv_analytics.utils.logging import get_logger

logger = get_logger(__name__, category="twitch_api")

T = TypeVar("T")

RETRYABLE_STATUS = {429, 500, 502, 503, 504}
PAGE_SIZE = 100
CHATTERS_PAGE_SIZE = 1000
MAX_LIVE_QUERY = 100  # Helix ceiling for user_id filters on /streams
USER_ID_CACHE_SIZE = 1024

PageFetcher = Callable[[Optional[str]], Awaitable[Optional[Tuple[List[T], Optional[str]]]]]


async def paginate(fetch_page: PageFetcher) -> Optional[List[T]]:
    """
    Walk a Helix cursor until the results run out.

    Stops when a page comes back empty or without a cursor (the last page of
    a multi-page result, or the only page). Also stops if the API hands back
    the cursor that was just sent, which would otherwise loop forever.

    Returns:
        All items, ``None`` if the first page failed, or the items gathered so
        far if a later page failed.
    """
    items: List[T] = []
    cursor: Optional[str] = None
    first = True

    while True:
        page = await fetch_page(cursor)
        if page is None:
            if first:
                return None
            logger.warning("Pagination stopped early after %s items", len(items))
            break

        page_items, next_cursor = page
        first = False
        if not page_items:
            break

        items.extend(page_items)

        if not next_cursor or next_cursor == cursor:
            break

        cursor = next_cursor

    return items


class TwitchClient:
    """Thin async wrapper around the Helix endpoints the crawl needs."""

    def __init__(
        self,
        settings: Settings,
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        """
        Initialize the client.

        Args:
            settings: Application settings (credentials, timeouts, retries)
            http_client: Pre-built client, mainly for tests; created when omitted
        """
        self.client_id = settings.twitch_client_id
        self.access_token = settings.twitch_bot_token
        self.moderator_id = settings.twitch_moderator_id
        self.api_base = settings.twitch_api_base.rstrip("/")
        self.max_attempts = max(settings.twitch_max_attempts, 1)
        self.retry_backoff = settings.twitch_retry_backoff_seconds

        # Remove 'oauth:' prefix if present
        if self.access_token and self.access_token.startswith("oauth:"):
            self.access_token = self.access_token[6:]

        self._user_id_cache: Dict[str, str] = {}
        self._owns_client = http_client is None
        self.http_client = http_client or httpx.AsyncClient(
            timeout=httpx.Timeout(settings.twitch_request_timeout_seconds)
        )

    @property
    def is_configured(self) -> bool:
        return bool(self.client_id and self.access_token)

    async def aclose(self) -> None:
        if self._owns_client:
            await self.http_client.aclose()

    async def _get(
        self, path: str, params: Sequence[Tuple[str, Any]]
    ) -> Optional[Dict[str, Any]]:
        """GET a Helix endpoint, returning the decoded body or None on failure."""
        if not self.is_configured:
            logger.error("Twitch credentials not configured")
            return None

        url = f"{self.api_base}{path}"
        headers = {
            "Client-ID": self.client_id,
            "Authorization": f"Bearer {self.access_token}",
        }

        backoff = self.retry_backoff
        for attempt in range(1, self.max_attempts + 1):
            try:
                response = await self.http_client.get(
                    url, params=list(params), headers=headers
                )
                response.raise_for_status()
                return response.json()
            except httpx.HTTPStatusError as exc:
                logger.error(
                    "HTTP error calling %s: %s - %s",
                    path,
                    exc.response.status_code,
                    exc.response.text,
                )
                if exc.response.status_code not in RETRYABLE_STATUS:
                    return None
            except httpx.RequestError as exc:
                logger.warning(
                    "Transient error calling %s (attempt %s/%s): %s",
                    path,
                    attempt,
                    self.max_attempts,
                    exc,
                )
            except ValueError as exc:
                logger.error("Invalid JSON from %s: %s", path, exc)
                return None

            if attempt < self.max_attempts:
                await asyncio.sleep(backoff)
                backoff *= 2

        logger.error("Giving up on %s after %s attempts", path, self.max_attempts)
        return None

    async def resolve_user_id(self, username: str) -> Optional[str]:
        """
        Map a login name to its Helix user id.

        Args:
            username: Twitch login (case-insensitive)

        Returns:
            User id, or None if the user does not exist or the lookup failed
        """
        login = username.strip().lower()
        if login in self._user_id_cache:
            return self._user_id_cache[login]

        data = await self._get("/users", [("login", login)])
        if data is None:
            return None

        users = data.get("data", [])
        if not users or not users[0].get("id"):
            logger.warning(f"Channel not found: {username}")
            return None

        user_id = users[0]["id"]
        if len(self._user_id_cache) >= USER_ID_CACHE_SIZE:
            # Evict the oldest entry
            self._user_id_cache.pop(next(iter(self._user_id_cache)))
        self._user_id_cache[login] = user_id
        return user_id

    async def _get_moderator_id(self) -> Optional[str]:
        """The token owner's user id; /chat/chatters requires it."""
        if self.moderator_id:
            return self.moderator_id

        data = await self._get("/users", [])
        if not data or not data.get("data"):
            logger.error("Could not determine the user id behind the access token")
            return None

        self.moderator_id = data["data"][0].get("id")
        return self.moderator_id

    async def get_follows_page(
        self,
        user_id: str,
        direction: FollowDirection,
        cursor: Optional[str] = None,
    ) -> Optional[FollowPage]:
        """Fetch one page of follow edges for a user."""
        if direction == FollowDirection.FOLLOWERS:
            path = "/channels/followers"
            params: List[Tuple[str, Any]] = [("broadcaster_id", user_id)]
        else:
            path = "/channels/followed"
            params = [("user_id", user_id)]

        params.append(("first", PAGE_SIZE))
        if cursor:
            params.append(("after", cursor))

        data = await self._get(path, params)
        if data is None:
            return None

        follows: List[Follow] = []
        for row in data.get("data", []):
            if direction == FollowDirection.FOLLOWERS:
                follows.append(
                    Follow(
                        from_id=row.get("user_id", ""),
                        from_login=row.get("user_login", ""),
                        to_id=user_id,
                        to_login="",
                    )
                )
            else:
                follows.append(
                    Follow(
                        from_id=user_id,
                        from_login="",
                        to_id=row.get("broadcaster_id", ""),
                        to_login=row.get("broadcaster_login", ""),
                    )
                )

        next_cursor = (data.get("pagination") or {}).get("cursor")
        return FollowPage(follows=follows, cursor=next_cursor or None)

    async def get_follows(
        self, user_id: str, direction: FollowDirection
    ) -> Optional[List[Follow]]:
        """
        Retrieve either the accounts following a user or the accounts a user
        follows, across all pages.

        Returns:
            Follow edges, or None if the first page could not be fetched
        """

        async def fetch(cursor: Optional[str]):
            page = await self.get_follows_page(user_id, direction, cursor)
            if page is None:
                return None
            return page.follows, page.cursor

        return await paginate(fetch)

    async def get_live_status(self, user_ids: Sequence[str]) -> Optional[List[LiveStream]]:
        """
        Determine which of up to 100 channels are currently live.

        Raises:
            ValueError: More than 100 ids were passed in
        """
        if len(user_ids) > MAX_LIVE_QUERY:
            raise ValueError(
                f"Helix accepts at most {MAX_LIVE_QUERY} user ids per request, got {len(user_ids)}"
            )
        if not user_ids:
            return []

        params: List[Tuple[str, Any]] = [("user_id", uid) for uid in user_ids]
        params.extend([("type", "live"), ("first", MAX_LIVE_QUERY)])

        data = await self._get("/streams", params)
        if data is None:
            return None

        return [
            LiveStream(
                user_id=row.get("user_id", ""),
                user_login=row.get("user_login", ""),
                game_name=row.get("game_name") or "",
            )
            for row in data.get("data", [])
        ]

    async def get_chatters(
        self, channel: str, broadcaster_id: Optional[str] = None
    ) -> Optional[List[str]]:
        """
        Retrieve the logins currently connected to a channel's chat.

        Helix only serves this roster to the broadcaster or a moderator of
        the channel, so for most channels the call fails (403) and returns
        None.

        Args:
            channel: The login of the channel
            broadcaster_id: The channel's user id, when the caller already has
                it; skips the /users lookup

        Returns:
            Chatter logins, or None on failure
        """
        if not broadcaster_id:
            broadcaster_id = await self.resolve_user_id(channel)
        if not broadcaster_id:
            return None

        moderator_id = await self._get_moderator_id()
        if not moderator_id:
            return None

        async def fetch(cursor: Optional[str]):
            params: List[Tuple[str, Any]] = [
                ("broadcaster_id", broadcaster_id),
                ("moderator_id", moderator_id),
                ("first", CHATTERS_PAGE_SIZE),
            ]
            if cursor:
                params.append(("after", cursor))

            data = await self._get("/chat/chatters", params)
            if data is None:
                return None

            logins = [row.get("user_login", "") for row in data.get("data", [])]
            next_cursor = (data.get("pagination") or {}).get("cursor")
            return [login for login in logins if login], next_cursor

        chatters = await paginate(fetch)
        if chatters is None:
            logger.error(f"Failed to get twitch chatters for: {channel}")
        return chatters
