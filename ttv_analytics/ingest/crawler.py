"""
Follower Crawl

Turns a tracked channel into the list of (follower, live channel, game)
observations the session reconciler consumes:

1. followers of the channel
2. everything those followers follow
3. which of those are live right now (batches of 100)
4. which followers sit in each live channel's chat

Stages run strictly in order. Fan-out in stages 2 and 4 runs with bounded
concurrency and a failed item is skipped without touching its siblings.
"""

from __future__ import annotations

import asyncio
import math
import time
from typing import Awaitable, Callable, Dict, List, Optional, Sequence, Set, TypeVar

from ttv_analytics.config import Settings
from ttv_analytics.schemas.presence import CrawlResult, Observation, ViewerLocation
from ttv_analytics.schemas.twitch import FollowDirection, LiveStream
from ttv_analytics.utils.logging import get_logger
from ttv_analytics.utils.twitch_api import MAX_LIVE_QUERY, TwitchClient

logger = get_logger(__name__, category="crawl")

T = TypeVar("T")
R = TypeVar("R")

ProgressCallback = Callable[[int], None]

UNKNOWN_GAME = "unknown"


def _ignore_progress(value: int) -> None:
    return None


class FollowerCrawler:
    """Runs the four-stage follower crawl against the Twitch API."""

    def __init__(self, client: TwitchClient, settings: Settings):
        self.client = client
        self.concurrency = max(settings.crawl_concurrency, 1)

    async def crawl(
        self, channel: str, on_progress: Optional[ProgressCallback] = None
    ) -> CrawlResult:
        """
        Find which followers of ``channel`` are chatting in which live channels.

        Args:
            channel: Login of the tracked channel
            on_progress: Called with 0..100 as the stages complete

        Returns:
            CrawlResult; ``error`` is set when stage 1 could not run
        """
        report = on_progress or _ignore_progress
        channel_login = channel.strip().lower()
        result = CrawlResult(channel=channel_login)

        report(0)
        try:
            await self._run_stages(channel_login, result, report)
        finally:
            report(100)

        logger.info(
            "Crawl of %s done: followers=%s followed=%s live=%s observations=%s "
            "skipped_followers=%s skipped_channels=%s",
            channel_login,
            result.follower_count,
            result.followed_count,
            result.live_count,
            len(result.observations),
            result.skipped_followers,
            result.skipped_channels,
        )
        return result

    async def _run_stages(
        self, channel_login: str, result: CrawlResult, report: ProgressCallback
    ) -> None:
        # Step 1: Get the channel's followers
        started = time.monotonic()
        channel_id = await self.client.resolve_user_id(channel_login)
        if not channel_id:
            result.error = f"Could not resolve channel: {channel_login}"
            logger.warning(result.error)
            return

        followers = await self.client.get_follows(channel_id, FollowDirection.FOLLOWERS)
        if followers is None:
            result.error = f"Failed to fetch followers of: {channel_login}"
            logger.warning(result.error)
            return

        follower_ids: Dict[str, str] = {}
        for follow in followers:
            if follow.from_login and follow.from_id:
                follower_ids[follow.from_login.lower()] = follow.from_id
        result.follower_count = len(follower_ids)
        logger.debug("Get followers: %.0fms", (time.monotonic() - started) * 1000)
        report(25)

        if not follower_ids:
            logger.info("%s has no followers, nothing to crawl", channel_login)
            return

        # Step 2: Get who they follow (second longest)
        started = time.monotonic()
        follow_lists = await self._fan_out(
            list(follower_ids.values()),
            lambda follower_id: self.client.get_follows(
                follower_id, FollowDirection.FOLLOWING
            ),
            base=25,
            report=report,
        )

        followed_ids: Set[str] = set()
        for follows in follow_lists:
            if follows is None:
                result.skipped_followers += 1
                continue
            followed_ids.update(f.to_id for f in follows if f.to_id)
        result.followed_count = len(followed_ids)
        logger.debug("Get who they follow: %.0fms", (time.monotonic() - started) * 1000)
        report(50)

        # Step 3: Get who they follow that is live
        started = time.monotonic()
        live_streams = await self._fetch_live(sorted(followed_ids))
        result.live_count = len(live_streams)
        logger.debug(
            "Get who they follow that is live: %.0fms",
            (time.monotonic() - started) * 1000,
        )
        report(75)

        # Step 4: Find out if they're in those chats (longest)
        started = time.monotonic()
        rosters = await self._fan_out(
            live_streams,
            lambda stream: self.client.get_chatters(stream.user_login, stream.user_id),
            base=75,
            report=report,
        )

        seen: Set[Observation] = set()
        for stream, roster in zip(live_streams, rosters):
            if roster is None:
                result.skipped_channels += 1
                continue

            in_chat = {login.lower() for login in roster}
            for username in sorted(in_chat.intersection(follower_ids)):
                observation = Observation(
                    username=username,
                    channel=stream.user_login.lower(),
                    game=stream.game_name or UNKNOWN_GAME,
                )
                if observation not in seen:
                    seen.add(observation)
                    result.observations.append(observation)
        logger.debug(
            "Find out if they're in their chats: %.0fms",
            (time.monotonic() - started) * 1000,
        )

    async def find_channels_user_is_in(self, username: str) -> Optional[ViewerLocation]:
        """
        Find the live channels, among those ``username`` follows, whose chat
        the user is currently in.

        Returns:
            ViewerLocation, or None if the user or their follow list could not
            be fetched
        """
        login = username.strip().lower()
        user_id = await self.client.resolve_user_id(login)
        if not user_id:
            return None

        following = await self.client.get_follows(user_id, FollowDirection.FOLLOWING)
        if following is None:
            return None

        followed_ids = sorted({f.to_id for f in following if f.to_id})
        live_streams = await self._fetch_live(followed_ids)

        rosters = await self._fan_out(
            live_streams,
            lambda stream: self.client.get_chatters(stream.user_login, stream.user_id),
        )

        channels: List[str] = []
        for stream, roster in zip(live_streams, rosters):
            if roster is None:
                continue
            if login in {chatter.lower() for chatter in roster}:
                channels.append(stream.user_login.lower())

        return ViewerLocation(
            username=login,
            following_count=len(followed_ids),
            live_following_count=len(live_streams),
            channels=channels,
        )

    async def _fetch_live(self, user_ids: Sequence[str]) -> List[LiveStream]:
        """Ask which ids are live, at most 100 per request; failed batches are skipped."""
        live: Dict[str, LiveStream] = {}
        for index in range(0, len(user_ids), MAX_LIVE_QUERY):
            batch = list(user_ids[index : index + MAX_LIVE_QUERY])
            streams = await self.client.get_live_status(batch)
            if streams is None:
                logger.warning(
                    "Skipping live-status batch %s-%s", index, index + len(batch)
                )
                continue
            for stream in streams:
                live.setdefault(stream.user_id, stream)
        return list(live.values())

    async def _fan_out(
        self,
        items: Sequence[T],
        call: Callable[[T], Awaitable[Optional[R]]],
        base: Optional[int] = None,
        report: ProgressCallback = _ignore_progress,
    ) -> List[Optional[R]]:
        """
        Run ``call`` for every item with bounded concurrency.

        Results keep the order of ``items``; an item whose call raised comes
        back as None. When ``base`` is given, progress moves from base to
        base + 25 as items finish.
        """
        total = len(items)
        if total == 0:
            return []

        semaphore = asyncio.Semaphore(self.concurrency)
        done = 0

        async def run(item: T) -> Optional[R]:
            nonlocal done
            async with semaphore:
                try:
                    return await call(item)
                except Exception as exc:
                    logger.error("Crawl call failed for %s: %s", item, exc, exc_info=True)
                    return None
                finally:
                    done += 1
                    if base is not None:
                        report(base + math.ceil(done / total * 25))

        return list(await asyncio.gather(*(run(item) for item in items)))
