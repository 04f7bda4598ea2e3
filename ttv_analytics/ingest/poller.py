"""
Presence Polling Service

Periodically crawls a tracked channel's followers and feeds the resulting
observations to the session reconciler. One poller owns one channel and runs
a single background task, so reconcile calls for a channel never overlap.
"""

from __future__ import annotations

import asyncio
from datetime import datetime, timezone
from typing import Callable, List, Optional

from ttv_analytics.config import Settings
from ttv_analytics.ingest.crawler import FollowerCrawler
from ttv_analytics.memory.reconciler import SessionReconciler
from ttv_analytics.schemas.presence import PollStatus
from ttv_analytics.utils.logging import get_logger

logger = get_logger(__name__, category="poller")

ProgressListener = Callable[[PollStatus], None]


class PresencePoller:
    """Runs crawl -> reconcile on a fixed interval for one channel."""

    def __init__(
        self,
        channel: str,
        crawler: FollowerCrawler,
        reconciler: SessionReconciler,
        settings: Settings,
    ):
        """
        Initialize presence poller.

        Args:
            channel: Login of the channel whose followers are tracked
            crawler: Produces observations for the channel
            reconciler: Persists observations as presence sessions
            settings: Supplies the poll interval
        """
        self.channel = channel.strip().lower()
        self.crawler = crawler
        self.reconciler = reconciler
        self.interval = settings.presence_poll_interval_seconds

        # Polling state
        self.is_running = False
        self.poll_task: Optional[asyncio.Task] = None
        self._stop_event: Optional[asyncio.Event] = None
        self._stop_requests = 0
        self._status = PollStatus(channel=self.channel)
        self._listeners: List[ProgressListener] = []

    @property
    def status(self) -> PollStatus:
        return self._status.model_copy(update={"is_running": self.is_running})

    def add_progress_listener(self, listener: ProgressListener) -> None:
        """Register a callback invoked with a status snapshot on every progress change."""
        self._listeners.append(listener)

    async def start(self) -> None:
        """
        Start the polling task.

        If a previous run is still finishing its last cycle (``stop()`` was
        called but has not returned yet), waits for it before starting, so at
        most one loop per channel is ever alive.
        """
        if not self.crawler.client.is_configured:
            raise ValueError("Twitch credentials not configured")

        if not self.channel:
            raise ValueError("Channel is required for presence polling")

        if self.is_running:
            logger.warning("Presence poller for %s is already running", self.channel)
            return

        requested = self._stop_requests
        previous = self.poll_task
        if previous is not None and not previous.done():
            logger.info("Waiting for the previous poll of %s to finish", self.channel)
            await asyncio.shield(previous)

            # Another start() won, or stop() was called, while we waited
            if self.is_running or self._stop_requests != requested:
                return

        stop_event = asyncio.Event()
        self._stop_event = stop_event
        self.is_running = True
        logger.info(
            "Starting presence polling for channel: %s (interval: %ss)",
            self.channel,
            self.interval,
        )

        self.poll_task = asyncio.create_task(self._poll_loop(stop_event))

    async def stop(self) -> None:
        """
        Stop the polling task.

        Takes effect at the sleep boundary: a crawl or reconcile already in
        flight is allowed to finish first.
        """
        self._stop_requests += 1
        self.is_running = False
        if self._stop_event is not None:
            self._stop_event.set()

        task = self.poll_task
        if task:
            await asyncio.shield(task)
            if self.poll_task is task:
                self.poll_task = None

        self._notify()
        logger.info("Presence polling stopped for %s", self.channel)

    async def _poll_loop(self, stop_event: asyncio.Event) -> None:
        """Main polling loop; runs until its own stop event is set."""
        try:
            while not stop_event.is_set():
                await self.poll_once()

                try:
                    await asyncio.wait_for(stop_event.wait(), timeout=self.interval)
                except asyncio.TimeoutError:
                    pass

        except asyncio.CancelledError:
            logger.info("Presence polling loop cancelled for %s", self.channel)
            raise
        finally:
            if self._stop_event is stop_event:
                self.is_running = False

    async def poll_once(self) -> bool:
        """
        Run one crawl and reconcile its observations.

        Failures are logged and recorded in status, never raised.

        Returns:
            True if the cycle completed without error
        """
        self._status.last_poll_started_at = datetime.now(timezone.utc)
        self._set_progress(0)

        try:
            if not await self.reconciler.is_available():
                return self._finish(error="Session store unavailable")

            result = await self.crawler.crawl(self.channel, on_progress=self._set_progress)
            if result.error:
                return self._finish(error=result.error)

            if result.observations:
                ok = await self.reconciler.reconcile(result.observations)
                if not ok:
                    return self._finish(error="Failed to reconcile presence sessions")
            else:
                logger.info("No followers of %s found in live chats", self.channel)

            return self._finish(observation_count=len(result.observations))
        except Exception as exc:
            logger.error(
                "Error in presence poll for %s: %s", self.channel, exc, exc_info=True
            )
            return self._finish(error=str(exc) or exc.__class__.__name__)

    def _finish(
        self, observation_count: Optional[int] = None, error: Optional[str] = None
    ) -> bool:
        now = datetime.now(timezone.utc)
        self._status.polls_completed += 1
        self._status.last_poll_finished_at = now
        self._status.last_error = error

        if error:
            logger.warning("Presence poll for %s failed: %s", self.channel, error)
        else:
            self._status.last_success_at = now
            self._status.last_observation_count = observation_count

        self._set_progress(100)
        return error is None

    def _set_progress(self, value: int) -> None:
        self._status.progress = max(0, min(100, value))
        self._notify()

    def _notify(self) -> None:
        if not self._listeners:
            return

        snapshot = self.status
        for listener in self._listeners:
            try:
                listener(snapshot)
            except Exception as exc:
                logger.warning("Progress listener failed: %s", exc)
