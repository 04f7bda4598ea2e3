"""
ttv-analytics - FastAPI Application

This service:
- Tracks which followers of a channel sit in which live chats (presence polling)
- Stores that presence as sessions with join/leave times
- Answers ad hoc questions: who is in a chat, where is a user watching

RUNNING THE SERVER:
    uvicorn ttv_analytics.main:app --port 8000
"""

import logging
from datetime import datetime, timezone
from typing import Dict, List, Optional

from fastapi import FastAPI, HTTPException, Query

from ttv_analytics import __version__
from ttv_analytics.config import settings
from ttv_analytics.database.connection import engine, init_db
from ttv_analytics.ingest.crawler import FollowerCrawler
from ttv_analytics.ingest.poller import PresencePoller
from ttv_analytics.memory.reconciler import SessionReconciler
from ttv_analytics.memory.session_store import SessionStore
from ttv_analytics.schemas.presence import (
    CrawlResult,
    PollStatus,
    SessionResponse,
    TrackingRequest,
    ViewerLocation,
)
from ttv_analytics.utils.logging import configure_logging, get_logger
from ttv_analytics.utils.twitch_api import TwitchClient

configure_logging()

logger = get_logger(__name__, category="system")
poller_logger = get_logger(f"{__name__}.poller", category="poller")

access_logger = logging.getLogger("uvicorn.access")


def filter_access_log(record):
    """Filter out tracking status polling logs."""
    message = record.getMessage()
    if message.find("/status") != -1 and message.find("/tracking") != -1:
        return False
    return True


access_logger.addFilter(filter_access_log)

app = FastAPI(
    title="ttv-analytics",
    description="Follower chat presence tracking for Twitch",
    version=__version__,
)

# ============================================================================
# SERVICES
# ============================================================================

twitch_client = TwitchClient(settings)
if not twitch_client.is_configured:
    logger.warning("Twitch credentials not configured - crawling unavailable")

crawler = FollowerCrawler(twitch_client, settings)

# Session store and reconciler; reachability is checked per request with ping()
session_store: Optional[SessionStore] = SessionStore()
reconciler: Optional[SessionReconciler] = SessionReconciler(session_store, settings)

# One poller per tracked channel
pollers: Dict[str, PresencePoller] = {}


def _require_twitch() -> None:
    if not twitch_client.is_configured:
        raise HTTPException(status_code=503, detail="Twitch credentials not configured")


async def _require_store() -> None:
    if session_store is None or reconciler is None or not await session_store.ping():
        raise HTTPException(status_code=503, detail="Session store unavailable")


def _normalize_channel(channel: str) -> str:
    normalized = channel.strip().lower()
    if not normalized:
        raise HTTPException(status_code=400, detail="Channel is required")
    return normalized


# ============================================================================
# ENDPOINTS
# ============================================================================


@app.get("/health")
async def health_check():
    """Service status plus which pollers are running."""
    return {
        "status": "healthy",
        "service": "ttv-analytics",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "twitch_configured": twitch_client.is_configured,
        "store_available": session_store is not None and await session_store.ping(),
        "tracking": {
            channel: poller.is_running for channel, poller in pollers.items()
        },
    }


@app.post("/tracking/start", response_model=PollStatus)
async def start_tracking(request: TrackingRequest):
    """Start presence polling for a channel (no-op if already running)."""
    _require_twitch()
    await _require_store()
    channel = _normalize_channel(request.channel)

    poller = pollers.get(channel)
    if poller is None:
        poller = PresencePoller(channel, crawler, reconciler, settings)
        pollers[channel] = poller

    try:
        await poller.start()
    except ValueError as exc:
        raise HTTPException(status_code=503, detail=str(exc)) from exc

    return poller.status


@app.post("/tracking/stop", response_model=PollStatus)
async def stop_tracking(request: TrackingRequest):
    """Stop presence polling; waits for an in-flight poll to finish."""
    channel = _normalize_channel(request.channel)
    poller = pollers.get(channel)
    if poller is None:
        raise HTTPException(status_code=404, detail=f"Channel not tracked: {channel}")

    await poller.stop()
    return poller.status


@app.get("/tracking/status", response_model=List[PollStatus])
async def tracking_status():
    return [poller.status for poller in pollers.values()]


@app.get("/tracking/{channel}/status", response_model=PollStatus)
async def channel_tracking_status(channel: str):
    poller = pollers.get(_normalize_channel(channel))
    if poller is None:
        raise HTTPException(status_code=404, detail=f"Channel not tracked: {channel}")
    return poller.status


@app.get("/chatters/{channel}")
async def get_chatters(channel: str):
    """List who is connected to a channel's chat right now."""
    _require_twitch()
    channel = _normalize_channel(channel)

    chatters = await twitch_client.get_chatters(channel)
    if chatters is None:
        raise HTTPException(
            status_code=502, detail=f"Failed to get chatters for: {channel}"
        )
    return {"channel": channel, "count": len(chatters), "chatters": chatters}


@app.get("/users/{username}/watching", response_model=ViewerLocation)
async def get_user_watching(username: str):
    """Which live channels, among those the user follows, have the user in chat."""
    _require_twitch()
    username = _normalize_channel(username)

    location = await crawler.find_channels_user_is_in(username)
    if location is None:
        raise HTTPException(
            status_code=404,
            detail=f"User not found or follow list unavailable: {username}",
        )
    return location


@app.get("/channels/{channel}/followers/chatting", response_model=CrawlResult)
async def get_followers_chatting(channel: str):
    """Run one follower crawl without storing anything."""
    _require_twitch()
    result = await crawler.crawl(_normalize_channel(channel))
    if result.error:
        raise HTTPException(status_code=502, detail=result.error)
    return result


@app.get("/sessions/latest", response_model=SessionResponse)
async def get_latest_session(
    username: str = Query(..., min_length=1),
    channel: str = Query(..., min_length=1),
    game: str = Query(..., min_length=1),
):
    """Most recent presence session for a (user, channel, game)."""
    await _require_store()
    try:
        entry = await session_store.get_most_recent_session(username, channel, game)
    except Exception as exc:
        logger.error("Failed to load latest session: %s", exc, exc_info=True)
        raise HTTPException(status_code=503, detail="Session store unavailable") from exc

    if entry is None:
        raise HTTPException(status_code=404, detail="No session found")
    return entry


# ============================================================================
# STARTUP/SHUTDOWN
# ============================================================================


@app.on_event("startup")
async def startup_event():
    """Create tables and start polling the configured channel."""
    logger.info(f"ttv-analytics starting on {settings.host}:{settings.port}")

    if settings.database_auto_create:
        try:
            await init_db()
            logger.info("Database tables ready")
        except Exception as exc:
            logger.error(f"Failed to initialize database: {exc}")

    if not settings.presence_poll_enabled:
        return

    if not settings.target_channel:
        logger.warning("TARGET_CHANNEL not set in .env, presence polling not started")
        return

    if reconciler is None or not await reconciler.is_available():
        poller_logger.error("Presence polling not started: session store unavailable")
        return

    channel = settings.target_channel.strip().lower()
    poller = PresencePoller(channel, crawler, reconciler, settings)
    pollers[channel] = poller
    try:
        await poller.start()
        poller_logger.info("Presence polling started for %s", channel)
    except Exception as exc:
        poller_logger.error(f"Failed to start presence polling: {exc}")


@app.on_event("shutdown")
async def shutdown_event():
    """Stop pollers and release the HTTP client and DB pool."""
    logger.info("ttv-analytics shutting down")

    for channel, poller in list(pollers.items()):
        try:
            await poller.stop()
        except Exception as exc:
            poller_logger.error(f"Error stopping presence polling for {channel}: {exc}")

    await twitch_client.aclose()
    await engine.dispose()
