"""
Run one follower crawl for a channel and print who is chatting where.

Nothing is stored unless --store is passed, in which case the observations
are reconciled into presence sessions exactly like a poll cycle would.

Usage:
    python scripts/crawl_channel.py oxcanteven
    python scripts/crawl_channel.py oxcanteven --store
"""

import argparse
import asyncio
import sys
from pathlib import Path

# Add project root to path
project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root))

from ttv_analytics.config import settings
from ttv_analytics.database.connection import engine
from ttv_analytics.ingest.crawler import FollowerCrawler
from ttv_analytics.memory.reconciler import SessionReconciler
from ttv_analytics.memory.session_store import SessionStore
from ttv_analytics.utils.twitch_api import TwitchClient


def print_progress(value: int) -> None:
    print(f"  progress: {value}%")


async def main(channel: str, store: bool) -> int:
    client = TwitchClient(settings)
    if not client.is_configured:
        print("[FAIL] TWITCH_CLIENT_ID and TWITCH_BOT_TOKEN must be set")
        return 1

    crawler = FollowerCrawler(client, settings)
    try:
        print(f"Crawling followers of {channel}...")
        result = await crawler.crawl(channel, on_progress=print_progress)
    finally:
        await client.aclose()

    if result.error:
        print(f"[FAIL] {result.error}")
        return 1

    print("=" * 50)
    print(f"Followers:        {result.follower_count}")
    print(f"Channels followed:{result.followed_count:>6}")
    print(f"Live right now:   {result.live_count}")
    print(f"Skipped followers/channels: {result.skipped_followers}/{result.skipped_channels}")
    print("=" * 50)
    for observation in result.observations:
        print(f"{observation.username:<25} {observation.channel:<25} {observation.game}")

    if not store or not result.observations:
        return 0

    reconciler = SessionReconciler(SessionStore(), settings)
    try:
        ok = await reconciler.reconcile(result.observations)
    finally:
        await engine.dispose()

    if not ok:
        print("[FAIL] Sessions were not written")
        return 1
    print(f"[OK] Reconciled {len(result.observations)} observations")
    return 0


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Crawl a channel's followers once")
    parser.add_argument("channel", help="Login of the channel to crawl")
    parser.add_argument(
        "--store", action="store_true", help="Reconcile the observations into the database"
    )
    args = parser.parse_args()
    sys.exit(asyncio.run(main(args.channel, args.store)))
