"""
Create the presence tables in the configured database.

Usage:
    DATABASE_URL=postgresql+asyncpg://... python scripts/init_db.py
"""

import asyncio
import sys
from pathlib import Path

# Add project root to path
project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root))

from sqlalchemy.engine import make_url

from ttv_analytics.database.connection import DATABASE_URL, engine, init_db


async def main() -> int:
    url = make_url(DATABASE_URL)
    print(f"Initializing tables on {url.render_as_string(hide_password=True)}")
    try:
        await init_db(engine)
    except Exception as e:
        print(f"[FAIL] Could not create tables: {e}")
        return 1
    finally:
        await engine.dispose()

    print("[OK] twitch_users, twitch_games, presence_sessions ready")
    return 0


if __name__ == "__main__":
    sys.exit(asyncio.run(main()))
