"""
Integration test fixtures for database and HTTP client setup.

Tests run against a throwaway SQLite file per test (aiosqlite), so no
database server is needed. Set TEST_DATABASE_URL to run against Postgres.
"""
import os
from datetime import datetime, timezone

import pytest
from sqlalchemy.ext.asyncio import AsyncEngine

from ttv_analytics.database.connection import build_engine, build_session_factory, init_db
from ttv_analytics.database.models import Base
from ttv_analytics.memory.reconciler import SessionReconciler
from ttv_analytics.memory.session_store import SessionStore


class FixedClock:
    """Controllable "now" for the reconciler."""

    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now


@pytest.fixture(scope="function")
async def test_engine(tmp_path):
    """Create a test database engine with fresh tables."""
    url = os.getenv("TEST_DATABASE_URL") or f"sqlite+aiosqlite:///{tmp_path / 'presence.db'}"
    engine = build_engine(url)

    try:
        if not url.startswith("sqlite"):
            async with engine.begin() as conn:
                await conn.run_sync(Base.metadata.drop_all)
        await init_db(engine)
    except Exception as e:
        await engine.dispose()
        pytest.skip(f"Failed to set up test database: {e}")

    yield engine

    await engine.dispose()


@pytest.fixture
def session_factory(test_engine: AsyncEngine):
    return build_session_factory(test_engine)


@pytest.fixture
async def db_session(session_factory):
    """Create a database session for a test."""
    async with session_factory() as session:
        yield session
        # Rollback any uncommitted changes
        await session.rollback()


@pytest.fixture
def store(session_factory):
    return SessionStore(session_factory)


@pytest.fixture
def clock():
    return FixedClock(datetime(2024, 6, 1, 12, 0, tzinfo=timezone.utc))


@pytest.fixture
def reconciler(store, test_settings, clock):
    return SessionReconciler(store, test_settings, clock=clock)
