"""
Integration tests for presence session reconciliation.

Covers new sessions, extensions, the disconnect tolerance boundary, and
all-or-nothing batches.
"""
from datetime import timedelta

import pytest
from sqlalchemy import func, select

from ttv_analytics.database.models import PresenceSession, TwitchGame, TwitchUser
from ttv_analytics.memory.session_store import SessionKey
from ttv_analytics.schemas.presence import Observation

GAME = "Path of Exile"
USERS = ["tek", "bear", "oxcanteven"]
CHANNEL = "oxcanteven"


def observations(users=USERS, channel=CHANNEL, game=GAME):
    return [Observation(username=u, channel=channel, game=game) for u in users]


async def count_rows(session_factory, model) -> int:
    async with session_factory() as session:
        return await session.scalar(select(func.count()).select_from(model))


@pytest.mark.integration
@pytest.mark.asyncio
class TestReconcile:
    async def test_new_observations_open_sessions(self, reconciler, store, clock):
        assert await reconciler.reconcile(observations()) is True

        sessions = await store.get_all_sessions()
        assert len(sessions) == 3
        for entry in sessions:
            assert entry.joined_at == clock.now
            assert entry.left_at == clock.now

    async def test_creates_identity_rows(self, reconciler, session_factory):
        await reconciler.reconcile(observations())

        assert await count_rows(session_factory, TwitchUser) == 3
        assert await count_rows(session_factory, TwitchGame) == 1

    async def test_same_batch_twice_at_same_time_is_a_no_op(self, reconciler, store):
        await reconciler.reconcile(observations())
        before = [(s.id, s.joined_at, s.left_at) for s in await store.get_all_sessions()]

        assert await reconciler.reconcile(observations()) is True

        after = [(s.id, s.joined_at, s.left_at) for s in await store.get_all_sessions()]
        assert after == before

    async def test_duplicate_observations_collapse(self, reconciler, store):
        batch = observations(["tek"]) + [
            Observation(username="TEK", channel=" OxCanTeven ", game="path of exile")
        ]

        assert await reconciler.reconcile(batch) is True
        assert len(await store.get_all_sessions()) == 1

    async def test_gap_equal_to_tolerance_extends(self, reconciler, store, clock):
        await reconciler.reconcile(observations(["tek"]))
        first = clock.now

        clock.now = first + timedelta(minutes=30)
        await reconciler.reconcile(observations(["tek"]))

        sessions = await store.get_all_sessions()
        assert len(sessions) == 1
        assert sessions[0].joined_at == first
        assert sessions[0].left_at == clock.now

    async def test_gap_just_over_tolerance_starts_new_session(self, reconciler, store, clock):
        await reconciler.reconcile(observations(["tek"]))
        first = clock.now

        clock.now = first + timedelta(minutes=30, seconds=1)
        await reconciler.reconcile(observations(["tek"]))

        sessions = await store.get_all_sessions()
        assert len(sessions) == 2
        assert sessions[0].left_at == first
        assert sessions[1].joined_at == clock.now
        assert sessions[1].left_at == clock.now

    async def test_gap_just_under_tolerance_extends(self, reconciler, store, clock):
        await reconciler.reconcile(observations(["tek"]))

        clock.now = clock.now + timedelta(minutes=29, seconds=59)
        await reconciler.reconcile(observations(["tek"]))

        assert len(await store.get_all_sessions()) == 1

    async def test_clock_going_backwards_leaves_session_alone(self, reconciler, store, clock):
        await reconciler.reconcile(observations(["tek"]))
        first = clock.now

        clock.now = first - timedelta(minutes=5)
        assert await reconciler.reconcile(observations(["tek"])) is True

        sessions = await store.get_all_sessions()
        assert len(sessions) == 1
        assert sessions[0].left_at == first

    async def test_keys_are_independent(self, reconciler, store, clock):
        await reconciler.reconcile(observations(["tek"]))
        clock.now = clock.now + timedelta(minutes=10)

        # Same user and channel, different game: a separate session
        await reconciler.reconcile(observations(["tek"], game="Minecraft"))

        assert len(await store.get_all_sessions()) == 2

    async def test_empty_batch_returns_false(self, reconciler, session_factory):
        assert await reconciler.reconcile([]) is False
        assert await count_rows(session_factory, TwitchUser) == 0

    async def test_blank_observations_are_dropped(self, reconciler, store):
        batch = observations(["tek"]) + [Observation(username="bear", channel=CHANNEL, game=" ")]

        assert await reconciler.reconcile(batch) is True
        assert len(await store.get_all_sessions()) == 1

    async def test_failure_rolls_back_whole_batch(
        self, reconciler, store, session_factory, monkeypatch
    ):
        async def broken_upsert(session, inserts, extensions):
            session.add_all(list(inserts))
            await session.flush()
            raise RuntimeError("disk full")

        monkeypatch.setattr(store, "upsert_sessions", broken_upsert)

        assert await reconciler.reconcile(observations()) is False

        assert await count_rows(session_factory, PresenceSession) == 0
        assert await count_rows(session_factory, TwitchUser) == 0
        assert await count_rows(session_factory, TwitchGame) == 0


@pytest.mark.integration
@pytest.mark.asyncio
async def test_existing_history_is_extended_not_duplicated(
    reconciler, store, session_factory, clock
):
    """Six old sessions plus one recent session per user; a poll extends the recent one."""
    now = clock.now
    async with session_factory() as session:
        async with session.begin():
            users = {
                u.username: u.id for u in await store.get_or_create_users(session, USERS)
            }
            game_id = (await store.get_or_create_games(session, [GAME]))[0].id

            for username in USERS:
                for i in range(1, 7):
                    joined = now - timedelta(hours=24 * i)
                    session.add(
                        PresenceSession(
                            user_id=users[username],
                            channel_id=users[CHANNEL],
                            game_id=game_id,
                            joined_at=joined,
                            left_at=joined + timedelta(hours=1),
                        )
                    )
                session.add(
                    PresenceSession(
                        user_id=users[username],
                        channel_id=users[CHANNEL],
                        game_id=game_id,
                        joined_at=now - timedelta(hours=1),
                        left_at=now - timedelta(minutes=20),
                    )
                )

    assert len(await store.get_all_sessions()) == 21

    assert await reconciler.reconcile(observations()) is True

    sessions = await store.get_all_sessions()
    assert len(sessions) == 21

    async with session_factory() as session:
        keys = [SessionKey(users[u], users[CHANNEL], game_id) for u in USERS]
        latest = await store.get_most_recent_sessions(session, keys)

    for key in keys:
        assert latest[key].joined_at == now - timedelta(hours=1)
        assert latest[key].left_at == now

    untouched = [s for s in sessions if s.joined_at != now - timedelta(hours=1)]
    assert len(untouched) == 18
    assert all(s.left_at == s.joined_at + timedelta(hours=1) for s in untouched)

    for username in USERS:
        entry = await store.get_most_recent_session(username, CHANNEL, GAME)
        assert entry.left_at == now
