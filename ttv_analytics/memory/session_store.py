"""
Session Store

Storage for presence sessions and the user/game identity rows they point to.
The write-path methods take an open ``AsyncSession`` so the caller can run
identity resolution and session writes inside a single transaction.
"""

from __future__ import annotations

from datetime import datetime
from typing import Dict, Iterable, List, NamedTuple, Optional, Sequence, Tuple, Type, Union

from sqlalchemy import func, select, text, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ttv_analytics.database.connection import SessionLocal
from ttv_analytics.database.models import PresenceSession, TwitchGame, TwitchUser
from ttv_analytics.utils.logging import get_logger

logger = get_logger(__name__, category="sessions")

IdentityModel = Union[Type[TwitchUser], Type[TwitchGame]]

_INSERT_BY_DIALECT = {"postgresql": pg_insert, "sqlite": sqlite_insert}


class SessionKey(NamedTuple):
    user_id: int
    channel_id: int
    game_id: int


def normalize_name(value: str) -> str:
    """Identity names are compared trimmed and lowercased."""
    return value.strip().lower()


class SessionStore:
    def __init__(
        self,
        session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
    ) -> None:
        """Initialize SessionStore.

        Args:
            session_factory: Database session factory (defaults to SessionLocal)
        """
        self.session_factory: async_sessionmaker[AsyncSession] = (
            session_factory or SessionLocal
        )

    async def ping(self) -> bool:
        """Round-trip to the database; False if it cannot be reached."""
        try:
            async with self.session_factory() as session:
                await session.execute(text("SELECT 1"))
            return True
        except Exception as exc:
            logger.warning("Session store unreachable: %s", exc)
            return False

    async def get_or_create_users(
        self, session: AsyncSession, usernames: Iterable[str]
    ) -> List[TwitchUser]:
        """Return a row for every requested username, inserting the missing ones."""
        return await self._get_or_create(session, TwitchUser, "username", usernames)

    async def get_or_create_games(
        self, session: AsyncSession, names: Iterable[str]
    ) -> List[TwitchGame]:
        """Return a row for every requested game name, inserting the missing ones."""
        return await self._get_or_create(session, TwitchGame, "name", names)

    async def _get_or_create(
        self,
        session: AsyncSession,
        model: IdentityModel,
        field: str,
        names: Iterable[str],
    ) -> list:
        requested = sorted({normalize_name(n) for n in names if n and n.strip()})
        if not requested:
            return []

        column = getattr(model, field)
        dialect = session.get_bind().dialect.name
        if dialect not in _INSERT_BY_DIALECT:
            raise ValueError(f"Unsupported database dialect for get-or-create: {dialect}")

        # A losing concurrent insert is dropped by the unique constraint and
        # the winner's row is read back below.
        stmt = (
            _INSERT_BY_DIALECT[dialect](model)
            .values([{field: name} for name in requested])
            .on_conflict_do_nothing(index_elements=[field])
        )
        await session.execute(stmt)

        result = await session.execute(select(model).where(column.in_(requested)))
        return list(result.scalars().all())

    async def get_most_recent_sessions(
        self, session: AsyncSession, keys: Iterable[SessionKey]
    ) -> Dict[SessionKey, PresenceSession]:
        """
        Load the most recently closed session for every key in one query.

        "Most recent" is the greatest ``left_at``; equal ``left_at`` values fall
        back to the greatest id so the choice is deterministic.
        """
        wanted = set(keys)
        if not wanted:
            return {}

        rank = (
            func.row_number()
            .over(
                partition_by=(
                    PresenceSession.user_id,
                    PresenceSession.channel_id,
                    PresenceSession.game_id,
                ),
                order_by=(PresenceSession.left_at.desc(), PresenceSession.id.desc()),
            )
            .label("rank")
        )
        ranked = (
            select(PresenceSession.id, rank)
            .where(
                PresenceSession.user_id.in_(sorted({k.user_id for k in wanted})),
                PresenceSession.channel_id.in_(sorted({k.channel_id for k in wanted})),
                PresenceSession.game_id.in_(sorted({k.game_id for k in wanted})),
            )
            .subquery()
        )
        stmt = (
            select(PresenceSession)
            .join(ranked, PresenceSession.id == ranked.c.id)
            .where(ranked.c.rank == 1)
        )

        result = await session.execute(stmt)
        latest: Dict[SessionKey, PresenceSession] = {}
        for row in result.scalars().all():
            key = SessionKey(row.user_id, row.channel_id, row.game_id)
            if key in wanted:
                latest[key] = row
        return latest

    async def upsert_sessions(
        self,
        session: AsyncSession,
        inserts: Sequence[PresenceSession],
        extensions: Sequence[Tuple[int, datetime]],
    ) -> None:
        """
        Stage new sessions and push ``left_at`` forward on existing ones.

        An extension never moves ``left_at`` backwards: rows already past the
        new value are left alone. Nothing is committed here.
        """
        session.add_all(list(inserts))

        for session_id, new_left_at in extensions:
            await session.execute(
                update(PresenceSession)
                .where(
                    PresenceSession.id == session_id,
                    PresenceSession.left_at <= new_left_at,
                )
                .values(left_at=new_left_at)
                .execution_options(synchronize_session=False)
            )

        await session.flush()

    async def get_all_sessions(self) -> List[PresenceSession]:
        async with self.session_factory() as session:
            result = await session.execute(
                select(PresenceSession).order_by(PresenceSession.id)
            )
            return list(result.scalars().all())

    async def get_most_recent_session(
        self, username: str, channel: str, game: str
    ) -> Optional[PresenceSession]:
        """Most recent session for one (user, channel, game), looked up by name."""
        async with self.session_factory() as session:
            names = {normalize_name(username), normalize_name(channel)}
            users = await session.execute(
                select(TwitchUser).where(TwitchUser.username.in_(sorted(names)))
            )
            user_ids = {u.username: u.id for u in users.scalars().all()}
            game_row = await session.execute(
                select(TwitchGame).where(TwitchGame.name == normalize_name(game))
            )
            game_obj = game_row.scalar_one_or_none()

            user_id = user_ids.get(normalize_name(username))
            channel_id = user_ids.get(normalize_name(channel))
            if user_id is None or channel_id is None or game_obj is None:
                return None

            key = SessionKey(user_id, channel_id, game_obj.id)
            latest = await self.get_most_recent_sessions(session, [key])
            return latest.get(key)
