"""
Session Reconciler

Merges a batch of chat observations into stored presence sessions. An
observation either extends the open session for its (user, channel, game)
key or starts a new one when the last sighting is older than the disconnect
tolerance. Identity resolution and session writes share one transaction, so
a failed batch leaves nothing behind.
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Callable, Dict, Iterable, List, Optional, Set, Tuple

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ttv_analytics.config import Settings
from ttv_analytics.database.models import PresenceSession
from ttv_analytics.memory.session_store import SessionKey, SessionStore, normalize_name
from ttv_analytics.schemas.presence import Observation
from ttv_analytics.utils.logging import get_logger

logger = get_logger(__name__, category="sessions")

Clock = Callable[[], datetime]


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class SessionReconciler:
    def __init__(
        self,
        store: SessionStore,
        settings: Settings,
        session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
        clock: Clock = utc_now,
    ) -> None:
        """
        Args:
            store: Session store used for identity and session reads/writes
            settings: Supplies the disconnect tolerance
            session_factory: Defaults to the store's factory
            clock: Source of "now"; one reading is taken per reconcile call
        """
        self.store = store
        self.session_factory = session_factory or store.session_factory
        self.tolerance = timedelta(minutes=settings.disconnect_tolerance_minutes)
        self.clock = clock

    async def is_available(self) -> bool:
        return await self.store.ping()

    async def reconcile(self, observations: Iterable[Observation]) -> bool:
        """
        Merge observations into the session table.

        Returns:
            True if the batch was committed, False if nothing was written
        """
        normalized = self._normalize(observations)
        usernames = {u for u, _, _ in normalized} | {c for _, c, _ in normalized}
        games = {g for _, _, g in normalized}
        if not usernames or not games:
            logger.warning("No usable observations to reconcile")
            return False

        try:
            async with self.session_factory() as session:
                async with session.begin():
                    users = await self.store.get_or_create_users(session, usernames)
                    game_rows = await self.store.get_or_create_games(session, games)
                    if not users or not game_rows:
                        raise RuntimeError(
                            f"Identity resolution returned nothing (users={len(users)}, "
                            f"games={len(game_rows)})"
                        )

                    user_ids = {u.username: u.id for u in users}
                    game_ids = {g.name: g.id for g in game_rows}
                    keys = self._resolve_keys(normalized, user_ids, game_ids)

                    latest = await self.store.get_most_recent_sessions(session, keys)
                    inserts, extensions = self._plan(keys, latest, self.clock())

                    await self.store.upsert_sessions(session, inserts, extensions)
        except Exception as exc:
            logger.error("Failed to reconcile presence sessions: %s", exc, exc_info=True)
            return False

        logger.info(
            "Reconciled %s observations: %s new sessions, %s extended",
            len(normalized),
            len(inserts),
            len(extensions),
        )
        return True

    def _plan(
        self,
        keys: Iterable[SessionKey],
        latest: Dict[SessionKey, PresenceSession],
        now: datetime,
    ) -> Tuple[List[PresenceSession], List[Tuple[int, datetime]]]:
        """Decide, per key, between a new session and extending the last one."""
        inserts: List[PresenceSession] = []
        extensions: List[Tuple[int, datetime]] = []

        for key in sorted(set(keys)):
            previous = latest.get(key)
            if previous is None or now - previous.left_at > self.tolerance:
                inserts.append(
                    PresenceSession(
                        user_id=key.user_id,
                        channel_id=key.channel_id,
                        game_id=key.game_id,
                        joined_at=now,
                        left_at=now,
                    )
                )
            elif now > previous.left_at:
                extensions.append((previous.id, now))

        return inserts, extensions

    @staticmethod
    def _normalize(observations: Iterable[Observation]) -> Set[Tuple[str, str, str]]:
        normalized: Set[Tuple[str, str, str]] = set()
        for observation in observations:
            entry = (
                normalize_name(observation.username),
                normalize_name(observation.channel),
                normalize_name(observation.game),
            )
            if not all(entry):
                logger.warning("Dropping incomplete observation: %s", observation)
                continue
            normalized.add(entry)
        return normalized

    @staticmethod
    def _resolve_keys(
        normalized: Iterable[Tuple[str, str, str]],
        user_ids: Dict[str, int],
        game_ids: Dict[str, int],
    ) -> List[SessionKey]:
        keys: List[SessionKey] = []
        for username, channel, game in normalized:
            keys.append(SessionKey(user_ids[username], user_ids[channel], game_ids[game]))
        return keys
