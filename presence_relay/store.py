"""
Presence storage for the presence relay service.

A session is present if and only if its ``user:{sessionId}`` key exists. Each
heartbeat overwrites the record and renews its TTL; sessions that stop
heartbeating disappear when the key expires, with no explicit offline event.
"""

import time

from .kv import Clock, KeyValueStore
from .models import Mood, PresenceRecord

PRESENCE_KEY_PREFIX = "user:"
DEFAULT_PRESENCE_TTL_SECONDS = 60


def presence_key(session_id: str) -> str:
    return f"{PRESENCE_KEY_PREFIX}{session_id}"


class PresenceStore:
    """
    Per-session liveness records with TTL-based expiry.

    Callers validate the session id and mood before calling in. Concurrent
    heartbeats for the same session are last-write-wins.
    """

    def __init__(
        self,
        kv: KeyValueStore,
        ttl_seconds: int = DEFAULT_PRESENCE_TTL_SECONDS,
        clock: Clock = time.time,
    ) -> None:
        self._kv = kv
        self._ttl_seconds = ttl_seconds
        self._clock = clock

    async def heartbeat(self, session_id: str, mood: Mood | None = None) -> PresenceRecord:
        """
        Create or renew the presence record for a session.

        Args:
            session_id: The validated session identifier
            mood: The reported mood, if any

        Returns:
            The record that was written
        """
        record = PresenceRecord(mood=mood, timestamp=self._clock())
        await self._kv.put(
            presence_key(session_id),
            record.model_dump_json(),
            ttl=self._ttl_seconds,
        )
        return record

    async def leave(self, session_id: str) -> None:
        """Remove a session immediately. Idempotent."""
        await self._kv.delete(presence_key(session_id))

    async def read(self, session_id: str) -> PresenceRecord | None:
        """Return the live record for a session, or None if it has expired or left."""
        raw = await self._kv.get(presence_key(session_id))
        if raw is None:
            return None
        return PresenceRecord.model_validate_json(raw)
