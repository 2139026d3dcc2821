"""
Aggregate presence computation.

The backing store has no "count and group by" query, so every read scans the
whole ``user:*`` keyspace. This is fine for a single room of concurrent
visitors; a much larger population would need an incrementally maintained
counter instead.
"""

import asyncio
import json

from .kv import KeyValueStore
from .models import Mood, PresenceState
from .store import PRESENCE_KEY_PREFIX

DEFAULT_PAGE_SIZE = 1000
DEFAULT_FETCH_BATCH_SIZE = 100

_VALID_MOODS = frozenset(mood.value for mood in Mood)


def _mood_of(raw: str | None) -> str | None:
    """Extract a known mood from a stored record, or None if there is none."""
    if raw is None:
        return None
    try:
        entry = json.loads(raw)
    except ValueError:
        return None

    if not isinstance(entry, dict):
        return None
    mood = entry.get("mood")
    if isinstance(mood, str) and mood in _VALID_MOODS:
        return mood
    return None


class Aggregator:
    """Reconstructs ``{count, moods}`` from the currently-live presence records."""

    def __init__(
        self,
        kv: KeyValueStore,
        page_size: int = DEFAULT_PAGE_SIZE,
        fetch_batch_size: int = DEFAULT_FETCH_BATCH_SIZE,
    ) -> None:
        self._kv = kv
        self._page_size = page_size
        self._fetch_batch_size = fetch_batch_size

    async def compute(self) -> PresenceState:
        """
        Scan all presence records and tally them.

        Every key observed counts toward ``count`` regardless of whether its value
        parses; only records carrying a known mood contribute to ``moods``. The
        result is a point-in-time estimate, not a snapshot.

        Returns:
            The aggregate presence state
        """
        count = 0
        moods: dict[str, int] = {}
        cursor: str | None = None

        while True:
            page = await self._kv.list_keys(
                PRESENCE_KEY_PREFIX, cursor=cursor, limit=self._page_size
            )
            count += len(page.keys)

            for start in range(0, len(page.keys), self._fetch_batch_size):
                batch = page.keys[start : start + self._fetch_batch_size]
                values = await asyncio.gather(
                    *(self._kv.get(key) for key in batch), return_exceptions=True
                )
                # Raise only once the whole batch has settled
                for value in values:
                    if isinstance(value, BaseException):
                        raise value

                for value in values:
                    mood = _mood_of(value)
                    if mood is not None:
                        moods[mood] = moods.get(mood, 0) + 1

            if page.cursor is None:
                break
            cursor = page.cursor

        return PresenceState(count=count, moods=moods)
