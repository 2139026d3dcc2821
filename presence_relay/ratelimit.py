"""
Sliding-window rate limiter persisted in the key-value store.

Each (operation, identifier) pair owns one key, ``ratelimit:{operation}:{identifier}``,
holding a JSON array of epoch-second timestamps for recent admitted requests.

Design decisions:
  • Check BEFORE record: a rejected request writes nothing, so the stored window
    is neither extended nor flushed of expired entries.
  • Corrupt windows (bad JSON, non-numeric entries) are treated as empty rather
    than failing the request.
  • Read-modify-write is not atomic. Concurrent requests from one identifier may
    all be admitted against the same window; the limiter degrades to a slack of
    at most (concurrent requests - 1) instead of failing.
"""

import json
import time

import structlog

from .kv import Clock, KeyValueStore

logger = structlog.get_logger(__name__)

RATELIMIT_KEY_PREFIX = "ratelimit:"
DEFAULT_GRACE_SECONDS = 10


def _parse_window(raw: str | None) -> list[int | float]:
    """Decode a stored window, returning an empty list for anything malformed."""
    if not raw:
        return []

    try:
        parsed = json.loads(raw)
    except ValueError:
        return []

    if not isinstance(parsed, list):
        return []
    # bool is an int subclass but never a valid timestamp
    if not all(
        isinstance(item, int | float) and not isinstance(item, bool) for item in parsed
    ):
        return []
    return parsed


class RateLimiter:
    """Sliding-window log limiter for one operation."""

    def __init__(
        self,
        kv: KeyValueStore,
        operation: str,
        grace_seconds: int = DEFAULT_GRACE_SECONDS,
        clock: Clock = time.time,
    ) -> None:
        self._kv = kv
        self.operation = operation
        self._grace_seconds = grace_seconds
        self._clock = clock

    def key_for(self, identifier: str) -> str:
        return f"{RATELIMIT_KEY_PREFIX}{self.operation}:{identifier}"

    async def check_and_record(
        self, identifier: str, max_requests: int, window_seconds: int
    ) -> bool:
        """
        Admit or reject one request for ``identifier``.

        Args:
            identifier: Who is making the request (e.g. a session id)
            max_requests: Requests allowed inside the trailing window
            window_seconds: Length of the trailing window

        Returns:
            True if the request is admitted (and recorded), False if throttled
        """
        key = self.key_for(identifier)
        now = int(self._clock())
        window_start = now - window_seconds

        timestamps = [t for t in _parse_window(await self._kv.get(key)) if t > window_start]

        if len(timestamps) >= max_requests:
            logger.info(
                "Rate limit exceeded",
                operation=self.operation,
                identifier=identifier,
                requests=len(timestamps),
            )
            return False

        timestamps.append(now)
        await self._kv.put(
            key, json.dumps(timestamps), ttl=window_seconds + self._grace_seconds
        )
        return True
