"""
Key-value storage backends for the presence relay service.

The service keeps no state of its own: presence records and rate-limit windows
live in a TTL-capable key-value store. This module defines the minimal interface
the rest of the package relies on, an in-memory implementation for tests and
single-process development, and a Redis implementation for production.

Only single-key operations are assumed to be atomic. There are no multi-key
transactions and no compare-and-swap.
"""

import time
from abc import ABC, abstractmethod
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

from redis.asyncio import Redis
from redis.exceptions import RedisError

from .errors import StoreError

Clock = Callable[[], float]


@dataclass(frozen=True)
class KeyPage:
    """One page of a prefix listing."""

    keys: list[str]
    cursor: str | None  # None when the listing is complete


class KeyValueStore(ABC):
    """Minimal async key-value interface with per-key TTL."""

    @abstractmethod
    async def get(self, key: str) -> str | None:
        """Return the value stored under ``key``, or None if absent or expired."""

    @abstractmethod
    async def put(self, key: str, value: str, ttl: int) -> None:
        """Store ``value`` under ``key``, replacing any prior value, expiring after ``ttl`` seconds."""

    @abstractmethod
    async def delete(self, key: str) -> None:
        """Remove ``key``. Deleting an absent key is not an error."""

    @abstractmethod
    async def list_keys(
        self, prefix: str, cursor: str | None = None, limit: int = 1000
    ) -> KeyPage:
        """List up to ``limit`` live keys starting with ``prefix``, resuming from ``cursor``."""

    async def close(self) -> None:
        """Release any resources held by the backend."""


class MemoryKeyValueStore(KeyValueStore):
    """
    In-process key-value store with lazy TTL expiry.

    Expired entries are dropped the next time they are read or listed. Keys are
    listed in sorted order and the cursor is the last key of the previous page,
    so deletions during a scan never cause keys to be skipped.
    """

    def __init__(self, clock: Clock = time.time) -> None:
        self._clock = clock
        self._entries: dict[str, tuple[str, float]] = {}

    def _live_value(self, key: str) -> str | None:
        entry = self._entries.get(key)
        if entry is None:
            return None

        value, expires_at = entry
        if expires_at <= self._clock():
            del self._entries[key]
            return None
        return value

    async def get(self, key: str) -> str | None:
        return self._live_value(key)

    async def put(self, key: str, value: str, ttl: int) -> None:
        self._entries[key] = (value, self._clock() + ttl)

    async def delete(self, key: str) -> None:
        self._entries.pop(key, None)

    async def list_keys(
        self, prefix: str, cursor: str | None = None, limit: int = 1000
    ) -> KeyPage:
        candidates = sorted(
            key
            for key in list(self._entries)
            if key.startswith(prefix) and (cursor is None or key > cursor)
        )

        keys: list[str] = []
        for key in candidates:
            if self._live_value(key) is None:
                continue
            keys.append(key)
            if len(keys) == limit:
                break

        # Only hand out a cursor when there may be more keys after this page
        if len(keys) == limit and keys[-1] != candidates[-1]:
            return KeyPage(keys=keys, cursor=keys[-1])
        return KeyPage(keys=keys, cursor=None)


class RedisKeyValueStore(KeyValueStore):
    """
    Key-value store backed by Redis.

    Listing uses ``SCAN`` with a ``MATCH`` pattern, so it is not a snapshot:
    keys created or expiring during the scan may or may not be observed.
    """

    def __init__(self, client: Any) -> None:
        self._redis = client

    @classmethod
    def from_url(cls, url: str) -> "RedisKeyValueStore":
        """Create a store connected to the Redis server at ``url``."""
        return cls(Redis.from_url(url, decode_responses=True))

    async def get(self, key: str) -> str | None:
        try:
            value = await self._redis.get(key)
        except RedisError as e:
            raise StoreError(f"GET {key} failed: {e}") from e

        if isinstance(value, bytes):
            return value.decode("utf-8")
        return value

    async def put(self, key: str, value: str, ttl: int) -> None:
        try:
            await self._redis.set(key, value, ex=ttl)
        except RedisError as e:
            raise StoreError(f"SET {key} failed: {e}") from e

    async def delete(self, key: str) -> None:
        try:
            await self._redis.delete(key)
        except RedisError as e:
            raise StoreError(f"DEL {key} failed: {e}") from e

    async def list_keys(
        self, prefix: str, cursor: str | None = None, limit: int = 1000
    ) -> KeyPage:
        try:
            next_cursor, raw_keys = await self._redis.scan(
                cursor=int(cursor or 0), match=f"{prefix}*", count=limit
            )
        except RedisError as e:
            raise StoreError(f"SCAN {prefix}* failed: {e}") from e

        keys = [k.decode("utf-8") if isinstance(k, bytes) else k for k in raw_keys]
        return KeyPage(
            keys=keys, cursor=None if int(next_cursor) == 0 else str(next_cursor)
        )

    async def close(self) -> None:
        await self._redis.aclose()
