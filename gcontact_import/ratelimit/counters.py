"""
Shared sliding-window request logs backing the rate limiter.

A counter store records one entry per granted request, per scope, with
the request time. A scope has room when fewer than ``limit`` entries fall
in the ``window_seconds`` ending now, so no span of that length ever holds
more than ``limit`` requests. Each acquire is atomic on the backing store,
which keeps budgets correct across any number of worker processes:

- RedisCounterStore: a sorted set per scope, trimmed, added to and counted
  in one MULTI/EXEC pipeline
- SqliteCounterStore: one row per request in the sync database, checked
  and inserted under a single write lock
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Protocol

import redis.asyncio as redis

from gcontact_import.config.sync_config import DEFAULT_KEY_PREFIX
from gcontact_import.storage.db import SyncDatabase


@dataclass(frozen=True)
class WindowSnapshot:
    """State of one scope's window after an acquire or peek."""

    count: int
    oldest: float | None
    window_seconds: int
    granted: bool = True

    def retry_after(self, now: float) -> float:
        """Seconds until the oldest request leaves the window."""
        if self.oldest is None:
            return 0.0
        return max(self.oldest + self.window_seconds - now, 0.0)


class CounterStore(Protocol):
    """Atomic sliding-window port used by RateLimiter."""

    async def acquire(
        self, key: str, member: str, limit: int, window_seconds: int, now: float
    ) -> WindowSnapshot: ...

    async def release(self, key: str, member: str) -> None: ...

    async def peek(self, key: str, window_seconds: int, now: float) -> WindowSnapshot:
        ...


class RedisCounterStore:
    """
    Counter store on Redis, safe across hosts.

    Usage:
        counters = RedisCounterStore.from_url("redis://localhost:6379/0")
        snapshot = await counters.acquire("user:42", "req-1", 500, 60, time.time())
        await counters.close()
    """

    def __init__(self, client: redis.Redis, key_prefix: str = DEFAULT_KEY_PREFIX):
        self.client = client
        self.key_prefix = key_prefix

    @classmethod
    def from_url(
        cls, url: str, key_prefix: str = DEFAULT_KEY_PREFIX
    ) -> RedisCounterStore:
        client = redis.from_url(url, encoding="utf-8", decode_responses=True)
        return cls(client, key_prefix)

    def _key(self, key: str) -> str:
        return f"{self.key_prefix}:{key}"

    async def acquire(
        self, key: str, member: str, limit: int, window_seconds: int, now: float
    ) -> WindowSnapshot:
        redis_key = self._key(key)

        # Add first, then count: a concurrent caller always sees this entry,
        # so two callers can never both take the last slot
        pipe = self.client.pipeline(transaction=True)
        pipe.zremrangebyscore(redis_key, 0, now - window_seconds)
        pipe.zadd(redis_key, {member: now})
        pipe.zcard(redis_key)
        pipe.zrange(redis_key, 0, 0, withscores=True)
        pipe.expire(redis_key, window_seconds * 2)
        _, _, count, oldest_entries, _ = await pipe.execute()

        oldest = float(oldest_entries[0][1]) if oldest_entries else None
        if int(count) > limit:
            await self.client.zrem(redis_key, member)
            return WindowSnapshot(int(count) - 1, oldest, window_seconds, False)
        return WindowSnapshot(int(count), oldest, window_seconds)

    async def release(self, key: str, member: str) -> None:
        await self.client.zrem(self._key(key), member)

    async def peek(self, key: str, window_seconds: int, now: float) -> WindowSnapshot:
        redis_key = self._key(key)
        since = f"({now - window_seconds}"
        pipe = self.client.pipeline(transaction=True)
        pipe.zcount(redis_key, since, "+inf")
        pipe.zrangebyscore(redis_key, since, "+inf", start=0, num=1, withscores=True)
        count, oldest_entries = await pipe.execute()

        oldest = float(oldest_entries[0][1]) if oldest_entries else None
        return WindowSnapshot(int(count), oldest, window_seconds)

    async def close(self) -> None:
        await self.client.aclose()


class SqliteCounterStore:
    """
    Counter store on the sync database, safe across processes on one host.

    Usage:
        counters = SqliteCounterStore(SyncDatabase("/path/to/import.db"))
    """

    def __init__(self, database: SyncDatabase):
        self.database = database

    async def acquire(
        self, key: str, member: str, limit: int, window_seconds: int, now: float
    ) -> WindowSnapshot:
        granted, count, oldest = await asyncio.to_thread(
            self.database.acquire_rate_slot, key, member, limit, window_seconds, now
        )
        return WindowSnapshot(count, oldest, window_seconds, granted)

    async def release(self, key: str, member: str) -> None:
        await asyncio.to_thread(self.database.release_rate_slot, key, member)

    async def peek(self, key: str, window_seconds: int, now: float) -> WindowSnapshot:
        count, oldest = await asyncio.to_thread(
            self.database.get_rate_window, key, window_seconds, now
        )
        return WindowSnapshot(count, oldest, window_seconds)

    async def close(self) -> None:
        pass
