"""
Tests for provider request throttling.

Tests the sliding-window counter stores (SQLite and Redis) and the
RateLimiter budgets and backoff, using a fake clock so no test waits.
"""

from unittest.mock import AsyncMock, MagicMock

import pytest

from gcontact_import.config import RateLimitConfig
from gcontact_import.errors import ProviderThrottled, RateLimitExceeded
from gcontact_import.ratelimit import (
    GLOBAL_SCOPE,
    RateLimiter,
    RedisCounterStore,
    SqliteCounterStore,
    WindowSnapshot,
)
from gcontact_import.storage import SyncDatabase


class FakeClock:
    """Clock whose sleep advances time instead of waiting."""

    def __init__(self, now=0.0):
        self.now = now
        self.sleeps = []

    def __call__(self):
        return self.now

    async def sleep(self, seconds):
        self.sleeps.append(seconds)
        self.now += seconds


@pytest.fixture
def database():
    db = SyncDatabase(":memory:")
    db.initialize()
    yield db
    db.close()


@pytest.fixture
def counters(database):
    return SqliteCounterStore(database)


@pytest.fixture
def clock():
    return FakeClock(now=120.0)


class TestWindowSnapshot:
    """Tests for retry timing."""

    def test_retry_after_oldest_ages_out(self):
        snapshot = WindowSnapshot(count=5, oldest=100.0, window_seconds=60)
        assert snapshot.retry_after(130.0) == pytest.approx(30.0)

    def test_retry_after_never_negative(self):
        snapshot = WindowSnapshot(count=5, oldest=100.0, window_seconds=60)
        assert snapshot.retry_after(200.0) == 0.0

    def test_empty_window(self):
        assert WindowSnapshot(0, None, 60).retry_after(10.0) == 0.0


class TestSqliteCounterStore:
    """Tests for SqliteCounterStore."""

    async def test_acquire_counts_requests(self, counters):
        first = await counters.acquire("user:a", "r1", 5, 60, 61.0)
        second = await counters.acquire("user:a", "r2", 5, 60, 119.0)
        assert (first.count, second.count) == (1, 2)
        assert first.granted and second.granted
        assert second.oldest == 61.0

    async def test_denied_at_limit(self, counters):
        await counters.acquire("user:a", "r1", 2, 60, 10.0)
        await counters.acquire("user:a", "r2", 2, 60, 20.0)
        denied = await counters.acquire("user:a", "r3", 2, 60, 30.0)
        assert not denied.granted
        assert denied.count == 2
        assert denied.retry_after(30.0) == pytest.approx(40.0)
        assert (await counters.peek("user:a", 60, 30.0)).count == 2

    async def test_requests_age_out_individually(self, counters):
        await counters.acquire("user:a", "r1", 2, 60, 10.0)
        await counters.acquire("user:a", "r2", 2, 60, 50.0)
        # r1 left the window at 70; r2 is still in it
        snapshot = await counters.acquire("user:a", "r3", 2, 60, 70.0)
        assert snapshot.granted
        assert snapshot.count == 2
        assert snapshot.oldest == 50.0

    async def test_scopes_are_independent(self, counters):
        await counters.acquire("user:a", "r1", 1, 60, 0)
        snapshot = await counters.acquire("user:b", "r1", 1, 60, 0)
        assert snapshot.granted
        assert snapshot.count == 1

    async def test_release(self, counters):
        await counters.acquire("user:a", "r1", 5, 60, 0)
        await counters.acquire("user:a", "r2", 5, 60, 0)
        await counters.release("user:a", "r2")
        assert (await counters.peek("user:a", 60, 1)).count == 1

    async def test_release_unknown_member(self, counters, database):
        await counters.release("user:a", "missing")
        assert database.get_rate_window("user:a", 60, 1) == (0, None)

    async def test_expired_rows_deleted(self, counters, database):
        await counters.acquire("user:a", "r1", 5, 60, 0)
        await counters.acquire("user:a", "r2", 5, 60, 180)
        assert database.get_rate_window("user:a", 1000, 180) == (1, 180)


class TestRedisCounterStore:
    """Tests for RedisCounterStore against a mocked client."""

    @pytest.fixture
    def pipeline(self):
        pipe = MagicMock()
        pipe.execute = AsyncMock(return_value=[0, 1, 3, [("old", 100.0)], True])
        return pipe

    @pytest.fixture
    def client(self, pipeline):
        client = MagicMock()
        client.pipeline.return_value = pipeline
        client.zrem = AsyncMock(return_value=1)
        client.aclose = AsyncMock()
        return client

    async def test_acquire_uses_transaction(self, client, pipeline):
        counters = RedisCounterStore(client, key_prefix="rl")
        snapshot = await counters.acquire("user:a", "req-1", 5, 60, 125.0)

        client.pipeline.assert_called_once_with(transaction=True)
        pipeline.zremrangebyscore.assert_called_once_with("rl:user:a", 0, 65.0)
        pipeline.zadd.assert_called_once_with("rl:user:a", {"req-1": 125.0})
        pipeline.zcard.assert_called_once_with("rl:user:a")
        pipeline.expire.assert_called_once_with("rl:user:a", 120)
        client.zrem.assert_not_awaited()
        assert snapshot.granted
        assert snapshot.count == 3
        assert snapshot.oldest == 100.0

    async def test_acquire_over_limit_removes_entry(self, client, pipeline):
        counters = RedisCounterStore(client, key_prefix="rl")
        snapshot = await counters.acquire("user:a", "req-1", 2, 60, 125.0)

        client.zrem.assert_awaited_once_with("rl:user:a", "req-1")
        assert not snapshot.granted
        assert snapshot.count == 2
        assert snapshot.retry_after(125.0) == pytest.approx(35.0)

    async def test_release_removes_member(self, client):
        counters = RedisCounterStore(client, key_prefix="rl")
        await counters.release("global", "req-1")
        client.zrem.assert_awaited_once_with("rl:global", "req-1")

    async def test_peek(self, client, pipeline):
        pipeline.execute.return_value = [7, [("m", 90.5)]]
        counters = RedisCounterStore(client, key_prefix="rl")
        snapshot = await counters.peek("global", 60, 100.0)

        pipeline.zcount.assert_called_once_with("rl:global", "(40.0", "+inf")
        assert snapshot.count == 7
        assert snapshot.oldest == 90.5

    async def test_peek_empty_key(self, client, pipeline):
        pipeline.execute.return_value = [0, []]
        counters = RedisCounterStore(client)
        snapshot = await counters.peek("global", 60, 0)
        assert (snapshot.count, snapshot.oldest) == (0, None)

    async def test_close(self, client):
        await RedisCounterStore(client).close()
        client.aclose.assert_awaited_once()


class TestRateLimiterBudgets:
    """Tests for per-user and global budgets."""

    async def test_501st_request_waits_for_oldest_to_age_out(self, counters, clock):
        """500 requests pass; the next one is delayed, not dropped."""
        limiter = RateLimiter(counters, "a", clock=clock, sleep=clock.sleep)

        for _ in range(500):
            await limiter.wait_for_slot()
        assert clock.sleeps == []

        await limiter.wait_for_slot()
        assert clock.sleeps == [pytest.approx(60.01)]
        snapshot = await counters.peek(limiter.user_scope, 60, clock.now)
        assert snapshot.count == 1
        assert snapshot.oldest == pytest.approx(180.01)

    async def test_no_burst_across_minute_boundary(self, counters):
        """A full budget just before :00 still blocks requests just after it."""
        clock = FakeClock(now=119.5)
        limiter = RateLimiter(counters, "a", clock=clock, sleep=clock.sleep)
        for _ in range(500):
            await limiter.wait_for_slot()

        clock.now = 120.0
        assert not await limiter.can_make_request()
        await limiter.wait_for_slot()

        assert clock.sleeps == [pytest.approx(59.51)]
        assert clock.now >= 179.5

    async def test_global_budget_shared_across_users(self, counters):
        clock = FakeClock(now=0.0)
        config = RateLimitConfig(per_user_limit=10, global_limit=3)
        alice = RateLimiter(counters, "alice", config, clock=clock, sleep=clock.sleep)
        bob = RateLimiter(counters, "bob", config, clock=clock, sleep=clock.sleep)

        await alice.wait_for_slot()
        await alice.wait_for_slot()
        await bob.wait_for_slot()
        assert not await bob.can_make_request()

        await bob.wait_for_slot()
        assert clock.sleeps == [pytest.approx(60.01)]

    async def test_global_denial_releases_user_entry(self, counters, database):
        clock = FakeClock(now=0.0)
        config = RateLimitConfig(per_user_limit=10, global_limit=1)
        alice = RateLimiter(counters, "alice", config, clock=clock, sleep=clock.sleep)
        bob = RateLimiter(counters, "bob", config, clock=clock, sleep=clock.sleep)

        await alice.wait_for_slot()
        wait = await bob._try_acquire()

        assert wait == pytest.approx(60.01)
        assert database.get_rate_window("user:bob", 60, 0) == (0, None)
        assert database.get_rate_window(GLOBAL_SCOPE, 60, 0)[0] == 1

    async def test_can_make_request_does_not_consume(self, counters, clock):
        limiter = RateLimiter(counters, "a", clock=clock, sleep=clock.sleep)
        assert await limiter.can_make_request()
        assert (await counters.peek(limiter.user_scope, 60, clock.now)).count == 0


class TestRateLimiterBackoff:
    """Tests for provider throttling backoff."""

    @pytest.fixture
    def limiter(self, counters, clock):
        return RateLimiter(counters, "a", clock=clock, sleep=clock.sleep)

    def test_backoff_delays(self, limiter):
        assert [limiter.backoff_delay(n) for n in range(6)] == [1, 2, 4, 8, 16, 30]

    async def test_retries_then_succeeds(self, limiter, clock):
        operation = AsyncMock(
            side_effect=[ProviderThrottled("429"), ProviderThrottled("429"), "page"]
        )
        assert await limiter.execute_request(operation) == "page"
        assert operation.await_count == 3
        assert clock.sleeps == [1.0, 2.0]
        assert limiter.throttle_attempts == 0

    async def test_exhausted_raises(self, limiter, clock):
        operation = AsyncMock(side_effect=ProviderThrottled("429"))
        with pytest.raises(RateLimitExceeded):
            await limiter.execute_request(operation)
        assert clock.sleeps == [1.0, 2.0, 4.0, 8.0, 16.0]
        assert operation.await_count == 6

    async def test_each_attempt_claims_a_slot(self, limiter, counters, clock):
        operation = AsyncMock(side_effect=[ProviderThrottled("429"), "ok"])
        await limiter.execute_request(operation)
        assert (await counters.peek(limiter.user_scope, 60, clock.now)).count == 2

    async def test_other_errors_propagate(self, limiter):
        operation = AsyncMock(side_effect=ValueError("boom"))
        with pytest.raises(ValueError):
            await limiter.execute_request(operation)
