"""
Per-user and global throttling of provider requests.

The RateLimiter gates every People API call behind two budgets held in a
shared CounterStore: one per user (500 requests/60s by default) and one
across all users (3000 requests/60s). Both are sliding windows: no span
of 60 seconds ever holds more than the limit. A call that would exceed
either budget waits until the oldest request in that window ages out
instead of being dropped.

When the provider itself throttles a call, the limiter backs off
exponentially (1s, 2s, 4s, 8s, 16s, capped at 30s) and retries, raising
RateLimitExceeded once the attempts are used up.
"""

from __future__ import annotations

import asyncio
import logging
import time
import uuid
from collections.abc import Awaitable, Callable
from typing import TypeVar

from gcontact_import.config.sync_config import RateLimitConfig
from gcontact_import.errors import ProviderThrottled, RateLimitExceeded
from gcontact_import.ratelimit.counters import CounterStore, WindowSnapshot

logger = logging.getLogger(__name__)

T = TypeVar("T")

GLOBAL_SCOPE = "global"


class RateLimiter:
    """
    Throttles provider calls for one user.

    Attributes:
        user_id: User whose budget this limiter draws from
        config: Limits and backoff settings
        counters: Shared atomic counter store

    Usage:
        limiter = RateLimiter(counters, user_id="42")
        response = await limiter.execute_request(lambda: fetch_page(token))
    """

    def __init__(
        self,
        counters: CounterStore,
        user_id: str,
        config: RateLimitConfig | None = None,
        clock: Callable[[], float] = time.time,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        """
        Args:
            counters: Atomic counter store shared by every worker
            user_id: User whose per-user budget applies
            config: Limits and backoff settings (defaults if None)
            clock: Wall clock returning epoch seconds
            sleep: Coroutine used to wait; replaced in tests
        """
        self.counters = counters
        self.user_id = user_id
        self.config = config or RateLimitConfig()
        self.clock = clock
        self.sleep = sleep
        self.throttle_attempts = 0

    @property
    def user_scope(self) -> str:
        return f"user:{self.user_id}"

    # =========================================================================
    # Budget handling
    # =========================================================================

    async def can_make_request(self) -> bool:
        """Check, without consuming anything, whether both budgets have room."""
        now = self.clock()
        window = self.config.window_seconds
        user = await self.counters.peek(self.user_scope, window, now)
        shared = await self.counters.peek(GLOBAL_SCOPE, window, now)
        return (
            user.count < self.config.per_user_limit
            and shared.count < self.config.global_limit
        )

    async def _try_acquire(self) -> float:
        """
        Claim one request from both budgets.

        Returns:
            0.0 when the slot was claimed, otherwise seconds until the
            oldest request in the exhausted window ages out. A failed claim
            gives back anything it took.
        """
        now = self.clock()
        window = self.config.window_seconds
        member = f"{now:.6f}-{uuid.uuid4().hex}"

        user = await self.counters.acquire(
            self.user_scope, member, self.config.per_user_limit, window, now
        )
        if not user.granted:
            return self._wait_time(user, now)

        shared = await self.counters.acquire(
            GLOBAL_SCOPE, member, self.config.global_limit, window, now
        )
        if not shared.granted:
            await self.counters.release(self.user_scope, member)
            return self._wait_time(shared, now)

        return 0.0

    @staticmethod
    def _wait_time(snapshot: WindowSnapshot, now: float) -> float:
        return snapshot.retry_after(now) + 0.01

    async def wait_for_slot(self) -> None:
        """Suspend until both budgets have room, then claim one request."""
        while True:
            wait = await self._try_acquire()
            if wait <= 0:
                return
            logger.info(
                f"Request budget exhausted for user {self.user_id}, "
                f"waiting {wait:.1f}s for a slot"
            )
            await self.sleep(wait)

    # =========================================================================
    # Provider throttling
    # =========================================================================

    def backoff_delay(self, attempt: int) -> float:
        """Delay before retry ``attempt`` (0-based): base * 2^attempt, capped."""
        return min(
            self.config.backoff_base_seconds * (2**attempt),
            self.config.backoff_max_seconds,
        )

    async def on_throttled(self, cause: Exception | None = None) -> None:
        """
        Back off after the provider signalled throttling.

        Raises:
            RateLimitExceeded: If the backoff attempts are exhausted
        """
        if self.throttle_attempts >= self.config.max_throttle_attempts:
            attempts = self.throttle_attempts
            self.throttle_attempts = 0
            raise RateLimitExceeded(
                f"Provider rate limit persisted after {attempts} backoff attempts "
                f"for user {self.user_id}"
            ) from cause

        delay = self.backoff_delay(self.throttle_attempts)
        self.throttle_attempts += 1
        logger.warning(
            f"Provider throttled user {self.user_id}, retrying in {delay:.1f}s "
            f"(attempt {self.throttle_attempts}/{self.config.max_throttle_attempts})"
        )
        await self.sleep(delay)

    async def execute_request(self, operation: Callable[[], Awaitable[T]]) -> T:
        """
        Run a provider call inside the budgets, retrying on throttling.

        Each attempt, including retries, claims its own slot.

        Args:
            operation: Zero-argument coroutine factory performing the call

        Returns:
            Result of the operation

        Raises:
            RateLimitExceeded: If provider throttling outlives the backoff
        """
        while True:
            await self.wait_for_slot()
            try:
                result = await operation()
            except ProviderThrottled as e:
                await self.on_throttled(e)
                continue
            self.throttle_attempts = 0
            return result
