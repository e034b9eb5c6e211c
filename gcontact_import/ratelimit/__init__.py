"""
gcontact_import.ratelimit - Provider request throttling

Contains the RateLimiter and the shared counter stores behind it.
"""

from gcontact_import.ratelimit.counters import (
    CounterStore,
    RedisCounterStore,
    SqliteCounterStore,
    WindowSnapshot,
)
from gcontact_import.ratelimit.limiter import GLOBAL_SCOPE, RateLimiter

__all__ = [
    "GLOBAL_SCOPE",
    "CounterStore",
    "RateLimiter",
    "RedisCounterStore",
    "SqliteCounterStore",
    "WindowSnapshot",
]
