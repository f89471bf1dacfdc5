"""Per-client rate limiting backed by a shared state store.

This package provides three interchangeable algorithms (fixed window,
sliding window, token bucket) behind one decision engine, with Redis Lua
scripts for atomic state updates across instances.
"""

from .codec import StateCodec
from .engine import RateLimitEngine, get_rate_limit_engine, reset_rate_limit_engine
from .models import (
    Algorithm,
    RateLimitConfig,
    RateLimitDecision,
    SlidingWindowState,
    TokenBucketState,
    Verdict,
)
from .redis_lua import COMPARE_AND_SET_SCRIPT, INCREMENT_SCRIPT
from .store import (
    InMemoryStateStore,
    RedisStateStore,
    StateStore,
    get_state_store,
    reset_state_store,
)

__all__ = [
    "Algorithm",
    "Verdict",
    "RateLimitConfig",
    "RateLimitDecision",
    "SlidingWindowState",
    "TokenBucketState",
    "StateCodec",
    "COMPARE_AND_SET_SCRIPT",
    "INCREMENT_SCRIPT",
    "StateStore",
    "InMemoryStateStore",
    "RedisStateStore",
    "get_state_store",
    "reset_state_store",
    "RateLimitEngine",
    "get_rate_limit_engine",
    "reset_rate_limit_engine",
]
