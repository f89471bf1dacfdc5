"""Shared fixtures for admission controller tests."""

import time
from unittest.mock import AsyncMock, MagicMock

import pytest

from admission.app.core.retry import RetryPolicy
from admission.app.services.rate_limit import (
    COMPARE_AND_SET_SCRIPT,
    INCREMENT_SCRIPT,
    InMemoryStateStore,
    RateLimitConfig,
    RateLimitEngine,
    reset_rate_limit_engine,
    reset_state_store,
)


@pytest.fixture(autouse=True)
def reset_globals():
    """Reset global engine and store before each test."""
    reset_rate_limit_engine()
    reset_state_store()
    yield
    reset_rate_limit_engine()
    reset_state_store()


@pytest.fixture
def store():
    return InMemoryStateStore()


@pytest.fixture
def no_delay_retry():
    """Retry once without sleeping."""
    return RetryPolicy(max_retries=1, base_delay=0.0)


@pytest.fixture
def engine(store, no_delay_retry):
    return RateLimitEngine(store, RateLimitConfig(), retry_policy=no_delay_retry)


@pytest.fixture
def mock_redis():
    """Create a mock Redis client that understands our Lua scripts.

    Values are returned as bytes, like a client without decode_responses.
    """
    redis = MagicMock()
    redis.data = {}
    redis.ttls = {}

    def _live(key):
        if key in redis.ttls and redis.ttls[key] < time.time():
            redis.data.pop(key, None)
            redis.ttls.pop(key, None)
        return redis.data.get(key)

    async def mock_get(key):
        value = _live(key)
        return value.encode() if value is not None else None

    async def mock_set(key, value, px=None):
        redis.data[key] = str(value)
        if px:
            redis.ttls[key] = time.time() + px / 1000
        else:
            redis.ttls.pop(key, None)
        return True

    async def mock_eval(script, num_keys, *args):
        """Mock Redis Lua script execution.

        Simulates INCREMENT_SCRIPT (KEYS[1], ARGV[1]=ttl_ms) and
        COMPARE_AND_SET_SCRIPT (KEYS[1], ARGV[1]=expected_present,
        ARGV[2]=expected, ARGV[3]=value, ARGV[4]=ttl_ms).
        """
        key = args[0]
        if script == INCREMENT_SCRIPT:
            ttl_ms = int(args[1])
            current = _live(key)
            value = int(current or 0) + 1
            redis.data[key] = str(value)
            if value == 1 and ttl_ms > 0:
                redis.ttls[key] = time.time() + ttl_ms / 1000
            return value
        if script == COMPARE_AND_SET_SCRIPT:
            expected_present, expected, value, ttl_ms = args[1], args[2], args[3], int(args[4])
            current = _live(key)
            if expected_present == "1":
                if current != expected:
                    return 0
            elif current is not None:
                return 0
            await mock_set(key, value, px=ttl_ms or None)
            return 1
        raise AssertionError("unexpected script")

    redis.get = mock_get
    redis.set = mock_set
    redis.eval = mock_eval
    redis.ping = AsyncMock(return_value=True)
    redis.aclose = AsyncMock()

    return redis
