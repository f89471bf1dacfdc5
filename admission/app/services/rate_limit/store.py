"""State store abstraction for rate limit state.

Provides the four primitives the decision engine relies on (get, set with
optional expiry, atomic increment and compare-and-set) with a Redis
implementation for multi-instance deployments and an in-memory one for
single-instance use and tests.
"""

import asyncio
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Awaitable, Optional, TypeVar

import redis
import redis.asyncio as aioredis

from admission.app.core.logging import get_logger
from admission.app.exceptions import StateCorruptionError, StoreUnavailableError
from admission.app.services.rate_limit.redis_lua import (
    COMPARE_AND_SET_SCRIPT,
    INCREMENT_SCRIPT,
)

logger = get_logger(__name__)

T = TypeVar("T")

# Error text Redis returns when INCR meets a non-integer value
_NOT_AN_INTEGER = "not an integer"


class StateStore(ABC):
    """Abstract base class for rate limit state stores.

    Absent keys are reported as None, never as an empty or zero value.
    TTLs are in milliseconds; None or 0 means no expiry.
    """

    @abstractmethod
    async def get(self, key: str) -> Optional[str]:
        """Return the value stored at key, or None if absent or expired."""
        pass

    @abstractmethod
    async def set(self, key: str, value: str, ttl_ms: Optional[int] = None) -> None:
        """Store value at key, replacing any previous value."""
        pass

    @abstractmethod
    async def increment(self, key: str, ttl_ms: Optional[int] = None) -> int:
        """Atomically increment the integer at key and return the new value.

        An absent key starts from 0. The TTL is applied only when the
        increment creates the key.

        Raises:
            StateCorruptionError: If the key holds a non-integer value
        """
        pass

    @abstractmethod
    async def compare_and_set(
        self,
        key: str,
        expected: Optional[str],
        value: str,
        ttl_ms: Optional[int] = None,
    ) -> bool:
        """Set key to value only if it currently holds expected.

        expected=None means "only if the key is absent".

        Returns:
            True if the write happened, False if another writer got there first
        """
        pass

    async def ping(self) -> bool:
        """Check that the store is reachable."""
        return True

    async def close(self) -> None:
        """Release any connections held by the store."""
        pass


@dataclass
class _StoreEntry:
    """Internal store entry with TTL tracking."""

    value: str
    expires_at: float | None = None

    def is_expired(self) -> bool:
        if self.expires_at is None:
            return False
        return time.monotonic() > self.expires_at


def _expires_at(ttl_ms: Optional[int]) -> float | None:
    return time.monotonic() + ttl_ms / 1000 if ttl_ms else None


class InMemoryStateStore(StateStore):
    """In-memory state store with TTL support.

    Suitable for single-instance deployments and tests. State is lost when
    the process restarts and is not shared between instances.
    """

    def __init__(self) -> None:
        self._data: dict[str, _StoreEntry] = {}
        self._lock = asyncio.Lock()

    def _read(self, key: str) -> Optional[str]:
        entry = self._data.get(key)
        if entry is None:
            return None
        if entry.is_expired():
            del self._data[key]
            return None
        return entry.value

    async def get(self, key: str) -> Optional[str]:
        async with self._lock:
            return self._read(key)

    async def set(self, key: str, value: str, ttl_ms: Optional[int] = None) -> None:
        async with self._lock:
            self._data[key] = _StoreEntry(value=value, expires_at=_expires_at(ttl_ms))

    async def increment(self, key: str, ttl_ms: Optional[int] = None) -> int:
        async with self._lock:
            current = self._read(key)
            if current is None:
                self._data[key] = _StoreEntry(value="1", expires_at=_expires_at(ttl_ms))
                return 1
            try:
                new_value = int(current) + 1
            except ValueError as e:
                raise StateCorruptionError("counter", current, str(e)) from e
            self._data[key].value = str(new_value)
            return new_value

    async def compare_and_set(
        self,
        key: str,
        expected: Optional[str],
        value: str,
        ttl_ms: Optional[int] = None,
    ) -> bool:
        async with self._lock:
            if self._read(key) != expected:
                return False
            self._data[key] = _StoreEntry(value=value, expires_at=_expires_at(ttl_ms))
            return True

    async def clear(self) -> None:
        async with self._lock:
            self._data.clear()


class RedisStateStore(StateStore):
    """Redis-based state store shared by every admission instance.

    Every command is bounded by timeout_seconds. Redis errors and timeouts
    surface as StoreUnavailableError; the caller decides whether
    to retry and which fail policy to apply.

    Example:
        >>> store = RedisStateStore(redis_url="redis://localhost:6379/0")
        >>> await store.increment("ratelimit:fixed-window:abc:28000000", ttl_ms=60000)
    """

    def __init__(
        self,
        redis_client: Optional[Any] = None,
        redis_url: Optional[str] = None,
        timeout_seconds: float = 0.5,
    ) -> None:
        """Initialize the Redis store.

        Args:
            redis_client: Optional Redis client instance
            redis_url: Redis connection URL, used when no client is given
            timeout_seconds: Upper bound for a single command
        """
        if redis_client is None and redis_url is None:
            raise ValueError("RedisStateStore needs a redis_client or a redis_url")
        self._redis = redis_client
        self._redis_url = redis_url
        self._timeout = timeout_seconds

    def _get_client(self) -> Any:
        """Get or create the Redis client connection."""
        if self._redis is None:
            self._redis = aioredis.from_url(
                self._redis_url,
                decode_responses=True,
                socket_timeout=self._timeout,
                socket_connect_timeout=self._timeout,
            )
        return self._redis

    async def _call(self, operation: str, awaitable: Awaitable[T]) -> T:
        try:
            return await asyncio.wait_for(awaitable, timeout=self._timeout)
        except asyncio.TimeoutError as e:
            raise StoreUnavailableError(operation, f"timed out after {self._timeout}s") from e
        except redis.RedisError as e:
            # A READONLY replica or an OOM reply is an outage too
            raise StoreUnavailableError(operation, str(e)) from e

    @staticmethod
    def _decode(value: Any) -> Optional[str]:
        if isinstance(value, bytes):
            return value.decode("utf-8")
        return value

    async def get(self, key: str) -> Optional[str]:
        client = self._get_client()
        return self._decode(await self._call("get", client.get(key)))

    async def set(self, key: str, value: str, ttl_ms: Optional[int] = None) -> None:
        client = self._get_client()
        await self._call("set", client.set(key, value, px=ttl_ms or None))

    async def increment(self, key: str, ttl_ms: Optional[int] = None) -> int:
        client = self._get_client()

        async def incr() -> Any:
            try:
                return await client.eval(INCREMENT_SCRIPT, 1, key, ttl_ms or 0)
            except redis.ResponseError as e:
                if _NOT_AN_INTEGER not in str(e):
                    raise
                raise StateCorruptionError("counter", key, str(e)) from e

        return int(await self._call("increment", incr()))

    async def compare_and_set(
        self,
        key: str,
        expected: Optional[str],
        value: str,
        ttl_ms: Optional[int] = None,
    ) -> bool:
        client = self._get_client()
        result = await self._call(
            "compare_and_set",
            client.eval(
                COMPARE_AND_SET_SCRIPT,
                1,  # Number of keys
                key,  # KEYS[1]
                "0" if expected is None else "1",  # ARGV[1]
                expected or "",  # ARGV[2]
                value,  # ARGV[3]
                ttl_ms or 0,  # ARGV[4]
            ),
        )
        return bool(int(result))

    async def ping(self) -> bool:
        client = self._get_client()
        return bool(await self._call("ping", client.ping()))

    async def close(self) -> None:
        """Close the Redis connection."""
        if self._redis is not None:
            # Use aclose() for proper async cleanup in redis-py 5.0+
            await self._redis.aclose()
            self._redis = None


# Global store instance (singleton pattern)
_store_instance: StateStore | None = None


def get_state_store(force_new: bool = False) -> StateStore:
    """Get or create the global state store.

    Returns a RedisStateStore when settings.redis_enabled is set,
    otherwise an InMemoryStateStore.
    """
    global _store_instance

    if _store_instance is not None and not force_new:
        return _store_instance

    # Import settings here to avoid circular imports
    from admission.app.core.config import settings

    if settings.redis_enabled:
        _store_instance = RedisStateStore(
            redis_url=settings.redis_url,
            timeout_seconds=settings.redis_timeout_seconds,
        )
        logger.info("Using Redis state store")
    else:
        _store_instance = InMemoryStateStore()
        logger.info("Using in-memory state store (state is not shared between instances)")
    return _store_instance


def reset_state_store() -> None:
    """Drop the global store instance (for tests)."""
    global _store_instance
    _store_instance = None
