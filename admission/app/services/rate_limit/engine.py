"""Rate limit decision engine.

One engine serves all three algorithms. It holds no mutable state of its
own: every request reads and writes the client's state through the shared
StateStore, so any number of engine instances can share one Redis.

Redis key format (see StateCodec):
- ratelimit:fixed-window:{client_id}:{window_index} - request counter
- ratelimit:sliding-window:{client_id} - live request timestamps
- ratelimit:token-bucket:{client_id} - tokens and last refill time
"""

import asyncio
import math
import time
from bisect import insort
from typing import Any, Awaitable, Callable, Dict, Optional, TypeVar

from admission.app.core.logging import get_log_context, get_logger
from admission.app.core.retry import RetryPolicy
from admission.app.exceptions import (
    StateCorruptionError,
    StoreContentionError,
    StoreUnavailableError,
)
from admission.app.services.rate_limit.codec import StateCodec
from admission.app.services.rate_limit.models import (
    Algorithm,
    RateLimitConfig,
    RateLimitDecision,
    SlidingWindowState,
    TokenBucketState,
    Verdict,
)
from admission.app.services.rate_limit.store import StateStore

logger = get_logger(__name__)

S = TypeVar("S")
T = TypeVar("T")


def _round_half_up(value: float) -> int:
    """Round a non-negative number, halves going up (2.5 -> 3)."""
    return math.floor(value + 0.5)


class RateLimitEngine:
    """Decides whether a client's request is allowed.

    Provides:
    - Fixed window counting with an atomic increment
    - Sliding window over stored request timestamps
    - Token bucket with refill on read
    - Compare-and-set updates so concurrent requests from one client are
      serialized even across instances
    - Configurable fail-open / fail-closed behavior when the store is down
    """

    def __init__(
        self,
        store: StateStore,
        config: Optional[RateLimitConfig] = None,
        retry_policy: Optional[RetryPolicy] = None,
    ) -> None:
        """Initialize the engine.

        Args:
            store: Shared state store handle
            config: Limits and policies; defaults to RateLimitConfig()
            retry_policy: Retry policy for transient store failures
        """
        self._store = store
        self.config = config or RateLimitConfig()
        self._codec = StateCodec(
            prefix=self.config.key_prefix,
            max_bucket_size=self.config.max_bucket_size,
        )
        self._retry = retry_policy or RetryPolicy()
        self._handlers: Dict[Algorithm, Callable[[str, int], Awaitable[RateLimitDecision]]] = {
            Algorithm.FIXED_WINDOW: self._check_fixed_window,
            Algorithm.SLIDING_WINDOW: self._check_sliding_window,
            Algorithm.TOKEN_BUCKET: self._check_token_bucket,
        }

    @property
    def codec(self) -> StateCodec:
        return self._codec

    async def decide(
        self,
        variant: "Algorithm | str",
        client_id: str,
        now_ms: Optional[int] = None,
    ) -> RateLimitDecision:
        """Decide whether a request from client_id is allowed.

        Args:
            variant: Algorithm to apply (enum member or its name)
            client_id: Opaque client identifier
            now_ms: Request time in milliseconds since epoch (defaults to now)

        Returns:
            RateLimitDecision with the verdict and rate limit metadata

        Raises:
            InvalidVariantError: If variant names no known algorithm
        """
        algorithm = Algorithm.parse(variant)
        if now_ms is None:
            now_ms = int(time.time() * 1000)

        try:
            decision = await self._handlers[algorithm](client_id, now_ms)
        except (StoreUnavailableError, StoreContentionError) as e:
            decision = self._apply_fail_policy(algorithm, client_id, now_ms, e)

        context = get_log_context(
            client_id=client_id,
            algorithm=algorithm.value,
            verdict=decision.verdict.value,
            source=decision.source,
        )
        if decision.allowed:
            logger.debug("Request allowed", extra=context)
        else:
            logger.info("Request denied by rate limit", extra=context)
        return decision

    # Store access

    async def _store_call(self, func: Callable[..., Awaitable[T]], *args: Any) -> T:
        """Call a store method under the retry policy, bounding each attempt."""
        timeout = self.config.store_timeout_seconds
        name = getattr(func, "__name__", "store call")

        async def bounded(*call_args: Any) -> T:
            try:
                return await asyncio.wait_for(func(*call_args), timeout=timeout)
            except asyncio.TimeoutError as e:
                raise StoreUnavailableError(name, f"timed out after {timeout}s") from e

        bounded.__name__ = name
        return await self._retry.call(bounded, *args)

    async def _read(
        self,
        key: str,
        decode: Callable[[Optional[str]], S],
        algorithm: Algorithm,
        client_id: str,
    ) -> tuple[Optional[str], Optional[S]]:
        """Read and decode state, treating undecodable values as absent."""
        raw = await self._store_call(self._store.get, key)
        try:
            return raw, decode(raw)
        except StateCorruptionError as e:
            self._log_corruption(e, algorithm, client_id)
            return raw, None

    def _log_corruption(
        self, error: StateCorruptionError, algorithm: Algorithm, client_id: str
    ) -> None:
        logger.warning(
            f"Resetting corrupt rate limit state: {error}",
            extra=get_log_context(client_id=client_id, algorithm=algorithm.value),
        )

    # Fixed window

    async def _check_fixed_window(self, client_id: str, now_ms: int) -> RateLimitDecision:
        config = self.config
        window_index = self._codec.window_index(now_ms, config.window_size_ms)
        key = self._codec.fixed_window_key(client_id, window_index)

        try:
            count = await self._store_call(self._store.increment, key, config.window_size_ms)
        except StateCorruptionError as e:
            self._log_corruption(e, Algorithm.FIXED_WINDOW, client_id)
            await self._store_call(
                self._store.set, key, self._codec.encode_counter(1), config.window_size_ms
            )
            count = 1

        # The increment already happened; count - 1 is what this request saw
        previous = count - 1
        reset_at_ms = (window_index + 1) * config.window_size_ms

        if config.exceeds(previous):
            return RateLimitDecision(
                verdict=Verdict.DENIED,
                algorithm=Algorithm.FIXED_WINDOW,
                client_id=client_id,
                limit=config.rate_limit,
                remaining=0,
                reset_at_ms=reset_at_ms,
                retry_after=max(1, math.ceil((reset_at_ms - now_ms) / 1000)),
            )
        return RateLimitDecision(
            verdict=Verdict.ALLOWED,
            algorithm=Algorithm.FIXED_WINDOW,
            client_id=client_id,
            limit=config.rate_limit,
            remaining=max(0, self._admissions_per_window() - count),
            reset_at_ms=reset_at_ms,
        )

    def _admissions_per_window(self) -> int:
        if self.config.exact_limit:
            return self.config.rate_limit
        return self.config.rate_limit + 1

    # Sliding window

    async def _check_sliding_window(self, client_id: str, now_ms: int) -> RateLimitDecision:
        config = self.config
        key = self._codec.sliding_window_key(client_id)

        for attempt in range(config.max_cas_attempts):
            raw, state = await self._read(
                key, self._codec.decode_timestamps, Algorithm.SLIDING_WINDOW, client_id
            )
            if state is None:
                state = SlidingWindowState()
            state.prune(now_ms, config.window_size_ms)

            if config.exceeds(len(state.timestamps)):
                # The oldest entry whose expiry brings the count back under the limit
                blocking = state.timestamps[len(state.timestamps) - self._admissions_per_window()]
                reset_at_ms = blocking + config.window_size_ms
                return RateLimitDecision(
                    verdict=Verdict.DENIED,
                    algorithm=Algorithm.SLIDING_WINDOW,
                    client_id=client_id,
                    limit=config.rate_limit,
                    remaining=0,
                    reset_at_ms=reset_at_ms,
                    retry_after=max(1, math.ceil((reset_at_ms - now_ms) / 1000)),
                )

            insort(state.timestamps, now_ms)
            written = await self._store_call(
                self._store.compare_and_set,
                key,
                raw,
                self._codec.encode_timestamps(state),
                config.window_size_ms,
            )
            if written:
                return RateLimitDecision(
                    verdict=Verdict.ALLOWED,
                    algorithm=Algorithm.SLIDING_WINDOW,
                    client_id=client_id,
                    limit=config.rate_limit,
                    remaining=max(0, self._admissions_per_window() - len(state.timestamps)),
                    reset_at_ms=state.timestamps[0] + config.window_size_ms,
                )
            logger.debug(
                f"Concurrent update of {key}, retrying ({attempt + 1}/{config.max_cas_attempts})"
            )

        raise StoreContentionError(key, config.max_cas_attempts)

    # Token bucket

    def _bucket_ttl_ms(self) -> int:
        """Time for an empty bucket to refill completely.

        Once this has elapsed an expired bucket and a stored one give the same
        verdict, so the store may drop it.
        """
        config = self.config
        return math.ceil(config.max_bucket_size / config.refill_rate_per_second) * 1000

    async def _check_token_bucket(self, client_id: str, now_ms: int) -> RateLimitDecision:
        config = self.config
        key = self._codec.token_bucket_key(client_id)
        now_s = now_ms // 1000

        for attempt in range(config.max_cas_attempts):
            raw, state = await self._read(
                key, self._codec.decode_bucket, Algorithm.TOKEN_BUCKET, client_id
            )
            if state is None:
                # First request: full bucket minus this request's token
                refilled = config.max_bucket_size
                last_refill = now_s
            else:
                elapsed = max(0, now_s - state.last_refill)
                refilled = min(
                    state.tokens + _round_half_up(elapsed * config.refill_rate_per_second),
                    config.max_bucket_size,
                )
                # A lagging replica must not move the refill clock backwards
                last_refill = max(now_s, state.last_refill)
            new_state = TokenBucketState(tokens=max(refilled - 1, 0), last_refill=last_refill)

            written = await self._store_call(
                self._store.compare_and_set,
                key,
                raw,
                self._codec.encode_bucket(new_state),
                self._bucket_ttl_ms(),
            )
            if written:
                return self._bucket_decision(client_id, now_s, refilled, new_state)
            logger.debug(
                f"Concurrent update of {key}, retrying ({attempt + 1}/{config.max_cas_attempts})"
            )

        raise StoreContentionError(key, config.max_cas_attempts)

    def _bucket_decision(
        self, client_id: str, now_s: int, refilled: int, state: TokenBucketState
    ) -> RateLimitDecision:
        config = self.config
        missing = config.max_bucket_size - state.tokens
        reset_at_ms = (now_s + math.ceil(missing / config.refill_rate_per_second)) * 1000
        if refilled > 0:
            return RateLimitDecision(
                verdict=Verdict.ALLOWED,
                algorithm=Algorithm.TOKEN_BUCKET,
                client_id=client_id,
                limit=config.max_bucket_size,
                remaining=state.tokens,
                reset_at_ms=reset_at_ms,
            )
        # One token is credited once elapsed * rate rounds up to 1
        return RateLimitDecision(
            verdict=Verdict.DENIED,
            algorithm=Algorithm.TOKEN_BUCKET,
            client_id=client_id,
            limit=config.max_bucket_size,
            remaining=0,
            reset_at_ms=reset_at_ms,
            retry_after=max(1, math.ceil(0.5 / config.refill_rate_per_second)),
        )

    # Failure policy

    def _apply_fail_policy(
        self,
        algorithm: Algorithm,
        client_id: str,
        now_ms: int,
        error: Exception,
    ) -> RateLimitDecision:
        """Handle store failure with configurable fail-open/fail-closed policy."""
        config = self.config
        limit = (
            config.max_bucket_size
            if algorithm is Algorithm.TOKEN_BUCKET
            else config.rate_limit
        )
        context = get_log_context(client_id=client_id, algorithm=algorithm.value)

        if config.fail_closed:
            logger.warning(
                f"Rate limiting fail-closed triggered due to {type(error).__name__}: {error}. "
                "Request denied.",
                extra=context,
            )
            return RateLimitDecision(
                verdict=Verdict.DENIED,
                algorithm=algorithm,
                client_id=client_id,
                limit=limit,
                remaining=0,
                reset_at_ms=now_ms + 1000,
                retry_after=1,
                source="fail_closed",
            )

        logger.warning(
            f"Rate limiting fail-open triggered due to {type(error).__name__}: {error}. "
            "Request allowed without rate limit check.",
            extra=context,
        )
        return RateLimitDecision(
            verdict=Verdict.ALLOWED,
            algorithm=algorithm,
            client_id=client_id,
            limit=limit,
            remaining=0,
            reset_at_ms=now_ms + 1000,
            source="fail_open",
        )


# Global engine instance
_engine: Optional[RateLimitEngine] = None


def get_rate_limit_engine() -> RateLimitEngine:
    """Get or create the global engine, configured from settings."""
    global _engine
    if _engine is None:
        from admission.app.core.config import settings
        from admission.app.services.rate_limit.store import get_state_store

        _engine = RateLimitEngine(
            store=get_state_store(),
            config=RateLimitConfig.from_settings(settings),
            retry_policy=RetryPolicy(
                max_retries=settings.store_retry_attempts,
                base_delay=settings.store_retry_delay_seconds,
            ),
        )
    return _engine


def reset_rate_limit_engine() -> None:
    """Reset the global engine (for tests)."""
    global _engine
    _engine = None
