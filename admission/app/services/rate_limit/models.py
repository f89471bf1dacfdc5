"""Rate limiting data models.

This module contains the algorithm selector, configuration, per-algorithm
state and the decision returned to callers.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import List, Optional

from admission.app.exceptions import InvalidVariantError


class Algorithm(str, Enum):
    """Rate limiting algorithm variants."""

    FIXED_WINDOW = "fixed-window"
    SLIDING_WINDOW = "sliding-window"
    TOKEN_BUCKET = "token-bucket"

    @classmethod
    def parse(cls, value: "Algorithm | str") -> "Algorithm":
        """Resolve an algorithm from an enum member or its name.

        Accepts "fixed-window" as well as "fixed_window" / "FIXED_WINDOW".

        Raises:
            InvalidVariantError: If the value names no known algorithm
        """
        if isinstance(value, cls):
            return value
        if isinstance(value, str):
            normalized = value.strip().lower().replace("_", "-")
            for member in cls:
                if member.value == normalized:
                    return member
        raise InvalidVariantError(value)


class Verdict(str, Enum):
    ALLOWED = "allowed"
    DENIED = "denied"


@dataclass(frozen=True)
class RateLimitConfig:
    """Parameters shared by all algorithms.

    Attributes:
        window_size_ms: Window length for fixed and sliding windows
        rate_limit: Maximum requests per window
        refill_rate_per_second: Token bucket refill rate
        max_bucket_size: Token bucket capacity
        exact_limit: Use ">=" instead of ">" when comparing against rate_limit
        fail_closed: Deny (True) or allow (False) when the store is unavailable
        store_timeout_seconds: Upper bound for a single store call
        max_cas_attempts: Compare-and-set attempts before giving up
        key_prefix: Namespace for every store key
    """

    window_size_ms: int = 60000
    rate_limit: int = 3
    refill_rate_per_second: float = 0.2
    max_bucket_size: int = 3
    exact_limit: bool = False
    fail_closed: bool = True
    store_timeout_seconds: float = 0.5
    max_cas_attempts: int = 5
    key_prefix: str = "ratelimit"

    def __post_init__(self) -> None:
        if self.window_size_ms < 1:
            raise ValueError("window_size_ms must be at least 1")
        if self.rate_limit < 1:
            raise ValueError("rate_limit must be at least 1")
        if self.refill_rate_per_second <= 0:
            raise ValueError("refill_rate_per_second must be positive")
        if self.store_timeout_seconds <= 0:
            raise ValueError("store_timeout_seconds must be positive")
        if self.max_bucket_size < 1:
            raise ValueError("max_bucket_size must be at least 1")
        if self.max_cas_attempts < 1:
            raise ValueError("max_cas_attempts must be at least 1")

    @classmethod
    def from_settings(cls, settings) -> "RateLimitConfig":
        """Build a config from the application Settings."""
        return cls(
            window_size_ms=settings.rate_limit_window_size_ms,
            rate_limit=settings.rate_limit_max_requests,
            refill_rate_per_second=settings.rate_limit_refill_rate_per_second,
            max_bucket_size=settings.rate_limit_max_bucket_size,
            exact_limit=settings.rate_limit_exact_limit,
            fail_closed=settings.rate_limit_fail_closed,
            store_timeout_seconds=settings.redis_timeout_seconds,
            max_cas_attempts=settings.rate_limit_max_cas_attempts,
            key_prefix=settings.rate_limit_key_prefix,
        )

    def exceeds(self, count: int) -> bool:
        """Whether an observed request count is over the limit."""
        if self.exact_limit:
            return count >= self.rate_limit
        return count > self.rate_limit


@dataclass
class TokenBucketState:
    """Token bucket state for token bucket algorithm."""
    tokens: int
    last_refill: int  # seconds since epoch


@dataclass
class SlidingWindowState:
    """Live request timestamps (ms since epoch), oldest first."""
    timestamps: List[int] = field(default_factory=list)

    def prune(self, now_ms: int, window_size_ms: int) -> None:
        """Drop every timestamp that is not newer than now - window."""
        cutoff = now_ms - window_size_ms
        self.timestamps = [ts for ts in self.timestamps if ts > cutoff]


@dataclass
class RateLimitDecision:
    """Result of a rate limit check."""
    verdict: Verdict
    algorithm: Algorithm
    client_id: str
    limit: int
    remaining: int
    reset_at_ms: int
    retry_after: Optional[int] = None
    source: str = "store"  # store | fail_open | fail_closed

    @property
    def allowed(self) -> bool:
        return self.verdict is Verdict.ALLOWED
