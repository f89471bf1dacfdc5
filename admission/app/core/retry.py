"""Retry mechanism with backoff for state store calls.

Transient store failures are retried a bounded number of times before the
engine falls back to its fail-open / fail-closed policy.
"""

import asyncio
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Tuple, Type, TypeVar

from admission.app.core.logging import get_logger
from admission.app.exceptions import StoreUnavailableError

logger = get_logger(__name__)

T = TypeVar("T")


@dataclass
class RetryPolicy:
    """Configuration for retry behavior with exponential backoff.

    Attributes:
        max_retries: Maximum number of retry attempts (default: 1)
        base_delay: Initial delay between retries in seconds (default: 0.05)
        max_delay: Maximum delay between retries in seconds (default: 1.0)
        exponential_base: Base for exponential calculation (default: 2.0)
        retryable_exceptions: Tuple of exception types that trigger a retry

    Example:
        >>> policy = RetryPolicy(max_retries=2, base_delay=0.1)
        >>> delay = policy.calculate_delay(attempt=1)  # Returns 0.2
    """

    max_retries: int = 1
    base_delay: float = 0.05
    max_delay: float = 1.0
    exponential_base: float = 2.0
    retryable_exceptions: Tuple[Type[Exception], ...] = (StoreUnavailableError,)

    def calculate_delay(self, attempt: int) -> float:
        """Calculate the delay for a given retry attempt (0-indexed)."""
        delay = self.base_delay * (self.exponential_base**attempt)
        return min(delay, self.max_delay)

    def is_retryable(self, exception: Exception) -> bool:
        return isinstance(exception, self.retryable_exceptions)

    async def call(self, func: Callable[..., Awaitable[T]], *args: Any, **kwargs: Any) -> T:
        """Await ``func(*args, **kwargs)`` retrying retryable failures.

        Args:
            func: Coroutine function to call
            *args: Positional arguments for func
            **kwargs: Keyword arguments for func

        Returns:
            Whatever func returns

        Raises:
            The last exception once retries are exhausted, or immediately
            for non-retryable exceptions.
        """
        name = getattr(func, "__name__", repr(func))
        attempt = 0
        while True:
            try:
                return await func(*args, **kwargs)
            except Exception as e:
                if not self.is_retryable(e):
                    raise
                if attempt >= self.max_retries:
                    logger.warning(
                        f"Max retries ({self.max_retries}) exceeded for {name}: "
                        f"{type(e).__name__}: {e}"
                    )
                    raise
                delay = self.calculate_delay(attempt)
                logger.warning(
                    f"Retry {attempt + 1}/{self.max_retries} for {name} "
                    f"after {type(e).__name__}: {e}. Waiting {delay:.2f}s..."
                )
                await asyncio.sleep(delay)
                attempt += 1

