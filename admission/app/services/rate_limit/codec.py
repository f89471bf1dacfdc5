"""Translation between algorithm state and the strings held by the store.

The engine never touches raw store values: every key is named here and
every value is parsed and formatted here.
"""

import json
from typing import Any, List, Optional

from admission.app.exceptions import StateCorruptionError
from admission.app.services.rate_limit.models import (
    Algorithm,
    SlidingWindowState,
    TokenBucketState,
)


def _is_int(value: Any) -> bool:
    return isinstance(value, int) and not isinstance(value, bool)


class StateCodec:
    """Key naming and value encoding for all rate limit state.

    Key format:
    - {prefix}:fixed-window:{client_id}:{window_index} - request counter
    - {prefix}:sliding-window:{client_id} - JSON array of timestamps
    - {prefix}:token-bucket:{client_id} - JSON object with tokens and last_refill
    """

    def __init__(self, prefix: str = "ratelimit", max_bucket_size: int = 3) -> None:
        self.prefix = prefix
        self.max_bucket_size = max_bucket_size

    @staticmethod
    def window_index(now_ms: int, window_size_ms: int) -> int:
        return now_ms // window_size_ms

    def fixed_window_key(self, client_id: str, window_index: int) -> str:
        return f"{self.prefix}:{Algorithm.FIXED_WINDOW.value}:{client_id}:{window_index}"

    def sliding_window_key(self, client_id: str) -> str:
        return f"{self.prefix}:{Algorithm.SLIDING_WINDOW.value}:{client_id}"

    def token_bucket_key(self, client_id: str) -> str:
        return f"{self.prefix}:{Algorithm.TOKEN_BUCKET.value}:{client_id}"

    # Fixed window

    @staticmethod
    def encode_counter(count: int) -> str:
        if not _is_int(count) or count < 0:
            raise ValueError(f"counter must be a non-negative int, got {count!r}")
        return str(count)

    @staticmethod
    def decode_counter(raw: Optional[str]) -> int:
        """Decode a counter; an absent key counts as 0."""
        if raw is None:
            return 0
        try:
            count = int(raw)
        except (TypeError, ValueError) as e:
            raise StateCorruptionError("counter", raw, str(e)) from e
        if count < 0:
            raise StateCorruptionError("counter", raw, "negative")
        return count

    # Sliding window

    @staticmethod
    def encode_timestamps(state: SlidingWindowState) -> str:
        return json.dumps(state.timestamps, separators=(",", ":"))

    @staticmethod
    def decode_timestamps(raw: Optional[str]) -> Optional[SlidingWindowState]:
        """Decode a timestamp sequence, or None when the key is absent."""
        if raw is None:
            return None
        try:
            data = json.loads(raw)
        except (TypeError, ValueError) as e:
            raise StateCorruptionError("sliding window", raw, str(e)) from e
        if not isinstance(data, list) or not all(_is_int(ts) for ts in data):
            raise StateCorruptionError("sliding window", raw, "expected a list of integers")
        timestamps: List[int] = data
        if any(later < earlier for earlier, later in zip(timestamps, timestamps[1:])):
            raise StateCorruptionError("sliding window", raw, "timestamps out of order")
        return SlidingWindowState(timestamps=timestamps)

    # Token bucket

    def encode_bucket(self, state: TokenBucketState) -> str:
        if not _is_int(state.tokens) or not 0 <= state.tokens <= self.max_bucket_size:
            raise ValueError(
                f"tokens must be an int in [0, {self.max_bucket_size}], got {state.tokens!r}"
            )
        return json.dumps(
            {"tokens": state.tokens, "last_refill": state.last_refill},
            separators=(",", ":"),
        )

    def decode_bucket(self, raw: Optional[str]) -> Optional[TokenBucketState]:
        """Decode bucket state, or None when the key is absent.

        Token counts outside [0, max_bucket_size] are clamped, which also
        absorbs a lowered max_bucket_size between deployments.
        """
        if raw is None:
            return None
        try:
            data = json.loads(raw)
        except (TypeError, ValueError) as e:
            raise StateCorruptionError("token bucket", raw, str(e)) from e
        if not isinstance(data, dict):
            raise StateCorruptionError("token bucket", raw, "expected an object")
        tokens = data.get("tokens")
        last_refill = data.get("last_refill")
        if not _is_int(tokens) or not _is_int(last_refill):
            raise StateCorruptionError("token bucket", raw, "tokens and last_refill must be integers")
        return TokenBucketState(
            tokens=max(0, min(tokens, self.max_bucket_size)),
            last_refill=last_refill,
        )
