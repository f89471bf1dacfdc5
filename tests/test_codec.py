"""Tests for the rate limit state codec."""

import pytest

from admission.app.exceptions import StateCorruptionError
from admission.app.services.rate_limit import (
    SlidingWindowState,
    StateCodec,
    TokenBucketState,
)


@pytest.fixture
def codec():
    return StateCodec(prefix="ratelimit", max_bucket_size=3)


class TestKeys:
    """Tests for key naming."""

    def test_algorithms_never_share_keys(self, codec):
        keys = {
            codec.fixed_window_key("client", 0),
            codec.sliding_window_key("client"),
            codec.token_bucket_key("client"),
        }
        assert len(keys) == 3
        assert all(key.startswith("ratelimit:") for key in keys)

    def test_fixed_window_key_includes_window_index(self, codec):
        assert codec.fixed_window_key("abc", 28333333) == "ratelimit:fixed-window:abc:28333333"
        assert codec.fixed_window_key("abc", 1) != codec.fixed_window_key("abc", 2)

    def test_window_index_floors(self, codec):
        assert codec.window_index(0, 60000) == 0
        assert codec.window_index(59999, 60000) == 0
        assert codec.window_index(60000, 60000) == 1

    def test_custom_prefix(self):
        codec = StateCodec(prefix="svc-a")
        assert codec.token_bucket_key("x") == "svc-a:token-bucket:x"


class TestCounter:
    """Tests for fixed window counters."""

    def test_absent_is_zero(self, codec):
        assert codec.decode_counter(None) == 0

    def test_round_trip(self, codec):
        assert codec.decode_counter(codec.encode_counter(42)) == 42

    @pytest.mark.parametrize("raw", ["abc", "1.5", "", "-3"])
    def test_rejects_garbage(self, codec, raw):
        with pytest.raises(StateCorruptionError):
            codec.decode_counter(raw)

    def test_encode_rejects_negative(self, codec):
        with pytest.raises(ValueError):
            codec.encode_counter(-1)


class TestTimestamps:
    """Tests for sliding window timestamp lists."""

    def test_absent_is_none(self, codec):
        assert codec.decode_timestamps(None) is None

    def test_round_trip_preserves_order_and_precision(self, codec):
        state = SlidingWindowState(timestamps=[1700000000000, 1700000000000, 1700000059999])
        decoded = codec.decode_timestamps(codec.encode_timestamps(state))
        assert decoded == state

    def test_empty_list_round_trips(self, codec):
        encoded = codec.encode_timestamps(SlidingWindowState())
        assert encoded == "[]"
        assert codec.decode_timestamps(encoded) == SlidingWindowState()

    @pytest.mark.parametrize(
        "raw",
        ["not json", '{"a": 1}', "[1, 2.5]", '[1, "2"]', "[true]", "[3, 2]"],
    )
    def test_rejects_malformed(self, codec, raw):
        with pytest.raises(StateCorruptionError):
            codec.decode_timestamps(raw)


class TestBucket:
    """Tests for token bucket state."""

    def test_absent_is_none(self, codec):
        assert codec.decode_bucket(None) is None

    def test_round_trip(self, codec):
        state = TokenBucketState(tokens=2, last_refill=1700000000)
        assert codec.decode_bucket(codec.encode_bucket(state)) == state

    def test_encode_rejects_out_of_range_tokens(self, codec):
        with pytest.raises(ValueError):
            codec.encode_bucket(TokenBucketState(tokens=4, last_refill=0))
        with pytest.raises(ValueError):
            codec.encode_bucket(TokenBucketState(tokens=-1, last_refill=0))

    def test_decode_clamps_tokens(self, codec):
        assert codec.decode_bucket('{"tokens": 10, "last_refill": 5}').tokens == 3
        assert codec.decode_bucket('{"tokens": -2, "last_refill": 5}').tokens == 0

    @pytest.mark.parametrize(
        "raw",
        ["nope", "[1, 2]", '{"tokens": 1}', '{"tokens": "1", "last_refill": 0}', '{"tokens": 1.5, "last_refill": 0}'],
    )
    def test_rejects_malformed(self, codec, raw):
        with pytest.raises(StateCorruptionError):
            codec.decode_bucket(raw)
