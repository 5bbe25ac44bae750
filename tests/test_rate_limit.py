"""Tests for the rate limiter and its counter stores."""

import asyncio
from unittest.mock import AsyncMock

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from phonegate.service.errors import RateLimitedError
from phonegate.service.rate_limit import Algorithm, MemoryCounterStore, RateLimiter
from phonegate.storage.redis_cache import RedisCounterStore, SyncRedisCounterStore


class FakeClock:
    def __init__(self, start: float = 1_700_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def limiter(clock):
    return RateLimiter(MemoryCounterStore(clock=clock))


@pytest.fixture
def redis_store():
    fakeredis = pytest.importorskip("fakeredis")
    pytest.importorskip("lupa")
    client = fakeredis.FakeRedis(decode_responses=True)
    return SyncRedisCounterStore("redis://fake", client=client)


class TestMemoryCounterStore:
    """Fixed and sliding windows over the in-process store."""

    async def test_fixed_window_allows_up_to_limit(self, limiter):
        for _ in range(3):
            assert (await limiter.check("k", 3, 60)).allowed
        decision = await limiter.check("k", 3, 60)
        assert not decision.allowed
        assert decision.remaining == 0
        assert 0 < decision.retry_after <= 60

    async def test_fixed_window_resets(self, limiter, clock):
        for _ in range(3):
            await limiter.check("k", 2, 60)
        clock.advance(61)
        assert (await limiter.check("k", 2, 60)).allowed

    async def test_remaining_counts_down(self, limiter):
        first = await limiter.check("k", 3, 60)
        second = await limiter.check("k", 3, 60)
        assert (first.remaining, second.remaining) == (2, 1)

    async def test_sliding_window_retry_after_tracks_oldest_hit(self, limiter, clock):
        for _ in range(5):
            assert (await limiter.check("s", 5, 300, Algorithm.SLIDING)).allowed
            clock.advance(10)
        decision = await limiter.check("s", 5, 300, Algorithm.SLIDING)
        assert not decision.allowed
        # oldest hit was 50s ago
        assert decision.retry_after == 250

    async def test_sliding_window_rejections_are_not_recorded(self, limiter, clock):
        for _ in range(2):
            await limiter.check("s", 2, 60, Algorithm.SLIDING)
        for _ in range(5):
            assert not (await limiter.check("s", 2, 60, Algorithm.SLIDING)).allowed
        clock.advance(61)
        assert (await limiter.check("s", 2, 60, Algorithm.SLIDING)).allowed

    async def test_keys_are_independent(self, limiter):
        assert (await limiter.check("a", 1, 60)).allowed
        assert (await limiter.check("b", 1, 60)).allowed
        assert not (await limiter.check("a", 1, 60)).allowed

    async def test_zero_limit_disables(self, limiter):
        for _ in range(10):
            assert (await limiter.check("k", 0, 60)).allowed

    async def test_invalid_window_falls_back(self, limiter):
        decision = await limiter.check("k", 1, 0)
        assert decision.allowed
        denied = await limiter.check("k", 1, 0)
        assert not denied.allowed
        assert denied.retry_after <= 60

    async def test_enforce_raises_with_retry_after(self, limiter):
        await limiter.enforce("k", 1, 30)
        with pytest.raises(RateLimitedError) as exc_info:
            await limiter.enforce("k", 1, 30, message="slow down")
        assert exc_info.value.message == "slow down"
        assert 0 < exc_info.value.retry_after <= 30
        assert exc_info.value.detail["retry_after"] == exc_info.value.retry_after


class TestStoreFailures:
    """Fail-open and fail-closed behavior when the counter store errors."""

    def _broken_store(self, exc):
        store = MemoryCounterStore()
        store.hit_fixed = AsyncMock(side_effect=exc)
        store.hit_sliding = AsyncMock(side_effect=exc)
        return store

    async def test_fail_open_allows(self):
        limiter = RateLimiter(self._broken_store(RedisConnectionError("down")), fail_open=True)
        decision = await limiter.check("k", 1, 60)
        assert decision.allowed

    async def test_fail_closed_denies(self):
        limiter = RateLimiter(self._broken_store(RedisConnectionError("down")), fail_open=False)
        decision = await limiter.check("k", 1, 60, Algorithm.SLIDING)
        assert not decision.allowed
        assert decision.retry_after == 60

    async def test_timeout_counts_as_store_failure(self):
        async def slow(*args, **kwargs):
            await asyncio.sleep(1)
            return True, 1, 0

        store = MemoryCounterStore()
        store.hit_fixed = slow
        limiter = RateLimiter(store, fail_open=False, timeout=0.01)
        assert not (await limiter.check("k", 5, 60)).allowed

    async def test_unexpected_errors_propagate(self):
        limiter = RateLimiter(self._broken_store(ValueError("bug")))
        with pytest.raises(ValueError):
            await limiter.check("k", 1, 60)


class TestRedisCounterStore:
    """Lua scripts against fakeredis."""

    def test_keys_are_hashed(self):
        key = RedisCounterStore._normalize_rate_key("otp:phone:+8613800138000", "fixed")
        assert key.startswith("rate:fixed:")
        assert "+86" not in key

    async def test_fixed_window(self, redis_store):
        limiter = RateLimiter(redis_store)
        for _ in range(3):
            assert (await limiter.check("k", 3, 60)).allowed
        decision = await limiter.check("k", 3, 60)
        assert not decision.allowed
        assert 0 < decision.retry_after <= 60

    async def test_sliding_window(self, redis_store):
        limiter = RateLimiter(redis_store)
        for _ in range(5):
            assert (await limiter.check("s", 5, 300, Algorithm.SLIDING)).allowed
        decision = await limiter.check("s", 5, 300, Algorithm.SLIDING)
        assert not decision.allowed
        assert 0 < decision.retry_after <= 300

    def test_verify_connection(self, redis_store):
        redis_store.verify_connection()
