from __future__ import annotations

import hashlib
import time
import uuid
from typing import Tuple

import redis.asyncio as aioredis
from redis import Redis

# (allowed, count in window, milliseconds until the window frees a slot)
CounterResult = Tuple[bool, int, int]


class RedisCounterStore:
    """Redis-backed counters for fixed and sliding window rate limits."""

    DEFAULT_OPERATION_TIMEOUT = 5.0

    # Fixed window: INCR the bucket and arm its expiry on first hit
    _FIXED_WINDOW_SCRIPT = """
local key = KEYS[1]
local window_ms = tonumber(ARGV[1])

local current = redis.call('INCR', key)
if current == 1 then
  redis.call('PEXPIRE', key, window_ms)
end
local ttl = redis.call('PTTL', key)
if ttl < 0 then
  redis.call('PEXPIRE', key, window_ms)
  ttl = window_ms
end
return {current, ttl}
"""

    # Sliding window log: only admitted requests are recorded
    _SLIDING_WINDOW_SCRIPT = """
local key = KEYS[1]
local now_ms = tonumber(ARGV[1])
local window_ms = tonumber(ARGV[2])
local limit = tonumber(ARGV[3])
local member = ARGV[4]

redis.call('ZREMRANGEBYSCORE', key, '-inf', now_ms - window_ms)
local count = redis.call('ZCARD', key)
if count >= limit then
  local oldest = redis.call('ZRANGE', key, 0, 0, 'WITHSCORES')
  local retry_ms = window_ms
  if oldest[2] then
    retry_ms = tonumber(oldest[2]) + window_ms - now_ms
  end
  return {0, count, retry_ms}
end
redis.call('ZADD', key, now_ms, member)
redis.call('PEXPIRE', key, window_ms)
return {1, count + 1, 0}
"""

    def __init__(self, redis_url: str, *, socket_timeout: float = DEFAULT_OPERATION_TIMEOUT):
        self.redis_url = redis_url
        self.client = aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self._fixed_window = self.client.register_script(self._FIXED_WINDOW_SCRIPT)
        self._sliding_window = self.client.register_script(self._SLIDING_WINDOW_SCRIPT)

    @staticmethod
    def _normalize_rate_key(key: str, algorithm: str) -> str:
        """Hash the caller's key so delimiters in it cannot collide."""

        digest = hashlib.sha256(key.encode()).hexdigest()
        return f"rate:{algorithm}:{digest}"

    def verify_connection(self) -> None:
        """Assert Redis connectivity before enabling dependent features."""
        # A short-lived sync client avoids binding the async client to a startup loop
        sync_client = Redis.from_url(self.redis_url, decode_responses=True)
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    async def hit_fixed(self, key: str, limit: int, window_seconds: int) -> CounterResult:
        current, ttl_ms = await self._fixed_window(
            keys=[self._normalize_rate_key(key, "fixed")],
            args=[int(window_seconds * 1000)],
        )
        current = int(current)
        return current <= limit, current, int(ttl_ms)

    async def hit_sliding(self, key: str, limit: int, window_seconds: int) -> CounterResult:
        allowed, count, retry_ms = await self._sliding_window(
            keys=[self._normalize_rate_key(key, "sliding")],
            args=[int(time.time() * 1000), int(window_seconds * 1000), limit, uuid.uuid4().hex],
        )
        return bool(int(allowed)), int(count), int(retry_ms)

    async def close(self) -> None:
        """Close Redis connection pool. Call when shutting down or resetting runtime."""
        await self.client.close()
        await self.client.connection_pool.disconnect()


class SyncRedisCounterStore:
    """Synchronous Redis counters for use in tests.

    Uses a synchronous client internally to avoid event loop binding issues in
    pytest, while exposing the same awaitable interface as RedisCounterStore.
    """

    def __init__(
        self,
        redis_url: str,
        *,
        socket_timeout: float = RedisCounterStore.DEFAULT_OPERATION_TIMEOUT,
        client: Redis | None = None,
    ):
        self.redis_url = redis_url
        self._sync_client = client or Redis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self._fixed_window = self._sync_client.register_script(
            RedisCounterStore._FIXED_WINDOW_SCRIPT
        )
        self._sliding_window = self._sync_client.register_script(
            RedisCounterStore._SLIDING_WINDOW_SCRIPT
        )

    def verify_connection(self) -> None:
        self._sync_client.ping()

    async def hit_fixed(self, key: str, limit: int, window_seconds: int) -> CounterResult:
        current, ttl_ms = self._fixed_window(
            keys=[RedisCounterStore._normalize_rate_key(key, "fixed")],
            args=[int(window_seconds * 1000)],
        )
        current = int(current)
        return current <= limit, current, int(ttl_ms)

    async def hit_sliding(self, key: str, limit: int, window_seconds: int) -> CounterResult:
        allowed, count, retry_ms = self._sliding_window(
            keys=[RedisCounterStore._normalize_rate_key(key, "sliding")],
            args=[int(time.time() * 1000), int(window_seconds * 1000), limit, uuid.uuid4().hex],
        )
        return bool(int(allowed)), int(count), int(retry_ms)

    async def close(self) -> None:
        """Close Redis connection."""
        self._sync_client.close()
