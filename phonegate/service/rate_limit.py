from __future__ import annotations

import asyncio
import math
import threading
import time
from collections import deque
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Deque, Dict, Optional, Protocol, Tuple

from redis.exceptions import RedisError

from phonegate.logging import get_logger, sanitize_error_message
from phonegate.service.errors import RateLimitedError

logger = get_logger(__name__)


class Algorithm(str, Enum):
    FIXED = "fixed"
    SLIDING = "sliding"


@dataclass(frozen=True)
class RateDecision:
    allowed: bool
    limit: int
    remaining: int
    retry_after: int


class CounterStore(Protocol):
    async def hit_fixed(self, key: str, limit: int, window_seconds: int) -> Tuple[bool, int, int]: ...

    async def hit_sliding(self, key: str, limit: int, window_seconds: int) -> Tuple[bool, int, int]: ...


class MemoryCounterStore:
    """In-process counter store scoped to one instance.

    Mirrors the Redis scripts: fixed windows count every hit, sliding windows
    record only admitted hits. Results are ``(allowed, count, retry_after_ms)``.
    """

    def __init__(self, clock: Callable[[], float] = time.time) -> None:
        self._clock = clock
        self._lock = threading.Lock()
        self._fixed: Dict[str, Tuple[int, float]] = {}
        self._sliding: Dict[str, Deque[float]] = {}

    def verify_connection(self) -> None:
        return None

    async def hit_fixed(self, key: str, limit: int, window_seconds: int) -> Tuple[bool, int, int]:
        now = self._clock()
        with self._lock:
            count, reset_at = self._fixed.get(key, (0, now + window_seconds))
            if reset_at <= now:
                count, reset_at = 0, now + window_seconds
            count += 1
            self._fixed[key] = (count, reset_at)
        return count <= limit, count, int((reset_at - now) * 1000)

    async def hit_sliding(self, key: str, limit: int, window_seconds: int) -> Tuple[bool, int, int]:
        now = self._clock()
        with self._lock:
            hits = self._sliding.setdefault(key, deque())
            while hits and hits[0] <= now - window_seconds:
                hits.popleft()
            if len(hits) >= limit:
                retry_ms = int((hits[0] + window_seconds - now) * 1000)
                return False, len(hits), retry_ms
            hits.append(now)
            return True, len(hits), 0

    async def close(self) -> None:
        with self._lock:
            self._fixed.clear()
            self._sliding.clear()


class RateLimiter:
    """Fixed and sliding window limits over an injected counter store.

    Counter-store calls are bounded by ``timeout``; on failure the limiter
    allows the request when ``fail_open`` is set and denies it otherwise.
    """

    def __init__(
        self,
        counter_store: CounterStore,
        *,
        fail_open: bool = True,
        timeout: float = 0.5,
    ) -> None:
        self.counter_store = counter_store
        self.fail_open = fail_open
        self.timeout = timeout

    async def check(
        self,
        key: str,
        limit: int,
        window_seconds: int,
        algorithm: Algorithm = Algorithm.FIXED,
    ) -> RateDecision:
        if limit <= 0:
            return RateDecision(True, limit, 0, 0)
        if window_seconds <= 0:
            logger.warning(
                "rate_limit_invalid_window",
                key=sanitize_error_message(key),
                window_seconds=window_seconds,
                message="Invalid rate limit window_seconds; defaulting to 60 seconds",
            )
            window_seconds = 60

        hit = (
            self.counter_store.hit_sliding
            if algorithm == Algorithm.SLIDING
            else self.counter_store.hit_fixed
        )
        try:
            allowed, count, retry_ms = await asyncio.wait_for(
                hit(key, limit, window_seconds), timeout=self.timeout
            )
        except (asyncio.TimeoutError, RedisError, ConnectionError, OSError) as exc:
            logger.warning(
                "rate_limit_store_error",
                key=sanitize_error_message(key),
                algorithm=algorithm.value,
                fail_open=self.fail_open,
                error=str(exc) or type(exc).__name__,
            )
            if self.fail_open:
                return RateDecision(True, limit, limit, 0)
            return RateDecision(False, limit, 0, window_seconds)

        remaining = max(0, limit - count)
        if allowed:
            return RateDecision(True, limit, remaining, 0)
        retry_after = min(window_seconds, max(1, math.ceil(retry_ms / 1000)))
        return RateDecision(False, limit, 0, retry_after)

    async def enforce(
        self,
        key: str,
        limit: int,
        window_seconds: int,
        algorithm: Algorithm = Algorithm.FIXED,
        *,
        message: Optional[str] = None,
    ) -> RateDecision:
        decision = await self.check(key, limit, window_seconds, algorithm)
        if not decision.allowed:
            logger.info(
                "rate_limit_exceeded",
                key=sanitize_error_message(key),
                limit=limit,
                window_seconds=window_seconds,
                retry_after=decision.retry_after,
            )
            raise RateLimitedError(
                message or "rate limit exceeded", retry_after=decision.retry_after
            )
        return decision
