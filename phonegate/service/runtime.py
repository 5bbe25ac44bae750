from __future__ import annotations

import asyncio
import threading
from typing import Optional, Union
from urllib.parse import urlparse, urlunparse

from phonegate.config import get_settings, reset_settings_cache
from phonegate.logging import get_logger
from phonegate.service.audit import AuditEmitter, LoggingAuditSink, StoreAuditSink
from phonegate.service.credentials import CredentialPolicy, PasswordHasherService
from phonegate.service.lifecycle import AccountLifecycle
from phonegate.service.otp import OtpEngine
from phonegate.service.phone import PhoneNormalizer
from phonegate.service.rate_limit import MemoryCounterStore, RateLimiter
from phonegate.service.reaper import Reaper
from phonegate.service.sessions import SessionManager
from phonegate.service.sms import HttpSmsGateway
from phonegate.service.tokens import TokenIssuer
from phonegate.storage.memory import MemoryStore
from phonegate.storage.postgres import PostgresStore
from phonegate.storage.redis_cache import RedisCounterStore, SyncRedisCounterStore

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Mask the password component of a URL for safe logging.

    Example: redis://:mypassword@localhost:6379 -> redis://:***@localhost:6379
    """
    if not url:
        return url
    try:
        parsed = urlparse(url)
        if parsed.password:
            netloc = parsed.hostname or ""
            if parsed.port:
                netloc = f"{netloc}:{parsed.port}"
            if parsed.username:
                netloc = f"{parsed.username}:***@{netloc}"
            else:
                netloc = f":***@{netloc}"
            return urlunparse(
                (parsed.scheme, netloc, parsed.path, parsed.params, parsed.query, parsed.fragment)
            )
        return url
    except ValueError:
        return "***url_parse_error***"


class Runtime:
    """Holds singleton service instances for the FastAPI app."""

    def __init__(self):
        self.settings = get_settings()
        logger.info(
            "runtime_init_started",
            use_memory_store=self.settings.use_memory_store,
            test_mode=self.settings.test_mode,
        )

        try:
            self.store: Union[MemoryStore, PostgresStore] = (
                MemoryStore(fs_root=self.settings.shared_fs_root)
                if self.settings.use_memory_store
                else PostgresStore(
                    self.settings.database_url, fs_root=self.settings.shared_fs_root
                )
            )
            logger.info(
                "runtime_store_initialized",
                store_type="memory" if self.settings.use_memory_store else "postgres",
            )
        except Exception as exc:
            logger.error(
                "runtime_store_init_failed",
                store_type="memory" if self.settings.use_memory_store else "postgres",
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise

        self.cache: Optional[Union[RedisCounterStore, SyncRedisCounterStore]] = None
        redis_error: Exception | None = None
        if self.settings.redis_url:
            try:
                # Use sync Redis client in test mode to avoid event loop issues
                if self.settings.test_mode:
                    cache = SyncRedisCounterStore(self.settings.redis_url)
                else:
                    cache = RedisCounterStore(self.settings.redis_url)
                cache.verify_connection()
                self.cache = cache
            except Exception as exc:
                redis_error = exc
                self.cache = None

        if not self.cache:
            if not self.settings.test_mode and not self.settings.allow_redis_fallback_dev:
                raise RuntimeError(
                    "Redis is required for shared rate-limit counters; "
                    "start Redis or set TEST_MODE=true/ALLOW_REDIS_FALLBACK_DEV=true for local fallback."
                ) from redis_error

            fallback_mode = "TEST_MODE" if self.settings.test_mode else "ALLOW_REDIS_FALLBACK_DEV"
            logger.warning(
                "redis_disabled_fallback",
                redis_url=_mask_url_password(self.settings.redis_url),
                error=str(redis_error) if redis_error else "redis_url_missing",
                message=(
                    f"Running without Redis under {fallback_mode}; rate-limit counters are "
                    "per-process only."
                ),
                mode=fallback_mode,
            )
        self.counters = self.cache or MemoryCounterStore()

        rl = self.settings.rate_limit
        self.limiter = RateLimiter(
            self.counters, fail_open=rl.fail_open, timeout=rl.store_timeout_seconds
        )
        self.phones = PhoneNormalizer(self.settings.phone)
        self.policy = CredentialPolicy(self.settings.password)
        self.hasher = PasswordHasherService(self.settings.password)
        self.sms = HttpSmsGateway(self.settings.sms)
        self.otp = OtpEngine(
            self.store,
            self.limiter,
            self.sms,
            settings=self.settings.otp,
            sms_settings=self.settings.sms,
            phones=self.phones,
        )
        self.tokens = TokenIssuer(self.settings.token)
        self.audit = AuditEmitter([LoggingAuditSink(), StoreAuditSink(self.store)])
        self.sessions = SessionManager(self.store, self.tokens, self.settings.session, audit=self.audit)
        self.lifecycle = AccountLifecycle(
            self.store,
            sessions=self.sessions,
            otp=self.otp,
            policy=self.policy,
            hasher=self.hasher,
            phones=self.phones,
            audit=self.audit,
            settings=self.settings,
        )
        self.reaper = Reaper(self.store, self.otp, self.lifecycle, self.settings.reaper)

        logger.info(
            "runtime_initialized",
            redis_enabled=self.cache is not None,
            sms_configured=self.sms.is_configured,
            reaper_enabled=self.settings.reaper.enabled,
            max_sessions=self.settings.session.max_sessions,
        )

    async def close(self) -> None:
        """Stop background work and release store and cache connections."""
        await self.reaper.stop()
        if self.cache is not None:
            await self.cache.close()
        close_store = getattr(self.store, "close", None)
        if callable(close_store):
            close_store()


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton in a thread-safe manner.

    Uses double-checked locking:
    - First check without lock (fast path for existing runtime)
    - Second check with lock to prevent race condition during creation
    """
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def reset_runtime_for_tests() -> Runtime:
    """Reinitialize the runtime singleton for isolated test runs."""

    global runtime

    with _runtime_lock:
        # Close existing Redis connections to avoid event loop issues
        if runtime is not None and runtime.cache is not None:
            try:
                if isinstance(runtime.cache, SyncRedisCounterStore):
                    asyncio.run(runtime.cache.close())
                else:
                    try:
                        loop = asyncio.get_running_loop()
                        loop.create_task(runtime.cache.close())
                    except RuntimeError:
                        asyncio.run(runtime.cache.close())
            except Exception as exc:
                logger.debug("runtime_cache_close_failed", error=str(exc))

        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        runtime = Runtime()
        return runtime
