"""Periodic cleanup of expired verification codes, sessions and accounts.

Each sweep runs these steps independently, so one failing step never skips
the rest:
- purge expired, never-used verification codes
- purge used verification codes past their retention period
- hard-delete accounts whose deletion grace period has ended
- lift suspensions that have lapsed
- purge sessions that expired or were revoked long ago
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import TYPE_CHECKING, Awaitable, Callable, Dict, Optional, Union

from phonegate.config import ReaperSettings
from phonegate.logging import get_logger
from phonegate.storage.models import utcnow

if TYPE_CHECKING:
    from phonegate.service.lifecycle import AccountLifecycle
    from phonegate.service.otp import OtpEngine

logger = get_logger(__name__)

MAX_BACKOFF_MULTIPLIER = 6


@dataclass
class ReaperReport:
    started_at: datetime
    expired_otps: int = 0
    verified_otps: int = 0
    deleted_users: int = 0
    expired_suspensions: int = 0
    purged_sessions: int = 0
    errors: Dict[str, str] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return not self.errors


class Reaper:
    """Runs cleanup sweeps on demand or in a background task."""

    def __init__(
        self,
        store,
        otp: "OtpEngine",
        lifecycle: "AccountLifecycle",
        settings: Optional[ReaperSettings] = None,
        *,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.store = store
        self.otp = otp
        self.lifecycle = lifecycle
        self.settings = settings or ReaperSettings()
        self._clock = clock
        self._running = False
        self._task: Optional[asyncio.Task] = None

    async def _step(
        self,
        report: ReaperReport,
        name: str,
        func: Callable[[], Union[int, Awaitable[int]]],
    ) -> None:
        try:
            result = func()
            if asyncio.iscoroutine(result):
                result = await result
            setattr(report, name, int(result))
        except Exception as exc:
            report.errors[name] = str(exc)
            logger.error(
                "reaper_step_failed",
                step=name,
                error=str(exc),
                error_type=type(exc).__name__,
            )

    async def run_once(self, now: Optional[datetime] = None) -> ReaperReport:
        now = now or self._clock()
        report = ReaperReport(started_at=now)
        otp_cutoff = now - timedelta(days=self.settings.verified_otp_retention_days)
        session_cutoff = now - timedelta(days=self.settings.session_retention_days)

        await self._step(report, "expired_otps", lambda: self.otp.purge_expired(now))
        await self._step(report, "verified_otps", lambda: self.otp.purge_verified_before(otp_cutoff))
        await self._step(report, "deleted_users", lambda: self.lifecycle.finalize_deletions(now))
        await self._step(
            report, "expired_suspensions", lambda: self.lifecycle.expire_suspensions(now)
        )
        await self._step(report, "purged_sessions", lambda: self.store.purge_sessions(session_cutoff))

        logger.info(
            "reaper_sweep_finished",
            expired_otps=report.expired_otps,
            verified_otps=report.verified_otps,
            deleted_users=report.deleted_users,
            expired_suspensions=report.expired_suspensions,
            purged_sessions=report.purged_sessions,
            failed_steps=sorted(report.errors),
        )
        return report

    async def start(self) -> None:
        """Start the background sweep loop."""
        if self._running:
            logger.warning("reaper_already_running")
            return

        self._running = True
        self._task = asyncio.create_task(self._run_loop())
        logger.info("reaper_started", interval_seconds=self.settings.interval_seconds)

    async def stop(self) -> None:
        """Stop the background sweep loop."""
        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        logger.info("reaper_stopped")

    async def _run_loop(self) -> None:
        interval = self.settings.interval_seconds
        consecutive_errors = 0
        while self._running:
            try:
                report = await self.run_once()
                consecutive_errors = 0 if report.ok else consecutive_errors + 1
            except Exception as exc:
                consecutive_errors += 1
                logger.error(
                    "reaper_loop_error",
                    error=str(exc),
                    error_type=type(exc).__name__,
                    consecutive_errors=consecutive_errors,
                )
            # Exponential backoff on repeated failures
            if consecutive_errors > 3:
                backoff = min(
                    interval * MAX_BACKOFF_MULTIPLIER,
                    interval * (2 ** (consecutive_errors - 3)),
                )
                logger.warning(
                    "reaper_backoff",
                    backoff_seconds=backoff,
                    consecutive_errors=consecutive_errors,
                )
                await asyncio.sleep(backoff)
                continue

            await asyncio.sleep(interval)
