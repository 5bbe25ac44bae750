"""Tests for the cleanup sweep."""

from datetime import timedelta

import pytest

from phonegate.service.reaper import Reaper
from phonegate.storage.models import utcnow

PHONE = "+86 138 0013 8000"


class TestRunOnce:
    async def test_counts_each_step(self, runtime, channel):
        stale = await runtime.otp.issue(PHONE, "login")
        used = await runtime.otp.issue(PHONE, "registration")
        result = await runtime.lifecycle.register(PHONE, "Tr0ub4dor&3!", used.verification_id, channel.last_code)
        await runtime.lifecycle.logout(result.session.id, user_id=result.user.id)

        report = await runtime.reaper.run_once(now=utcnow() + timedelta(days=120))
        assert report.ok
        assert report.expired_otps == 1
        assert report.verified_otps == 1
        assert report.purged_sessions == 1
        assert report.deleted_users == 0
        assert runtime.store.get_otp(stale.verification_id) is None
        assert runtime.store.get_session(result.session.id) is None
        # the account itself is untouched
        assert runtime.store.get_user(result.user.id) is not None

    async def test_failing_step_does_not_skip_the_rest(self, runtime, channel):
        await runtime.otp.issue(PHONE, "login")

        def broken(before):
            raise RuntimeError("sessions table unavailable")

        runtime.store.purge_sessions = broken

        async def broken_deletions(now=None):
            raise RuntimeError("deletion failed")

        runtime.lifecycle.finalize_deletions = broken_deletions

        report = await runtime.reaper.run_once(now=utcnow() + timedelta(hours=1))
        assert not report.ok
        assert set(report.errors) == {"purged_sessions", "deleted_users"}
        assert report.errors["purged_sessions"] == "sessions table unavailable"
        assert report.expired_otps == 1
        assert report.expired_suspensions == 0

    async def test_defaults_to_clock(self, runtime):
        fixed = utcnow()
        reaper = Reaper(runtime.store, runtime.otp, runtime.lifecycle, clock=lambda: fixed)
        report = await reaper.run_once()
        assert report.started_at == fixed


class TestBackgroundLoop:
    async def test_start_and_stop(self, runtime):
        await runtime.reaper.start()
        assert runtime.reaper._task is not None
        await runtime.reaper.start()
        await runtime.reaper.stop()
        assert runtime.reaper._task is None

    async def test_stop_without_start(self, runtime):
        await runtime.reaper.stop()


@pytest.mark.parametrize("days,expected", [(10, 0), (16, 1)])
async def test_deletion_respects_grace_period(runtime, channel, days, expected):
    issue = await runtime.otp.issue(PHONE, "registration")
    result = await runtime.lifecycle.register(PHONE, "Tr0ub4dor&3!", issue.verification_id, channel.last_code)
    await runtime.lifecycle.request_deletion(result.user.id, "Tr0ub4dor&3!")
    report = await runtime.reaper.run_once(now=utcnow() + timedelta(days=days))
    assert report.deleted_users == expected
