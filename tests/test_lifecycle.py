"""Tests for account lifecycle transitions.

Covers registration, password and OTP login, lockout, password change and
reset, phone change, deactivation, deletion with its grace period, and
administrative suspension.
"""

from datetime import timedelta

import pytest

from phonegate.config import PasswordPolicySettings
from phonegate.service.credentials import PasswordHasherService
from phonegate.service.errors import (
    AuthenticationError,
    ConflictError,
    NotFoundError,
    ValidationError,
)
from phonegate.storage.models import AccountStatus, DeviceInfo, utcnow

PHONE = "+86 138 0013 8000"
PHONE_E164 = "+8613800138000"
OTHER_PHONE = "+8613900139000"
NEW_PHONE = "+86 137 0013 7000"
NEW_PHONE_E164 = "+8613700137000"
PASSWORD = "Tr0ub4dor&3!"
NEW_PASSWORD = "Qv7#Lumen-Harbor"


async def _register(runtime, channel, phone=PHONE, password=PASSWORD, device=None, ip=None):
    issue = await runtime.lifecycle.request_otp(phone, "registration", ip)
    return await runtime.lifecycle.register(
        phone, password, issue.verification_id, channel.last_code, device=device, ip=ip
    )


def _actions(runtime, user_id):
    return [event.action for event in runtime.store.list_audit_events(resource_id=user_id)]


def _valid_session_ids(runtime, user_id):
    return {s.id for s in runtime.store.list_valid_sessions(user_id, utcnow())}


class TestRegistration:
    async def test_register_creates_verified_user_and_session(self, runtime, channel):
        result = await _register(runtime, channel, device=DeviceInfo(device_id="ios-1"), ip="203.0.113.9")
        assert result.user.phone == PHONE_E164
        assert result.user.phone_verified is True
        assert result.user.status == AccountStatus.ACTIVE.value
        assert result.session.device.device_id == "ios-1"
        assert runtime.store.get_user_by_phone(PHONE_E164).registration_ip == "203.0.113.9"
        ctx = await runtime.sessions.authenticate(f"Bearer {result.tokens.access_token}")
        assert ctx.user_id == result.user.id
        assert "user.registered" in _actions(runtime, result.user.id)

    async def test_weak_password_rejected_before_code_is_spent(self, runtime, channel):
        issue = await runtime.lifecycle.request_otp(PHONE, "registration")
        with pytest.raises(ValidationError):
            await runtime.lifecycle.register(PHONE, "password123", issue.verification_id, channel.last_code)
        result = await runtime.lifecycle.register(PHONE, PASSWORD, issue.verification_id, channel.last_code)
        assert result.user.phone == PHONE_E164

    async def test_wrong_code_is_generic_and_counts(self, runtime, channel):
        issue = await runtime.lifecycle.request_otp(PHONE, "registration")
        with pytest.raises(AuthenticationError) as exc_info:
            await runtime.lifecycle.register(PHONE, PASSWORD, issue.verification_id, "not-it")
        assert exc_info.value.detail == {"attempts_remaining": 2}
        assert runtime.store.get_otp(issue.verification_id).attempts == 1
        assert runtime.store.get_user_by_phone(PHONE_E164) is None

    async def test_duplicate_phone_conflicts(self, runtime, channel):
        await _register(runtime, channel)
        with pytest.raises(ConflictError):
            await _register(runtime, channel, phone="13800138000")

    async def test_code_for_another_purpose_rejected(self, runtime, channel):
        issue = await runtime.lifecycle.request_otp(PHONE, "login")
        with pytest.raises(AuthenticationError):
            await runtime.lifecycle.register(PHONE, PASSWORD, issue.verification_id, channel.last_code)

    async def test_phone_change_purpose_not_requestable_anonymously(self, runtime, channel):
        with pytest.raises(ValidationError):
            await runtime.lifecycle.request_otp(PHONE, "phone_change")


class TestLogin:
    async def test_password_login(self, runtime, channel):
        registered = await _register(runtime, channel)
        result = await runtime.lifecycle.login_with_password(" 138-0013-8000 ", PASSWORD, ip="198.51.100.1")
        assert result.user.id == registered.user.id
        assert result.user.login_count == 2
        assert result.user.last_ip == "198.51.100.1"

    async def test_unknown_phone_and_wrong_password_look_the_same(self, runtime, channel):
        await _register(runtime, channel)
        with pytest.raises(AuthenticationError) as unknown:
            await runtime.lifecycle.login_with_password(OTHER_PHONE, PASSWORD)
        with pytest.raises(AuthenticationError) as wrong:
            await runtime.lifecycle.login_with_password(PHONE, NEW_PASSWORD)
        with pytest.raises(AuthenticationError) as malformed:
            await runtime.lifecycle.login_with_password("not a phone", PASSWORD)
        assert unknown.value.message == wrong.value.message == malformed.value.message

    async def test_lockout_after_five_failures(self, runtime, channel):
        registered = await _register(runtime, channel)
        for _ in range(5):
            with pytest.raises(AuthenticationError):
                await runtime.lifecycle.login_with_password(PHONE, NEW_PASSWORD)
        assert runtime.store.get_user(registered.user.id).failed_login_attempts == 5
        with pytest.raises(AuthenticationError):
            await runtime.lifecycle.login_with_password(PHONE, PASSWORD)

    async def test_lockout_lapses_after_window(self, runtime, channel):
        await _register(runtime, channel)
        for _ in range(5):
            with pytest.raises(AuthenticationError):
                await runtime.lifecycle.login_with_password(PHONE, NEW_PASSWORD)
        later = utcnow() + runtime.lifecycle.lockout_window + timedelta(seconds=1)
        runtime.lifecycle._clock = lambda: later
        result = await runtime.lifecycle.login_with_password(PHONE, PASSWORD)
        assert result.user.failed_login_attempts == 0

    async def test_failed_logins_are_audited(self, runtime, channel):
        registered = await _register(runtime, channel)
        for _ in range(5):
            with pytest.raises(AuthenticationError):
                await runtime.lifecycle.login_with_password(PHONE, NEW_PASSWORD, ip="198.51.100.7")
        failures = runtime.store.list_audit_events(
            resource_id=registered.user.id, action="user.login_failed"
        )
        assert [event.after["failed_attempts"] for event in failures] == [1, 2, 3, 4, 5]
        assert [event.after["locked"] for event in failures] == [False] * 4 + [True]
        assert failures[-1].ip_address == "198.51.100.7"

    async def test_login_upgrades_outdated_hash(self, runtime, channel):
        registered = await _register(runtime, channel)
        old_hash = runtime.store.get_user(registered.user.id).password_hash
        runtime.lifecycle.hasher = PasswordHasherService(
            PasswordPolicySettings(hash_time_cost=2, hash_memory_cost=1024, hash_parallelism=1)
        )
        await runtime.lifecycle.login_with_password(PHONE, PASSWORD)
        upgraded = runtime.store.get_user(registered.user.id).password_hash
        assert upgraded != old_hash
        assert runtime.lifecycle.hasher.needs_rehash(upgraded) is False
        await runtime.lifecycle.login_with_password(PHONE, PASSWORD)
        assert runtime.store.get_user(registered.user.id).password_hash == upgraded

    async def test_success_resets_failure_count(self, runtime, channel):
        registered = await _register(runtime, channel)
        for _ in range(3):
            with pytest.raises(AuthenticationError):
                await runtime.lifecycle.login_with_password(PHONE, NEW_PASSWORD)
        await runtime.lifecycle.login_with_password(PHONE, PASSWORD)
        assert runtime.store.get_user(registered.user.id).failed_login_attempts == 0

    async def test_otp_login(self, runtime, channel):
        registered = await _register(runtime, channel)
        issue = await runtime.lifecycle.request_otp(PHONE, "login")
        result = await runtime.lifecycle.login_with_otp(PHONE, issue.verification_id, channel.last_code)
        assert result.user.id == registered.user.id
        assert runtime.store.get_otp(issue.verification_id).verified_at is not None
        with pytest.raises(AuthenticationError):
            await runtime.lifecycle.login_with_otp(PHONE, issue.verification_id, channel.last_code)

    async def test_otp_login_unknown_phone(self, runtime, channel):
        issue = await runtime.lifecycle.request_otp(PHONE, "login")
        with pytest.raises(AuthenticationError):
            await runtime.lifecycle.login_with_otp(PHONE, issue.verification_id, channel.last_code)

    async def test_logout_revokes_session(self, runtime, channel):
        registered = await _register(runtime, channel)
        await runtime.lifecycle.logout(registered.session.id, user_id=registered.user.id)
        with pytest.raises(AuthenticationError):
            await runtime.sessions.authenticate(f"Bearer {registered.tokens.access_token}")
        assert "session.revoked" in [
            e.action for e in runtime.store.list_audit_events(resource_id=registered.session.id)
        ]

    async def test_revoke_other_sessions_is_audited(self, runtime, channel):
        first = await _register(runtime, channel)
        second = await runtime.lifecycle.login_with_password(PHONE, PASSWORD)
        revoked = await runtime.lifecycle.revoke_other_sessions(first.user.id, second.session.id)
        assert revoked == [first.session.id]
        assert _valid_session_ids(runtime, first.user.id) == {second.session.id}
        events = runtime.store.list_audit_events(
            resource_id=second.session.id, action="session.revoked_others"
        )
        assert len(events) == 1
        assert events[0].actor_id == first.user.id
        assert events[0].after == {"revoked": [first.session.id]}


class TestPasswordChanges:
    async def test_change_password_keeps_current_session(self, runtime, channel):
        registered = await _register(runtime, channel)
        other = await runtime.lifecycle.login_with_password(PHONE, PASSWORD)
        revoked = await runtime.lifecycle.change_password(
            registered.user.id, PASSWORD, NEW_PASSWORD, current_session_id=registered.session.id
        )
        assert revoked == [other.session.id]
        assert _valid_session_ids(runtime, registered.user.id) == {registered.session.id}
        await runtime.lifecycle.login_with_password(PHONE, NEW_PASSWORD)
        with pytest.raises(AuthenticationError):
            await runtime.lifecycle.login_with_password(PHONE, PASSWORD)

    async def test_change_password_checks_current(self, runtime, channel):
        registered = await _register(runtime, channel)
        with pytest.raises(AuthenticationError):
            await runtime.lifecycle.change_password(registered.user.id, NEW_PASSWORD, NEW_PASSWORD)

    async def test_change_password_rejects_reuse_and_weak(self, runtime, channel):
        registered = await _register(runtime, channel)
        with pytest.raises(ValidationError):
            await runtime.lifecycle.change_password(registered.user.id, PASSWORD, PASSWORD)
        with pytest.raises(ValidationError):
            await runtime.lifecycle.change_password(registered.user.id, PASSWORD, "password123")

    async def test_reset_password_revokes_everything_and_clears_lockout(self, runtime, channel):
        registered = await _register(runtime, channel)
        for _ in range(5):
            with pytest.raises(AuthenticationError):
                await runtime.lifecycle.login_with_password(PHONE, NEW_PASSWORD)
        issue = await runtime.lifecycle.request_otp(PHONE, "password_reset")
        await runtime.lifecycle.reset_password(PHONE, issue.verification_id, channel.last_code, NEW_PASSWORD)
        assert _valid_session_ids(runtime, registered.user.id) == set()
        result = await runtime.lifecycle.login_with_password(PHONE, NEW_PASSWORD)
        assert result.user.id == registered.user.id
        assert "user.password_reset" in _actions(runtime, registered.user.id)

    async def test_reset_password_blocked_while_suspended(self, runtime, channel):
        admin = await _register(runtime, channel, phone=OTHER_PHONE)
        registered = await _register(runtime, channel)
        await runtime.lifecycle.suspend(admin.user.id, registered.user.id, "abuse")
        issue = await runtime.lifecycle.request_otp(PHONE, "password_reset")
        with pytest.raises(AuthenticationError):
            await runtime.lifecycle.reset_password(PHONE, issue.verification_id, channel.last_code, NEW_PASSWORD)


class TestPhoneChange:
    async def test_change_phone(self, runtime, channel):
        registered = await _register(runtime, channel)
        other = await runtime.lifecycle.login_with_password(PHONE, PASSWORD)
        issue = await runtime.lifecycle.request_phone_change_otp(registered.user.id, NEW_PHONE)
        assert channel.sent[-1][0] == NEW_PHONE_E164
        user = await runtime.lifecycle.change_phone(
            registered.user.id,
            PASSWORD,
            NEW_PHONE,
            issue.verification_id,
            channel.last_code,
            current_session_id=registered.session.id,
        )
        assert user.phone == NEW_PHONE_E164
        assert _valid_session_ids(runtime, user.id) == {registered.session.id}
        assert other.session.id not in _valid_session_ids(runtime, user.id)
        await runtime.lifecycle.login_with_password(NEW_PHONE, PASSWORD)
        with pytest.raises(AuthenticationError):
            await runtime.lifecycle.login_with_password(PHONE, PASSWORD)
        changed = runtime.store.list_audit_events(resource_id=user.id, action="user.phone_changed")
        assert changed[0].before == {"phone": "+86138****8000"}

    async def test_code_must_match_purpose_phone_and_user(self, runtime, channel):
        registered = await _register(runtime, channel)
        intruder = await _register(runtime, channel, phone=OTHER_PHONE)

        login_code = await runtime.lifecycle.request_otp(NEW_PHONE, "login")
        with pytest.raises(AuthenticationError):
            await runtime.lifecycle.change_phone(
                registered.user.id, PASSWORD, NEW_PHONE, login_code.verification_id, channel.last_code
            )

        foreign = await runtime.lifecycle.request_phone_change_otp(intruder.user.id, NEW_PHONE)
        with pytest.raises(AuthenticationError):
            await runtime.lifecycle.change_phone(
                registered.user.id, PASSWORD, NEW_PHONE, foreign.verification_id, channel.last_code
            )

        mine = await runtime.lifecycle.request_phone_change_otp(registered.user.id, NEW_PHONE)
        with pytest.raises(AuthenticationError):
            await runtime.lifecycle.change_phone(
                registered.user.id, PASSWORD, "+8613600136000", mine.verification_id, channel.last_code
            )
        assert runtime.store.get_user(registered.user.id).phone == PHONE_E164

    async def test_phone_change_requires_password(self, runtime, channel):
        registered = await _register(runtime, channel)
        issue = await runtime.lifecycle.request_phone_change_otp(registered.user.id, NEW_PHONE)
        with pytest.raises(AuthenticationError):
            await runtime.lifecycle.change_phone(
                registered.user.id, NEW_PASSWORD, NEW_PHONE, issue.verification_id, channel.last_code
            )
        # the code was not spent on the failed password check
        assert runtime.store.get_otp(issue.verification_id).attempts == 0

    async def test_phone_change_target_validation(self, runtime, channel):
        registered = await _register(runtime, channel)
        await _register(runtime, channel, phone=OTHER_PHONE)
        with pytest.raises(ValidationError):
            await runtime.lifecycle.request_phone_change_otp(registered.user.id, PHONE)
        with pytest.raises(ConflictError):
            await runtime.lifecycle.request_phone_change_otp(registered.user.id, OTHER_PHONE)


class TestDeactivation:
    async def test_deactivate_revokes_sessions_and_login_reactivates(self, runtime, channel):
        registered = await _register(runtime, channel)
        user = await runtime.lifecycle.deactivate(registered.user.id, PASSWORD)
        assert user.status == AccountStatus.DEACTIVATED.value
        assert user.deactivated_at is not None
        assert _valid_session_ids(runtime, user.id) == set()

        result = await runtime.lifecycle.login_with_password(PHONE, PASSWORD)
        assert result.user.status == AccountStatus.ACTIVE.value
        assert result.user.deactivated_at is None
        assert "user.reactivated" in _actions(runtime, user.id)

    async def test_deactivate_requires_password_and_active(self, runtime, channel):
        registered = await _register(runtime, channel)
        with pytest.raises(AuthenticationError):
            await runtime.lifecycle.deactivate(registered.user.id, NEW_PASSWORD)
        await runtime.lifecycle.deactivate(registered.user.id, PASSWORD)
        with pytest.raises(ConflictError):
            await runtime.lifecycle.deactivate(registered.user.id, PASSWORD)


class TestDeletion:
    async def test_login_within_grace_cancels_deletion(self, runtime, channel):
        registered = await _register(runtime, channel)
        user = await runtime.lifecycle.request_deletion(registered.user.id, PASSWORD)
        assert user.status == AccountStatus.PENDING_DELETION.value
        assert runtime.lifecycle.deletion_due_at(user) == user.pending_deletion_at + timedelta(days=15)
        assert _valid_session_ids(runtime, user.id) == set()

        result = await runtime.lifecycle.login_with_password(PHONE, PASSWORD)
        assert result.user.status == AccountStatus.ACTIVE.value
        assert result.user.pending_deletion_at is None
        assert "user.deletion_cancelled" in _actions(runtime, user.id)

    async def test_login_after_grace_fails(self, runtime, channel):
        registered = await _register(runtime, channel)
        await runtime.lifecycle.request_deletion(registered.user.id, PASSWORD)
        later = utcnow() + timedelta(days=16)
        runtime.lifecycle._clock = lambda: later
        with pytest.raises(AuthenticationError):
            await runtime.lifecycle.login_with_password(PHONE, PASSWORD)

    async def test_reaper_deletes_after_grace(self, runtime, channel):
        registered = await _register(runtime, channel)
        await runtime.lifecycle.request_deletion(registered.user.id, PASSWORD)

        early = await runtime.reaper.run_once(now=utcnow() + timedelta(days=14))
        assert early.deleted_users == 0

        report = await runtime.reaper.run_once(now=utcnow() + timedelta(days=16))
        assert report.deleted_users == 1
        assert runtime.store.get_user(registered.user.id) is None
        assert runtime.store.get_session(registered.session.id) is None
        with pytest.raises(AuthenticationError):
            await runtime.lifecycle.login_with_password(PHONE, PASSWORD)
        deleted = runtime.store.list_audit_events(resource_id=registered.user.id, action="user.deleted")
        assert deleted[0].actor_id is None
        assert deleted[0].before["phone"] == "+86138****8000"

    async def test_cancel_deletion_with_password(self, runtime, channel):
        registered = await _register(runtime, channel)
        await runtime.lifecycle.request_deletion(registered.user.id, PASSWORD)
        user = await runtime.lifecycle.cancel_deletion_with_password(PHONE, PASSWORD)
        assert user.status == AccountStatus.ACTIVE.value
        # no session was created
        assert _valid_session_ids(runtime, user.id) == set()
        with pytest.raises(ConflictError):
            await runtime.lifecycle.cancel_deletion(user.id)

    async def test_cancel_deletion_wrong_password(self, runtime, channel):
        registered = await _register(runtime, channel)
        await runtime.lifecycle.request_deletion(registered.user.id, PASSWORD)
        with pytest.raises(AuthenticationError):
            await runtime.lifecycle.cancel_deletion_with_password(PHONE, NEW_PASSWORD)
        assert runtime.store.get_user(registered.user.id).status == AccountStatus.PENDING_DELETION.value

    async def test_deletion_from_deactivated(self, runtime, channel):
        registered = await _register(runtime, channel)
        await runtime.lifecycle.deactivate(registered.user.id, PASSWORD)
        user = await runtime.lifecycle.request_deletion(registered.user.id, PASSWORD)
        assert user.status == AccountStatus.PENDING_DELETION.value
        with pytest.raises(ConflictError):
            await runtime.lifecycle.request_deletion(registered.user.id, PASSWORD)


class TestSuspension:
    async def _admin_and_user(self, runtime, channel):
        admin = await _register(runtime, channel, phone=OTHER_PHONE)
        target = await _register(runtime, channel)
        return admin.user, target

    async def test_suspend_blocks_login_and_unsuspend_restores(self, runtime, channel):
        admin, target = await self._admin_and_user(runtime, channel)
        user = await runtime.lifecycle.suspend(admin.id, target.user.id, "spam")
        assert user.status == AccountStatus.SUSPENDED.value
        assert user.suspension_reason == "spam"
        assert user.suspension_until is None
        assert _valid_session_ids(runtime, user.id) == set()
        with pytest.raises(AuthenticationError):
            await runtime.lifecycle.login_with_password(PHONE, PASSWORD)

        with pytest.raises(ConflictError):
            await runtime.lifecycle.suspend(admin.id, target.user.id, "again")

        restored = await runtime.lifecycle.unsuspend(admin.id, target.user.id)
        assert restored.status == AccountStatus.ACTIVE.value
        assert restored.suspension_reason is None
        await runtime.lifecycle.login_with_password(PHONE, PASSWORD)
        suspended = runtime.store.list_audit_events(resource_id=user.id, action="user.suspended")
        assert suspended[0].actor_id == admin.id

    async def test_timed_suspension_expires(self, runtime, channel):
        admin, target = await self._admin_and_user(runtime, channel)
        user = await runtime.lifecycle.suspend(admin.id, target.user.id, "cooldown", duration_hours=2)
        assert user.suspension_until is not None

        assert await runtime.lifecycle.expire_suspensions(utcnow() + timedelta(hours=1)) == 0
        assert await runtime.lifecycle.expire_suspensions(utcnow() + timedelta(hours=3)) == 1
        assert runtime.store.get_user(user.id).status == AccountStatus.ACTIVE.value

    async def test_lapsed_suspension_lifted_at_login(self, runtime, channel):
        admin, target = await self._admin_and_user(runtime, channel)
        await runtime.lifecycle.suspend(admin.id, target.user.id, "cooldown", duration_hours=1)
        later = utcnow() + timedelta(hours=2)
        runtime.lifecycle._clock = lambda: later
        result = await runtime.lifecycle.login_with_password(PHONE, PASSWORD)
        assert result.user.status == AccountStatus.ACTIVE.value

    async def test_suspend_validation(self, runtime, channel):
        admin, target = await self._admin_and_user(runtime, channel)
        with pytest.raises(ValidationError):
            await runtime.lifecycle.suspend(admin.id, admin.id, "self")
        with pytest.raises(ValidationError):
            await runtime.lifecycle.suspend(admin.id, target.user.id, "bad", duration_hours=0)
        with pytest.raises(NotFoundError):
            await runtime.lifecycle.suspend(admin.id, "00000000-0000-0000-0000-000000000000", "ghost")
        with pytest.raises(ConflictError):
            await runtime.lifecycle.unsuspend(admin.id, target.user.id)


class TestAuditIsolation:
    async def test_failing_sink_does_not_break_transition(self, runtime, channel):
        class BrokenSink:
            def emit(self, event):
                raise RuntimeError("audit backend down")

        registered = await _register(runtime, channel)
        runtime.audit.sinks.insert(0, BrokenSink())
        user = await runtime.lifecycle.deactivate(registered.user.id, PASSWORD)
        assert user.status == AccountStatus.DEACTIVATED.value
        assert runtime.store.get_user(user.id).status == AccountStatus.DEACTIVATED.value
        # the remaining sinks still received the event
        assert "user.deactivated" in _actions(runtime, user.id)
