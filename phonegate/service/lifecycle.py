from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, List, Optional

from phonegate.config import Settings
from phonegate.logging import get_logger
from phonegate.service.audit import AuditEmitter
from phonegate.service.credentials import CredentialPolicy, PasswordHasherService
from phonegate.service.errors import (
    AuthenticationError,
    ConflictError,
    NotFoundError,
    ValidationError,
)
from phonegate.service.otp import Consumed, OtpEngine, OtpIssue, OtpResult, Rejected
from phonegate.service.phone import CanonicalPhone, PhoneNormalizer, mask_phone
from phonegate.service.sessions import SessionManager
from phonegate.service.tokens import TokenPair
from phonegate.storage.errors import ConstraintViolation
from phonegate.storage.models import (
    AccountStatus,
    AuditEvent,
    DeviceInfo,
    OtpPurpose,
    Session,
    User,
    utcnow,
)

logger = get_logger(__name__)

INVALID_CREDENTIALS = "invalid credentials"


@dataclass
class LoginResult:
    user: User
    session: Session
    tokens: TokenPair


class AccountLifecycle:
    """Account state transitions: registration, login, credentials, status.

    Every transition commits in one store transaction and only then emits its
    audit events. Login failures never say which factor was wrong.
    """

    def __init__(
        self,
        store,
        *,
        sessions: SessionManager,
        otp: OtpEngine,
        policy: CredentialPolicy,
        hasher: PasswordHasherService,
        phones: PhoneNormalizer,
        audit: AuditEmitter,
        settings: Settings,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.store = store
        self.sessions = sessions
        self.otp = otp
        self.policy = policy
        self.hasher = hasher
        self.phones = phones
        self.audit = audit
        self.settings = settings
        self._clock = clock

    @property
    def grace_period(self) -> timedelta:
        return timedelta(days=self.settings.lifecycle.deletion_grace_days)

    @property
    def lockout_window(self) -> timedelta:
        return timedelta(minutes=self.settings.lockout.window_minutes)

    def _require_user(self, user_id: str, *, for_update: bool = False) -> User:
        user = self.store.get_user(user_id, for_update=for_update)
        if user is None:
            raise NotFoundError("user not found")
        return user

    def _normalize_for_login(self, phone: str, password: Optional[str] = None) -> CanonicalPhone:
        try:
            return self.phones.normalize(phone)
        except ValidationError:
            if password is not None:
                self.hasher.dummy_verify(password)
            raise AuthenticationError(INVALID_CREDENTIALS)

    def _is_locked_out(self, user: User, now: datetime) -> bool:
        return user.is_locked_out(now, self.settings.lockout.max_failed_attempts, self.lockout_window)

    def _event(
        self,
        action: str,
        user_id: Optional[str],
        *,
        actor_id: Optional[str] = None,
        before: Optional[dict] = None,
        after: Optional[dict] = None,
        ip: Optional[str] = None,
        session_id: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> AuditEvent:
        return AuditEvent(
            action=action,
            resource="user",
            actor_id=actor_id,
            resource_id=user_id,
            before=before,
            after=after,
            ip_address=ip,
            session_id=session_id,
            created_at=now or self._clock(),
        )

    @staticmethod
    def _raise_if_rejected(result: Optional[OtpResult]) -> None:
        if isinstance(result, Rejected):
            raise OtpEngine.rejection_error(result)

    # login helpers
    def _admit(self, user: User, now: datetime) -> List[AuditEvent]:
        """Apply login-time status rules; raise when the account may not sign in."""

        status = AccountStatus(user.status)
        if status is AccountStatus.ACTIVE:
            return []
        if status is AccountStatus.SUSPENDED:
            if user.suspension_until is not None and user.suspension_until <= now:
                user.set_status(AccountStatus.ACTIVE, now)
                return [
                    self._event(
                        "user.suspension_expired",
                        user.id,
                        before={"status": status.value},
                        after={"status": user.status},
                        now=now,
                    )
                ]
            raise AuthenticationError(INVALID_CREDENTIALS)
        if status is AccountStatus.DEACTIVATED:
            user.set_status(AccountStatus.ACTIVE, now)
            return [
                self._event(
                    "user.reactivated",
                    user.id,
                    actor_id=user.id,
                    before={"status": status.value},
                    after={"status": user.status},
                    now=now,
                )
            ]
        # pending deletion
        if user.pending_deletion_at is not None and now < user.pending_deletion_at + self.grace_period:
            user.set_status(AccountStatus.ACTIVE, now)
            return [
                self._event(
                    "user.deletion_cancelled",
                    user.id,
                    actor_id=user.id,
                    before={"status": status.value},
                    after={"status": user.status},
                    now=now,
                )
            ]
        raise AuthenticationError(INVALID_CREDENTIALS)

    def _record_success(self, user: User, ip: Optional[str], now: datetime) -> None:
        user.failed_login_attempts = 0
        user.last_failed_login_at = None
        user.last_login_at = now
        user.login_count += 1
        if ip:
            user.last_ip = ip
        user.updated_at = now

    def _record_failure(self, user_id: str, now: datetime, ip: Optional[str] = None) -> None:
        with self.store.transaction():
            user = self.store.get_user(user_id, for_update=True)
            if user is None:
                return
            window_open = (
                user.last_failed_login_at is not None
                and now - user.last_failed_login_at < self.lockout_window
            )
            user.failed_login_attempts = user.failed_login_attempts + 1 if window_open else 1
            user.last_failed_login_at = now
            user.updated_at = now
            self.store.save_user(user)
        locked = self._is_locked_out(user, now)
        logger.info(
            "login_failed",
            user_id=user_id,
            failed_attempts=user.failed_login_attempts,
            locked=locked,
        )
        self.audit.emit(
            self._event(
                "user.login_failed",
                user_id,
                actor_id=user_id,
                after={"failed_attempts": user.failed_login_attempts, "locked": locked},
                ip=ip,
                now=now,
            )
        )

    def _open_login(
        self,
        user_id: str,
        device: Optional[DeviceInfo],
        ip: Optional[str],
        now: datetime,
        *,
        upgrade: Optional[tuple[str, str]] = None,
    ) -> tuple[User, Session, List[AuditEvent]]:
        with self.store.transaction():
            user = self.store.get_user(user_id, for_update=True)
            if user is None or self._is_locked_out(user, now):
                raise AuthenticationError(INVALID_CREDENTIALS)
            events = self._admit(user, now)
            self._record_success(user, ip, now)
            # (verified hash, replacement); skipped if the password changed meanwhile
            if upgrade is not None and user.password_hash == upgrade[0]:
                user.password_hash = upgrade[1]
            self.store.save_user(user)
            session = self.sessions.open_session(user, device, ip, now=now)
        return user, session, events

    def _complete_login(
        self,
        user: User,
        session: Session,
        events: List[AuditEvent],
        ip: Optional[str],
        now: datetime,
        method: str,
    ) -> LoginResult:
        tokens = self.sessions.mint(user, session)
        events.append(
            self._event(
                "user.login",
                user.id,
                actor_id=user.id,
                after={"method": method},
                ip=ip,
                session_id=session.id,
                now=now,
            )
        )
        self.audit.emit_all(events)
        return LoginResult(user=user, session=session, tokens=tokens)

    # operations
    async def request_otp(
        self, phone: str, purpose: str, ip: Optional[str] = None
    ) -> OtpIssue:
        """Issue a registration, login or password-reset code."""

        if purpose not in {
            OtpPurpose.REGISTRATION.value,
            OtpPurpose.LOGIN.value,
            OtpPurpose.PASSWORD_RESET.value,
        }:
            raise ValidationError(
                "unsupported verification purpose",
                detail={"errors": [{"field": "purpose", "constraint": "enum", "message": "unsupported verification purpose"}]},
            )
        return await self.otp.issue(phone, purpose, ip)

    async def register(
        self,
        phone: str,
        password: str,
        verification_id: str,
        code: str,
        device: Optional[DeviceInfo] = None,
        ip: Optional[str] = None,
    ) -> LoginResult:
        self.policy.validate(password)
        canonical = self.phones.normalize(phone)
        password_hash = self.hasher.hash(password)
        now = self._clock()

        with self.store.transaction():
            result = self.otp.verify(
                verification_id,
                code,
                phone=canonical.e164,
                purpose=OtpPurpose.REGISTRATION,
                now=now,
            )
            if isinstance(result, Consumed):
                if self.store.get_user_by_phone(canonical.e164) is not None:
                    raise ConflictError("phone already registered")
                user = User.new(
                    canonical.e164,
                    password_hash,
                    phone_verified=True,
                    registration_ip=ip,
                )
                user.last_login_at = now
                user.login_count = 1
                try:
                    self.store.create_user(user)
                except ConstraintViolation as exc:
                    raise ConflictError("phone already registered", detail=exc.detail)
                session = self.sessions.open_session(user, device, ip, now=now)
        self._raise_if_rejected(result)

        tokens = self.sessions.mint(user, session)
        self.audit.emit(
            self._event(
                "user.registered",
                user.id,
                actor_id=user.id,
                after={"phone": mask_phone(user.phone), "status": user.status},
                ip=ip,
                session_id=session.id,
                now=now,
            )
        )
        logger.info("user_registered", user_id=user.id, phone_masked=mask_phone(user.phone))
        return LoginResult(user=user, session=session, tokens=tokens)

    async def login_with_password(
        self,
        phone: str,
        password: str,
        device: Optional[DeviceInfo] = None,
        ip: Optional[str] = None,
    ) -> LoginResult:
        canonical = self._normalize_for_login(phone, password)
        now = self._clock()
        user = self.store.get_user_by_phone(canonical.e164)
        if user is None:
            self.hasher.dummy_verify(password)
            raise AuthenticationError(INVALID_CREDENTIALS)
        if self._is_locked_out(user, now):
            logger.warning("login_locked_out", user_id=user.id)
            raise AuthenticationError(INVALID_CREDENTIALS)
        if not self.hasher.verify(password, user.password_hash):
            self._record_failure(user.id, now, ip)
            raise AuthenticationError(INVALID_CREDENTIALS)
        upgrade = None
        if self.hasher.needs_rehash(user.password_hash):
            upgrade = (user.password_hash, self.hasher.hash(password))
        user, session, events = self._open_login(user.id, device, ip, now, upgrade=upgrade)
        if upgrade is not None and user.password_hash == upgrade[1]:
            logger.info("password_rehashed", user_id=user.id)
        return self._complete_login(user, session, events, ip, now, "password")

    async def login_with_otp(
        self,
        phone: str,
        verification_id: str,
        code: str,
        device: Optional[DeviceInfo] = None,
        ip: Optional[str] = None,
    ) -> LoginResult:
        canonical = self._normalize_for_login(phone)
        now = self._clock()
        with self.store.transaction():
            result = self.otp.verify(
                verification_id, code, phone=canonical.e164, purpose=OtpPurpose.LOGIN, now=now
            )
            if isinstance(result, Consumed):
                known = self.store.get_user_by_phone(canonical.e164)
                if known is None:
                    raise AuthenticationError(INVALID_CREDENTIALS)
                user, session, events = self._open_login(known.id, device, ip, now)
        self._raise_if_rejected(result)
        return self._complete_login(user, session, events, ip, now, "otp")

    async def logout(self, session_id: str, *, user_id: Optional[str] = None) -> None:
        revoked = await self.sessions.revoke(session_id, "logout")
        if revoked:
            self.audit.emit(
                AuditEvent(
                    action="session.revoked",
                    resource="session",
                    actor_id=user_id,
                    resource_id=session_id,
                    after={"reason": "logout"},
                    session_id=session_id,
                )
            )

    async def revoke_other_sessions(self, user_id: str, current_session_id: str) -> List[str]:
        revoked = await self.sessions.revoke_all(
            user_id, except_session_id=current_session_id, reason="revoke_others"
        )
        self.audit.emit(
            AuditEvent(
                action="session.revoked_others",
                resource="session",
                actor_id=user_id,
                resource_id=current_session_id,
                after={"revoked": revoked},
                session_id=current_session_id,
                created_at=self._clock(),
            )
        )
        return revoked

    async def change_password(
        self,
        user_id: str,
        current_password: str,
        new_password: str,
        current_session_id: Optional[str] = None,
    ) -> List[str]:
        user = self._require_user(user_id)
        if not self.hasher.verify(current_password, user.password_hash):
            raise AuthenticationError("current password is incorrect")
        self.policy.validate(new_password)
        if self.hasher.verify(new_password, user.password_hash):
            raise ValidationError(
                "new password must differ from the current password",
                detail={"errors": [{"field": "new_password", "constraint": "reuse", "message": "new password must differ from the current password"}]},
            )
        new_hash = self.hasher.hash(new_password)
        now = self._clock()

        with self.store.transaction():
            locked = self._require_user(user_id, for_update=True)
            if locked.password_hash != user.password_hash:
                raise ConflictError("password was changed concurrently")
            locked.password_hash = new_hash
            locked.password_changed_at = now
            locked.updated_at = now
            self.store.save_user(locked)
            revoked = self.store.revoke_user_sessions(
                user_id, now, "password_change", except_session_id=current_session_id
            )

        self.audit.emit(
            self._event(
                "user.password_changed",
                user_id,
                actor_id=user_id,
                after={"sessions_revoked": len(revoked)},
                session_id=current_session_id,
                now=now,
            )
        )
        return revoked

    async def reset_password(
        self,
        phone: str,
        verification_id: str,
        code: str,
        new_password: str,
        ip: Optional[str] = None,
    ) -> None:
        self.policy.validate(new_password)
        canonical = self._normalize_for_login(phone)
        new_hash = self.hasher.hash(new_password)
        now = self._clock()

        with self.store.transaction():
            result = self.otp.verify(
                verification_id,
                code,
                phone=canonical.e164,
                purpose=OtpPurpose.PASSWORD_RESET,
                now=now,
            )
            if isinstance(result, Consumed):
                user = self.store.get_user_by_phone(canonical.e164, for_update=True)
                if user is None or user.status in {
                    AccountStatus.SUSPENDED.value,
                    AccountStatus.PENDING_DELETION.value,
                }:
                    raise AuthenticationError(INVALID_CREDENTIALS)
                user.password_hash = new_hash
                user.password_changed_at = now
                user.failed_login_attempts = 0
                user.last_failed_login_at = None
                user.updated_at = now
                self.store.save_user(user)
                revoked = self.store.revoke_user_sessions(user.id, now, "password_reset")
        self._raise_if_rejected(result)

        self.audit.emit(
            self._event(
                "user.password_reset",
                user.id,
                actor_id=user.id,
                after={"sessions_revoked": len(revoked)},
                ip=ip,
                now=now,
            )
        )

    async def request_phone_change_otp(
        self, user_id: str, new_phone: str, ip: Optional[str] = None
    ) -> OtpIssue:
        canonical = self.phones.normalize(new_phone)
        user = self._require_user(user_id)
        if canonical.e164 == user.phone:
            raise ValidationError(
                "new phone matches the current phone",
                detail={"errors": [{"field": "new_phone", "constraint": "unchanged", "message": "new phone matches the current phone"}]},
            )
        if self.store.get_user_by_phone(canonical.e164) is not None:
            raise ConflictError("phone already registered")
        return await self.otp.issue(canonical.e164, OtpPurpose.PHONE_CHANGE, ip, user_id=user_id)

    async def change_phone(
        self,
        user_id: str,
        password: str,
        new_phone: str,
        verification_id: str,
        code: str,
        current_session_id: Optional[str] = None,
    ) -> User:
        canonical = self.phones.normalize(new_phone)
        user = self._require_user(user_id)
        if not self.hasher.verify(password, user.password_hash):
            raise AuthenticationError("password is incorrect")
        now = self._clock()

        with self.store.transaction():
            result = self.otp.verify(
                verification_id,
                code,
                phone=canonical.e164,
                purpose=OtpPurpose.PHONE_CHANGE,
                user_id=user_id,
                now=now,
            )
            if isinstance(result, Consumed):
                locked = self._require_user(user_id, for_update=True)
                holder = self.store.get_user_by_phone(canonical.e164)
                if holder is not None and holder.id != user_id:
                    raise ConflictError("phone already registered")
                old_phone = locked.phone
                locked.phone = canonical.e164
                locked.phone_verified = True
                locked.phone_verified_at = now
                locked.updated_at = now
                try:
                    self.store.save_user(locked)
                except ConstraintViolation as exc:
                    raise ConflictError("phone already registered", detail=exc.detail)
                revoked = self.store.revoke_user_sessions(
                    user_id, now, "phone_change", except_session_id=current_session_id
                )
        self._raise_if_rejected(result)

        self.audit.emit(
            self._event(
                "user.phone_changed",
                user_id,
                actor_id=user_id,
                before={"phone": mask_phone(old_phone)},
                after={"phone": mask_phone(locked.phone), "sessions_revoked": len(revoked)},
                session_id=current_session_id,
                now=now,
            )
        )
        return locked

    def _transition(
        self,
        user_id: str,
        target: AccountStatus,
        reason: str,
        now: datetime,
        *,
        allowed_from: set,
        conflict_message: str,
        configure: Optional[Callable[[User], None]] = None,
    ) -> tuple:
        with self.store.transaction():
            user = self._require_user(user_id, for_update=True)
            before = user.status
            if before == target.value or before not in allowed_from:
                raise ConflictError(conflict_message, detail={"status": before})
            user.set_status(target, now)
            if configure is not None:
                configure(user)
            self.store.save_user(user)
            revoked: List[str] = []
            if target is not AccountStatus.ACTIVE:
                revoked = self.store.revoke_user_sessions(user_id, now, reason)
        return user, before, revoked

    async def deactivate(self, user_id: str, password: str) -> User:
        user = self._require_user(user_id)
        if not self.hasher.verify(password, user.password_hash):
            raise AuthenticationError("password is incorrect")
        now = self._clock()
        user, before, revoked = self._transition(
            user_id,
            AccountStatus.DEACTIVATED,
            "account_deactivated",
            now,
            allowed_from={AccountStatus.ACTIVE.value},
            conflict_message="account is already deactivated",
        )
        self.audit.emit(
            self._event(
                "user.deactivated",
                user_id,
                actor_id=user_id,
                before={"status": before},
                after={"status": user.status, "sessions_revoked": len(revoked)},
                now=now,
            )
        )
        return user

    async def request_deletion(self, user_id: str, password: str) -> User:
        user = self._require_user(user_id)
        if not self.hasher.verify(password, user.password_hash):
            raise AuthenticationError("password is incorrect")
        now = self._clock()
        user, before, revoked = self._transition(
            user_id,
            AccountStatus.PENDING_DELETION,
            "deletion_requested",
            now,
            allowed_from={AccountStatus.ACTIVE.value, AccountStatus.DEACTIVATED.value},
            conflict_message="account deletion is already pending",
        )
        self.audit.emit(
            self._event(
                "user.deletion_requested",
                user_id,
                actor_id=user_id,
                before={"status": before},
                after={
                    "status": user.status,
                    "deletion_due_at": (now + self.grace_period).isoformat(),
                    "sessions_revoked": len(revoked),
                },
                now=now,
            )
        )
        return user

    def deletion_due_at(self, user: User) -> Optional[datetime]:
        if user.pending_deletion_at is None:
            return None
        return user.pending_deletion_at + self.grace_period

    async def cancel_deletion(self, user_id: str) -> User:
        now = self._clock()
        with self.store.transaction():
            user = self._require_user(user_id, for_update=True)
            if user.status != AccountStatus.PENDING_DELETION.value:
                raise ConflictError("account deletion is not pending", detail={"status": user.status})
            due = self.deletion_due_at(user)
            if due is not None and now >= due:
                raise ConflictError("deletion grace period has ended")
            user.set_status(AccountStatus.ACTIVE, now)
            self.store.save_user(user)
        self.audit.emit(
            self._event(
                "user.deletion_cancelled",
                user_id,
                actor_id=user_id,
                before={"status": AccountStatus.PENDING_DELETION.value},
                after={"status": user.status},
                now=now,
            )
        )
        return user

    async def cancel_deletion_with_password(self, phone: str, password: str) -> User:
        """Cancel a pending deletion for a caller who has no session left."""

        canonical = self._normalize_for_login(phone, password)
        user = self.store.get_user_by_phone(canonical.e164)
        if user is None:
            self.hasher.dummy_verify(password)
            raise AuthenticationError(INVALID_CREDENTIALS)
        if self._is_locked_out(user, self._clock()):
            raise AuthenticationError(INVALID_CREDENTIALS)
        if not self.hasher.verify(password, user.password_hash):
            self._record_failure(user.id, self._clock())
            raise AuthenticationError(INVALID_CREDENTIALS)
        return await self.cancel_deletion(user.id)

    async def suspend(
        self,
        admin_id: str,
        user_id: str,
        reason: str,
        duration_hours: Optional[int] = None,
    ) -> User:
        if admin_id == user_id:
            raise ValidationError("administrators cannot suspend their own account")
        if duration_hours is not None and duration_hours <= 0:
            raise ValidationError(
                "suspension duration must be positive",
                detail={"errors": [{"field": "duration_hours", "constraint": "gt:0", "message": "suspension duration must be positive"}]},
            )
        now = self._clock()
        until = now + timedelta(hours=duration_hours) if duration_hours else None

        def configure(user: User) -> None:
            user.suspension_reason = reason
            user.suspension_until = until

        user, before, revoked = self._transition(
            user_id,
            AccountStatus.SUSPENDED,
            "account_suspended",
            now,
            allowed_from={AccountStatus.ACTIVE.value, AccountStatus.DEACTIVATED.value},
            conflict_message="account cannot be suspended in its current state",
            configure=configure,
        )
        self.audit.emit(
            self._event(
                "user.suspended",
                user_id,
                actor_id=admin_id,
                before={"status": before},
                after={
                    "status": user.status,
                    "reason": reason,
                    "until": until.isoformat() if until else None,
                    "sessions_revoked": len(revoked),
                },
                now=now,
            )
        )
        return user

    async def unsuspend(self, admin_id: str, user_id: str) -> User:
        now = self._clock()
        user, before, _ = self._transition(
            user_id,
            AccountStatus.ACTIVE,
            "account_unsuspended",
            now,
            allowed_from={AccountStatus.SUSPENDED.value},
            conflict_message="account is not suspended",
        )
        self.audit.emit(
            self._event(
                "user.unsuspended",
                user_id,
                actor_id=admin_id,
                before={"status": before},
                after={"status": user.status},
                now=now,
            )
        )
        return user

    async def expire_suspensions(self, now: Optional[datetime] = None) -> int:
        now = now or self._clock()
        expired = 0
        for candidate in self.store.list_expired_suspensions(now):
            with self.store.transaction():
                user = self.store.get_user(candidate.id, for_update=True)
                if (
                    user is None
                    or user.status != AccountStatus.SUSPENDED.value
                    or user.suspension_until is None
                    or user.suspension_until > now
                ):
                    continue
                user.set_status(AccountStatus.ACTIVE, now)
                self.store.save_user(user)
            expired += 1
            self.audit.emit(
                self._event(
                    "user.suspension_expired",
                    user.id,
                    before={"status": AccountStatus.SUSPENDED.value},
                    after={"status": user.status},
                    now=now,
                )
            )
        if expired:
            logger.info("suspensions_expired", count=expired)
        return expired

    async def finalize_deletions(self, now: Optional[datetime] = None) -> int:
        now = now or self._clock()
        cutoff = now - self.grace_period
        deleted = 0
        for candidate in self.store.list_users_pending_deletion(cutoff):
            with self.store.transaction():
                user = self.store.get_user(candidate.id, for_update=True)
                if (
                    user is None
                    or user.status != AccountStatus.PENDING_DELETION.value
                    or user.pending_deletion_at is None
                    or user.pending_deletion_at > cutoff
                ):
                    continue
                self.store.delete_user(user.id)
            deleted += 1
            self.audit.emit(
                self._event(
                    "user.deleted",
                    user.id,
                    before={
                        "status": AccountStatus.PENDING_DELETION.value,
                        "phone": mask_phone(user.phone),
                        "pending_deletion_at": user.pending_deletion_at.isoformat(),
                    },
                    now=now,
                )
            )
        if deleted:
            logger.info("accounts_deleted", count=deleted)
        return deleted
