from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Dict, Optional


def utcnow() -> datetime:
    """Timezone-aware UTC helper to avoid naive datetime usage."""

    return datetime.now(timezone.utc)


class AccountStatus(str, Enum):
    ACTIVE = "active"
    SUSPENDED = "suspended"
    DEACTIVATED = "deactivated"
    PENDING_DELETION = "pending_deletion"


class OtpPurpose(str, Enum):
    REGISTRATION = "registration"
    LOGIN = "login"
    PASSWORD_RESET = "password_reset"
    PHONE_CHANGE = "phone_change"


@dataclass
class User:
    id: str
    phone: str
    password_hash: str
    status: str = AccountStatus.ACTIVE.value
    role: str = "user"
    phone_verified: bool = False
    phone_verified_at: Optional[datetime] = None
    suspension_reason: Optional[str] = None
    suspension_until: Optional[datetime] = None
    deactivated_at: Optional[datetime] = None
    pending_deletion_at: Optional[datetime] = None
    failed_login_attempts: int = 0
    last_failed_login_at: Optional[datetime] = None
    password_changed_at: Optional[datetime] = None
    last_login_at: Optional[datetime] = None
    login_count: int = 0
    registration_ip: Optional[str] = None
    last_ip: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    @classmethod
    def new(
        cls,
        phone: str,
        password_hash: str,
        *,
        role: str = "user",
        phone_verified: bool = False,
        registration_ip: Optional[str] = None,
    ) -> "User":
        now = utcnow()
        return cls(
            id=str(uuid.uuid4()),
            phone=phone,
            password_hash=password_hash,
            role=role,
            phone_verified=phone_verified,
            phone_verified_at=now if phone_verified else None,
            registration_ip=registration_ip,
            last_ip=registration_ip,
            password_changed_at=now,
            created_at=now,
            updated_at=now,
        )

    @property
    def roles(self) -> list[str]:
        return ["user", "admin"] if self.role == "admin" else [self.role]

    def is_locked_out(self, now: datetime, max_attempts: int, window: timedelta) -> bool:
        if self.failed_login_attempts < max_attempts or not self.last_failed_login_at:
            return False
        return now - self.last_failed_login_at < window

    def set_status(self, status: AccountStatus, now: datetime) -> None:
        """Move to ``status`` and keep the status timestamps consistent with it."""

        self.status = status.value
        if status is not AccountStatus.SUSPENDED:
            self.suspension_reason = None
            self.suspension_until = None
        self.deactivated_at = now if status is AccountStatus.DEACTIVATED else None
        self.pending_deletion_at = now if status is AccountStatus.PENDING_DELETION else None
        self.updated_at = now


@dataclass
class DeviceInfo:
    """Opaque client device descriptor stored with a session."""

    device_id: Optional[str] = None
    device_type: str = "unknown"
    device_name: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "device_id": self.device_id,
            "device_type": self.device_type,
            "device_name": self.device_name,
        }

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "DeviceInfo":
        data = data or {}
        return cls(
            device_id=data.get("device_id"),
            device_type=data.get("device_type") or "unknown",
            device_name=data.get("device_name"),
        )


@dataclass
class Session:
    id: str
    user_id: str
    refresh_jti: str
    created_at: datetime
    expires_at: datetime
    device: DeviceInfo = field(default_factory=DeviceInfo)
    ip_address: Optional[str] = None
    revoked_at: Optional[datetime] = None
    revoke_reason: Optional[str] = None
    last_refreshed_at: Optional[datetime] = None

    @classmethod
    def new(
        cls,
        user_id: str,
        ttl_days: int = 7,
        device: Optional[DeviceInfo] = None,
        ip_address: Optional[str] = None,
        *,
        now: Optional[datetime] = None,
    ) -> "Session":
        created = now or utcnow()
        return cls(
            id=str(uuid.uuid4()),
            user_id=user_id,
            refresh_jti=str(uuid.uuid4()),
            created_at=created,
            expires_at=created + timedelta(days=ttl_days),
            device=device or DeviceInfo(),
            ip_address=ip_address,
        )

    def is_expired(self, now: datetime) -> bool:
        return self.expires_at <= now

    @property
    def is_revoked(self) -> bool:
        return self.revoked_at is not None

    def is_valid(self, now: datetime) -> bool:
        return not self.is_revoked and not self.is_expired(now)


@dataclass
class OtpRecord:
    verification_id: str
    phone: str
    code_hash: str
    purpose: str
    expires_at: datetime
    max_attempts: int = 3
    attempts: int = 0
    user_id: Optional[str] = None
    ip_address: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)
    verified_at: Optional[datetime] = None

    @property
    def is_verified(self) -> bool:
        return self.verified_at is not None

    @property
    def is_exhausted(self) -> bool:
        return self.attempts >= self.max_attempts

    def is_expired(self, now: datetime) -> bool:
        return self.expires_at <= now

    def is_consumable(self, now: datetime) -> bool:
        return not self.is_verified and not self.is_expired(now) and not self.is_exhausted


@dataclass
class AuditEvent:
    action: str
    resource: str
    actor_id: Optional[str] = None
    resource_id: Optional[str] = None
    before: Optional[Dict[str, Any]] = None
    after: Optional[Dict[str, Any]] = None
    ip_address: Optional[str] = None
    session_id: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)
