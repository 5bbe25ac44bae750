from __future__ import annotations

import unicodedata
from datetime import datetime
from typing import Any, List, Optional
from uuid import uuid4

from pydantic import BaseModel, Field, field_validator

from phonegate.logging import get_correlation_id

MAX_PASSWORD_LENGTH = 256
MAX_PHONE_LENGTH = 32


def _normalize_unicode(value: str) -> str:
    """Strip zero-width and bidi override characters, then NFKC-normalize."""
    zero_width = "\u200b\u200c\u200d\ufeff"
    bidi_overrides = {chr(c) for c in range(0x202A, 0x202F)}
    bidi_overrides.update(chr(c) for c in range(0x2066, 0x206A))
    cleaned = "".join(c for c in value if c not in zero_width and c not in bidi_overrides)
    return unicodedata.normalize("NFKC", cleaned)


_VALID_ERROR_CODES = frozenset({
    "unauthorized",
    "forbidden",
    "not_found",
    "rate_limited",
    "validation_error",
    "conflict",
    "server_error",
})


class ErrorBody(BaseModel):
    """Error envelope body with stable code values."""

    code: str = Field(..., description="Stable error code")
    message: str
    details: Optional[Any] = None  # object, array, or null

    @field_validator("code")
    @classmethod
    def _validate_error_code(cls, value: str) -> str:
        if value not in _VALID_ERROR_CODES:
            raise ValueError(
                f"Invalid error code '{value}'. Must be one of: {', '.join(sorted(_VALID_ERROR_CODES))}"
            )
        return value


class Envelope(BaseModel):
    status: str = Field(..., pattern="^(ok|error)$")
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=lambda: get_correlation_id() or str(uuid4()))


class DeviceFields(BaseModel):
    device_id: Optional[str] = Field(default=None, max_length=128)
    device_type: str = Field(default="unknown", max_length=32)
    device_name: Optional[str] = Field(default=None, max_length=128)

    @field_validator("device_type")
    @classmethod
    def _normalize_device_type(cls, value: str) -> str:
        return (value or "unknown").strip().lower() or "unknown"


class PhoneField(BaseModel):
    phone: str = Field(..., min_length=1, max_length=MAX_PHONE_LENGTH)

    @field_validator("phone")
    @classmethod
    def _clean_phone(cls, value: str) -> str:
        return _normalize_unicode(value).strip()


class OtpRequest(PhoneField):
    purpose: str = Field(..., max_length=32)


class RegisterRequest(PhoneField, DeviceFields):
    password: str = Field(..., max_length=MAX_PASSWORD_LENGTH)
    verification_id: str = Field(..., max_length=64)
    code: str = Field(..., max_length=16)


class LoginRequest(PhoneField, DeviceFields):
    password: str = Field(..., max_length=MAX_PASSWORD_LENGTH)


class OtpLoginRequest(PhoneField, DeviceFields):
    verification_id: str = Field(..., max_length=64)
    code: str = Field(..., max_length=16)


class RefreshRequest(BaseModel):
    refresh_token: str = Field(..., max_length=4096)


class PasswordResetRequest(PhoneField):
    verification_id: str = Field(..., max_length=64)
    code: str = Field(..., max_length=16)
    new_password: str = Field(..., max_length=MAX_PASSWORD_LENGTH)


class ChangePasswordRequest(BaseModel):
    current_password: str = Field(..., max_length=MAX_PASSWORD_LENGTH)
    new_password: str = Field(..., max_length=MAX_PASSWORD_LENGTH)


class PhoneChangeOtpRequest(BaseModel):
    new_phone: str = Field(..., min_length=1, max_length=MAX_PHONE_LENGTH)

    @field_validator("new_phone")
    @classmethod
    def _clean_new_phone(cls, value: str) -> str:
        return _normalize_unicode(value).strip()


class PhoneChangeRequest(PhoneChangeOtpRequest):
    password: str = Field(..., max_length=MAX_PASSWORD_LENGTH)
    verification_id: str = Field(..., max_length=64)
    code: str = Field(..., max_length=16)


class PasswordConfirmRequest(BaseModel):
    password: str = Field(..., max_length=MAX_PASSWORD_LENGTH)


class CancelDeletionRequest(PhoneField):
    password: str = Field(..., max_length=MAX_PASSWORD_LENGTH)


class SuspendRequest(BaseModel):
    reason: str = Field(..., min_length=1, max_length=512)
    duration_hours: Optional[int] = Field(default=None, description="Omit for an indefinite suspension")


class OtpIssueResponse(BaseModel):
    verification_id: str
    expires_at: datetime
    phone_masked: str


class AuthResponse(BaseModel):
    user_id: str
    session_id: str
    session_expires_at: datetime
    access_token: str
    refresh_token: str
    access_expires_at: datetime
    refresh_expires_at: datetime
    token_type: str = "bearer"
    role: str = "user"


class SessionInfo(BaseModel):
    id: str
    device_id: Optional[str] = None
    device_type: str = "unknown"
    device_name: Optional[str] = None
    ip_address: Optional[str] = None
    created_at: datetime
    expires_at: datetime
    last_refreshed_at: Optional[datetime] = None
    current: bool = False


class SessionListResponse(BaseModel):
    items: List[SessionInfo]


class RevokedSessionsResponse(BaseModel):
    revoked: List[str]


class UserInfo(BaseModel):
    id: str
    phone_masked: str
    status: str
    role: str = "user"
    phone_verified: bool = False
    suspension_reason: Optional[str] = None
    suspension_until: Optional[datetime] = None
    deletion_due_at: Optional[datetime] = None
    created_at: datetime
