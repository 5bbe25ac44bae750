from __future__ import annotations

import os
import secrets
import tempfile
from pathlib import Path
from typing import Any, Mapping, Optional

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator

from phonegate.logging import get_logger

logger = get_logger(__name__)

_DEFAULT_FS_ROOT = "/srv/phonegate"


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    if callable(default):
        return Field(default_factory=default, json_schema_extra=extra, **kwargs)
    return Field(default, json_schema_extra=extra, **kwargs)


def _split_csv(value: Any) -> Any:
    if isinstance(value, str):
        return [part.strip().upper() for part in value.split(",") if part.strip()]
    return value


class EnvSettings(BaseModel):
    """Settings group whose fields resolve from the environment.

    Resolution order per field: process environment, then the ``.env`` file,
    then the declared default.
    """

    model_config = ConfigDict(extra="ignore")

    @classmethod
    def _collect_env(cls, env_file_values: Mapping[str, Optional[str]]) -> dict[str, str]:
        merged: dict[str, str] = {}
        for name, field in cls.model_fields.items():
            extra = field.json_schema_extra or {}
            env_name = extra.get("env") if isinstance(extra, dict) else None
            if not env_name:
                continue
            if env_name in os.environ:
                merged[name] = os.environ[env_name]
            elif env_file_values.get(env_name) is not None:
                merged[name] = env_file_values[env_name]  # type: ignore[assignment]
        return merged

    @classmethod
    def from_env(cls, env_file_values: Optional[Mapping[str, Optional[str]]] = None):
        if env_file_values is None:
            env_file_values = dotenv_values(".env")
        return cls(**cls._collect_env(env_file_values))


class PasswordPolicySettings(EnvSettings):
    min_length: int = env_field(8, "PASSWORD_MIN_LENGTH", ge=1)
    max_length: int = env_field(128, "PASSWORD_MAX_LENGTH", ge=8)
    require_uppercase: bool = env_field(True, "PASSWORD_REQUIRE_UPPERCASE")
    require_lowercase: bool = env_field(True, "PASSWORD_REQUIRE_LOWERCASE")
    require_digit: bool = env_field(True, "PASSWORD_REQUIRE_DIGIT")
    require_special: bool = env_field(True, "PASSWORD_REQUIRE_SPECIAL")
    min_entropy_bits: float = env_field(40.0, "PASSWORD_MIN_ENTROPY_BITS", ge=0)
    hash_time_cost: int = env_field(3, "PASSWORD_HASH_TIME_COST", ge=1)
    hash_memory_cost: int = env_field(
        65536, "PASSWORD_HASH_MEMORY_COST", ge=8, description="Argon2 memory cost in KiB"
    )
    hash_parallelism: int = env_field(4, "PASSWORD_HASH_PARALLELISM", ge=1)


class PhoneSettings(EnvSettings):
    default_region: str = env_field("CN", "PHONE_DEFAULT_REGION")
    allowed_regions: list[str] = env_field(
        lambda: ["CN", "HK", "MO", "TW"],
        "PHONE_ALLOWED_REGIONS",
        description="Comma-separated region codes whose calling codes are accepted",
    )

    @field_validator("allowed_regions", mode="before")
    @classmethod
    def _parse_regions(cls, value: Any) -> Any:
        return _split_csv(value)

    @field_validator("default_region")
    @classmethod
    def _upper_region(cls, value: str) -> str:
        return value.strip().upper()


class OtpSettings(EnvSettings):
    code_length: int = env_field(6, "OTP_CODE_LENGTH", ge=4, le=10)
    ttl_minutes: int = env_field(5, "OTP_TTL_MINUTES", ge=1)
    max_attempts: int = env_field(3, "OTP_MAX_ATTEMPTS", ge=1)
    per_phone_limit: int = env_field(5, "OTP_PER_PHONE_LIMIT")
    per_phone_window_seconds: int = env_field(300, "OTP_PER_PHONE_WINDOW_SECONDS")
    per_purpose_limit: int = env_field(20, "OTP_PER_PURPOSE_LIMIT")
    per_purpose_window_seconds: int = env_field(86400, "OTP_PER_PURPOSE_WINDOW_SECONDS")
    per_ip_limit: int = env_field(30, "OTP_PER_IP_LIMIT")
    per_ip_window_seconds: int = env_field(3600, "OTP_PER_IP_WINDOW_SECONDS")


class TokenSettings(EnvSettings):
    jwt_secret: Optional[str] = env_field(None, "JWT_SECRET", validate_default=True)
    jwt_key_id: str = env_field("k1", "JWT_KEY_ID")
    jwt_previous_secret: Optional[str] = env_field(
        None,
        "JWT_PREVIOUS_SECRET",
        description="Previous signing key accepted for verification during rotation",
    )
    jwt_previous_key_id: Optional[str] = env_field(None, "JWT_PREVIOUS_KEY_ID")
    issuer: str = env_field("phonegate", "JWT_ISSUER")
    audience: str = env_field("phonegate-clients", "JWT_AUDIENCE")
    access_ttl_minutes: int = env_field(30, "ACCESS_TOKEN_TTL_MINUTES", ge=1)
    refresh_ttl_days: int = env_field(7, "REFRESH_TOKEN_TTL_DAYS", ge=1)
    clock_skew_seconds: int = env_field(120, "JWT_CLOCK_SKEW_SECONDS", ge=0)

    @field_validator("jwt_secret")
    @classmethod
    def _ensure_jwt_secret(cls, value: str | None) -> str:
        if value:
            return value
        # Persist a generated secret so tokens remain valid across restarts
        fs_root = Path(os.getenv("SHARED_FS_ROOT", _DEFAULT_FS_ROOT))
        secret_path = fs_root / ".jwt_secret"

        try:
            fs_root.mkdir(parents=True, exist_ok=True)
            os.chmod(fs_root, 0o700)
        except PermissionError:
            pass
        except OSError as exc:
            logger.warning(
                "jwt_secret_dir_setup",
                error=str(exc),
                path=str(fs_root),
                message="Could not set directory permissions",
            )

        if secret_path.exists() and not secret_path.is_symlink():
            try:
                persisted = secret_path.read_text().strip()
                if persisted and len(persisted) >= 32:
                    return persisted
            except OSError as exc:
                logger.error("jwt_secret_read_failed", error=str(exc), path=str(secret_path))

        generated = secrets.token_urlsafe(64)
        tmp_path: Optional[str] = None
        try:
            fd, tmp_path = tempfile.mkstemp(dir=str(fs_root), prefix=".jwt_secret_", suffix=".tmp")
            try:
                os.write(fd, generated.encode())
                os.fchmod(fd, 0o600)
            finally:
                os.close(fd)
            os.rename(tmp_path, str(secret_path))
        except OSError as exc:
            if tmp_path:
                try:
                    os.unlink(tmp_path)
                except OSError:
                    pass
            logger.error("jwt_secret_persist_failed", error=str(exc), path=str(secret_path))
            raise RuntimeError(
                "Unable to persist JWT secret; set JWT_SECRET env var or make SHARED_FS_ROOT writable"
            ) from exc
        return generated


class SessionSettings(EnvSettings):
    max_sessions: int = env_field(5, "SESSION_MAX_PER_USER", ge=1)
    ttl_days: int = env_field(7, "SESSION_TTL_DAYS", ge=1)


class LockoutSettings(EnvSettings):
    max_failed_attempts: int = env_field(5, "LOGIN_LOCKOUT_MAX_ATTEMPTS", ge=1)
    window_minutes: int = env_field(30, "LOGIN_LOCKOUT_WINDOW_MINUTES", ge=1)


class RateLimitSettings(EnvSettings):
    fail_open: bool = env_field(
        True,
        "RATE_LIMIT_FAIL_OPEN",
        description="Allow requests when the counter store is unreachable",
    )
    store_timeout_seconds: float = env_field(0.5, "RATE_LIMIT_STORE_TIMEOUT_SECONDS", gt=0)
    login_per_minute: int = env_field(10, "LOGIN_RATE_LIMIT_PER_MINUTE")
    register_per_hour: int = env_field(10, "REGISTER_RATE_LIMIT_PER_HOUR")
    refresh_per_minute: int = env_field(30, "REFRESH_RATE_LIMIT_PER_MINUTE")
    reset_per_hour: int = env_field(5, "RESET_RATE_LIMIT_PER_HOUR")
    account_per_5min: int = env_field(5, "ACCOUNT_RATE_LIMIT_PER_5MIN")


class LifecycleSettings(EnvSettings):
    deletion_grace_days: int = env_field(15, "DELETION_GRACE_DAYS", ge=0)


class ReaperSettings(EnvSettings):
    enabled: bool = env_field(True, "REAPER_ENABLED")
    interval_seconds: int = env_field(3600, "REAPER_INTERVAL_SECONDS", ge=1)
    verified_otp_retention_days: int = env_field(90, "REAPER_VERIFIED_OTP_RETENTION_DAYS", ge=0)
    session_retention_days: int = env_field(30, "REAPER_SESSION_RETENTION_DAYS", ge=0)


class SmsSettings(EnvSettings):
    gateway_url: Optional[str] = env_field(None, "SMS_GATEWAY_URL")
    api_key: Optional[str] = env_field(None, "SMS_API_KEY")
    sign_name: str = env_field("PhoneGate", "SMS_SIGN_NAME")
    timeout_seconds: float = env_field(5.0, "SMS_TIMEOUT_SECONDS", gt=0)
    max_attempts: int = env_field(3, "SMS_MAX_ATTEMPTS", ge=1)
    backoff_seconds: float = env_field(0.5, "SMS_BACKOFF_SECONDS", ge=0)
    log_codes: bool = env_field(
        False, "SMS_LOG_CODES", description="Log plaintext codes when no gateway is set"
    )
    template_registration: str = env_field("SMS_REGISTRATION", "SMS_TEMPLATE_REGISTRATION")
    template_login: str = env_field("SMS_LOGIN", "SMS_TEMPLATE_LOGIN")
    template_password_reset: str = env_field("SMS_PASSWORD_RESET", "SMS_TEMPLATE_PASSWORD_RESET")
    template_phone_change: str = env_field("SMS_PHONE_CHANGE", "SMS_TEMPLATE_PHONE_CHANGE")

    def template_for(self, purpose: str) -> str:
        return getattr(self, f"template_{purpose}", self.template_login)


class Settings(EnvSettings):
    """Runtime settings composed of per-category groups."""

    database_url: str = env_field(
        "postgresql://localhost:5432/phonegate", "DATABASE_URL"
    )
    redis_url: Optional[str] = env_field("redis://localhost:6379/0", "REDIS_URL")
    shared_fs_root: str = env_field(_DEFAULT_FS_ROOT, "SHARED_FS_ROOT")
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    allow_redis_fallback_dev: bool = env_field(False, "ALLOW_REDIS_FALLBACK_DEV")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Toggle deterministic testing behaviors",
    )
    build_sha: str = env_field("dev", "BUILD_SHA")
    enable_hsts: bool = env_field(False, "ENABLE_HSTS")

    password: PasswordPolicySettings = Field(default_factory=PasswordPolicySettings)
    phone: PhoneSettings = Field(default_factory=PhoneSettings)
    otp: OtpSettings = Field(default_factory=OtpSettings)
    token: TokenSettings = Field(default_factory=TokenSettings)
    session: SessionSettings = Field(default_factory=SessionSettings)
    lockout: LockoutSettings = Field(default_factory=LockoutSettings)
    rate_limit: RateLimitSettings = Field(default_factory=RateLimitSettings)
    lifecycle: LifecycleSettings = Field(default_factory=LifecycleSettings)
    reaper: ReaperSettings = Field(default_factory=ReaperSettings)
    sms: SmsSettings = Field(default_factory=SmsSettings)

    @classmethod
    def from_env(cls, env_file_values: Optional[Mapping[str, Optional[str]]] = None) -> "Settings":
        if env_file_values is None:
            env_file_values = dotenv_values(".env")
        values: dict[str, Any] = cls._collect_env(env_file_values)
        for name, field in cls.model_fields.items():
            annotation = field.annotation
            if isinstance(annotation, type) and issubclass(annotation, EnvSettings):
                values[name] = annotation.from_env(env_file_values)
        return cls(**values)


def get_settings() -> Settings:
    global _settings_cache
    if _settings_cache is None:
        _settings_cache = Settings.from_env()
    return _settings_cache


_settings_cache: Settings | None = None


def reset_settings_cache() -> None:
    """Clear cached settings so future calls re-read the environment."""

    global _settings_cache
    _settings_cache = None
