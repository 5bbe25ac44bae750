import pytest
from pydantic import ValidationError

from phonegate.config import (
    OtpSettings,
    PhoneSettings,
    Settings,
    SmsSettings,
    TokenSettings,
    get_settings,
    reset_settings_cache,
)


def test_environment_overrides_env_file(monkeypatch):
    monkeypatch.setenv("OTP_TTL_MINUTES", "7")
    settings = OtpSettings.from_env({"OTP_TTL_MINUTES": "9", "OTP_MAX_ATTEMPTS": "4"})
    assert settings.ttl_minutes == 7
    assert settings.max_attempts == 4
    assert settings.code_length == 6


def test_nested_groups_read_env_file(monkeypatch):
    monkeypatch.delenv("SESSION_MAX_PER_USER", raising=False)
    monkeypatch.delenv("DELETION_GRACE_DAYS", raising=False)
    settings = Settings.from_env({"SESSION_MAX_PER_USER": "3", "DELETION_GRACE_DAYS": "30"})
    assert settings.session.max_sessions == 3
    assert settings.lifecycle.deletion_grace_days == 30
    assert settings.rate_limit.login_per_minute == 10


def test_invalid_values_rejected(monkeypatch):
    monkeypatch.setenv("OTP_CODE_LENGTH", "2")
    with pytest.raises(ValidationError):
        OtpSettings.from_env({})


def test_allowed_regions_csv():
    settings = PhoneSettings.from_env({"PHONE_ALLOWED_REGIONS": " cn, hk ,"})
    assert settings.allowed_regions == ["CN", "HK"]


def test_sms_template_lookup():
    sms = SmsSettings()
    assert sms.template_for("password_reset") == "SMS_PASSWORD_RESET"
    assert sms.template_for("unknown") == sms.template_login


def test_generated_jwt_secret_is_persisted(tmp_path, monkeypatch):
    monkeypatch.setenv("SHARED_FS_ROOT", str(tmp_path))
    monkeypatch.delenv("JWT_SECRET", raising=False)
    first = TokenSettings.from_env({})
    second = TokenSettings.from_env({})
    assert first.jwt_secret == second.jwt_secret
    assert len(first.jwt_secret) >= 32
    assert (tmp_path / ".jwt_secret").read_text().strip() == first.jwt_secret


def test_explicit_jwt_secret_wins(tmp_path, monkeypatch):
    monkeypatch.setenv("SHARED_FS_ROOT", str(tmp_path))
    monkeypatch.setenv("JWT_SECRET", "explicit-secret-value-0123456789-abcdef")
    assert TokenSettings.from_env({}).jwt_secret == "explicit-secret-value-0123456789-abcdef"
    assert not (tmp_path / ".jwt_secret").exists()


def test_settings_cache_reset(monkeypatch):
    reset_settings_cache()
    monkeypatch.setenv("SESSION_MAX_PER_USER", "2")
    assert get_settings().session.max_sessions == 2
    monkeypatch.setenv("SESSION_MAX_PER_USER", "4")
    assert get_settings().session.max_sessions == 2
    reset_settings_cache()
    assert get_settings().session.max_sessions == 4
    reset_settings_cache()
