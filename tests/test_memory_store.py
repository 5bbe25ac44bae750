from datetime import timedelta

import pytest

from phonegate.storage.errors import ConstraintViolation
from phonegate.storage.memory import MemoryStore
from phonegate.storage.models import AccountStatus, DeviceInfo, OtpRecord, Session, User, utcnow


def _otp(user_id=None):
    now = utcnow()
    return OtpRecord(
        verification_id="6f1c2b1e-0000-4000-8000-000000000001",
        phone="+8613800138000",
        code_hash="hash",
        purpose="login",
        expires_at=now + timedelta(minutes=5),
        max_attempts=3,
        user_id=user_id,
        created_at=now,
    )


def test_state_survives_reload(tmp_path):
    store = MemoryStore(fs_root=str(tmp_path))
    user = User.new("+8613800138000", "hash", role="admin", phone_verified=True)
    user.set_status(AccountStatus.SUSPENDED, utcnow())
    user.suspension_reason = "spam"
    store.create_user(user)
    session = store.insert_session(Session.new(user.id, device=DeviceInfo(device_id="ios-1")))
    store.insert_otp(_otp(user.id))

    reloaded = MemoryStore(fs_root=str(tmp_path))
    reloaded_user = reloaded.get_user(user.id)
    assert reloaded_user.role == "admin"
    assert reloaded_user.status == "suspended"
    assert reloaded_user.suspension_reason == "spam"
    assert reloaded_user.created_at == user.created_at
    assert reloaded.get_session(session.id).device.device_id == "ios-1"
    assert reloaded.get_otp(_otp().verification_id).user_id == user.id


def test_transaction_rolls_back_on_error(tmp_path):
    store = MemoryStore(fs_root=str(tmp_path))
    user = store.create_user(User.new("+8613800138000", "hash"))
    with pytest.raises(RuntimeError):
        with store.transaction():
            user.login_count = 9
            store.save_user(user)
            store.insert_session(Session.new(user.id))
            raise RuntimeError("abort")
    assert store.get_user(user.id).login_count == 0
    assert store.list_valid_sessions(user.id, utcnow()) == []


def test_phone_is_unique(tmp_path):
    store = MemoryStore(fs_root=str(tmp_path), persist=False)
    store.create_user(User.new("+8613800138000", "hash"))
    with pytest.raises(ConstraintViolation):
        store.create_user(User.new("+8613800138000", "other"))
    second = store.create_user(User.new("+8613900139000", "hash"))
    second.phone = "+8613800138000"
    with pytest.raises(ConstraintViolation):
        store.save_user(second)


def test_delete_user_cascades(tmp_path):
    store = MemoryStore(fs_root=str(tmp_path), persist=False)
    user = store.create_user(User.new("+8613800138000", "hash"))
    session = store.insert_session(Session.new(user.id))
    store.insert_otp(_otp(user.id))
    assert store.delete_user(user.id) is True
    assert store.get_session(session.id) is None
    assert store.get_otp(_otp().verification_id) is None
    assert store.delete_user(user.id) is False


def test_rotate_refresh_jti_compare_and_set(tmp_path):
    store = MemoryStore(fs_root=str(tmp_path), persist=False)
    user = store.create_user(User.new("+8613800138000", "hash"))
    session = store.insert_session(Session.new(user.id))
    assert store.rotate_refresh_jti(session.id, session.refresh_jti, "next", utcnow()) is True
    assert store.rotate_refresh_jti(session.id, session.refresh_jti, "again", utcnow()) is False
    assert store.get_session(session.id).refresh_jti == "next"


def test_corrupt_state_file_starts_empty(tmp_path):
    state = tmp_path / "state" / "memory_store.json"
    state.parent.mkdir(parents=True)
    state.write_text("{not json")
    store = MemoryStore(fs_root=str(tmp_path))
    assert store.users == {}
