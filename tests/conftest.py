import asyncio
import inspect
import os
import tempfile
from typing import List, Tuple

# Create temp directory for tests before any imports that might initialize runtime
_test_tmp_dir = tempfile.mkdtemp(prefix="phonegate_test_")
os.environ.setdefault("SHARED_FS_ROOT", _test_tmp_dir)
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")
os.environ.setdefault("JWT_SECRET", "test-secret-key-for-testing-only-do-not-use-in-production")
os.environ.setdefault("LOG_JSON", "false")

import pytest  # noqa: E402

from phonegate.service.runtime import reset_runtime_for_tests  # noqa: E402
from phonegate.service.sms import DeliveryResult  # noqa: E402

STRONG_PASSWORD = "Tr0ub4dor&3!"
OTHER_PASSWORD = "Qv7#Lumen-Harbor"
PHONE = "+86 138 0013 8000"
PHONE_E164 = "+8613800138000"


class RecordingChannel:
    """Delivery channel that keeps every code it was asked to send."""

    def __init__(self, fail: bool = False):
        self.fail = fail
        self.sent: List[Tuple[str, str, str]] = []

    async def send(self, phone: str, template_id: str, code: str) -> DeliveryResult:
        if self.fail:
            return DeliveryResult(delivered=False, error="gateway down")
        self.sent.append((phone, template_id, code))
        return DeliveryResult(delivered=True, message_id=f"msg-{len(self.sent)}")

    @property
    def last_code(self) -> str:
        return self.sent[-1][2]


def _apply_test_env(monkeypatch, shared_fs_root):
    monkeypatch.setenv("SHARED_FS_ROOT", shared_fs_root)
    # per-process counters; the Redis-backed limiter has its own tests
    monkeypatch.setenv("REDIS_URL", "")
    monkeypatch.setenv("PASSWORD_HASH_TIME_COST", "1")
    monkeypatch.setenv("PASSWORD_HASH_MEMORY_COST", "1024")
    monkeypatch.setenv("PASSWORD_HASH_PARALLELISM", "1")
    monkeypatch.setenv("SMS_BACKOFF_SECONDS", "0")
    monkeypatch.setenv("REAPER_ENABLED", "false")


@pytest.fixture(autouse=True)
def reset_runtime_state(tmp_path_factory, monkeypatch):
    shared_fs_root = str(tmp_path_factory.mktemp("shared_fs"))
    _apply_test_env(monkeypatch, shared_fs_root)
    reset_runtime_for_tests()
    yield
    # drop env overrides made by the test itself before rebuilding the runtime
    monkeypatch.undo()
    with pytest.MonkeyPatch.context() as teardown_env:
        _apply_test_env(teardown_env, shared_fs_root)
        reset_runtime_for_tests()


@pytest.fixture
def runtime():
    from phonegate.service.runtime import get_runtime

    return get_runtime()


@pytest.fixture
def channel(runtime):
    recording = RecordingChannel()
    runtime.otp.channel = recording
    return recording


def pytest_pyfunc_call(pyfuncitem):
    if inspect.iscoroutinefunction(pyfuncitem.obj):
        call_kwargs = {
            name: pyfuncitem.funcargs[name]
            for name in pyfuncitem._fixtureinfo.argnames
            if name in pyfuncitem.funcargs
        }
        asyncio.run(pyfuncitem.obj(**call_kwargs))
        return True
    return None


def pytest_configure(config):
    config.addinivalue_line("markers", "asyncio: mark test as async")
