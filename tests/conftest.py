import asyncio
import inspect
import os
import tempfile

# Environment must be in place before payauth.app is imported: settings are
# read at import and refuse to load without signing secrets.
_test_tmp_dir = tempfile.mkdtemp(prefix="payauth_test_")
os.environ.setdefault("SHARED_FS_ROOT", _test_tmp_dir)
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("JWT_SECRET", "test-access-secret-for-automation-only-0123456789")
os.environ.setdefault("JWT_REFRESH_SECRET", "test-refresh-secret-for-automation-only-9876543210")
# Keep argon2 cheap so the suite stays fast.
os.environ.setdefault("PASSWORD_HASH_TIME_COST", "1")
os.environ.pop("REDIS_URL", None)
os.environ.pop("SMTP_HOST", None)

import pytest  # noqa: E402

from payauth.config import Settings  # noqa: E402
from payauth.service.auth import AuthService  # noqa: E402
from payauth.service.runtime import reset_runtime_for_tests  # noqa: E402
from payauth.service.tokens import TokenCodec  # noqa: E402
from payauth.storage.memory import MemoryStore  # noqa: E402

ACCESS_SECRET = "unit-access-secret-0123456789-abcdefghijkl"
REFRESH_SECRET = "unit-refresh-secret-0123456789-mnopqrstuvw"


@pytest.fixture(autouse=True)
def reset_runtime_state(tmp_path, monkeypatch):
    # Each test gets its own snapshot directory so persisted users do not leak.
    monkeypatch.setenv("SHARED_FS_ROOT", str(tmp_path / "shared"))
    reset_runtime_for_tests()
    yield


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


class RecordingNotifier:
    """Captures reset mails instead of sending them."""

    def __init__(self, succeed: bool = True):
        self.succeed = succeed
        self.sent = []

    def send_password_reset(self, to_email: str, token: str) -> bool:
        self.sent.append((to_email, token))
        return self.succeed


@pytest.fixture
def settings():
    return Settings(
        jwt_secret=ACCESS_SECRET,
        jwt_refresh_secret=REFRESH_SECRET,
        password_hash_time_cost=1,
        test_mode=True,
    )


@pytest.fixture
def memory_store(tmp_path):
    return MemoryStore(fs_root=str(tmp_path / "store"))


@pytest.fixture
def codec(settings):
    return TokenCodec.from_settings(settings)


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def auth_service(memory_store, codec, settings, notifier):
    return AuthService(memory_store, codec, settings, email=notifier)
