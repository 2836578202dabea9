import asyncio
import inspect
import os
import sys
import tempfile
from datetime import datetime, timedelta, timezone
from pathlib import Path

# Create temp directory for tests before any imports that might initialize runtime
_test_tmp_dir = tempfile.mkdtemp(prefix="validauth_test_")
os.environ.setdefault("SHARED_FS_ROOT", _test_tmp_dir)
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")
os.environ.setdefault("JWT_SECRET", "test-secret-key-for-testing-only-do-not-use-in-production")
# Empty REDIS_URL keeps pending codes in memory
os.environ.setdefault("REDIS_URL", "")

import pytest  # noqa: E402
from argon2 import PasswordHasher, Type  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from validauth.service import runtime as runtime_module  # noqa: E402
from validauth.service.lifecycle import IdentityLifecycle  # noqa: E402
from validauth.service.lockout import AccountLockoutGuard  # noqa: E402
from validauth.service.otp import InMemoryOtpStore  # noqa: E402
from validauth.service.passwords import Argon2PasswordVerifier  # noqa: E402
from validauth.service.refresh import RefreshTokenStore  # noqa: E402
from validauth.service.tokens import TokenIssuer  # noqa: E402
from validauth.storage.memory import MemoryStore  # noqa: E402

TEST_JWT_SECRET = "Test-Secret-Key_for-Automation-Only-987654321!"


class FakeClock:
    """Settable UTC clock injected wherever components read the time."""

    def __init__(self, start: datetime | None = None):
        self.now = start or datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


class RecordingNotifier:
    """Notifier double that keeps every message instead of sending it."""

    def __init__(self):
        self.otps: list[tuple[str, str]] = []
        self.welcomes: list[tuple[str, str]] = []

    def notify_otp(self, email: str, otp: str) -> bool:
        self.otps.append((email, otp))
        return True

    def notify_welcome(self, email: str, username: str) -> bool:
        self.welcomes.append((email, username))
        return True

    def last_otp(self, email: str) -> str:
        return [otp for addr, otp in self.otps if addr == email][-1]


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def memory_store():
    store = MemoryStore(persist=False)
    store.ensure_role("ROLE_USER")
    return store


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def passwords():
    # Cheap parameters keep the suite fast
    return Argon2PasswordVerifier(
        PasswordHasher(time_cost=1, memory_cost=8, parallelism=1, type=Type.ID)
    )


@pytest.fixture
def lockout(memory_store, clock):
    return AccountLockoutGuard(memory_store, max_attempts=5, duration_minutes=30, clock=clock)


@pytest.fixture
def token_issuer(clock):
    return TokenIssuer(
        secret=TEST_JWT_SECRET,
        issuer="validauth",
        audience="validauth-clients",
        ttl_minutes=15,
        clock=clock,
    )


@pytest.fixture
def refresh_store(memory_store, clock):
    return RefreshTokenStore(memory_store, ttl_minutes=60 * 24, clock=clock)


@pytest.fixture
def otp_store(clock):
    return InMemoryOtpStore(clock=clock)


@pytest.fixture
def lifecycle(memory_store, otp_store, lockout, token_issuer, refresh_store, passwords, notifier):
    return IdentityLifecycle(
        store=memory_store,
        otp_store=otp_store,
        lockout=lockout,
        tokens=token_issuer,
        refresh_tokens=refresh_store,
        passwords=passwords,
        notifier=notifier,
    )


@pytest.fixture
def runtime(monkeypatch, tmp_path):
    monkeypatch.setenv("SHARED_FS_ROOT", str(tmp_path))
    rt = runtime_module.reset_runtime_for_tests()
    yield rt
    rt.close()
    runtime_module.runtime = None


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
