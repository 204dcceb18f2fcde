import asyncio
import inspect
import os
import tempfile
from datetime import datetime, timedelta, timezone

# Environment must be in place before anything initializes settings or the runtime
_test_tmp_dir = tempfile.mkdtemp(prefix="storeguard_test_")
os.environ.setdefault("SHARED_FS_ROOT", _test_tmp_dir)
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")
os.environ.setdefault("COOKIE_SECURE", "false")
os.environ.setdefault("REDIS_URL", "")
os.environ.setdefault("CSRF_SECRET", "test-csrf-secret-for-automation-only-0123456789")
os.environ.setdefault("MFA_ENCRYPTION_KEY", "test-mfa-key-for-automation-only")
# Cheap argon2 so the suite stays fast
os.environ.setdefault("ARGON2_TIME_COST", "1")
os.environ.setdefault("ARGON2_MEMORY_COST", "1024")
os.environ.setdefault("ARGON2_PARALLELISM", "1")

import pytest  # noqa: E402

from storeguard.service.audit import MemoryAuditEmitter  # noqa: E402
from storeguard.service.credentials import CredentialValidator  # noqa: E402
from storeguard.service.mfa import MFAManager  # noqa: E402
from storeguard.service.passwords import PasswordHasher, PasswordHistoryGuard  # noqa: E402
from storeguard.service.runtime import reset_runtime_for_tests  # noqa: E402
from storeguard.service.sessions import SessionService  # noqa: E402
from storeguard.storage.memory import MemoryStore  # noqa: E402
from storeguard.storage.sessions import MemorySessionStore  # noqa: E402

STRONG_PASSWORD = "Str0ng!Passw0rd"


class FakeClock:
    """Controllable ``now`` callable shared by the services under test."""

    def __init__(self, start: datetime | None = None):
        self.now = start or datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


@pytest.fixture(autouse=True)
def reset_runtime_state():
    reset_runtime_for_tests()
    yield
    reset_runtime_for_tests()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def store():
    return MemoryStore(mfa_encryption_key="unit-test-mfa-key")


@pytest.fixture
def hasher():
    return PasswordHasher(time_cost=1, memory_cost=1024, parallelism=1)


@pytest.fixture
def audit():
    return MemoryAuditEmitter()


@pytest.fixture
def history(store, hasher):
    return PasswordHistoryGuard(store, hasher, reuse_window=5, retention=10)


@pytest.fixture
def credentials(store, hasher, audit, clock):
    return CredentialValidator(
        store, hasher, audit=audit, max_attempts=5, lockout_minutes=30, clock=clock
    )


@pytest.fixture
def session_store():
    return MemorySessionStore()


@pytest.fixture
def sessions(session_store, store, audit, clock):
    return SessionService(session_store, store, audit=audit, clock=clock)


@pytest.fixture
def mfa(store, credentials, audit, clock):
    return MFAManager(
        store, credentials, backup_code_key="unit-test-backup-key", audit=audit, clock=clock
    )


@pytest.fixture
def make_account(store, hasher, history, clock):
    """Create an account with ``STRONG_PASSWORD`` (or ``password``) already hashed."""

    def _make(email="a@x.com", password=STRONG_PASSWORD, **kwargs):
        password_hash = hasher.hash(password)
        account = store.create_account(email, password_hash, now=clock(), **kwargs)
        history.record(account.id, password_hash, now=clock())
        return account

    return _make


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
