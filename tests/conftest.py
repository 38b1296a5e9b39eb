import asyncio
import inspect
import os
import sys
import tempfile
from datetime import datetime, timedelta, timezone
from pathlib import Path

# Create temp directory for tests before any imports that might initialize runtime
_test_tmp_dir = tempfile.mkdtemp(prefix="loginguard_test_")
os.environ.setdefault("SHARED_FS_ROOT", _test_tmp_dir)
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")
os.environ.setdefault("JWT_SECRET", "test-secret-key-for-testing-only-do-not-use-in-production")
# No Redis in tests: pending two-factor logins use the in-process map
os.environ.setdefault("REDIS_URL", "")
# TestClient talks plain http; secure cookies would never be sent back
os.environ.setdefault("COOKIE_SECURE", "false")
os.environ.setdefault("HUMAN_VERIFICATION_ENABLED", "false")

import pytest  # noqa: E402
from argon2 import PasswordHasher, Type  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


from loginguard.config import Settings  # noqa: E402
from loginguard.service.audit import AuditTrail  # noqa: E402
from loginguard.service.credentials import CredentialStore  # noqa: E402
from loginguard.service.runtime import reset_runtime_for_tests  # noqa: E402
from loginguard.storage.memory import MemoryStore  # noqa: E402


class FakeClock:
    """Settable UTC clock shared by the components under test."""

    def __init__(self, start: datetime | None = None):
        self.now = start or datetime(2024, 3, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


def fast_hasher() -> PasswordHasher:
    # Minimal argon2 cost keeps the suite quick
    return PasswordHasher(time_cost=1, memory_cost=8, parallelism=1, type=Type.ID)


@pytest.fixture(autouse=True)
def reset_runtime_state():
    reset_runtime_for_tests()
    yield
    reset_runtime_for_tests()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def settings():
    return Settings(
        jwt_secret="unit-test-jwt-secret-" + "x" * 32,
        human_verification_enabled=False,
        redis_url=None,
    )


@pytest.fixture
def store():
    return MemoryStore(mfa_encryption_key="unit-test-mfa-key")


@pytest.fixture
def audit(store, clock):
    return AuditTrail(store, clock=clock)


@pytest.fixture
def hasher():
    return fast_hasher()


@pytest.fixture
def credentials(store, clock, hasher):
    return CredentialStore(store, hasher=hasher, clock=clock)


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
