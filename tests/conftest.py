import asyncio
import inspect
import os
import sys
import tempfile
from datetime import datetime, timedelta, timezone
from pathlib import Path

# Create temp directory for tests before any imports that might initialize runtime
_test_tmp_dir = tempfile.mkdtemp(prefix="galleryauth_test_")
os.environ.setdefault("SHARED_FS_ROOT", _test_tmp_dir)
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")
os.environ.setdefault("JWT_SECRET", "test-secret-key-for-testing-only-do-not-use-in-production")
# Counters fall back to the in-memory store without a Redis URL
os.environ.setdefault("REDIS_URL", "")
# Cheap argon2 parameters keep the suite fast
os.environ.setdefault("PASSWORD_HASH_TIME_COST", "1")
os.environ.setdefault("PASSWORD_HASH_MEMORY_COST", "1024")
os.environ.setdefault("PASSWORD_HASH_PARALLELISM", "1")

import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


from galleryauth.config import Settings  # noqa: E402
from galleryauth.service.auth import AuthenticationOrchestrator  # noqa: E402
from galleryauth.service.hashing import PasswordHasher  # noqa: E402
from galleryauth.service.runtime import reset_runtime_for_tests  # noqa: E402
from galleryauth.service.tokens import TokenService  # noqa: E402
from galleryauth.storage.counters import MemoryCounterStore  # noqa: E402
from galleryauth.storage.memory import MemoryStore  # noqa: E402


class FakeClock:
    """Controllable clock exposing both datetime and epoch-seconds views."""

    def __init__(self, start: datetime | None = None) -> None:
        self.current = start or datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)

    def now(self) -> datetime:
        return self.current

    def time(self) -> float:
        return self.current.timestamp()

    def advance(self, **kwargs) -> None:
        self.current += timedelta(**kwargs)


class RecordingSink:
    """Notification sink that records deliveries instead of sending them."""

    def __init__(self, *, fail: bool = False) -> None:
        self.fail = fail
        self.reset_links: list[tuple[str, str]] = []
        self.confirmations: list[str] = []

    async def send_password_reset_link(self, principal, raw_token):
        if self.fail:
            raise ConnectionError("smtp down")
        self.reset_links.append((principal.email, raw_token))
        return True

    async def send_password_reset_confirmation(self, principal):
        if self.fail:
            raise ConnectionError("smtp down")
        self.confirmations.append(principal.email)
        return True


@pytest.fixture(autouse=True)
def reset_runtime_state():
    reset_runtime_for_tests()
    yield
    reset_runtime_for_tests()


@pytest.fixture
def settings():
    return Settings(
        jwt_secret="Test-Secret-Key_for-Automation-Only-987654321!",
        password_hash_time_cost=1,
        password_hash_memory_cost=1024,
        password_hash_parallelism=1,
        store_retry_base_delay_seconds=0.0,
    )


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def store():
    return MemoryStore()


@pytest.fixture
def counters(clock):
    return MemoryCounterStore(clock=clock.time)


@pytest.fixture
def hasher():
    return PasswordHasher(time_cost=1, memory_cost=1024, parallelism=1)


@pytest.fixture
def token_service(settings, counters, clock):
    return TokenService(settings, counters, clock=clock.now)


@pytest.fixture
def sink():
    return RecordingSink()


@pytest.fixture
def orchestrator(settings, store, counters, hasher, sink, clock):
    return AuthenticationOrchestrator(
        settings, store, counters, notifier=sink, hasher=hasher, clock=clock.now
    )


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
