import asyncio
import inspect
import os
import sys
from pathlib import Path

os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("LOG_LEVEL", "WARNING")

import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


from sessionvault.config import Settings, reset_settings_cache  # noqa: E402
from sessionvault.service.auth import AuthSessionService  # noqa: E402
from sessionvault.service.refresh_tokens import RefreshTokenRegistry  # noqa: E402
from sessionvault.service.sessions import SessionRegistry  # noqa: E402
from sessionvault.service.tokens import TokenCodec  # noqa: E402
from sessionvault.storage.memory import MemoryStore  # noqa: E402

ACCESS_SECRET = "test-access-secret-for-automation-only-0123456789"
REFRESH_SECRET = "test-refresh-secret-for-automation-only-9876543210"


class FakeClock:
    """Manually advanced wall clock shared by the store, codec and registries."""

    def __init__(self, start: float = 1_700_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture(autouse=True)
def reset_settings_state():
    reset_settings_cache()
    yield
    reset_settings_cache()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def settings():
    return Settings(
        jwt_access_secret=ACCESS_SECRET,
        jwt_refresh_secret=REFRESH_SECRET,
        access_token_ttl="15m",
        refresh_token_ttl="7d",
        session_timeout="7d",
        store_retry_attempts=3,
        store_retry_backoff_ms=0,
        scan_batch_size=10,
        test_mode=True,
        use_memory_store=True,
    )


@pytest.fixture
def store(clock):
    return MemoryStore(clock=clock)


@pytest.fixture
def codec(settings, clock):
    return TokenCodec(settings, clock=clock)


@pytest.fixture
def sessions(store, settings, clock):
    return SessionRegistry(store, settings, clock=clock)


@pytest.fixture
def registry(store, codec, settings, sessions, clock):
    return RefreshTokenRegistry(store, codec, settings, sessions=sessions, clock=clock)


@pytest.fixture
def service(codec, registry, sessions, settings):
    return AuthSessionService(codec, registry, sessions, settings)


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
