import asyncio
import inspect
import os
import sys
from pathlib import Path

# Environment defaults must be in place before anything imports gatehouse.config
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")
# Nothing listens on port 1, so the runtime falls back to the in-memory cache
os.environ.setdefault("REDIS_URL", "redis://127.0.0.1:1/0")
os.environ.setdefault("LOG_JSON", "false")

import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


from gatehouse.service.api_keys import ApiKeyManager  # noqa: E402
from gatehouse.service.authenticator import Authenticator  # noqa: E402
from gatehouse.service.runtime import reset_runtime_for_tests  # noqa: E402
from gatehouse.service.sessions import SessionManager  # noqa: E402
from gatehouse.storage.memory import MemoryStore  # noqa: E402
from gatehouse.storage.memory_cache import MemoryCache  # noqa: E402


class FakeClock:
    """Manually advanced epoch-seconds clock."""

    def __init__(self, start: int = 1_700_000_000):
        self.now = start

    def __call__(self) -> int:
        return self.now

    def advance(self, seconds: int) -> None:
        self.now += seconds


@pytest.fixture(autouse=True)
def reset_runtime_state():
    reset_runtime_for_tests()
    yield
    reset_runtime_for_tests()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def cache(clock):
    return MemoryCache(clock=clock)


@pytest.fixture
def store():
    return MemoryStore()


@pytest.fixture
def sessions(cache, clock):
    return SessionManager(cache, ttl_seconds=86400, sliding_extension_seconds=3600, clock=clock)


@pytest.fixture
def api_keys(store):
    return ApiKeyManager(store)


@pytest.fixture
def authenticator(sessions, api_keys, store):
    return Authenticator(sessions, api_keys, store)


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
