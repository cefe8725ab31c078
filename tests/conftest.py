import asyncio
import inspect
import os
import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path

# Configure the environment before any import that reads settings
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")
os.environ.setdefault("JWT_SECRET", "test-secret-key-for-testing-only-do-not-use-in-production")
# Empty URL keeps the suite on the in-process cache
os.environ.setdefault("REDIS_URL", "")
# Cheap argon2 parameters; production defaults take ~100ms per hash
os.environ.setdefault("ARGON2_TIME_COST", "1")
os.environ.setdefault("ARGON2_MEMORY_COST", "1024")
os.environ.setdefault("ARGON2_PARALLELISM", "1")

import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


from bookpath.config import Settings, reset_settings_cache  # noqa: E402
from bookpath.service.runtime import Runtime  # noqa: E402
from bookpath.storage.memory import MemoryStore  # noqa: E402
from bookpath.storage.redis_cache import MemoryCache  # noqa: E402

STRONG_PASSWORD = "Correct-Horse-42!"


class FrozenClock:
    """Controllable UTC clock shared by services and the in-process cache."""

    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime(2025, 3, 14, 12, 0, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def timestamp(self) -> float:
        return self.now.timestamp()

    def advance(self, **kwargs) -> None:
        self.now = self.now + timedelta(**kwargs)


@pytest.fixture(autouse=True)
def reset_settings_state():
    reset_settings_cache()
    yield
    reset_settings_cache()


@pytest.fixture
def clock():
    return FrozenClock()


@pytest.fixture
def settings():
    return Settings(
        jwt_secret="Test-Secret-Key_for-Automation-Only-987654321!",
        use_memory_store=True,
        test_mode=True,
        redis_url="",
        store_retry_backoff_ms=0,
        argon2_time_cost=1,
        argon2_memory_cost=1024,
        argon2_parallelism=1,
    )


@pytest.fixture
def store(settings):
    return MemoryStore(encryption_key=settings.fernet_key())


@pytest.fixture
def cache(clock):
    return MemoryCache(clock=clock.timestamp)


@pytest.fixture
def runtime(settings, store, cache, clock):
    return Runtime(settings, store, cache, clock=clock)


@pytest.fixture
def auth(runtime):
    return runtime.auth


@pytest.fixture
def strong_password():
    return STRONG_PASSWORD


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
