import asyncio
import inspect
import os
import tempfile
from datetime import datetime, timezone

# Create temp directory for tests before any imports that might initialize runtime
_test_tmp_dir = tempfile.mkdtemp(prefix="sessioncore_test_")
os.environ.setdefault("SHARED_FS_ROOT", _test_tmp_dir)
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")
os.environ.setdefault("JWT_SECRET", "test-secret-key-for-testing-only-do-not-use-in-production")
os.environ.setdefault("ARGON2_TIME_COST", "1")
os.environ.setdefault("ARGON2_MEMORY_COST", "1024")
os.environ.setdefault("ARGON2_PARALLELISM", "1")
os.environ.pop("REDIS_URL", None)
os.environ.pop("DATABASE_URL", None)

import pytest  # noqa: E402

from sessioncore.config import Settings  # noqa: E402
from sessioncore.service.runtime import reset_runtime_for_tests  # noqa: E402
from sessioncore.service.sessions import SessionService  # noqa: E402
from sessioncore.storage.memory import MemoryStore  # noqa: E402

T0 = datetime(2025, 1, 1, 12, 0, 0, tzinfo=timezone.utc)
PASSWORD = "Correct-Horse-Battery-9"


@pytest.fixture(autouse=True)
def reset_runtime_state():
    reset_runtime_for_tests()
    yield
    reset_runtime_for_tests()


@pytest.fixture
def settings(tmp_path):
    """Fast argon2 parameters and the default threshold 3 / 30 minute lock."""
    return Settings(
        jwt_secret="Test-Secret-Key_for-Automation-Only-987654321!",
        shared_fs_root=str(tmp_path),
        access_token_ttl_minutes=15,
        refresh_token_ttl_minutes=60 * 24,
        lock_threshold=3,
        lock_duration_minutes=30,
        argon2_time_cost=1,
        argon2_memory_cost=1024,
        argon2_parallelism=1,
    )


@pytest.fixture
def memory_store():
    return MemoryStore()


@pytest.fixture
def service(memory_store, settings):
    return SessionService(memory_store, memory_store, settings)


@pytest.fixture
def identity(service):
    """A registered active user, created outside any test event loop."""
    return asyncio.run(service.register("Alice@Example.com", PASSWORD))


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
