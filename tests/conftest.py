import asyncio
import inspect
import os
import sys
import tempfile
from pathlib import Path

# Create temp directory for tests before any imports that might initialize runtime
_test_tmp_dir = tempfile.mkdtemp(prefix="photofilter_test_")
os.environ.setdefault("SHARED_FS_ROOT", _test_tmp_dir)
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("SHARE_STORE", "memory")
os.environ.setdefault("JWT_SECRET", "test-secret-key-for-testing-only-do-not-use-in-production")
# Cheap argon2 parameters keep the suite fast
os.environ.setdefault("ARGON2_TIME_COST", "1")
os.environ.setdefault("ARGON2_MEMORY_COST", "1024")
os.environ.setdefault("LOG_LEVEL", "WARNING")

import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


from photofilter.config import Settings  # noqa: E402
from photofilter.service.runtime import reset_runtime_for_tests  # noqa: E402

TEST_SECRET = "Test-Secret-Key_for-Automation-Only-987654321!"


@pytest.fixture(autouse=True)
def reset_runtime_state(tmp_path, monkeypatch):
    # Each test gets its own credential store file
    monkeypatch.setenv("SHARED_FS_ROOT", str(tmp_path))
    reset_runtime_for_tests()
    yield


@pytest.fixture
def settings(tmp_path):
    """Create test settings."""
    return Settings(
        jwt_secret=TEST_SECRET,
        shared_fs_root=str(tmp_path),
        access_token_ttl_minutes=15,
        refresh_token_ttl_minutes=60 * 24,
        argon2_time_cost=1,
        argon2_memory_cost=1024,
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
