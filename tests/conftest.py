import asyncio
import inspect
import os
import shutil
import sys
import tempfile
from pathlib import Path

# Create temp directory for tests before any imports that might initialize runtime
_test_tmp_dir = tempfile.mkdtemp(prefix="rxportal_test_")
os.environ.setdefault("SHARED_FS_ROOT", _test_tmp_dir)
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")
os.environ.setdefault("ENVIRONMENT", "development")
os.environ.setdefault("API_PREFIX", "/api")
os.environ.setdefault(
    "JWT_ACCESS_SECRET", "test-access-secret-for-automation-only-0123456789"
)
os.environ.setdefault(
    "JWT_REFRESH_SECRET", "test-refresh-secret-for-automation-only-9876543210"
)
# Keep the global throttle out of the way; rate limit tests lower it explicitly
os.environ.setdefault("RATE_LIMIT_REQUESTS", "10000")
# In-process token buckets so throttle state never leaks between tests via Redis
os.environ["REDIS_URL"] = ""

import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


from rxportal.service.runtime import reset_runtime_for_tests  # noqa: E402


def _clear_memory_snapshot() -> None:
    shutil.rmtree(Path(os.environ["SHARED_FS_ROOT"]) / "state", ignore_errors=True)


@pytest.fixture(autouse=True)
def reset_runtime_state():
    _clear_memory_snapshot()
    reset_runtime_for_tests()
    yield
    _clear_memory_snapshot()
    reset_runtime_for_tests()


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
