import asyncio
import inspect
import os
import sys
import tempfile
from pathlib import Path

# Create temp directory for tests before any imports that might initialize runtime
_test_tmp_dir = tempfile.mkdtemp(prefix="autovault_test_")
os.environ["SHARED_FS_ROOT"] = _test_tmp_dir
os.environ["TEST_MODE"] = "true"
os.environ["USE_MEMORY_STORE"] = "true"
os.environ["ENVIRONMENT"] = "development"
os.environ["JWT_SECRET"] = "test-secret-key-for-testing-only-do-not-use-in-production"
# Empty REDIS_URL keeps the denylist, counters and rate limits in-process
os.environ["REDIS_URL"] = ""
os.environ.setdefault("LOG_JSON", "false")

import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


from autovault.service.runtime import get_runtime, reset_runtime_for_tests  # noqa: E402

STRONG_PASSWORD = "Correct1Horse"


@pytest.fixture(autouse=True)
def reset_runtime_state():
    reset_runtime_for_tests()
    yield
    reset_runtime_for_tests()


@pytest.fixture
def runtime():
    return get_runtime()


@pytest.fixture
def client():
    from fastapi.testclient import TestClient

    from autovault import app as app_module

    return TestClient(app_module.app)


@pytest.fixture
def make_account(runtime):
    """Register an account directly through the service layer."""

    def _make(username="alice", email="alice@example.com", password=STRONG_PASSWORD, **kwargs):
        return runtime.auth.register(username, email, password, **kwargs)

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
