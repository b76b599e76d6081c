import asyncio
import inspect
import os
import sys
from pathlib import Path

# Set before any import that might build settings or the runtime
os.environ.setdefault("APP_ENV", "test")
os.environ.setdefault("FASTAPI_BASE_URL", "http://backend.test")
os.environ.setdefault("APP_BASE_URL", "http://testserver")
os.environ.setdefault("LOG_JSON", "false")

import pytest  # noqa: E402

TESTS_DIR = Path(__file__).resolve().parent
ROOT = TESTS_DIR.parent
for entry in (ROOT, TESTS_DIR):
    if str(entry) not in sys.path:
        sys.path.insert(0, str(entry))

from authrelay.service.runtime import reset_runtime_for_tests  # noqa: E402
from backend_fakes import FakeBackend  # noqa: E402


@pytest.fixture(autouse=True)
def reset_runtime_state():
    reset_runtime_for_tests()
    yield
    reset_runtime_for_tests()


@pytest.fixture
def backend():
    return FakeBackend()


@pytest.fixture
def runtime(backend):
    """Runtime whose backend client talks to the fake backend."""
    return reset_runtime_for_tests(transport=backend.transport())


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
