import asyncio
import inspect
import os
import sys
from pathlib import Path

# Settings are read from the environment on first use; pin test defaults first
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("FLOWLOOM_STORE", "memory")
os.environ.setdefault("LOG_LEVEL", "WARNING")
os.environ.pop("FLOWLOOM_STATE_PATH", None)

import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


from flowloom.service.runtime import reset_runtime_for_tests  # noqa: E402


@pytest.fixture(autouse=True)
def reset_runtime_state():
    reset_runtime_for_tests()
    yield
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
