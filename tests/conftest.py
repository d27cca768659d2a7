import asyncio
import inspect
import os
import sys
import time
from pathlib import Path
from typing import Optional

# Environment must be in place before anything builds settings or the runtime
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")
os.environ["REDIS_URL"] = ""
os.environ.setdefault("JWT_ACCESS_SECRET", "test-access-secret-for-testing-only-do-not-use")
os.environ.setdefault("JWT_REFRESH_SECRET", "test-refresh-secret-for-testing-only-do-not-use")
os.environ.setdefault("CSRF_SECRET", "test-csrf-secret-for-testing-only-do-not-use")
os.environ.setdefault("PASSWORD_PEPPER", "test-pepper")
os.environ.setdefault("CSRF_TRUSTED_ORIGINS", "chrome-extension://trustedextensionid")
# http://testserver never receives Secure cookies
os.environ.setdefault("COOKIE_SECURE", "false")

import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


from trustgate.service.runtime import reset_runtime_for_tests  # noqa: E402


class FakeClock:
    """Manually advanced time source shared by services under test."""

    def __init__(self, start: Optional[float] = None) -> None:
        # Starts at wall-clock time: stored sessions are stamped with real time
        self.now = time.time() if start is None else start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock():
    return FakeClock()


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
