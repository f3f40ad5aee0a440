import asyncio
import inspect
import os
import sys
from pathlib import Path

# Configure settings before anything imports agora.config
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("JWT_SECRET_KEY", "test-secret-key-for-testing-only-do-not-use-in-production")
os.environ.setdefault("LOG_LEVEL", "WARNING")

import pytest  # noqa: E402
from argon2 import PasswordHasher, Type  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from agora.config import reset_settings_cache  # noqa: E402
from agora.service.passwords import PasswordService  # noqa: E402
from agora.storage.cache import MemoryCache  # noqa: E402
from agora.storage.common import AsyncDirectory  # noqa: E402
from agora.storage.memory import MemoryDirectory  # noqa: E402

TEST_SECRET = "test-secret-key-for-testing-only-do-not-use-in-production"


class FakeClock:
    """Wall clock the tests move by hand."""

    def __init__(self, start: float = 1_700_000_000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class StubEmailService:
    """Records password reset mails instead of talking to SMTP."""

    def __init__(self, succeed: bool = True) -> None:
        self.succeed = succeed
        self.sent = []

    def send_password_reset(self, to_email, reset_url, *, expires_minutes=30):
        self.sent.append({"to": to_email, "url": reset_url, "expires_minutes": expires_minutes})
        return self.succeed

    @property
    def last_token(self):
        return self.sent[-1]["url"].rsplit("/", 1)[-1]


@pytest.fixture(autouse=True)
def reset_settings_state():
    reset_settings_cache()
    yield
    reset_settings_cache()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def memory_cache():
    return MemoryCache()


@pytest.fixture
def memory_directory():
    return MemoryDirectory()


@pytest.fixture
def directory(memory_directory):
    return AsyncDirectory(memory_directory, timeout=5.0)


@pytest.fixture
def passwords():
    """Argon2id tuned down so hashing does not dominate the test run."""
    return PasswordService(
        PasswordHasher(time_cost=1, memory_cost=8, parallelism=1, type=Type.ID)
    )


@pytest.fixture
def stub_email():
    return StubEmailService()


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
