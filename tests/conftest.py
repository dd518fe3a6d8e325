import asyncio
import inspect
import os
from datetime import datetime, timedelta, timezone

# Set before any tokenkeep import so logging and settings pick them up
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")
os.environ.setdefault("JWT_SECRET", "test-secret-key-for-testing-only-do-not-use-in-production")
# Empty REDIS_URL keeps tests on the in-process cache
os.environ.setdefault("REDIS_URL", "")

import pytest  # noqa: E402

from tokenkeep.config import TokenConfig  # noqa: E402
from tokenkeep.service.codec import SignedTokenCodec  # noqa: E402
from tokenkeep.service.notifier import LoggingNotifier  # noqa: E402
from tokenkeep.storage.memory import MemoryStore  # noqa: E402
from tokenkeep.storage.memory_cache import MemoryCache  # noqa: E402

TEST_SECRET = "unit-test-signing-secret-0123456789abcdef"


class FakeClock:
    """Manually advanced clock; ``now()`` for datetimes, ``time()`` for epoch seconds."""

    def __init__(self, start: datetime | None = None) -> None:
        self.current = start or datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc)

    def now(self) -> datetime:
        return self.current

    def time(self) -> float:
        return self.current.timestamp()

    def advance(self, **kwargs) -> None:
        self.current = self.current + timedelta(**kwargs)


class RecordingNotifier(LoggingNotifier):
    """Keeps every rendered link so tests can read the delivered token."""

    def __init__(self, base_url: str = "https://app.example.com/") -> None:
        super().__init__(base_url)
        self.sent: list[tuple[str, str, str]] = []

    def deliver(self, kind: str, to_email: str, link: str) -> None:
        super().deliver(kind, to_email, link)
        self.sent.append((kind, to_email, link))


class FakeMonotonic:
    def __init__(self) -> None:
        self.value = 1000.0

    def __call__(self) -> float:
        return self.value

    def advance(self, seconds: float) -> None:
        self.value += seconds


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def monotonic():
    return FakeMonotonic()


@pytest.fixture
def token_config():
    return TokenConfig(secret=TEST_SECRET)


@pytest.fixture
def store():
    return MemoryStore()


@pytest.fixture
def cache(monotonic):
    return MemoryCache(clock=monotonic)


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def codec(token_config, clock):
    return SignedTokenCodec(token_config, clock=clock.time)


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
