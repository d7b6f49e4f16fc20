"""
Pytest configuration and shared fixtures.

Test settings are placed in the environment before any chatcore import so
the cached settings pick them up. Every test gets its own SQLite database.
"""

import os
from datetime import datetime, timedelta, timezone

import pytest

os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("LOG_LEVEL", "WARNING")

# Clear settings cache before any app imports to ensure test env vars are used
from chatcore.config import get_settings
get_settings.cache_clear()

from chatcore.errors import PersistenceUnavailable
from chatcore.service import ChatCore
from chatcore.storage import (
    SqlDirectory,
    SqlMessageStore,
    create_db_engine,
    create_session_factory,
    init_db,
)


@pytest.fixture
def anyio_backend():
    return "asyncio"


class FakeClock:
    """Wall clock that only moves when told to."""

    def __init__(self, start: datetime = datetime(2025, 1, 15, 10, 0, tzinfo=timezone.utc)):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> datetime:
        self.now = self.now + timedelta(seconds=seconds)
        return self.now

    def at(self, seconds: float) -> datetime:
        """Absolute time: `seconds` after the epoch of the test."""
        return datetime(2025, 1, 15, 10, 0, tzinfo=timezone.utc) + timedelta(seconds=seconds)


class FakeMonotonic:
    def __init__(self):
        self.value = 1000.0

    def __call__(self) -> float:
        return self.value

    def advance(self, seconds: float) -> None:
        self.value += seconds


class FlakyStore:
    """Message store whose append fails a set number of times first."""

    def __init__(self, inner: SqlMessageStore, failures: int = 0):
        self.inner = inner
        self.failures = failures
        self.append_calls = 0

    def append(self, conversation_id, message):
        self.append_calls += 1
        if self.failures > 0:
            self.failures -= 1
            raise PersistenceUnavailable("store offline")
        return self.inner.append(conversation_id, message)

    def __getattr__(self, name):
        return getattr(self.inner, name)


class SleepRecorder:
    def __init__(self):
        self.delays = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)


@pytest.fixture
def session_factory(tmp_path):
    """Fresh SQLite database file per test."""
    engine = create_db_engine(f"sqlite:///{tmp_path / 'chat.db'}")
    init_db(engine)
    yield create_session_factory(engine)
    engine.dispose()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def monotonic():
    return FakeMonotonic()


@pytest.fixture
def sleeper():
    return SleepRecorder()


@pytest.fixture
def make_core(session_factory, clock, monotonic, sleeper):
    """Build a ChatCore over the test database; store may be wrapped."""

    def factory(store=None, **kwargs) -> ChatCore:
        options = {
            "heartbeat_timeout": 30.0,
            "persist_max_attempts": 5,
            "persist_base_delay": 0.05,
            "persist_max_delay": 2.0,
            "clock": clock,
            "monotonic": monotonic,
            "sleep": sleeper,
        }
        options.update(kwargs)
        return ChatCore(
            SqlDirectory(session_factory),
            store if store is not None else SqlMessageStore(session_factory),
            **options,
        )

    return factory


async def add_users(core: ChatCore, *user_ids: str) -> None:
    for user_id in user_ids:
        await core.register_user(user_id, user_id.capitalize())
