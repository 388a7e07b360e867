"""
Pytest configuration and shared fixtures.
"""

from collections.abc import AsyncGenerator, Generator
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from mailqueue.config import Settings
from mailqueue.db import QueueStore, create_engine_for_url, create_schema, create_session_factory
from mailqueue.types.job import EmailMessage
from mailqueue.worker.transport import set_mail_transport


class FakeClock:
    """Controllable replacement for utcnow()."""

    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now


class RecordingTransport:
    """Mail transport that records messages and raises queued errors."""

    def __init__(self):
        self.sent: list[EmailMessage] = []
        self.errors: list[Exception] = []
        self.closed = False

    async def send(self, message: EmailMessage) -> None:
        if self.errors:
            raise self.errors.pop(0)
        self.sent.append(message)

    async def aclose(self) -> None:
        self.closed = True


@pytest.fixture
def database_url(tmp_path: Path) -> str:
    """A fresh SQLite database file per test."""
    return f"sqlite+aiosqlite:///{tmp_path / 'queue.db'}"


@pytest_asyncio.fixture
async def async_engine(database_url: str) -> AsyncGenerator[AsyncEngine]:
    """Create an async database engine with the schema in place."""
    engine = create_engine_for_url(database_url)
    await create_schema(engine)

    yield engine

    await engine.dispose()


@pytest.fixture
def session_factory(async_engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    """Create a session factory bound to the test database."""
    return create_session_factory(async_engine)


@pytest.fixture
def test_settings(database_url: str) -> Settings:
    """Create test settings with deterministic backoff."""
    return Settings(
        database_url=database_url,
        log_level="DEBUG",
        log_format="console",
        queue_max_attempts=3,
        queue_backoff_base_seconds=1.0,
        queue_backoff_max_seconds=60.0,
        queue_backoff_jitter=0.0,
        worker_lease_duration_seconds=30,
        worker_poll_interval_seconds=0.01,
        worker_heartbeat_interval_seconds=0,
    )


@pytest.fixture
def clock() -> FakeClock:
    """A frozen clock the test advances explicitly."""
    return FakeClock(datetime(2024, 1, 1, 12, 0, 0))


@pytest.fixture
def store(
    session_factory: async_sessionmaker[AsyncSession],
    test_settings: Settings,
    clock: FakeClock,
) -> QueueStore:
    """Create a queue store driven by the fake clock."""
    return QueueStore(session_factory, test_settings, clock=clock)


@pytest.fixture
def mail_transport() -> Generator[RecordingTransport]:
    """Install a recording mail transport for the duration of the test."""
    transport = RecordingTransport()
    set_mail_transport(transport)
    yield transport
    set_mail_transport(None)


@pytest.fixture
def sample_email_payload() -> dict[str, Any]:
    """Create a sample email payload."""
    return {
        "to": "a@x.com",
        "subject": "S",
        "title": "T",
        "body": "B",
    }
