"""
Test configuration for Setup Assistant tests.

DATABASE_URL is pointed at in-memory SQLite before any setup_assistant import,
so the module-level engine in database.py never tries to reach PostgreSQL.
Every test gets its own in-memory database (StaticPool keeps the single
connection alive for the lifetime of the engine).
"""
import os

os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite://")
os.environ.setdefault("MISTRAL_API_KEY", "")

from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock, MagicMock

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

import setup_assistant.models  # noqa: F401  (registers tables on Base.metadata)
from setup_assistant.database import Base

T0 = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


class FakeClock:
    """Injectable clock; advance() moves time without sleeping."""

    def __init__(self, start: datetime = T0):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now = self.now + timedelta(**kwargs)


@pytest_asyncio.fixture
async def engine():
    engine = create_async_engine(
        "sqlite+aiosqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest_asyncio.fixture
async def session_factory(engine):
    return async_sessionmaker(bind=engine, class_=AsyncSession, expire_on_commit=False)


@pytest_asyncio.fixture
async def db(session_factory):
    async with session_factory() as session:
        yield session
        await session.commit()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


# ---------------------------------------------------------------------------
# Mock Mistral client builders
# ---------------------------------------------------------------------------

def make_mock_mistral(content: str = "Open Credentials → Add Credential and paste your key.") -> MagicMock:
    """Mistral client whose chat.complete_async returns one canned choice."""
    mock = MagicMock()
    response = MagicMock()
    response.choices = [MagicMock()]
    response.choices[0].message.content = content
    mock.chat.complete_async = AsyncMock(return_value=response)
    return mock


def make_failing_mistral(exc: Exception) -> MagicMock:
    mock = MagicMock()
    mock.chat.complete_async = AsyncMock(side_effect=exc)
    return mock


class BrokenSessionFactory:
    """Stands in for an async_sessionmaker whose database is unreachable."""

    def __call__(self):
        raise OSError("database unreachable")
