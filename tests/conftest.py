"""
Shared fixtures for write pipeline tests.

Stores and sinks are in-memory fakes; the outbox ledger runs on a file-backed
SQLite database through aiosqlite so that independent sessions see each
other's commits.
"""

from __future__ import annotations

from collections.abc import AsyncGenerator
from pathlib import Path

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from write_pipeline.config import Settings
from write_pipeline.config_enums import Environment
from write_pipeline.memory_store import InMemoryCounterStore
from write_pipeline.outbox import Base, RecordingPublishSink, SQLAlchemyOutboxRepository


@pytest.fixture
def test_settings(tmp_path: Path) -> Settings:
    """Settings for a single-process test run."""
    return Settings(
        ENVIRONMENT=Environment.TESTING,
        DATABASE_URL=f"sqlite+aiosqlite:///{tmp_path / 'outbox.db'}",
        USE_IN_MEMORY_STORE=True,
        USE_RECORDING_SINK=True,
        OUTBOX_RELAY_ENABLED=False,
        IDEMPOTENCY_WAIT_TIMEOUT_SECONDS=2.0,
        IDEMPOTENCY_POLL_INTERVAL_SECONDS=0.01,
    )


@pytest.fixture
def counter_store() -> InMemoryCounterStore:
    return InMemoryCounterStore()


@pytest.fixture
def recording_sink() -> RecordingPublishSink:
    return RecordingPublishSink()


@pytest_asyncio.fixture
async def engine(tmp_path: Path) -> AsyncGenerator[AsyncEngine, None]:
    """Async engine with the outbox schema created."""
    db_engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'ledger.db'}")
    async with db_engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    try:
        yield db_engine
    finally:
        await db_engine.dispose()


@pytest.fixture
def session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(engine, expire_on_commit=False)


@pytest.fixture
def outbox_repository(engine: AsyncEngine) -> SQLAlchemyOutboxRepository:
    return SQLAlchemyOutboxRepository(engine)
