"""
Integration tests for OutboxDispatcher against a SQLite ledger and a recording sink.
"""

from __future__ import annotations

import asyncio
from datetime import UTC, datetime, timedelta
from uuid import uuid4

import pytest
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from write_pipeline.outbox import (
    HealthStatus,
    OutboxDispatcher,
    OutboxRelayWorker,
    OutboxStatus,
    RecordingPublishSink,
    SQLAlchemyOutboxRepository,
)


async def seed_pending(
    session_factory: async_sessionmaker[AsyncSession],
    repository: SQLAlchemyOutboxRepository,
    count: int,
    event_name: str = "tasks.events",
) -> list:
    ids = []
    async with session_factory() as session, session.begin():
        for index in range(count):
            ids.append(
                await repository.append(
                    session,
                    tenant_id="t-1",
                    event_type="task.created",
                    event_name=event_name,
                    payload={"index": index},
                    correlation_id=str(uuid4()),
                )
            )
    return ids


@pytest.fixture
def dispatcher(
    outbox_repository: SQLAlchemyOutboxRepository, recording_sink: RecordingPublishSink
) -> OutboxDispatcher:
    return OutboxDispatcher(outbox_repository, recording_sink, max_retries=3)


class TestProcessPending:
    async def test_publishes_and_completes(
        self,
        dispatcher: OutboxDispatcher,
        recording_sink: RecordingPublishSink,
        outbox_repository: SQLAlchemyOutboxRepository,
        session_factory: async_sessionmaker[AsyncSession],
    ) -> None:
        ids = await seed_pending(session_factory, outbox_repository, 3)

        completed = await dispatcher.process_pending(100)

        assert completed == 3
        assert [event.id for event in recording_sink.published] == ids
        counts = await outbox_repository.get_status_counts()
        assert counts["completed"] == 3

    async def test_each_row_published_once(
        self,
        dispatcher: OutboxDispatcher,
        recording_sink: RecordingPublishSink,
        outbox_repository: SQLAlchemyOutboxRepository,
        session_factory: async_sessionmaker[AsyncSession],
    ) -> None:
        await seed_pending(session_factory, outbox_repository, 4)

        first = await dispatcher.process_pending(100)
        second = await dispatcher.process_pending(100)

        assert (first, second) == (4, 0)
        assert len(recording_sink.published) == 4

    async def test_concurrent_dispatchers_do_not_double_publish(
        self,
        outbox_repository: SQLAlchemyOutboxRepository,
        recording_sink: RecordingPublishSink,
        session_factory: async_sessionmaker[AsyncSession],
    ) -> None:
        await seed_pending(session_factory, outbox_repository, 6)
        dispatchers = [OutboxDispatcher(outbox_repository, recording_sink) for _ in range(3)]

        results = await asyncio.gather(*(d.process_pending(100) for d in dispatchers))

        assert sum(results) == 6
        assert len({event.id for event in recording_sink.published}) == 6
        assert len(recording_sink.published) == 6

    async def test_batch_size_limits_work(
        self,
        dispatcher: OutboxDispatcher,
        outbox_repository: SQLAlchemyOutboxRepository,
        session_factory: async_sessionmaker[AsyncSession],
    ) -> None:
        await seed_pending(session_factory, outbox_repository, 5)

        assert await dispatcher.process_pending(2) == 2
        assert (await outbox_repository.get_status_counts())["pending"] == 3


class TestRetryBound:
    async def test_sink_outage_retry_cycle(
        self,
        dispatcher: OutboxDispatcher,
        recording_sink: RecordingPublishSink,
        outbox_repository: SQLAlchemyOutboxRepository,
        session_factory: async_sessionmaker[AsyncSession],
    ) -> None:
        ids = await seed_pending(session_factory, outbox_repository, 5)
        recording_sink.available = False

        for attempt in range(1, 4):
            assert await dispatcher.process_pending(100) == 0
            events = [await outbox_repository.get_event_by_id(event_id) for event_id in ids]
            assert all(event.status is OutboxStatus.FAILED for event in events)
            assert all(event.retry_count == attempt for event in events)

            requeued = await dispatcher.retry_failed(50)
            assert requeued == (5 if attempt < 3 else 0)

        assert await dispatcher.retry_failed(50) == 0
        metrics = await dispatcher.get_metrics()
        assert metrics.failed == 5
        assert metrics.exhausted == 5
        assert metrics.health_status is HealthStatus.CRITICAL

    async def test_payload_rejection_is_recorded(
        self,
        dispatcher: OutboxDispatcher,
        recording_sink: RecordingPublishSink,
        outbox_repository: SQLAlchemyOutboxRepository,
        session_factory: async_sessionmaker[AsyncSession],
    ) -> None:
        [bad_id] = await seed_pending(session_factory, outbox_repository, 1, "bad.topic")
        [good_id] = await seed_pending(session_factory, outbox_repository, 1)
        recording_sink.rejected_event_names.add("bad.topic")

        completed = await dispatcher.process_pending(100)

        assert completed == 1
        bad = await outbox_repository.get_event_by_id(bad_id)
        assert bad.status is OutboxStatus.FAILED
        assert bad.error_message.startswith("Payload rejected")
        good = await outbox_repository.get_event_by_id(good_id)
        assert good.status is OutboxStatus.COMPLETED

    async def test_recovery_after_outage(
        self,
        dispatcher: OutboxDispatcher,
        recording_sink: RecordingPublishSink,
        outbox_repository: SQLAlchemyOutboxRepository,
        session_factory: async_sessionmaker[AsyncSession],
    ) -> None:
        await seed_pending(session_factory, outbox_repository, 2)
        recording_sink.available = False
        await dispatcher.process_pending(100)

        recording_sink.available = True
        await dispatcher.retry_failed(50)
        completed = await dispatcher.process_pending(100)

        assert completed == 2
        assert (await outbox_repository.get_status_counts())["completed"] == 2


class TestStaleClaims:
    async def test_claims_older_than_timeout_are_released(
        self,
        outbox_repository: SQLAlchemyOutboxRepository,
        recording_sink: RecordingPublishSink,
        session_factory: async_sessionmaker[AsyncSession],
    ) -> None:
        await seed_pending(session_factory, outbox_repository, 2)
        await outbox_repository.claim_pending(100, "crashed-dispatcher")
        later = datetime.now(UTC) + timedelta(seconds=301)
        dispatcher = OutboxDispatcher(
            outbox_repository, recording_sink, claim_timeout_seconds=300, now=lambda: later
        )

        assert await dispatcher.release_stale_claims() == 2
        assert await dispatcher.process_pending(100) == 2


class TestMetrics:
    async def test_empty_ledger_is_healthy(self, dispatcher: OutboxDispatcher) -> None:
        metrics = await dispatcher.get_metrics()

        assert metrics.total == 0
        assert metrics.failure_ratio == 0.0
        assert metrics.oldest_pending_age_seconds is None
        assert metrics.health_status is HealthStatus.HEALTHY

    async def test_old_backlog_degrades_health(
        self,
        outbox_repository: SQLAlchemyOutboxRepository,
        recording_sink: RecordingPublishSink,
        session_factory: async_sessionmaker[AsyncSession],
    ) -> None:
        await seed_pending(session_factory, outbox_repository, 1)
        later = datetime.now(UTC) + timedelta(seconds=120)
        dispatcher = OutboxDispatcher(outbox_repository, recording_sink, now=lambda: later)

        metrics = await dispatcher.get_metrics()

        assert metrics.pending == 1
        assert metrics.oldest_pending_age_seconds >= 120
        assert metrics.health_status is HealthStatus.DEGRADED


async def test_relay_cycle_publishes_backlog(
    dispatcher: OutboxDispatcher,
    recording_sink: RecordingPublishSink,
    outbox_repository: SQLAlchemyOutboxRepository,
    session_factory: async_sessionmaker[AsyncSession],
    test_settings,
) -> None:
    await seed_pending(session_factory, outbox_repository, 3)
    worker = OutboxRelayWorker(dispatcher, test_settings)

    assert await worker.run_once() == 3
    assert len(recording_sink.published) == 3
