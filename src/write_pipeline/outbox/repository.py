"""
SQLAlchemy implementation of OutboxRepositoryProtocol.

``append`` runs on the caller's session inside the caller's transaction.
Every dispatcher-side operation opens its own short transaction and only
advances a row it holds a claim on, so several dispatchers can share the
ledger without publishing the same event twice.
"""

from __future__ import annotations

from datetime import UTC, datetime
from typing import Any
from uuid import UUID

from sqlalchemy import func, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from write_pipeline.error_handling import raise_outbox_storage_error
from write_pipeline.logging_utils import create_service_logger
from write_pipeline.outbox.models import EventOutbox, OutboxEvent, OutboxStatus
from write_pipeline.protocols import OutboxRepositoryProtocol

logger = create_service_logger("write_pipeline.outbox.repository")

SERVICE_NAME = "write_pipeline"
NIL_CORRELATION_ID = UUID("00000000-0000-0000-0000-000000000000")
MAX_ERROR_MESSAGE_LENGTH = 1000


def _as_uuid(value: str) -> UUID:
    try:
        return UUID(value)
    except (TypeError, ValueError):
        return NIL_CORRELATION_ID


class SQLAlchemyOutboxRepository(OutboxRepositoryProtocol):
    """
    Outbox ledger over an async SQLAlchemy engine.

    Uses ``SELECT ... FOR UPDATE SKIP LOCKED`` when the dialect supports it;
    the conditional ``pending -> processing`` update is what guarantees a
    single claimant on every dialect.
    """

    def __init__(self, engine: AsyncEngine) -> None:
        self._session_factory = async_sessionmaker(engine, expire_on_commit=False)
        self._skip_locked = engine.dialect.name == "postgresql"
        logger.info(
            "Initialized outbox repository",
            extra={"dialect": engine.dialect.name, "skip_locked": self._skip_locked},
        )

    @staticmethod
    def _now() -> datetime:
        return datetime.now(UTC)

    # Writer side

    async def append(
        self,
        session: AsyncSession,
        tenant_id: str,
        event_type: str,
        event_name: str,
        payload: dict[str, Any],
        correlation_id: str,
    ) -> UUID:
        """
        Add a pending event within the caller's active transaction.

        The row is flushed, never committed: it becomes durable when the
        caller's business transaction commits and disappears if it rolls back.
        """
        if not session.in_transaction():
            raise_outbox_storage_error(
                service=SERVICE_NAME,
                operation="append",
                message="Outbox append requires an active transaction on the caller's session",
                correlation_id=_as_uuid(correlation_id),
                event_type=event_type,
            )

        outbox_event = EventOutbox(
            tenant_id=tenant_id,
            event_type=event_type,
            event_name=event_name,
            payload=payload,
            correlation_id=correlation_id,
            status=OutboxStatus.PENDING.value,
            retry_count=0,
        )
        try:
            session.add(outbox_event)
            await session.flush()
        except SQLAlchemyError as e:
            raise_outbox_storage_error(
                service=SERVICE_NAME,
                operation="append",
                message=f"Failed to add event to outbox: {e.__class__.__name__}",
                correlation_id=_as_uuid(correlation_id),
                tenant_id=tenant_id,
                event_type=event_type,
                error_details=str(e),
            )

        logger.info(
            "Added event to outbox",
            extra={
                "outbox_id": str(outbox_event.id),
                "tenant_id": tenant_id,
                "event_type": event_type,
                "event_name": event_name,
                "correlation_id": correlation_id,
            },
        )
        return outbox_event.id

    # Dispatcher side

    async def claim_pending(self, batch_size: int, claim_token: str) -> list[OutboxEvent]:
        """
        Claim up to ``batch_size`` pending events, oldest first.

        Returns:
            Only the rows this call moved to PROCESSING
        """
        try:
            async with self._session_factory() as session, session.begin():
                candidates = (
                    select(EventOutbox.id)
                    .where(EventOutbox.status == OutboxStatus.PENDING.value)
                    .order_by(EventOutbox.created_at)
                    .limit(batch_size)
                )
                if self._skip_locked:
                    candidates = candidates.with_for_update(skip_locked=True)
                ids = list((await session.execute(candidates)).scalars().all())
                if not ids:
                    return []

                await session.execute(
                    update(EventOutbox)
                    .where(
                        EventOutbox.id.in_(ids),
                        EventOutbox.status == OutboxStatus.PENDING.value,
                    )
                    .values(
                        status=OutboxStatus.PROCESSING.value,
                        claim_token=claim_token,
                        claimed_at=self._now(),
                    )
                    .execution_options(synchronize_session=False)
                )

                claimed = (
                    await session.execute(
                        select(EventOutbox)
                        .where(
                            EventOutbox.claim_token == claim_token,
                            EventOutbox.status == OutboxStatus.PROCESSING.value,
                        )
                        .order_by(EventOutbox.created_at)
                    )
                ).scalars().all()
                events = [OutboxEvent.model_validate(row) for row in claimed]
        except SQLAlchemyError as e:
            raise_outbox_storage_error(
                service=SERVICE_NAME,
                operation="claim_pending",
                message=f"Failed to claim pending events: {e.__class__.__name__}",
                correlation_id=NIL_CORRELATION_ID,
                batch_size=batch_size,
                error_details=str(e),
            )

        if events:
            logger.info(
                f"Claimed {len(events)} pending events from outbox",
                extra={"event_count": len(events), "batch_size": batch_size},
            )
        return events

    async def mark_completed(self, event_id: UUID, claim_token: str) -> bool:
        try:
            async with self._session_factory() as session, session.begin():
                result = await session.execute(
                    update(EventOutbox)
                    .where(
                        EventOutbox.id == event_id,
                        EventOutbox.claim_token == claim_token,
                        EventOutbox.status == OutboxStatus.PROCESSING.value,
                    )
                    .values(
                        status=OutboxStatus.COMPLETED.value,
                        processed_at=self._now(),
                        claim_token=None,
                        error_message=None,
                    )
                    .execution_options(synchronize_session=False)
                )
        except SQLAlchemyError as e:
            raise_outbox_storage_error(
                service=SERVICE_NAME,
                operation="mark_completed",
                message=f"Failed to mark event as completed: {e.__class__.__name__}",
                correlation_id=NIL_CORRELATION_ID,
                event_id=str(event_id),
                error_details=str(e),
            )

        if result.rowcount == 0:
            logger.warning(
                "Claim lost before marking outbox event completed",
                extra={"event_id": str(event_id)},
            )
            return False
        return True

    async def mark_failed(
        self, event_id: UUID, claim_token: str, error_message: str
    ) -> int | None:
        try:
            async with self._session_factory() as session, session.begin():
                result = await session.execute(
                    update(EventOutbox)
                    .where(
                        EventOutbox.id == event_id,
                        EventOutbox.claim_token == claim_token,
                        EventOutbox.status == OutboxStatus.PROCESSING.value,
                    )
                    .values(
                        status=OutboxStatus.FAILED.value,
                        retry_count=EventOutbox.retry_count + 1,
                        error_message=error_message[:MAX_ERROR_MESSAGE_LENGTH],
                        claim_token=None,
                    )
                    .execution_options(synchronize_session=False)
                )
                if result.rowcount == 0:
                    logger.warning(
                        "Claim lost before marking outbox event failed",
                        extra={"event_id": str(event_id)},
                    )
                    return None

                retry_count = (
                    await session.execute(
                        select(EventOutbox.retry_count).where(EventOutbox.id == event_id)
                    )
                ).scalar_one()
        except SQLAlchemyError as e:
            raise_outbox_storage_error(
                service=SERVICE_NAME,
                operation="mark_failed",
                message=f"Failed to record error for event: {e.__class__.__name__}",
                correlation_id=NIL_CORRELATION_ID,
                event_id=str(event_id),
                error_details=str(e),
            )

        logger.warning(
            "Recorded error for outbox event",
            extra={
                "event_id": str(event_id),
                "retry_count": retry_count,
                "error_message": error_message[:200],
            },
        )
        return int(retry_count)

    async def requeue_failed(self, batch_size: int, max_retries: int) -> int:
        try:
            async with self._session_factory() as session, session.begin():
                candidates = (
                    select(EventOutbox.id)
                    .where(
                        EventOutbox.status == OutboxStatus.FAILED.value,
                        EventOutbox.retry_count < max_retries,
                    )
                    .order_by(EventOutbox.created_at)
                    .limit(batch_size)
                )
                if self._skip_locked:
                    candidates = candidates.with_for_update(skip_locked=True)
                ids = list((await session.execute(candidates)).scalars().all())
                if not ids:
                    return 0

                result = await session.execute(
                    update(EventOutbox)
                    .where(
                        EventOutbox.id.in_(ids),
                        EventOutbox.status == OutboxStatus.FAILED.value,
                        EventOutbox.retry_count < max_retries,
                    )
                    .values(status=OutboxStatus.PENDING.value, error_message=None)
                    .execution_options(synchronize_session=False)
                )
                requeued = int(result.rowcount)
        except SQLAlchemyError as e:
            raise_outbox_storage_error(
                service=SERVICE_NAME,
                operation="requeue_failed",
                message=f"Failed to requeue failed events: {e.__class__.__name__}",
                correlation_id=NIL_CORRELATION_ID,
                batch_size=batch_size,
                error_details=str(e),
            )

        logger.info(
            f"Requeued {requeued} failed outbox events",
            extra={"requeued": requeued, "max_retries": max_retries},
        )
        return requeued

    async def release_stale_claims(self, older_than: datetime) -> int:
        """Return rows stuck in PROCESSING (crashed dispatcher) to PENDING."""
        try:
            async with self._session_factory() as session, session.begin():
                result = await session.execute(
                    update(EventOutbox)
                    .where(
                        EventOutbox.status == OutboxStatus.PROCESSING.value,
                        EventOutbox.claimed_at < older_than,
                    )
                    .values(status=OutboxStatus.PENDING.value, claim_token=None, claimed_at=None)
                    .execution_options(synchronize_session=False)
                )
                released = int(result.rowcount)
        except SQLAlchemyError as e:
            raise_outbox_storage_error(
                service=SERVICE_NAME,
                operation="release_stale_claims",
                message=f"Failed to release stale claims: {e.__class__.__name__}",
                correlation_id=NIL_CORRELATION_ID,
                error_details=str(e),
            )

        if released:
            logger.warning(
                "Released stale outbox claims",
                extra={"released": released, "older_than": older_than.isoformat()},
            )
        return released

    # Read side

    async def get_status_counts(self) -> dict[str, int]:
        try:
            async with self._session_factory() as session:
                rows = (
                    await session.execute(
                        select(EventOutbox.status, func.count()).group_by(EventOutbox.status)
                    )
                ).all()
        except SQLAlchemyError as e:
            raise_outbox_storage_error(
                service=SERVICE_NAME,
                operation="get_status_counts",
                message=f"Failed to count outbox events: {e.__class__.__name__}",
                correlation_id=NIL_CORRELATION_ID,
                error_details=str(e),
            )

        counts = {status.value: 0 for status in OutboxStatus}
        for status, count in rows:
            counts[status] = int(count)
        return counts

    async def count_exhausted(self, max_retries: int) -> int:
        try:
            async with self._session_factory() as session:
                return int(
                    (
                        await session.execute(
                            select(func.count()).where(
                                EventOutbox.status == OutboxStatus.FAILED.value,
                                EventOutbox.retry_count >= max_retries,
                            )
                        )
                    ).scalar_one()
                )
        except SQLAlchemyError as e:
            raise_outbox_storage_error(
                service=SERVICE_NAME,
                operation="count_exhausted",
                message=f"Failed to count exhausted events: {e.__class__.__name__}",
                correlation_id=NIL_CORRELATION_ID,
                error_details=str(e),
            )

    async def get_oldest_pending_created_at(self) -> datetime | None:
        try:
            async with self._session_factory() as session:
                oldest = (
                    await session.execute(
                        select(func.min(EventOutbox.created_at)).where(
                            EventOutbox.status == OutboxStatus.PENDING.value
                        )
                    )
                ).scalar_one_or_none()
        except SQLAlchemyError as e:
            raise_outbox_storage_error(
                service=SERVICE_NAME,
                operation="get_oldest_pending_created_at",
                message=f"Failed to read oldest pending event: {e.__class__.__name__}",
                correlation_id=NIL_CORRELATION_ID,
                error_details=str(e),
            )

        if oldest is None:
            return None
        if isinstance(oldest, str):
            # SQLite returns aggregates over DateTime columns as text
            oldest = datetime.fromisoformat(oldest)
        return oldest if oldest.tzinfo else oldest.replace(tzinfo=UTC)

    async def get_event_by_id(self, event_id: UUID) -> OutboxEvent | None:
        try:
            async with self._session_factory() as session:
                row = (
                    await session.execute(select(EventOutbox).where(EventOutbox.id == event_id))
                ).scalar_one_or_none()
        except SQLAlchemyError as e:
            raise_outbox_storage_error(
                service=SERVICE_NAME,
                operation="get_event_by_id",
                message=f"Failed to retrieve event by ID: {e.__class__.__name__}",
                correlation_id=NIL_CORRELATION_ID,
                event_id=str(event_id),
                error_details=str(e),
            )
        return OutboxEvent.model_validate(row) if row is not None else None

    async def list_failed(
        self, limit: int, max_retries: int | None = None
    ) -> list[OutboxEvent]:
        stmt = select(EventOutbox).where(EventOutbox.status == OutboxStatus.FAILED.value)
        if max_retries is not None:
            stmt = stmt.where(EventOutbox.retry_count >= max_retries)
        stmt = stmt.order_by(EventOutbox.created_at).limit(limit)
        try:
            async with self._session_factory() as session:
                rows = (await session.execute(stmt)).scalars().all()
        except SQLAlchemyError as e:
            raise_outbox_storage_error(
                service=SERVICE_NAME,
                operation="list_failed",
                message=f"Failed to list failed events: {e.__class__.__name__}",
                correlation_id=NIL_CORRELATION_ID,
                error_details=str(e),
            )
        return [OutboxEvent.model_validate(row) for row in rows]

    async def requeue_event(self, event_id: UUID) -> bool:
        """Operator override for an exhausted event: back to PENDING with a fresh retry budget."""
        try:
            async with self._session_factory() as session, session.begin():
                result = await session.execute(
                    update(EventOutbox)
                    .where(
                        EventOutbox.id == event_id,
                        EventOutbox.status == OutboxStatus.FAILED.value,
                    )
                    .values(status=OutboxStatus.PENDING.value, retry_count=0, error_message=None)
                    .execution_options(synchronize_session=False)
                )
        except SQLAlchemyError as e:
            raise_outbox_storage_error(
                service=SERVICE_NAME,
                operation="requeue_event",
                message=f"Failed to requeue event: {e.__class__.__name__}",
                correlation_id=NIL_CORRELATION_ID,
                event_id=str(event_id),
                error_details=str(e),
            )

        requeued = result.rowcount == 1
        logger.info(
            "Operator requeue of outbox event",
            extra={"event_id": str(event_id), "requeued": requeued},
        )
        return requeued
