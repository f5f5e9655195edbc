"""
SQLAlchemy model and plain record for the transactional outbox ledger.
"""

from __future__ import annotations

from datetime import UTC, datetime
from enum import Enum
from typing import Any
from uuid import UUID, uuid4

from pydantic import BaseModel, ConfigDict
from sqlalchemy import JSON, DateTime, Index, Integer, String, Text, Uuid, func
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class OutboxStatus(str, Enum):
    """
    Lifecycle of an outbox row.

    PENDING -> PROCESSING (claimed) -> COMPLETED | FAILED; FAILED -> PENDING
    while retry_count is below the maximum. COMPLETED is terminal.
    """

    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class Base(DeclarativeBase):
    """Base class for all database models."""

    pass


class EventOutbox(Base):
    """
    Outbox row written in the same transaction as the business mutation.
    """

    __tablename__ = "outbox_events"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    tenant_id: Mapped[str] = mapped_column(String(255), nullable=False)

    event_type: Mapped[str] = mapped_column(String(255), nullable=False)
    event_name: Mapped[str] = mapped_column(String(255), nullable=False)
    payload: Mapped[dict[str, Any]] = mapped_column(
        JSON().with_variant(JSONB(), "postgresql"), nullable=False
    )
    correlation_id: Mapped[str] = mapped_column(String(255), nullable=False)

    status: Mapped[str] = mapped_column(
        String(32), nullable=False, default=OutboxStatus.PENDING.value
    )
    retry_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)

    # Dispatcher claim
    claim_token: Mapped[str | None] = mapped_column(String(64), nullable=True)
    claimed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(UTC),
        server_default=func.now(),
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=func.now(), onupdate=func.now()
    )
    processed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        # Oldest pending per tenant
        Index("ix_outbox_events_status_tenant_created", "status", "tenant_id", "created_at"),
        # Failed rows still below the retry bound
        Index("ix_outbox_events_status_retry", "status", "retry_count"),
        Index("ix_outbox_events_correlation", "correlation_id"),
    )


class OutboxEvent(BaseModel):
    """Plain record handed to the dispatcher and the publish sink."""

    model_config = ConfigDict(from_attributes=True, frozen=True)

    id: UUID
    tenant_id: str
    event_type: str
    event_name: str
    payload: dict[str, Any]
    correlation_id: str
    status: OutboxStatus
    retry_count: int
    error_message: str | None = None
    created_at: datetime
    processed_at: datetime | None = None


class HealthStatus(str, Enum):
    HEALTHY = "healthy"
    DEGRADED = "degraded"
    CRITICAL = "critical"


class OutboxMetrics(BaseModel):
    """Counts by status plus a derived health status."""

    total: int
    pending: int
    processing: int
    completed: int
    failed: int
    exhausted: int
    oldest_pending_age_seconds: float | None
    failure_ratio: float
    health_status: HealthStatus
