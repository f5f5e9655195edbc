"""Transactional outbox: ledger, dispatcher, relay worker and publish sinks."""

from write_pipeline.outbox.dispatcher import HealthThresholds, OutboxDispatcher
from write_pipeline.outbox.models import (
    Base,
    EventOutbox,
    HealthStatus,
    OutboxEvent,
    OutboxMetrics,
    OutboxStatus,
)
from write_pipeline.outbox.relay import OutboxRelayWorker
from write_pipeline.outbox.repository import SQLAlchemyOutboxRepository
from write_pipeline.outbox.sinks import KafkaPublishSink, RecordingPublishSink, build_message

__all__ = [
    "Base",
    "EventOutbox",
    "HealthStatus",
    "HealthThresholds",
    "KafkaPublishSink",
    "OutboxDispatcher",
    "OutboxEvent",
    "OutboxMetrics",
    "OutboxRelayWorker",
    "OutboxStatus",
    "RecordingPublishSink",
    "SQLAlchemyOutboxRepository",
    "build_message",
]
