"""
Publish sinks for outbox events.

KafkaPublishSink delivers to Kafka using aiokafka with an idempotent producer;
RecordingPublishSink keeps events in memory for tests and local runs.
"""

from __future__ import annotations

import json
from typing import Any

from aiokafka import AIOKafkaProducer
from aiokafka.errors import (
    KafkaConnectionError,
    KafkaTimeoutError,
    MessageSizeTooLargeError,
    RequestTimedOutError,
)

from write_pipeline.logging_utils import create_service_logger
from write_pipeline.outbox.models import OutboxEvent
from write_pipeline.protocols import (
    PublishPayloadError,
    PublishSinkProtocol,
    PublishSinkUnavailableError,
)

logger = create_service_logger("write_pipeline.outbox.sinks")


def build_message(event: OutboxEvent) -> dict[str, Any]:
    """Envelope published for an outbox event."""
    return {
        "event_id": str(event.id),
        "event_type": event.event_type,
        "event_name": event.event_name,
        "tenant_id": event.tenant_id,
        "correlation_id": event.correlation_id,
        "occurred_at": event.created_at.isoformat(),
        "data": event.payload,
    }


class KafkaPublishSink(PublishSinkProtocol):
    """
    Publishes each event to the topic named by its ``event_name``, keyed by tenant.

    Keying by tenant keeps one tenant's events on one partition, preserving the
    oldest-first order the dispatcher reads them in.
    """

    def __init__(self, *, client_id: str, bootstrap_servers: str) -> None:
        self.bootstrap_servers = bootstrap_servers
        self.client_id = client_id
        self.producer = AIOKafkaProducer(
            bootstrap_servers=self.bootstrap_servers,
            client_id=self.client_id,
            acks="all",
            enable_idempotence=True,
        )
        self._started = False

    async def start(self) -> None:
        if self._started:
            return
        try:
            await self.producer.start()
            self._started = True
            logger.info(f"KafkaProducer '{self.client_id}' started successfully.")
        except KafkaConnectionError as e:
            logger.error(f"KafkaProducer '{self.client_id}' failed to start: {e}")
            raise PublishSinkUnavailableError(str(e)) from e

    async def stop(self) -> None:
        if not self._started:
            return
        try:
            await self.producer.stop()
            self._started = False
            logger.info(f"KafkaProducer '{self.client_id}' stopped.")
        except Exception as e:
            logger.error(f"Error stopping KafkaProducer '{self.client_id}': {e}", exc_info=True)

    async def publish(self, event: OutboxEvent) -> None:
        if not self._started:
            await self.start()

        try:
            value = json.dumps(build_message(event)).encode("utf-8")
        except (TypeError, ValueError) as e:
            raise PublishPayloadError(f"Payload is not JSON serializable: {e}") from e

        headers = [
            ("correlation_id", event.correlation_id.encode("utf-8")),
            ("event_type", event.event_type.encode("utf-8")),
        ]
        try:
            record_metadata = await self.producer.send_and_wait(
                event.event_name,
                value=value,
                key=event.tenant_id.encode("utf-8"),
                headers=headers,
            )
        except MessageSizeTooLargeError as e:
            raise PublishPayloadError(f"Message too large for topic '{event.event_name}'") from e
        except (KafkaConnectionError, KafkaTimeoutError, RequestTimedOutError) as e:
            logger.error(
                f"Kafka unavailable publishing by '{self.client_id}' to '{event.event_name}': {e}"
            )
            raise PublishSinkUnavailableError(str(e)) from e

        logger.debug(
            f"Outbox event published by '{self.client_id}' to {event.event_name} "
            f"[partition:{record_metadata.partition}, offset:{record_metadata.offset}] "
            f"event_id='{event.id}'",
        )


class RecordingPublishSink(PublishSinkProtocol):
    """In-memory sink that records published events and can simulate failures."""

    def __init__(self) -> None:
        self.published: list[OutboxEvent] = []
        self.available = True
        self.rejected_event_names: set[str] = set()

    async def publish(self, event: OutboxEvent) -> None:
        if not self.available:
            raise PublishSinkUnavailableError("Publish sink is unavailable")
        if event.event_name in self.rejected_event_names:
            raise PublishPayloadError(f"Payload rejected for '{event.event_name}'")
        self.published.append(event)
