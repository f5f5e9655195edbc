"""
Outbox dispatcher: claims pending events, publishes them and records the outcome.

Publish failures never propagate to callers; they are recorded on the event row
and surface through get_metrics() and the admin surface.
"""

from __future__ import annotations

from collections.abc import Callable
from datetime import UTC, datetime, timedelta
from uuid import uuid4

from write_pipeline.config import Settings
from write_pipeline.error_handling import WritePipelineErrorCode
from write_pipeline.logging_utils import create_service_logger
from write_pipeline.metrics import get_metrics
from write_pipeline.outbox.models import HealthStatus, OutboxEvent, OutboxMetrics, OutboxStatus
from write_pipeline.protocols import (
    OutboxRepositoryProtocol,
    PublishPayloadError,
    PublishSinkProtocol,
    PublishSinkUnavailableError,
)

logger = create_service_logger("write_pipeline.outbox.dispatcher")

PUBLISH_FAILURE_CODE = WritePipelineErrorCode.OUTBOX_PUBLISH_FAILURE.value


class HealthThresholds:
    def __init__(
        self,
        degraded_failure_ratio: float = 0.05,
        critical_failure_ratio: float = 0.20,
        degraded_backlog_age_seconds: float = 60,
        critical_backlog_age_seconds: float = 600,
    ) -> None:
        self.degraded_failure_ratio = degraded_failure_ratio
        self.critical_failure_ratio = critical_failure_ratio
        self.degraded_backlog_age_seconds = degraded_backlog_age_seconds
        self.critical_backlog_age_seconds = critical_backlog_age_seconds

    def evaluate(self, failure_ratio: float, oldest_pending_age: float | None) -> HealthStatus:
        age = oldest_pending_age or 0.0
        if failure_ratio >= self.critical_failure_ratio or age >= self.critical_backlog_age_seconds:
            return HealthStatus.CRITICAL
        if failure_ratio >= self.degraded_failure_ratio or age >= self.degraded_backlog_age_seconds:
            return HealthStatus.DEGRADED
        return HealthStatus.HEALTHY


class OutboxDispatcher:
    """Delivers outbox events to the publish sink with bounded retries."""

    def __init__(
        self,
        repository: OutboxRepositoryProtocol,
        sink: PublishSinkProtocol,
        *,
        max_retries: int = 3,
        claim_timeout_seconds: int = 300,
        health_thresholds: HealthThresholds | None = None,
        now: Callable[[], datetime] = lambda: datetime.now(UTC),
    ) -> None:
        self.repository = repository
        self.sink = sink
        self.max_retries = max_retries
        self.claim_timeout_seconds = claim_timeout_seconds
        self.health_thresholds = health_thresholds or HealthThresholds()
        self._now = now

    @classmethod
    def from_settings(
        cls,
        repository: OutboxRepositoryProtocol,
        sink: PublishSinkProtocol,
        settings: Settings,
    ) -> OutboxDispatcher:
        return cls(
            repository,
            sink,
            max_retries=settings.OUTBOX_MAX_RETRIES,
            claim_timeout_seconds=settings.OUTBOX_CLAIM_TIMEOUT_SECONDS,
            health_thresholds=HealthThresholds(
                degraded_failure_ratio=settings.OUTBOX_DEGRADED_FAILURE_RATIO,
                critical_failure_ratio=settings.OUTBOX_CRITICAL_FAILURE_RATIO,
                degraded_backlog_age_seconds=settings.OUTBOX_DEGRADED_BACKLOG_AGE_SECONDS,
                critical_backlog_age_seconds=settings.OUTBOX_CRITICAL_BACKLOG_AGE_SECONDS,
            ),
        )

    async def process_pending(self, batch_size: int) -> int:
        """
        Claim and publish up to ``batch_size`` pending events, oldest first.

        Returns:
            Number of events completed by this call
        """
        claim_token = uuid4().hex
        events = await self.repository.claim_pending(batch_size, claim_token)
        completed = 0
        for event in events:
            if await self._publish(event, claim_token):
                completed += 1

        if events:
            logger.info(
                "Processed outbox batch",
                extra={
                    "claimed": len(events),
                    "completed": completed,
                    "failed": len(events) - completed,
                },
            )
        return completed

    async def _publish(self, event: OutboxEvent, claim_token: str) -> bool:
        log_context = {
            "event_id": str(event.id),
            "event_type": event.event_type,
            "event_name": event.event_name,
            "tenant_id": event.tenant_id,
            "correlation_id": event.correlation_id,
            "retry_count": event.retry_count,
        }
        try:
            await self.sink.publish(event)
        except PublishSinkUnavailableError as e:
            logger.warning(
                "Publish sink unavailable, event will be retried",
                extra={**log_context, "error_code": PUBLISH_FAILURE_CODE},
            )
            get_metrics()["outbox_publish_outcomes"].labels(outcome="sink_unavailable").inc()
            await self._record_failure(event, claim_token, f"Publish sink unavailable: {e}")
            return False
        except PublishPayloadError as e:
            logger.error(
                "Publish sink rejected event payload",
                extra={**log_context, "error_code": PUBLISH_FAILURE_CODE, "error": str(e)},
            )
            get_metrics()["outbox_publish_outcomes"].labels(outcome="payload_error").inc()
            await self._record_failure(event, claim_token, f"Payload rejected: {e}")
            return False
        except Exception as e:
            logger.error(
                "Unexpected error publishing outbox event",
                extra={**log_context, "error": str(e)},
                exc_info=True,
            )
            get_metrics()["outbox_publish_outcomes"].labels(outcome="payload_error").inc()
            await self._record_failure(event, claim_token, f"{e.__class__.__name__}: {e}")
            return False

        marked = await self.repository.mark_completed(event.id, claim_token)
        if marked:
            get_metrics()["outbox_publish_outcomes"].labels(outcome="completed").inc()
            logger.info("Published outbox event", extra=log_context)
        return marked

    async def _record_failure(self, event: OutboxEvent, claim_token: str, error: str) -> None:
        retry_count = await self.repository.mark_failed(event.id, claim_token, error)
        if retry_count is not None and retry_count >= self.max_retries:
            get_metrics()["outbox_publish_outcomes"].labels(outcome="exhausted").inc()
            logger.error(
                "Outbox event exhausted its retries; operator action required",
                extra={
                    "event_id": str(event.id),
                    "event_type": event.event_type,
                    "tenant_id": event.tenant_id,
                    "correlation_id": event.correlation_id,
                    "retry_count": retry_count,
                    "error_code": WritePipelineErrorCode.OUTBOX_PUBLISH_EXHAUSTED.value,
                },
            )

    async def retry_failed(self, batch_size: int) -> int:
        """Return failed events below the retry bound to pending; returns the number requeued."""
        return await self.repository.requeue_failed(batch_size, self.max_retries)

    async def release_stale_claims(self) -> int:
        older_than = self._now() - timedelta(seconds=self.claim_timeout_seconds)
        return await self.repository.release_stale_claims(older_than)

    async def get_metrics(self) -> OutboxMetrics:
        counts = await self.repository.get_status_counts()
        exhausted = await self.repository.count_exhausted(self.max_retries)
        oldest = await self.repository.get_oldest_pending_created_at()

        total = sum(counts.values())
        failed = counts.get(OutboxStatus.FAILED.value, 0)
        failure_ratio = failed / total if total else 0.0
        oldest_age = (self._now() - oldest).total_seconds() if oldest is not None else None

        metrics = OutboxMetrics(
            total=total,
            pending=counts.get(OutboxStatus.PENDING.value, 0),
            processing=counts.get(OutboxStatus.PROCESSING.value, 0),
            completed=counts.get(OutboxStatus.COMPLETED.value, 0),
            failed=failed,
            exhausted=exhausted,
            oldest_pending_age_seconds=oldest_age,
            failure_ratio=failure_ratio,
            health_status=self.health_thresholds.evaluate(failure_ratio, oldest_age),
        )

        gauges = get_metrics()
        for status in OutboxStatus:
            gauges["outbox_events_by_status"].labels(status=status.value).set(
                counts.get(status.value, 0)
            )
        gauges["outbox_oldest_pending_age"].set(oldest_age or 0.0)
        return metrics
