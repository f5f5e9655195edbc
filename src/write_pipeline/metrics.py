"""
Shared Prometheus metrics for the write pipeline.

Singleton so that the HTTP app, the request path and the relay worker all
record into the same metric instances on the default registry.
"""

from __future__ import annotations

from typing import Any

from prometheus_client import REGISTRY, Counter, Gauge, Histogram

from write_pipeline.logging_utils import create_service_logger

logger = create_service_logger("write_pipeline.metrics")

_metrics: dict[str, Any] | None = None


def get_metrics() -> dict[str, Any]:
    """Singleton accessor for metrics initialization."""
    global _metrics
    if _metrics is None:
        _metrics = _create_metrics()
    return _metrics


def _create_metrics() -> dict[str, Any]:
    registry = REGISTRY

    metrics = {
        "rate_limit_decisions": Counter(
            "write_pipeline_rate_limit_decisions_total",
            "Rate limiter decisions by endpoint class, strategy and outcome",
            ["endpoint_class", "strategy", "outcome"],
            registry=registry,
        ),
        "idempotency_outcomes": Counter(
            "write_pipeline_idempotency_outcomes_total",
            "Idempotency guard outcomes (executed, replayed, conflict, in_progress, refused)",
            ["outcome"],
            registry=registry,
        ),
        "write_duration": Histogram(
            "write_pipeline_write_duration_seconds",
            "Duration of the guarded business transaction",
            buckets=[0.005, 0.01, 0.05, 0.1, 0.5, 1, 5],
            labelnames=["route"],
            registry=registry,
        ),
        "outbox_appends": Counter(
            "write_pipeline_outbox_appends_total",
            "Events appended to the outbox",
            ["event_name"],
            registry=registry,
        ),
        "outbox_publish_outcomes": Counter(
            "write_pipeline_outbox_publish_total",
            "Outbox publish attempts by outcome",
            ["outcome"],
            registry=registry,
        ),
        "outbox_events_by_status": Gauge(
            "write_pipeline_outbox_events",
            "Outbox rows by status at the last metrics collection",
            ["status"],
            registry=registry,
        ),
        "outbox_oldest_pending_age": Gauge(
            "write_pipeline_outbox_oldest_pending_age_seconds",
            "Age of the oldest pending outbox row",
            registry=registry,
        ),
    }

    logger.info("Write pipeline metrics registered")
    return metrics
