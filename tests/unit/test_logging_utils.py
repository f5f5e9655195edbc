"""Unit tests for the structlog helpers."""

from __future__ import annotations

from structlog.contextvars import get_contextvars

from write_pipeline.logging_utils import (
    add_service_context,
    add_trace_context,
    bind_request_context,
)


class TestRequestContext:
    def test_binds_request_fields(self) -> None:
        bind_request_context("req-1", tenant_id="t-1", idempotency_key="K1", route="POST /r")

        context = get_contextvars()
        assert context["request_id"] == "req-1"
        assert context["tenant_id"] == "t-1"
        assert context["idempotency_key"] == "K1"
        assert context["route"] == "POST /r"

    def test_previous_request_context_is_cleared(self) -> None:
        bind_request_context("req-1", tenant_id="t-1", route="POST /r")
        bind_request_context("req-2")

        context = get_contextvars()
        assert context["request_id"] == "req-2"
        assert context["tenant_id"] is None
        assert "route" not in context


class TestProcessors:
    def test_service_context(self, monkeypatch) -> None:
        monkeypatch.setenv("SERVICE_NAME", "write-pipeline")
        monkeypatch.setenv("ENVIRONMENT", "staging")

        event = add_service_context(None, "info", {"event": "x"})

        assert event["service.name"] == "write-pipeline"
        assert event["deployment.environment"] == "staging"

    def test_no_active_span_adds_nothing(self) -> None:
        event = add_trace_context(None, "info", {"event": "x"})

        assert "trace_id" not in event

