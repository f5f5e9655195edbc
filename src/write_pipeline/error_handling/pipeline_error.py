"""
Exception type carrying a structured ErrorDetail.

Every error raised by the rate limiter, the idempotency guard and the outbox
is a WritePipelineError, so callers catch one type and branch on error_code.
"""

from __future__ import annotations

from typing import Any

from opentelemetry import trace
from opentelemetry.trace import Status, StatusCode

from write_pipeline.error_handling.models import ErrorDetail


class WritePipelineError(Exception):
    """Exception wrapping an immutable ErrorDetail, recorded on the active span."""

    def __init__(self, error_detail: ErrorDetail) -> None:
        super().__init__(error_detail.message)
        self.error_detail = error_detail
        self._record_to_span()

    def __str__(self) -> str:
        return f"[{self.error_detail.error_code.value}] {self.error_detail.message}"

    @property
    def correlation_id(self) -> str:
        return str(self.error_detail.correlation_id)

    @property
    def error_code(self) -> str:
        return self.error_detail.error_code.value

    @property
    def service(self) -> str:
        return self.error_detail.service

    @property
    def operation(self) -> str:
        return self.error_detail.operation

    def _record_to_span(self) -> None:
        span = trace.get_current_span()
        if span is None or not span.is_recording():
            return

        span.record_exception(self)
        span.set_status(Status(StatusCode.ERROR, self.error_detail.message))
        span.set_attribute("error", True)
        span.set_attribute("error.code", self.error_detail.error_code.value)
        span.set_attribute("error.message", self.error_detail.message)
        span.set_attribute("error.service", self.error_detail.service)
        span.set_attribute("error.operation", self.error_detail.operation)
        span.set_attribute("correlation_id", str(self.error_detail.correlation_id))

        for key, value in self.error_detail.details.items():
            if isinstance(value, (str, bool, int, float)):
                span.set_attribute(f"error.details.{key}", value)
            else:
                span.set_attribute(f"error.details.{key}", str(value))

    def to_dict(self) -> dict[str, Any]:
        """Serialize for logging and JSON responses."""
        return {
            "error": str(self),
            "error_detail": self.error_detail.model_dump(mode="json"),
        }

    def add_detail(self, key: str, value: Any) -> WritePipelineError:
        """Return a new error with one more detail; the original stays unchanged."""
        new_details = {**self.error_detail.details, key: value}
        return WritePipelineError(self.error_detail.model_copy(update={"details": new_details}))
