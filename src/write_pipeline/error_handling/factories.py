"""
Factory functions that build an ErrorDetail and raise WritePipelineError.

Each factory takes the originating service and operation, a message and the
correlation id of the request, plus arbitrary keyword details.
"""

from __future__ import annotations

import traceback
from datetime import UTC, datetime
from typing import Any, NoReturn
from uuid import UUID

from opentelemetry import trace

from write_pipeline.error_handling.error_enums import ErrorCode, WritePipelineErrorCode
from write_pipeline.error_handling.models import ErrorDetail
from write_pipeline.error_handling.pipeline_error import WritePipelineError


def create_error_detail_with_context(
    error_code: ErrorCode | WritePipelineErrorCode,
    message: str,
    service: str,
    operation: str,
    correlation_id: UUID,
    details: dict[str, Any] | None = None,
    capture_stack: bool = False,
) -> ErrorDetail:
    """Build an ErrorDetail, attaching the active trace/span ids when one is recording."""
    trace_id: str | None = None
    span_id: str | None = None
    span = trace.get_current_span()
    if span is not None:
        span_context = span.get_span_context()
        if span_context.is_valid:
            trace_id = format(span_context.trace_id, "032x")
            span_id = format(span_context.span_id, "016x")

    return ErrorDetail(
        error_code=error_code,
        message=message,
        correlation_id=correlation_id,
        timestamp=datetime.now(UTC),
        service=service,
        operation=operation,
        details=details or {},
        stack_trace="".join(traceback.format_stack()) if capture_stack else None,
        trace_id=trace_id,
        span_id=span_id,
    )


def _raise(
    error_code: ErrorCode | WritePipelineErrorCode,
    service: str,
    operation: str,
    message: str,
    correlation_id: UUID,
    details: dict[str, Any],
) -> NoReturn:
    raise WritePipelineError(
        create_error_detail_with_context(
            error_code=error_code,
            message=message,
            service=service,
            operation=operation,
            correlation_id=correlation_id,
            details=details,
        )
    )


# =============================================================================
# Generic errors
# =============================================================================


def raise_validation_error(
    service: str,
    operation: str,
    field: str,
    message: str,
    correlation_id: UUID,
    value: Any = None,
    **additional_context: Any,
) -> NoReturn:
    details: dict[str, Any] = {"field": field}
    if value is not None:
        details["value"] = value
    details.update(additional_context)
    _raise(ErrorCode.VALIDATION_ERROR, service, operation, message, correlation_id, details)


def raise_resource_not_found(
    service: str,
    operation: str,
    resource_type: str,
    resource_id: str,
    correlation_id: UUID,
    **additional_context: Any,
) -> NoReturn:
    _raise(
        ErrorCode.RESOURCE_NOT_FOUND,
        service,
        operation,
        f"{resource_type} '{resource_id}' not found",
        correlation_id,
        {"resource_type": resource_type, "resource_id": resource_id, **additional_context},
    )


def raise_invalid_configuration(
    service: str,
    operation: str,
    config_key: str,
    message: str,
    correlation_id: UUID,
    **additional_context: Any,
) -> NoReturn:
    _raise(
        ErrorCode.INVALID_CONFIGURATION,
        service,
        operation,
        message,
        correlation_id,
        {"config_key": config_key, **additional_context},
    )


# =============================================================================
# Write pipeline errors
# =============================================================================


def raise_rate_limit_exceeded(
    service: str,
    operation: str,
    endpoint_class: str,
    limit: int,
    retry_after: int,
    correlation_id: UUID,
    remaining: int = 0,
    **additional_context: Any,
) -> NoReturn:
    """Rejection by the rate limiter; retryable after ``retry_after`` seconds."""
    _raise(
        WritePipelineErrorCode.RATE_LIMIT_EXCEEDED,
        service,
        operation,
        f"Rate limit exceeded for '{endpoint_class}', retry after {retry_after}s",
        correlation_id,
        {
            "endpoint_class": endpoint_class,
            "limit": limit,
            "remaining": remaining,
            "retry_after": retry_after,
            **additional_context,
        },
    )


def raise_idempotency_key_required(
    service: str,
    operation: str,
    route: str,
    correlation_id: UUID,
    **additional_context: Any,
) -> NoReturn:
    _raise(
        WritePipelineErrorCode.IDEMPOTENCY_KEY_REQUIRED,
        service,
        operation,
        f"Idempotency-Key header is required for {route}",
        correlation_id,
        {"route": route, **additional_context},
    )


def raise_idempotency_key_invalid(
    service: str,
    operation: str,
    message: str,
    correlation_id: UUID,
    **additional_context: Any,
) -> NoReturn:
    _raise(
        WritePipelineErrorCode.IDEMPOTENCY_KEY_INVALID,
        service,
        operation,
        message,
        correlation_id,
        additional_context,
    )


def raise_idempotency_key_conflict(
    service: str,
    operation: str,
    correlation_id: UUID,
    **additional_context: Any,
) -> NoReturn:
    """Same key reused with a different request payload."""
    _raise(
        WritePipelineErrorCode.IDEMPOTENCY_KEY_CONFLICT,
        service,
        operation,
        "Idempotency-Key was already used with a different request payload",
        correlation_id,
        additional_context,
    )


def raise_idempotency_request_in_progress(
    service: str,
    operation: str,
    correlation_id: UUID,
    **additional_context: Any,
) -> NoReturn:
    _raise(
        WritePipelineErrorCode.IDEMPOTENCY_REQUEST_IN_PROGRESS,
        service,
        operation,
        "A request with this Idempotency-Key is still being processed",
        correlation_id,
        additional_context,
    )


def raise_counter_store_unavailable(
    service: str,
    operation: str,
    message: str,
    correlation_id: UUID,
    **additional_context: Any,
) -> NoReturn:
    _raise(
        WritePipelineErrorCode.COUNTER_STORE_UNAVAILABLE,
        service,
        operation,
        message,
        correlation_id,
        additional_context,
    )


def raise_outbox_storage_error(
    service: str,
    operation: str,
    message: str,
    correlation_id: UUID,
    **additional_context: Any,
) -> NoReturn:
    _raise(
        WritePipelineErrorCode.OUTBOX_STORAGE_ERROR,
        service,
        operation,
        message,
        correlation_id,
        additional_context,
    )
