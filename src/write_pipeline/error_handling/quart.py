"""
Quart integration for WritePipelineError.

Maps error codes to HTTP status codes and renders the structured ErrorDetail as
JSON. Rate-limit rejections carry Retry-After and X-RateLimit-* headers.
"""

from __future__ import annotations

from typing import Any
from uuid import uuid4

from pydantic import ValidationError
from quart import Quart, Response, jsonify, request
from werkzeug.exceptions import HTTPException

from write_pipeline.error_handling.error_enums import ErrorCode, WritePipelineErrorCode
from write_pipeline.error_handling.factories import create_error_detail_with_context
from write_pipeline.error_handling.models import ErrorDetail
from write_pipeline.error_handling.pipeline_error import WritePipelineError
from write_pipeline.logging_utils import create_service_logger

logger = create_service_logger("write_pipeline.error_handling.quart")

REQUEST_ID_HEADER = "X-Request-Id"

ERROR_CODE_TO_HTTP_STATUS: dict[ErrorCode | WritePipelineErrorCode, int] = {
    ErrorCode.VALIDATION_ERROR: 400,
    ErrorCode.INVALID_CONFIGURATION: 400,
    ErrorCode.RESOURCE_NOT_FOUND: 404,
    ErrorCode.PROCESSING_ERROR: 500,
    WritePipelineErrorCode.RATE_LIMIT_EXCEEDED: 429,
    WritePipelineErrorCode.IDEMPOTENCY_KEY_REQUIRED: 400,
    WritePipelineErrorCode.IDEMPOTENCY_KEY_INVALID: 400,
    WritePipelineErrorCode.IDEMPOTENCY_KEY_CONFLICT: 409,
    WritePipelineErrorCode.IDEMPOTENCY_REQUEST_IN_PROGRESS: 409,
    WritePipelineErrorCode.COUNTER_STORE_UNAVAILABLE: 503,
    WritePipelineErrorCode.OUTBOX_STORAGE_ERROR: 500,
    WritePipelineErrorCode.OUTBOX_PUBLISH_FAILURE: 502,
    WritePipelineErrorCode.OUTBOX_PUBLISH_EXHAUSTED: 502,
}


def get_http_status(error_detail: ErrorDetail) -> int:
    return ERROR_CODE_TO_HTTP_STATUS.get(error_detail.error_code, 500)


def error_headers(error_detail: ErrorDetail, request_id: str | None = None) -> dict[str, str]:
    """
    Headers that accompany an error response.

    ``request_id`` is the caller's own X-Request-Id and is echoed unchanged;
    without one the correlation id stands in.
    """
    headers = {REQUEST_ID_HEADER: request_id or str(error_detail.correlation_id)}
    if error_detail.error_code == WritePipelineErrorCode.RATE_LIMIT_EXCEEDED:
        details = error_detail.details
        headers["Retry-After"] = str(details.get("retry_after", 1))
        headers["X-RateLimit-Limit"] = str(details.get("limit", 0))
        headers["X-RateLimit-Remaining"] = str(details.get("remaining", 0))
    return headers


def error_body(error_detail: ErrorDetail) -> dict[str, Any]:
    return {
        "error": {
            "code": error_detail.error_code.value,
            "message": error_detail.message,
            "correlation_id": str(error_detail.correlation_id),
            "service": error_detail.service,
            "operation": error_detail.operation,
            "details": error_detail.details,
            "timestamp": error_detail.timestamp.isoformat(),
        }
    }


def create_error_response(
    error_detail: ErrorDetail, request_id: str | None = None
) -> tuple[Response, int]:
    """Render an ErrorDetail as a JSON response with the mapped status code."""
    status_code = get_http_status(error_detail)
    response = jsonify(error_body(error_detail))
    for name, value in error_headers(error_detail, request_id).items():
        response.headers[name] = value
    return response, status_code


def register_error_handlers(app: Quart, service: str = "write_pipeline") -> None:
    """Register structured handlers for pipeline, validation and unexpected errors."""

    @app.errorhandler(WritePipelineError)
    async def handle_pipeline_error(error: WritePipelineError) -> tuple[Response, int]:
        logger.info(
            "Write pipeline error",
            extra={"error_code": error.error_code, "correlation_id": error.correlation_id},
        )
        return create_error_response(error.error_detail, request.headers.get(REQUEST_ID_HEADER))

    @app.errorhandler(ValidationError)
    async def handle_validation_error(error: ValidationError) -> tuple[Response, int]:
        logger.warning(f"Validation error: {error}")
        detail = create_error_detail_with_context(
            error_code=ErrorCode.VALIDATION_ERROR,
            message=str(error),
            service=service,
            operation="request_validation",
            correlation_id=uuid4(),
            details={"field": "request_body", "error_count": error.error_count()},
        )
        return create_error_response(detail, request.headers.get(REQUEST_ID_HEADER))

    @app.errorhandler(Exception)
    async def handle_unexpected_error(error: Exception) -> Response | tuple[Response, int]:
        if isinstance(error, HTTPException):
            return Response(error.description or error.name, status=error.code or 500)
        logger.error(f"Unexpected error: {error}", exc_info=True)
        detail = create_error_detail_with_context(
            error_code=ErrorCode.PROCESSING_ERROR,
            message="An unexpected error occurred during request processing",
            service=service,
            operation="request_processing",
            correlation_id=uuid4(),
            details={"error_type": error.__class__.__name__},
        )
        return create_error_response(detail, request.headers.get(REQUEST_ID_HEADER))
