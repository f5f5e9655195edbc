"""Structured error handling for the write pipeline."""

from write_pipeline.error_handling.error_enums import ErrorCode, WritePipelineErrorCode
from write_pipeline.error_handling.factories import (
    create_error_detail_with_context,
    raise_counter_store_unavailable,
    raise_idempotency_key_conflict,
    raise_idempotency_key_invalid,
    raise_idempotency_key_required,
    raise_idempotency_request_in_progress,
    raise_invalid_configuration,
    raise_outbox_storage_error,
    raise_rate_limit_exceeded,
    raise_resource_not_found,
    raise_validation_error,
)
from write_pipeline.error_handling.models import ErrorDetail
from write_pipeline.error_handling.pipeline_error import WritePipelineError

__all__ = [
    "ErrorCode",
    "ErrorDetail",
    "WritePipelineError",
    "WritePipelineErrorCode",
    "create_error_detail_with_context",
    "raise_counter_store_unavailable",
    "raise_idempotency_key_conflict",
    "raise_idempotency_key_invalid",
    "raise_idempotency_key_required",
    "raise_idempotency_request_in_progress",
    "raise_invalid_configuration",
    "raise_outbox_storage_error",
    "raise_rate_limit_exceeded",
    "raise_resource_not_found",
    "raise_validation_error",
]
