"""
write_pipeline.error_handling.error_enums - Centralized error code definitions.
"""

from __future__ import annotations

from enum import Enum


class ErrorCode(str, Enum):
    VALIDATION_ERROR = "VALIDATION_ERROR"
    RESOURCE_NOT_FOUND = "RESOURCE_NOT_FOUND"
    INVALID_CONFIGURATION = "INVALID_CONFIGURATION"
    PROCESSING_ERROR = "PROCESSING_ERROR"  # Internal processing failures


class WritePipelineErrorCode(str, Enum):
    """
    Error codes specific to the reliable write path.

    Rate limiter and idempotency guard codes are surfaced synchronously to the
    caller. Outbox publish codes are only ever recorded on the event row and
    exposed through metrics and admin tooling.
    """

    # Rate limiter
    RATE_LIMIT_EXCEEDED = "RATE_LIMIT_EXCEEDED"

    # Idempotency guard
    IDEMPOTENCY_KEY_REQUIRED = "IDEMPOTENCY_KEY_REQUIRED"
    IDEMPOTENCY_KEY_INVALID = "IDEMPOTENCY_KEY_INVALID"
    IDEMPOTENCY_KEY_CONFLICT = "IDEMPOTENCY_KEY_CONFLICT"
    IDEMPOTENCY_REQUEST_IN_PROGRESS = "IDEMPOTENCY_REQUEST_IN_PROGRESS"

    # Shared infrastructure
    COUNTER_STORE_UNAVAILABLE = "COUNTER_STORE_UNAVAILABLE"

    # Outbox
    OUTBOX_STORAGE_ERROR = "OUTBOX_STORAGE_ERROR"
    OUTBOX_PUBLISH_FAILURE = "OUTBOX_PUBLISH_FAILURE"
    OUTBOX_PUBLISH_EXHAUSTED = "OUTBOX_PUBLISH_EXHAUSTED"
