"""Idempotency guard: deduplicates retried writes under a caller-supplied key."""

from write_pipeline.idempotency.guard import IdempotencyGuard
from write_pipeline.idempotency.models import (
    GuardResult,
    IdempotencyRecord,
    IdempotencyStatus,
    ResponseSnapshot,
)
from write_pipeline.idempotency.repository import IdempotencyRepository
from write_pipeline.idempotency.scope import (
    IdempotencyPolicy,
    build_scope_key,
    compute_request_fingerprint,
    validate_idempotency_key,
)

__all__ = [
    "GuardResult",
    "IdempotencyGuard",
    "IdempotencyPolicy",
    "IdempotencyRecord",
    "IdempotencyRepository",
    "IdempotencyStatus",
    "ResponseSnapshot",
    "build_scope_key",
    "compute_request_fingerprint",
    "validate_idempotency_key",
]
