"""
Reliable write pipeline.

Adaptive rate limiting, idempotent execution of retried writes and a
transactional outbox with an asynchronous, bounded-retry dispatcher.
"""

from .idempotency import IdempotencyGuard
from .outbox import OutboxDispatcher, OutboxRelayWorker, SQLAlchemyOutboxRepository
from .pipeline import OperationResult, WriteContext, WritePipeline, WriteRequest, WriteResponse
from .rate_limiting import CallerIdentity, RateLimiter

__all__ = [
    "CallerIdentity",
    "IdempotencyGuard",
    "OperationResult",
    "OutboxDispatcher",
    "OutboxRelayWorker",
    "RateLimiter",
    "SQLAlchemyOutboxRepository",
    "WriteContext",
    "WritePipeline",
    "WriteRequest",
    "WriteResponse",
]
