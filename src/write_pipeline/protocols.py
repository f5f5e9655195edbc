"""
Behavioral contracts for the collaborators the write pipeline is built on.

The counter store backs both the rate limiter and the idempotency guard; the
publish sink is the external broker the outbox dispatcher delivers to.
"""

from __future__ import annotations

from datetime import datetime
from typing import TYPE_CHECKING, Any, Protocol
from uuid import UUID

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession

    from write_pipeline.outbox.models import OutboxEvent


GLOB_SPECIAL_CHARACTERS = frozenset("*?[]\\")


def escape_glob(value: str) -> str:
    """Escape ``value`` so it matches itself literally inside a scan pattern."""
    return "".join(f"\\{char}" if char in GLOB_SPECIAL_CHARACTERS else char for char in value)


class CounterStoreUnavailableError(Exception):
    """The shared counter store could not be reached or failed mid-operation."""


class PublishSinkUnavailableError(Exception):
    """The publish sink is down; the event is fine and should be retried."""


class PublishPayloadError(Exception):
    """The event payload was rejected by the sink (serialization, schema, size)."""


class CounterStoreProtocol(Protocol):
    """
    Atomic key/value store shared by concurrent callers.

    Every method raises CounterStoreUnavailableError when the store cannot
    serve the request.
    """

    async def get(self, key: str) -> str | None:
        """Return the value stored under ``key`` or None when absent or expired."""
        ...

    async def set_if_not_exists(self, key: str, value: str, ttl_seconds: int) -> bool:
        """
        Atomically create ``key`` with a TTL.

        Returns:
            True if the key was created, False if it already existed
        """
        ...

    async def compare_and_set(
        self,
        key: str,
        expected: str | None,
        new_value: str,
        ttl_seconds: int,
    ) -> bool:
        """
        Write ``new_value`` only if the current value equals ``expected``.

        ``expected=None`` means the key must be absent.
        """
        ...

    async def incr_with_ttl(self, key: str, amount: int, ttl_seconds: int) -> int:
        """Atomically add ``amount`` and return the new value; the TTL is set on creation."""
        ...

    async def delete_key(self, key: str) -> int:
        """Delete ``key``; returns the number of keys removed (0 or 1)."""
        ...

    async def scan_pattern(self, pattern: str) -> list[str]:
        """Return all keys matching a Redis-style glob (backslash escapes a character)."""
        ...

    async def ping(self) -> bool:
        """Health check; never raises."""
        ...


class PublishSinkProtocol(Protocol):
    """External broker that receives outbox events."""

    async def publish(self, event: OutboxEvent) -> None:
        """
        Deliver one event.

        Raises:
            PublishSinkUnavailableError: The sink is unreachable (retryable)
            PublishPayloadError: The sink rejected the payload itself
        """
        ...


class OutboxRepositoryProtocol(Protocol):
    """Ledger operations for the transactional outbox."""

    async def append(
        self,
        session: AsyncSession,
        tenant_id: str,
        event_type: str,
        event_name: str,
        payload: dict[str, Any],
        correlation_id: str,
    ) -> UUID:
        """Insert a pending row inside the caller's active transaction."""
        ...

    async def claim_pending(self, batch_size: int, claim_token: str) -> list[OutboxEvent]:
        """Move up to ``batch_size`` oldest pending rows to processing and return them."""
        ...

    async def mark_completed(self, event_id: UUID, claim_token: str) -> bool:
        """Finish a claimed row; returns False if the claim was lost."""
        ...

    async def mark_failed(self, event_id: UUID, claim_token: str, error_message: str) -> int | None:
        """Fail a claimed row; returns the new retry_count or None if the claim was lost."""
        ...

    async def requeue_failed(self, batch_size: int, max_retries: int) -> int:
        """Reset failed rows with retry_count below ``max_retries`` to pending."""
        ...

    async def release_stale_claims(self, older_than: datetime) -> int:
        """Return processing rows claimed before ``older_than`` to pending."""
        ...

    async def get_status_counts(self) -> dict[str, int]:
        """Row counts keyed by status value."""
        ...

    async def count_exhausted(self, max_retries: int) -> int:
        """Failed rows that can no longer be retried automatically."""
        ...

    async def get_oldest_pending_created_at(self) -> datetime | None:
        """Creation time of the oldest pending row."""
        ...

    async def get_event_by_id(self, event_id: UUID) -> OutboxEvent | None:
        """Retrieve one event."""
        ...

    async def list_failed(
        self, limit: int, max_retries: int | None = None
    ) -> list[OutboxEvent]:
        """Failed rows, oldest first; only exhausted ones when ``max_retries`` is given."""
        ...

    async def requeue_event(self, event_id: UUID) -> bool:
        """Operator override: reset a failed row to pending with a fresh retry budget."""
        ...
