"""
Idempotency record storage on top of the counter store.

Records live under ``<prefix>:<sha256(scope_key)>`` with TTL-based expiry.
A pending claim is leased for the replay window and renewed while the
operation runs, so it only lapses on its own when its owner died. A completed
record lives for the replay window from completion. Every store failure
propagates as CounterStoreUnavailableError.
"""

from __future__ import annotations

import hashlib
from collections.abc import Callable
from datetime import UTC, datetime, timedelta

from write_pipeline.idempotency.models import (
    IdempotencyRecord,
    IdempotencyStatus,
    ResponseSnapshot,
)
from write_pipeline.logging_utils import create_service_logger
from write_pipeline.protocols import CounterStoreProtocol

logger = create_service_logger("write_pipeline.idempotency.repository")


class StoredRecord:
    """A decoded record together with the exact stored value, used for compare-and-set."""

    __slots__ = ("record", "raw")

    def __init__(self, record: IdempotencyRecord, raw: str) -> None:
        self.record = record
        self.raw = raw


class IdempotencyRepository:
    def __init__(
        self,
        store: CounterStoreProtocol,
        *,
        key_prefix: str = "idempotency",
        replay_window_seconds: int = 600,
        now: Callable[[], datetime] = lambda: datetime.now(UTC),
    ) -> None:
        self.store = store
        self.key_prefix = key_prefix
        self.replay_window_seconds = replay_window_seconds
        self._now = now

    def store_key(self, scope_key: str) -> str:
        digest = hashlib.sha256(scope_key.encode("utf-8")).hexdigest()
        return f"{self.key_prefix}:{digest}"

    async def get(self, scope_key: str) -> StoredRecord | None:
        raw = await self.store.get(self.store_key(scope_key))
        if raw is None:
            return None
        return StoredRecord(IdempotencyRecord.model_validate_json(raw), raw)

    async def claim(
        self,
        scope_key: str,
        request_fingerprint: str,
        correlation_id: str,
    ) -> StoredRecord | None:
        """
        Atomically create a PENDING record.

        Returns:
            The stored claim if this caller won it, None if a record already exists
        """
        now = self._now()
        record = IdempotencyRecord(
            scope_key=scope_key,
            request_fingerprint=request_fingerprint,
            status=IdempotencyStatus.PENDING,
            correlation_id=correlation_id,
            created_at=now,
            expires_at=now + timedelta(seconds=self.replay_window_seconds),
        )
        raw = record.model_dump_json()
        won = await self.store.set_if_not_exists(
            self.store_key(scope_key), raw, self.replay_window_seconds
        )
        if not won:
            return None
        return StoredRecord(record, raw)

    async def renew(self, claim: StoredRecord) -> bool:
        """
        Extend the lease on our PENDING claim, updating ``claim`` in place.

        Returns False when the stored value is no longer ours.
        """
        renewed = claim.record.model_copy(
            update={"expires_at": self._now() + timedelta(seconds=self.replay_window_seconds)}
        )
        raw = renewed.model_dump_json()
        swapped = await self.store.compare_and_set(
            self.store_key(claim.record.scope_key), claim.raw, raw, self.replay_window_seconds
        )
        if swapped:
            claim.record = renewed
            claim.raw = raw
        return swapped

    async def finalize(self, claim: StoredRecord, response: ResponseSnapshot) -> bool:
        """
        Transition the claimed record PENDING -> COMPLETED with a fresh replay window.

        Returns False when the claim is no longer ours (expired and re-claimed).
        """
        now = self._now()
        completed = claim.record.model_copy(
            update={
                "status": IdempotencyStatus.COMPLETED,
                "response": response,
                "expires_at": now + timedelta(seconds=self.replay_window_seconds),
            }
        )
        swapped = await self.store.compare_and_set(
            self.store_key(claim.record.scope_key),
            claim.raw,
            completed.model_dump_json(),
            self.replay_window_seconds,
        )
        if not swapped:
            logger.warning(
                "Idempotency claim lost before finalize",
                extra={"correlation_id": claim.record.correlation_id},
            )
        return swapped

    async def release(self, claim: StoredRecord) -> bool:
        """Drop our PENDING claim so the same key can be retried."""
        key = self.store_key(claim.record.scope_key)
        current = await self.store.get(key)
        if current != claim.raw:
            return False
        return await self.store.delete_key(key) > 0

    async def discard_expired(self, stored: StoredRecord) -> None:
        """Remove a COMPLETED record whose replay window passed but that the store still holds."""
        key = self.store_key(stored.record.scope_key)
        if await self.store.get(key) == stored.raw:
            await self.store.delete_key(key)
