"""
Idempotency guard for critical write operations.

For a fixed scope key at most one execution of the wrapped operation is
observable. Concurrent duplicates lose the atomic claim and wait for the
winner's record, then replay it. Unlike the rate limiter, the guard fails
safe: when the store cannot be reached the operation is refused rather than
risking a duplicate write.
"""

from __future__ import annotations

import asyncio
import time
from collections.abc import Awaitable, Callable
from datetime import UTC, datetime
from typing import TypeVar
from uuid import UUID

from write_pipeline.config import Settings
from write_pipeline.error_handling import (
    raise_counter_store_unavailable,
    raise_idempotency_key_conflict,
    raise_idempotency_request_in_progress,
)
from write_pipeline.idempotency.models import GuardResult, IdempotencyStatus, ResponseSnapshot
from write_pipeline.idempotency.repository import IdempotencyRepository, StoredRecord
from write_pipeline.logging_utils import create_service_logger
from write_pipeline.metrics import get_metrics
from write_pipeline.protocols import CounterStoreProtocol, CounterStoreUnavailableError

logger = create_service_logger("write_pipeline.idempotency.guard")

SERVICE_NAME = "write_pipeline"

T = TypeVar("T")

GuardedOperation = Callable[[], Awaitable[ResponseSnapshot]]


class IdempotencyGuard:
    def __init__(
        self,
        repository: IdempotencyRepository,
        *,
        wait_timeout_seconds: float = 5.0,
        poll_interval_seconds: float = 0.05,
        lease_renew_interval_seconds: float = 20.0,
        finalize_attempts: int = 3,
        now: Callable[[], datetime] = lambda: datetime.now(UTC),
    ) -> None:
        self.repository = repository
        self.wait_timeout_seconds = wait_timeout_seconds
        self.poll_interval_seconds = poll_interval_seconds
        self.lease_renew_interval_seconds = lease_renew_interval_seconds
        self.finalize_attempts = finalize_attempts
        self._now = now

    @classmethod
    def from_settings(cls, store: CounterStoreProtocol, settings: Settings) -> IdempotencyGuard:
        repository = IdempotencyRepository(
            store,
            key_prefix=settings.IDEMPOTENCY_KEY_PREFIX,
            replay_window_seconds=settings.IDEMPOTENCY_REPLAY_WINDOW_SECONDS,
        )
        return cls(
            repository,
            wait_timeout_seconds=settings.IDEMPOTENCY_WAIT_TIMEOUT_SECONDS,
            poll_interval_seconds=settings.IDEMPOTENCY_POLL_INTERVAL_SECONDS,
            lease_renew_interval_seconds=settings.IDEMPOTENCY_LEASE_RENEW_INTERVAL_SECONDS,
            finalize_attempts=settings.IDEMPOTENCY_FINALIZE_ATTEMPTS,
        )

    async def execute(
        self,
        scope_key: str,
        request_fingerprint: str,
        operation: GuardedOperation,
        correlation_id: UUID,
    ) -> GuardResult:
        """
        Run ``operation`` at most once for ``scope_key``.

        Args:
            scope_key: Composite tenant/actor/route/key scope
            request_fingerprint: Hash of the normalized request
            operation: Coroutine factory producing the response snapshot
            correlation_id: Correlation id of this physical request

        Returns:
            GuardResult with ``replayed=True`` when a stored response was returned

        Raises:
            WritePipelineError: IDEMPOTENCY_KEY_CONFLICT for a different payload,
                IDEMPOTENCY_REQUEST_IN_PROGRESS when the first request does not
                finish in time, COUNTER_STORE_UNAVAILABLE when the store is down
        """
        deadline = time.monotonic() + self.wait_timeout_seconds

        while True:
            stored = await self._guarded_store_call(
                self.repository.get(scope_key), "read_record", correlation_id
            )

            if (
                stored is not None
                and stored.record.status is IdempotencyStatus.COMPLETED
                and stored.record.is_expired(self._now())
            ):
                await self._guarded_store_call(
                    self.repository.discard_expired(stored), "discard_expired", correlation_id
                )
                stored = None

            if stored is not None:
                record = stored.record
                if record.request_fingerprint != request_fingerprint:
                    self._count("conflict")
                    logger.warning(
                        "Idempotency key reused with a different payload",
                        extra={
                            "correlation_id": str(correlation_id),
                            "original_correlation_id": record.correlation_id,
                        },
                    )
                    raise_idempotency_key_conflict(
                        service=SERVICE_NAME,
                        operation="idempotent_execute",
                        correlation_id=correlation_id,
                        original_correlation_id=record.correlation_id,
                    )

                if record.status is IdempotencyStatus.COMPLETED and record.response is not None:
                    self._count("replayed")
                    logger.info(
                        "Replaying stored response for idempotency key",
                        extra={
                            "correlation_id": str(correlation_id),
                            "original_correlation_id": record.correlation_id,
                            "status_code": record.response.status_code,
                        },
                    )
                    return GuardResult(
                        response=record.response,
                        replayed=True,
                        original_correlation_id=record.correlation_id,
                    )

                if time.monotonic() >= deadline:
                    self._count("in_progress")
                    raise_idempotency_request_in_progress(
                        service=SERVICE_NAME,
                        operation="idempotent_execute",
                        correlation_id=correlation_id,
                        original_correlation_id=record.correlation_id,
                        waited_seconds=self.wait_timeout_seconds,
                    )
                await asyncio.sleep(self.poll_interval_seconds)
                continue

            claim = await self._guarded_store_call(
                self.repository.claim(scope_key, request_fingerprint, str(correlation_id)),
                "claim_record",
                correlation_id,
            )
            if claim is None:
                # Lost the race; the next read sees the winner's record
                continue

            return await self._run_claimed(claim, operation, correlation_id)

    async def _run_claimed(
        self,
        claim: StoredRecord,
        operation: GuardedOperation,
        correlation_id: UUID,
    ) -> GuardResult:
        stop_renewing = asyncio.Event()
        heartbeat = asyncio.create_task(self._keep_claim(claim, stop_renewing, correlation_id))
        try:
            try:
                response = await operation()
            finally:
                stop_renewing.set()
                await heartbeat
        except BaseException:
            await self._release(claim, correlation_id)
            raise

        if response.status_code >= 500:
            # Server errors are retryable under the same key
            await self._release(claim, correlation_id)
            self._count("executed")
            return GuardResult(
                response=response, replayed=False, original_correlation_id=str(correlation_id)
            )

        await self._finalize(claim, response, correlation_id)

        self._count("executed")
        return GuardResult(
            response=response, replayed=False, original_correlation_id=str(correlation_id)
        )

    async def _keep_claim(
        self, claim: StoredRecord, stop: asyncio.Event, correlation_id: UUID
    ) -> None:
        """Renew the claim's lease until ``stop`` is set."""
        while True:
            try:
                await asyncio.wait_for(stop.wait(), timeout=self.lease_renew_interval_seconds)
                return
            except asyncio.TimeoutError:
                pass

            try:
                if not await self.repository.renew(claim):
                    logger.warning(
                        "Idempotency claim lost while the operation was running",
                        extra={"correlation_id": str(correlation_id)},
                    )
                    return
            except CounterStoreUnavailableError as e:
                logger.warning(
                    "Failed to renew idempotency claim",
                    extra={"correlation_id": str(correlation_id), "error": str(e)},
                )

    async def _finalize(
        self, claim: StoredRecord, response: ResponseSnapshot, correlation_id: UUID
    ) -> None:
        for attempt in range(1, self.finalize_attempts + 1):
            try:
                await self.repository.finalize(claim, response)
                return
            except CounterStoreUnavailableError as e:
                logger.warning(
                    "Failed to finalize idempotency record",
                    extra={
                        "correlation_id": str(correlation_id),
                        "attempt": attempt,
                        "error": str(e),
                    },
                )
            if attempt < self.finalize_attempts:
                await asyncio.sleep(self.poll_interval_seconds)

        # The write committed; the pending claim keeps the key until its lease lapses
        logger.error(
            "Idempotency record left pending after successful write",
            extra={
                "correlation_id": str(correlation_id),
                "attempts": self.finalize_attempts,
                "lease_seconds": self.repository.replay_window_seconds,
            },
        )

    async def _release(self, claim: StoredRecord, correlation_id: UUID) -> None:
        try:
            await self.repository.release(claim)
        except CounterStoreUnavailableError as e:
            logger.error(
                "Failed to release idempotency claim; it holds the key until its lease lapses",
                extra={"correlation_id": str(correlation_id), "error": str(e)},
            )

    async def _guarded_store_call(
        self, call: Awaitable[T], step: str, correlation_id: UUID
    ) -> T:
        try:
            return await call
        except CounterStoreUnavailableError as e:
            self._count("refused")
            logger.error(
                "Idempotency store unavailable, refusing write",
                extra={"step": step, "correlation_id": str(correlation_id), "error": str(e)},
            )
            raise_counter_store_unavailable(
                service=SERVICE_NAME,
                operation="idempotent_execute",
                message="Idempotency store unavailable; write refused to avoid duplication",
                correlation_id=correlation_id,
                step=step,
            )

    @staticmethod
    def _count(outcome: str) -> None:
        get_metrics()["idempotency_outcomes"].labels(outcome=outcome).inc()
