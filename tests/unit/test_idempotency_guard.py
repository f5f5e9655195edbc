"""
Unit tests for IdempotencyGuard.

Covers fresh execution, replay, payload conflicts, concurrent duplicates,
release of failed attempts and the fail-safe behavior on store outages.
"""

from __future__ import annotations

import asyncio
import uuid
from datetime import UTC, datetime, timedelta

import pytest

from tests.helpers import FakeClock
from write_pipeline.error_handling import WritePipelineError
from write_pipeline.idempotency import (
    IdempotencyGuard,
    IdempotencyRepository,
    IdempotencyStatus,
    ResponseSnapshot,
)
from write_pipeline.memory_store import InMemoryCounterStore
from write_pipeline.protocols import CounterStoreUnavailableError

SCOPE = '["t-1","u-1","POST","/api/v1/tasks","K1"]'
FINGERPRINT = "fp-1"


class CountingOperation:
    """Operation that returns a fixed snapshot and counts invocations."""

    def __init__(
        self,
        status_code: int = 201,
        delay: float = 0.0,
        error: Exception | None = None,
    ) -> None:
        self.calls = 0
        self.status_code = status_code
        self.delay = delay
        self.error = error

    async def __call__(self) -> ResponseSnapshot:
        self.calls += 1
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        return ResponseSnapshot.capture(
            self.status_code,
            {"Content-Type": "application/json"},
            f'{{"call": {self.calls}}}'.encode(),
        )


@pytest.fixture
def store() -> InMemoryCounterStore:
    return InMemoryCounterStore()


@pytest.fixture
def repository(store: InMemoryCounterStore) -> IdempotencyRepository:
    return IdempotencyRepository(store, replay_window_seconds=600)


@pytest.fixture
def guard(repository: IdempotencyRepository) -> IdempotencyGuard:
    return IdempotencyGuard(repository, wait_timeout_seconds=1.0, poll_interval_seconds=0.01)


class TestExecution:
    async def test_first_request_executes_and_stores(
        self, guard: IdempotencyGuard, repository: IdempotencyRepository
    ) -> None:
        operation = CountingOperation()

        result = await guard.execute(SCOPE, FINGERPRINT, operation, uuid.uuid4())

        assert result.replayed is False
        assert result.response.status_code == 201
        stored = await repository.get(SCOPE)
        assert stored is not None
        assert stored.record.status is IdempotencyStatus.COMPLETED

    async def test_retry_replays_stored_response(self, guard: IdempotencyGuard) -> None:
        operation = CountingOperation()
        first_correlation = uuid.uuid4()

        first = await guard.execute(SCOPE, FINGERPRINT, operation, first_correlation)
        second = await guard.execute(SCOPE, FINGERPRINT, operation, uuid.uuid4())

        assert operation.calls == 1
        assert second.replayed is True
        assert second.response.body == first.response.body
        assert second.response.headers == first.response.headers
        assert second.original_correlation_id == str(first_correlation)

    async def test_different_payload_conflicts(self, guard: IdempotencyGuard) -> None:
        operation = CountingOperation()
        await guard.execute(SCOPE, FINGERPRINT, operation, uuid.uuid4())

        with pytest.raises(WritePipelineError) as exc_info:
            await guard.execute(SCOPE, "fp-other", operation, uuid.uuid4())

        assert exc_info.value.error_code == "IDEMPOTENCY_KEY_CONFLICT"
        assert operation.calls == 1

    async def test_scopes_are_independent(self, guard: IdempotencyGuard) -> None:
        operation = CountingOperation()

        await guard.execute(SCOPE, FINGERPRINT, operation, uuid.uuid4())
        other_scope = SCOPE.replace("t-1", "t-2")
        other = await guard.execute(other_scope, FINGERPRINT, operation, uuid.uuid4())

        assert other.replayed is False
        assert operation.calls == 2


class TestConcurrency:
    async def test_concurrent_duplicates_execute_once(self, guard: IdempotencyGuard) -> None:
        operation = CountingOperation(delay=0.05)

        results = await asyncio.gather(
            *(guard.execute(SCOPE, FINGERPRINT, operation, uuid.uuid4()) for _ in range(5))
        )

        assert operation.calls == 1
        assert sum(1 for r in results if not r.replayed) == 1
        assert len({r.response.body for r in results}) == 1

    async def test_pending_claim_times_out(
        self, repository: IdempotencyRepository
    ) -> None:
        guard = IdempotencyGuard(repository, wait_timeout_seconds=0.05, poll_interval_seconds=0.01)
        await repository.claim(SCOPE, FINGERPRINT, "other-request")
        operation = CountingOperation()

        with pytest.raises(WritePipelineError) as exc_info:
            await guard.execute(SCOPE, FINGERPRINT, operation, uuid.uuid4())

        assert exc_info.value.error_code == "IDEMPOTENCY_REQUEST_IN_PROGRESS"
        assert exc_info.value.error_detail.details["original_correlation_id"] == "other-request"
        assert operation.calls == 0

    async def test_pending_claim_with_other_payload_conflicts(
        self, guard: IdempotencyGuard, repository: IdempotencyRepository
    ) -> None:
        await repository.claim(SCOPE, "fp-other", "other-request")

        with pytest.raises(WritePipelineError) as exc_info:
            await guard.execute(SCOPE, FINGERPRINT, CountingOperation(), uuid.uuid4())

        assert exc_info.value.error_code == "IDEMPOTENCY_KEY_CONFLICT"


class TestFailedAttempts:
    async def test_exception_releases_claim(
        self, guard: IdempotencyGuard, repository: IdempotencyRepository
    ) -> None:
        failing = CountingOperation(error=RuntimeError("database down"))

        with pytest.raises(RuntimeError):
            await guard.execute(SCOPE, FINGERPRINT, failing, uuid.uuid4())

        assert await repository.get(SCOPE) is None
        retry = CountingOperation()
        result = await guard.execute(SCOPE, FINGERPRINT, retry, uuid.uuid4())
        assert result.replayed is False
        assert retry.calls == 1

    async def test_release_failure_keeps_original_error(
        self, guard: IdempotencyGuard, repository: IdempotencyRepository, mocker
    ) -> None:
        release = mocker.patch.object(
            repository, "release", side_effect=CounterStoreUnavailableError("gone")
        )
        failing = CountingOperation(error=RuntimeError("database down"))

        with pytest.raises(RuntimeError, match="database down"):
            await guard.execute(SCOPE, FINGERPRINT, failing, uuid.uuid4())

        release.assert_awaited_once()

    async def test_server_error_is_not_cached(
        self, guard: IdempotencyGuard, repository: IdempotencyRepository
    ) -> None:
        operation = CountingOperation(status_code=503)

        first = await guard.execute(SCOPE, FINGERPRINT, operation, uuid.uuid4())
        second = await guard.execute(SCOPE, FINGERPRINT, operation, uuid.uuid4())

        assert first.response.status_code == 503
        assert second.replayed is False
        assert operation.calls == 2
        assert await repository.get(SCOPE) is None

    async def test_client_error_is_cached(self, guard: IdempotencyGuard) -> None:
        operation = CountingOperation(status_code=422)

        await guard.execute(SCOPE, FINGERPRINT, operation, uuid.uuid4())
        second = await guard.execute(SCOPE, FINGERPRINT, operation, uuid.uuid4())

        assert second.replayed is True
        assert second.response.status_code == 422
        assert operation.calls == 1


class TestFailSafe:
    async def test_store_outage_refuses_write(
        self, guard: IdempotencyGuard, store: InMemoryCounterStore
    ) -> None:
        store.available = False
        operation = CountingOperation()

        with pytest.raises(WritePipelineError) as exc_info:
            await guard.execute(SCOPE, FINGERPRINT, operation, uuid.uuid4())

        assert exc_info.value.error_code == "COUNTER_STORE_UNAVAILABLE"
        assert exc_info.value.error_detail.details["step"] == "read_record"
        assert operation.calls == 0

    async def test_finalize_failure_still_returns_response(
        self, guard: IdempotencyGuard, store: InMemoryCounterStore
    ) -> None:
        async def write_then_lose_store() -> ResponseSnapshot:
            store.available = False
            return ResponseSnapshot.capture(201, {}, b"{}")

        result = await guard.execute(SCOPE, FINGERPRINT, write_then_lose_store, uuid.uuid4())

        assert result.replayed is False
        assert result.response.status_code == 201


class TestExpiry:
    async def test_expired_record_is_discarded(
        self, repository: IdempotencyRepository
    ) -> None:
        operation = CountingOperation()
        await IdempotencyGuard(repository).execute(SCOPE, FINGERPRINT, operation, uuid.uuid4())

        later = datetime.now(UTC) + timedelta(hours=1)
        guard = IdempotencyGuard(repository, now=lambda: later)
        result = await guard.execute(SCOPE, "fp-other", operation, uuid.uuid4())

        assert result.replayed is False
        assert operation.calls == 2


class FlakyFinalizeStore(InMemoryCounterStore):
    """Store whose first compare-and-set calls fail as if the connection dropped."""

    def __init__(self, clock: FakeClock, failures: int) -> None:
        super().__init__(clock=clock)
        self.failures = failures

    async def compare_and_set(
        self, key: str, expected: str | None, new_value: str, ttl_seconds: int
    ) -> bool:
        if self.failures > 0:
            self.failures -= 1
            raise CounterStoreUnavailableError("connection reset")
        return await super().compare_and_set(key, expected, new_value, ttl_seconds)


class GatedOperation:
    """Operation that blocks until released, so a request can be held in flight."""

    def __init__(self) -> None:
        self.calls = 0
        self.started = asyncio.Event()
        self.gate = asyncio.Event()

    async def __call__(self) -> ResponseSnapshot:
        self.calls += 1
        self.started.set()
        await self.gate.wait()
        return ResponseSnapshot.capture(201, {}, b'{"id": 1}')


class TestClaimLease:
    @pytest.fixture
    def clock(self) -> FakeClock:
        return FakeClock()

    @pytest.fixture
    def clocked_store(self, clock: FakeClock) -> InMemoryCounterStore:
        return InMemoryCounterStore(clock=clock)

    async def test_long_running_write_keeps_key(
        self, clocked_store: InMemoryCounterStore, clock: FakeClock
    ) -> None:
        repository = IdempotencyRepository(clocked_store, replay_window_seconds=600)
        guard = IdempotencyGuard(repository, wait_timeout_seconds=0.05, poll_interval_seconds=0.01)
        operation = GatedOperation()

        first = asyncio.create_task(guard.execute(SCOPE, FINGERPRINT, operation, uuid.uuid4()))
        await operation.started.wait()
        clock.advance(61)
        later = datetime.now(UTC) + timedelta(hours=1)
        retry_guard = IdempotencyGuard(
            repository, wait_timeout_seconds=0.05, poll_interval_seconds=0.01, now=lambda: later
        )

        duplicate = CountingOperation()
        with pytest.raises(WritePipelineError) as exc_info:
            await retry_guard.execute(SCOPE, FINGERPRINT, duplicate, uuid.uuid4())

        assert exc_info.value.error_code == "IDEMPOTENCY_REQUEST_IN_PROGRESS"
        assert duplicate.calls == 0
        operation.gate.set()
        assert (await first).replayed is False
        assert operation.calls == 1

    async def test_lease_renewed_while_operation_runs(
        self, clocked_store: InMemoryCounterStore, clock: FakeClock
    ) -> None:
        repository = IdempotencyRepository(clocked_store, replay_window_seconds=30)
        guard = IdempotencyGuard(
            repository,
            wait_timeout_seconds=0.05,
            poll_interval_seconds=0.01,
            lease_renew_interval_seconds=0.01,
        )
        operation = GatedOperation()

        first = asyncio.create_task(guard.execute(SCOPE, FINGERPRINT, operation, uuid.uuid4()))
        await operation.started.wait()
        # Well past the 30 s lease in total, renewed in between
        for _ in range(4):
            clock.advance(20)
            await asyncio.sleep(0.05)

        duplicate = CountingOperation()
        with pytest.raises(WritePipelineError) as exc_info:
            await guard.execute(SCOPE, FINGERPRINT, duplicate, uuid.uuid4())
        assert exc_info.value.error_code == "IDEMPOTENCY_REQUEST_IN_PROGRESS"
        assert duplicate.calls == 0

        operation.gate.set()
        await first
        replay = await guard.execute(SCOPE, FINGERPRINT, operation, uuid.uuid4())
        assert replay.replayed is True
        assert operation.calls == 1

    async def test_renew_fails_once_claim_replaced(
        self, clocked_store: InMemoryCounterStore
    ) -> None:
        repository = IdempotencyRepository(clocked_store, replay_window_seconds=30)
        claim = await repository.claim(SCOPE, FINGERPRINT, "first")
        assert claim is not None
        assert await repository.renew(claim) is True

        await clocked_store.delete_key(repository.store_key(SCOPE))
        await repository.claim(SCOPE, FINGERPRINT, "second")

        assert await repository.renew(claim) is False


class TestFinalizeFailure:
    async def test_unfinalized_write_keeps_key_claimed(self) -> None:
        clock = FakeClock()
        store = InMemoryCounterStore(clock=clock)
        repository = IdempotencyRepository(store, replay_window_seconds=600)
        guard = IdempotencyGuard(repository, wait_timeout_seconds=0.05, poll_interval_seconds=0.01)
        operation = CountingOperation()

        async def write_then_lose_store() -> ResponseSnapshot:
            store.available = False
            return await operation()

        result = await guard.execute(SCOPE, FINGERPRINT, write_then_lose_store, uuid.uuid4())
        assert result.response.status_code == 201

        store.available = True
        clock.advance(61)

        with pytest.raises(WritePipelineError) as exc_info:
            await guard.execute(SCOPE, FINGERPRINT, write_then_lose_store, uuid.uuid4())

        assert exc_info.value.error_code == "IDEMPOTENCY_REQUEST_IN_PROGRESS"
        assert operation.calls == 1

    async def test_finalize_retried_after_transient_failure(self) -> None:
        store = FlakyFinalizeStore(FakeClock(), failures=2)
        repository = IdempotencyRepository(store, replay_window_seconds=600)
        guard = IdempotencyGuard(repository, poll_interval_seconds=0.01, finalize_attempts=3)
        operation = CountingOperation()

        await guard.execute(SCOPE, FINGERPRINT, operation, uuid.uuid4())
        replay = await guard.execute(SCOPE, FINGERPRINT, operation, uuid.uuid4())

        assert replay.replayed is True
        assert operation.calls == 1
