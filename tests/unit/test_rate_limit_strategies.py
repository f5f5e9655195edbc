"""Unit tests for the fixed window, sliding window and token bucket algorithms."""

from __future__ import annotations

import pytest

from tests.helpers import ContendedCounterStore, FakeClock
from write_pipeline.memory_store import InMemoryCounterStore
from write_pipeline.protocols import CounterStoreUnavailableError
from write_pipeline.rate_limiting import RateLimitStrategy
from write_pipeline.rate_limiting.strategies import (
    FixedWindowAlgorithm,
    SlidingWindowAlgorithm,
    TokenBucketAlgorithm,
    build_algorithm,
)

WINDOW = 60
# Start of a window, so elapsed fractions in tests are exact
WINDOW_START = 60 * 16_667.0


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock(start=WINDOW_START)


@pytest.fixture
def store(clock: FakeClock) -> InMemoryCounterStore:
    return InMemoryCounterStore(clock=clock)


class TestFixedWindow:
    async def test_admits_up_to_limit(self, store: InMemoryCounterStore, clock: FakeClock) -> None:
        algorithm = FixedWindowAlgorithm(store)
        clock.advance(40)

        outcomes = [await algorithm.hit("k", 3, WINDOW, 3, clock()) for _ in range(4)]

        assert [o.allowed for o in outcomes] == [True, True, True, False]
        assert [o.remaining for o in outcomes] == [2, 1, 0, 0]
        assert outcomes[-1].retry_after == 20

    async def test_new_window_resets(self, store: InMemoryCounterStore, clock: FakeClock) -> None:
        algorithm = FixedWindowAlgorithm(store)
        for _ in range(3):
            await algorithm.hit("k", 3, WINDOW, 3, clock())
        assert not (await algorithm.hit("k", 3, WINDOW, 3, clock())).allowed

        clock.advance(WINDOW)

        assert (await algorithm.hit("k", 3, WINDOW, 3, clock())).allowed


class TestSlidingWindow:
    async def test_rejects_over_limit_and_rolls_back(
        self, store: InMemoryCounterStore, clock: FakeClock
    ) -> None:
        algorithm = SlidingWindowAlgorithm(store)

        for _ in range(10):
            assert (await algorithm.hit("k", 10, WINDOW, 10, clock())).allowed
        rejected = await algorithm.hit("k", 10, WINDOW, 10, clock())

        assert not rejected.allowed
        assert rejected.remaining == 0
        window_index = int(clock() // WINDOW)
        assert await store.get(f"k:sw:{window_index}") == "10"

    async def test_previous_window_is_weighted(
        self, store: InMemoryCounterStore, clock: FakeClock
    ) -> None:
        algorithm = SlidingWindowAlgorithm(store)
        for _ in range(10):
            await algorithm.hit("k", 10, WINDOW, 10, clock())

        # Start of next window: previous window still counts in full
        clock.advance(WINDOW)
        blocked = await algorithm.hit("k", 10, WINDOW, 10, clock())
        assert not blocked.allowed
        # Previous weight must drop to 9 before one more fits: 10% into the window
        assert blocked.retry_after == 6

        # Halfway: previous contributes 5
        clock.advance(WINDOW / 2)
        admitted = await algorithm.hit("k", 10, WINDOW, 10, clock())
        assert admitted.allowed
        assert admitted.remaining == 4


class TestTokenBucket:
    async def test_burst_then_refill(self, store: InMemoryCounterStore, clock: FakeClock) -> None:
        algorithm = TokenBucketAlgorithm(store)

        burst = [await algorithm.hit("k", 10, WINDOW, 15, clock()) for _ in range(15)]
        assert all(o.allowed for o in burst)
        assert burst[0].remaining == 14
        assert burst[-1].remaining == 0

        rejected = await algorithm.hit("k", 10, WINDOW, 15, clock())
        assert not rejected.allowed
        assert 6 <= rejected.retry_after <= 7

        # 10 tokens per 60 s: one token after 6 s
        clock.advance(7)
        assert (await algorithm.hit("k", 10, WINDOW, 15, clock())).allowed

    async def test_refill_capped_at_capacity(
        self, store: InMemoryCounterStore, clock: FakeClock
    ) -> None:
        algorithm = TokenBucketAlgorithm(store)
        await algorithm.hit("k", 10, WINDOW, 5, clock())

        clock.advance(30)  # Enough refill for 5 tokens
        outcome = await algorithm.hit("k", 10, WINDOW, 5, clock())

        assert outcome.remaining == 4

    async def test_contention_surfaces_as_unavailable(self) -> None:
        store = ContendedCounterStore()
        algorithm = TokenBucketAlgorithm(store, max_attempts=3)

        with pytest.raises(CounterStoreUnavailableError):
            await algorithm.hit("k", 10, WINDOW, 15, 0.0)
        assert store.cas_calls == 3


@pytest.mark.parametrize(
    "strategy, expected_type",
    [
        (RateLimitStrategy.FIXED_WINDOW, FixedWindowAlgorithm),
        (RateLimitStrategy.SLIDING_WINDOW, SlidingWindowAlgorithm),
        (RateLimitStrategy.TOKEN_BUCKET, TokenBucketAlgorithm),
    ],
)
def test_build_algorithm(strategy: RateLimitStrategy, expected_type: type) -> None:
    algorithm = build_algorithm(strategy, InMemoryCounterStore(), token_bucket_attempts=7)

    assert isinstance(algorithm, expected_type)
    assert algorithm.strategy is strategy
