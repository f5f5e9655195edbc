"""
Rate-limiting algorithms, one class per RateLimitStrategy.

Each algorithm keeps its state in the counter store under keys derived from
the caller's base key and only uses the store's atomic primitives.
"""

from __future__ import annotations

import json
import math
from abc import ABC, abstractmethod
from typing import ClassVar, NamedTuple

from write_pipeline.protocols import CounterStoreProtocol, CounterStoreUnavailableError
from write_pipeline.rate_limiting.models import RateLimitStrategy


class StrategyOutcome(NamedTuple):
    allowed: bool
    remaining: int
    retry_after: int


class RateLimitAlgorithm(ABC):
    strategy: ClassVar[RateLimitStrategy]

    def __init__(self, store: CounterStoreProtocol) -> None:
        self.store = store

    @abstractmethod
    async def hit(
        self,
        key: str,
        limit: int,
        window_seconds: int,
        capacity: int,
        now: float,
    ) -> StrategyOutcome:
        """Count one request for ``key`` and decide whether it is admitted."""


class FixedWindowAlgorithm(RateLimitAlgorithm):
    """Counter per wall-clock window; bursts at window edges are accepted."""

    strategy = RateLimitStrategy.FIXED_WINDOW

    async def hit(
        self,
        key: str,
        limit: int,
        window_seconds: int,
        capacity: int,
        now: float,
    ) -> StrategyOutcome:
        window_index = int(now // window_seconds)
        count = await self.store.incr_with_ttl(
            f"{key}:fw:{window_index}", 1, window_seconds + 1
        )
        if count <= limit:
            return StrategyOutcome(True, limit - count, 0)

        window_end = (window_index + 1) * window_seconds
        return StrategyOutcome(False, 0, max(1, math.ceil(window_end - now)))


class SlidingWindowAlgorithm(RateLimitAlgorithm):
    """
    Weighted two-window counter.

    The estimate is the current window's count plus the previous window's
    count weighted by the share of it still inside the rolling window.
    Rejected requests are taken back out of the current count.
    """

    strategy = RateLimitStrategy.SLIDING_WINDOW

    async def hit(
        self,
        key: str,
        limit: int,
        window_seconds: int,
        capacity: int,
        now: float,
    ) -> StrategyOutcome:
        window_index = int(now // window_seconds)
        elapsed_fraction = (now - window_index * window_seconds) / window_seconds
        current_key = f"{key}:sw:{window_index}"

        current = await self.store.incr_with_ttl(current_key, 1, 2 * window_seconds + 1)
        previous_raw = await self.store.get(f"{key}:sw:{window_index - 1}")
        previous = int(previous_raw) if previous_raw else 0

        weighted_previous = previous * (1.0 - elapsed_fraction)
        estimated = weighted_previous + current
        if estimated <= limit:
            return StrategyOutcome(True, max(0, math.floor(limit - estimated)), 0)

        admitted = await self.store.incr_with_ttl(current_key, -1, 2 * window_seconds + 1)
        return StrategyOutcome(
            False,
            0,
            self._retry_after(admitted, previous, limit, window_seconds, elapsed_fraction),
        )

    @staticmethod
    def _retry_after(
        admitted: int,
        previous: int,
        limit: int,
        window_seconds: int,
        elapsed_fraction: float,
    ) -> int:
        until_next_window = window_seconds * (1.0 - elapsed_fraction)
        if admitted + 1 > limit or previous == 0:
            return max(1, math.ceil(until_next_window))
        # Time until the previous window's weight decays enough to admit one more
        target_fraction = 1.0 - (limit - admitted - 1) / previous
        wait = window_seconds * (target_fraction - elapsed_fraction)
        return max(1, math.ceil(min(wait, until_next_window)))


class TokenBucketAlgorithm(RateLimitAlgorithm):
    """
    Bucket of ``capacity`` tokens refilled at ``limit / window`` tokens per second.

    State is a JSON document updated with compare-and-set; contention beyond
    ``max_attempts`` surfaces as CounterStoreUnavailableError.
    """

    strategy = RateLimitStrategy.TOKEN_BUCKET

    def __init__(self, store: CounterStoreProtocol, max_attempts: int = 5) -> None:
        super().__init__(store)
        self.max_attempts = max_attempts

    async def hit(
        self,
        key: str,
        limit: int,
        window_seconds: int,
        capacity: int,
        now: float,
    ) -> StrategyOutcome:
        bucket_key = f"{key}:tb"
        refill_rate = limit / window_seconds
        ttl_seconds = math.ceil(capacity / refill_rate) + 1

        for _ in range(self.max_attempts):
            raw = await self.store.get(bucket_key)
            if raw is None:
                tokens = float(capacity)
            else:
                state = json.loads(raw)
                elapsed = max(0.0, now - float(state["last_refill"]))
                tokens = min(float(capacity), float(state["tokens"]) + elapsed * refill_rate)

            if tokens < 1.0:
                return StrategyOutcome(False, 0, max(1, math.ceil((1.0 - tokens) / refill_rate)))

            new_state = json.dumps({"tokens": tokens - 1.0, "last_refill": now})
            if await self.store.compare_and_set(bucket_key, raw, new_state, ttl_seconds):
                return StrategyOutcome(True, math.floor(tokens - 1.0), 0)

        raise CounterStoreUnavailableError(
            f"Token bucket '{bucket_key}' stayed contended for {self.max_attempts} attempts"
        )


ALGORITHMS: dict[RateLimitStrategy, type[RateLimitAlgorithm]] = {
    RateLimitStrategy.FIXED_WINDOW: FixedWindowAlgorithm,
    RateLimitStrategy.SLIDING_WINDOW: SlidingWindowAlgorithm,
    RateLimitStrategy.TOKEN_BUCKET: TokenBucketAlgorithm,
}


def build_algorithm(
    strategy: RateLimitStrategy,
    store: CounterStoreProtocol,
    token_bucket_attempts: int = 5,
) -> RateLimitAlgorithm:
    if strategy is RateLimitStrategy.TOKEN_BUCKET:
        return TokenBucketAlgorithm(store, max_attempts=token_bucket_attempts)
    return ALGORITHMS[strategy](store)
