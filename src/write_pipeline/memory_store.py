"""
Process-local counter store.

Used by tests and single-process deployments (``USE_IN_MEMORY_STORE``). Each
operation completes without yielding to the event loop, which makes it atomic
with respect to other coroutines.
"""

from __future__ import annotations

import heapq
import re
import time
from collections.abc import Callable

from write_pipeline.protocols import CounterStoreProtocol, CounterStoreUnavailableError


def compile_glob(pattern: str) -> re.Pattern[str]:
    """Translate a Redis glob into a regex: ``*``, ``?``, ``[...]`` and backslash escapes."""
    parts: list[str] = []
    i = 0
    while i < len(pattern):
        char = pattern[i]
        if char == "\\" and i + 1 < len(pattern):
            parts.append(re.escape(pattern[i + 1]))
            i += 2
            continue
        if char == "*":
            parts.append(".*")
        elif char == "?":
            parts.append(".")
        elif char == "[" and "]" in pattern[i + 1 :]:
            end = pattern.index("]", i + 1)
            body = pattern[i + 1 : end].replace("\\", "\\\\").replace("[", "\\[")
            parts.append(f"[{body}]")
            i = end + 1
            continue
        else:
            parts.append(re.escape(char))
        i += 1
    return re.compile("".join(parts), re.DOTALL)


class InMemoryCounterStore(CounterStoreProtocol):
    """Dictionary-backed store with per-key expiry and a switch to simulate an outage."""

    def __init__(self, clock: Callable[[], float] = time.monotonic) -> None:
        self._clock = clock
        self._values: dict[str, str] = {}
        self._expires_at: dict[str, float] = {}
        self._expiry_heap: list[tuple[float, str]] = []
        self.available = True

    def _check_available(self) -> None:
        if not self.available:
            raise CounterStoreUnavailableError("In-memory counter store is unavailable")

    def _purge_if_expired(self, key: str) -> None:
        expires_at = self._expires_at.get(key)
        if expires_at is not None and expires_at <= self._clock():
            self._values.pop(key, None)
            self._expires_at.pop(key, None)

    def _sweep_expired(self) -> None:
        """Drop every key whose expiry has passed; stale heap entries are skipped."""
        now = self._clock()
        while self._expiry_heap and self._expiry_heap[0][0] <= now:
            expires_at, key = heapq.heappop(self._expiry_heap)
            if self._expires_at.get(key) == expires_at:
                self._values.pop(key, None)
                self._expires_at.pop(key, None)

    def _write(self, key: str, value: str, ttl_seconds: int) -> None:
        self._sweep_expired()
        expires_at = self._clock() + ttl_seconds
        self._values[key] = value
        self._expires_at[key] = expires_at
        heapq.heappush(self._expiry_heap, (expires_at, key))

    async def get(self, key: str) -> str | None:
        self._check_available()
        self._purge_if_expired(key)
        return self._values.get(key)

    async def set_if_not_exists(self, key: str, value: str, ttl_seconds: int) -> bool:
        self._check_available()
        self._purge_if_expired(key)
        if key in self._values:
            return False
        self._write(key, value, ttl_seconds)
        return True

    async def compare_and_set(
        self,
        key: str,
        expected: str | None,
        new_value: str,
        ttl_seconds: int,
    ) -> bool:
        self._check_available()
        self._purge_if_expired(key)
        if self._values.get(key) != expected:
            return False
        self._write(key, new_value, ttl_seconds)
        return True

    async def incr_with_ttl(self, key: str, amount: int, ttl_seconds: int) -> int:
        self._check_available()
        self._purge_if_expired(key)
        if key not in self._values:
            self._write(key, str(amount), ttl_seconds)
            return amount
        value = int(self._values[key]) + amount
        self._values[key] = str(value)
        return value

    async def delete_key(self, key: str) -> int:
        self._check_available()
        self._purge_if_expired(key)
        self._expires_at.pop(key, None)
        return 1 if self._values.pop(key, None) is not None else 0

    async def scan_pattern(self, pattern: str) -> list[str]:
        self._check_available()
        self._sweep_expired()
        matcher = compile_glob(pattern)
        return [key for key in self._values if matcher.fullmatch(key)]

    async def ping(self) -> bool:
        return self.available

    def ttl(self, key: str) -> float | None:
        """Seconds until ``key`` expires, or None when absent."""
        self._purge_if_expired(key)
        if key not in self._values:
            return None
        return self._expires_at[key] - self._clock()

    def key_count(self) -> int:
        """Number of keys currently held, including any not yet swept."""
        return len(self._values)
