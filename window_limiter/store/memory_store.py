"""In-memory ordered event store for single-process deployments and tests."""

from __future__ import annotations

import heapq
import time
from threading import Lock
from typing import Callable


class InMemoryEventStore:
    """Thread-safe per-process store with sorted-set and TTL semantics."""

    def __init__(self, clock: Callable[[], float] = time.monotonic) -> None:
        """Initialise per-key storage; ``clock`` drives key expiry in seconds."""
        self._records: dict[str, dict[str, float]] = {}
        self._expires_at: dict[str, float] = {}
        self._deadlines: list[tuple[float, str]] = []
        self._clock = clock
        self._lock = Lock()

    async def remove_range(self, key: str, min_score: float, max_score: float) -> int:
        with self._lock:
            self._sweep()
            return self._remove_range(key, min_score, max_score)

    async def count(self, key: str) -> int:
        with self._lock:
            self._sweep()
            return len(self._live(key))

    async def insert(self, key: str, score: float, token: str) -> None:
        with self._lock:
            self._sweep()
            records = self._live(key)
            records[token] = score
            self._records[key] = records

    async def set_expiry(self, key: str, seconds: int) -> None:
        with self._lock:
            self._sweep()
            if self._live(key):
                self._expire_in(key, seconds)

    async def admit(
        self,
        key: str,
        *,
        window_start: float,
        now: float,
        budget: int,
        ttl_seconds: int,
        token: str,
    ) -> tuple[bool, int]:
        """Expire, count and conditionally insert under a single lock."""
        with self._lock:
            self._sweep()
            self._remove_range(key, 0, window_start)
            records = self._live(key)
            current = len(records)
            if current >= budget:
                return False, current
            self._records[key] = records
            records[token] = now
            self._expire_in(key, ttl_seconds)
            return True, current

    def scores(self, key: str) -> list[float]:
        """Return the live scores under ``key`` in ascending order."""
        with self._lock:
            return sorted(self._live(key).values())

    def _remove_range(self, key: str, min_score: float, max_score: float) -> int:
        records = self._live(key)
        stale = [token for token, score in records.items() if min_score <= score <= max_score]
        for token in stale:
            del records[token]
        if not records:
            self._drop(key)
        return len(stale)

    def _live(self, key: str) -> dict[str, float]:
        deadline = self._expires_at.get(key)
        if deadline is not None and deadline <= self._clock():
            self._drop(key)
        return self._records.get(key, {})

    def _expire_in(self, key: str, seconds: float) -> None:
        deadline = self._clock() + seconds
        self._expires_at[key] = deadline
        heapq.heappush(self._deadlines, (deadline, key))

    def _sweep(self) -> None:
        """Drop every key whose TTL has passed, including idle ones."""
        now = self._clock()
        while self._deadlines and self._deadlines[0][0] <= now:
            deadline, key = heapq.heappop(self._deadlines)
            # entries left behind by a refreshed TTL no longer match
            if self._expires_at.get(key) == deadline:
                self._drop(key)

    def _drop(self, key: str) -> None:
        self._records.pop(key, None)
        self._expires_at.pop(key, None)
