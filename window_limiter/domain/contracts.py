"""Configuration and store contracts shared by the limiter and its backends."""

from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Protocol, runtime_checkable

from .decision import FailurePolicy
from .errors import ConfigurationError, InvalidBudget, InvalidWindow

DEFAULT_WINDOW_MS = 60_000
DEFAULT_BUDGET = 100
DEFAULT_KEY_PREFIX = "ratelimit"


@dataclass(frozen=True, slots=True)
class LimiterConfig:
    """Validated, immutable settings for a sliding window limiter."""

    window_ms: int | float = DEFAULT_WINDOW_MS
    budget: int = DEFAULT_BUDGET
    key_prefix: str = DEFAULT_KEY_PREFIX
    failure_policy: FailurePolicy = FailurePolicy.fail_open
    atomic: bool = True

    def __post_init__(self) -> None:
        window = self.window_ms
        if isinstance(window, bool) or not isinstance(window, (int, float)):
            raise InvalidWindow(window)
        if not window > 0 or math.isinf(window):
            raise InvalidWindow(window)
        budget = self.budget
        if isinstance(budget, bool) or not isinstance(budget, int) or budget <= 0:
            raise InvalidBudget(budget)
        # accept the plain string form, e.g. from environment settings
        try:
            policy = FailurePolicy(self.failure_policy)
        except ValueError as exc:
            raise ConfigurationError(f"unknown failure policy {self.failure_policy!r}") from exc
        object.__setattr__(self, "failure_policy", policy)

    @property
    def fail_closed(self) -> bool:
        return self.failure_policy is FailurePolicy.fail_closed

    @property
    def window_seconds(self) -> int:
        """Window length rounded up to whole seconds (key TTL and ``Retry-After``)."""
        return math.ceil(self.window_ms / 1000)


@runtime_checkable
class OrderedEventStore(Protocol):
    """Score-ordered per-key record store the limiter runs against.

    Implementations raise :class:`~window_limiter.domain.errors.StoreUnavailableError`
    when the backing store cannot serve a call.
    """

    async def remove_range(self, key: str, min_score: float, max_score: float) -> int:
        """Delete records under ``key`` whose score lies in ``[min_score, max_score]``."""
        ...

    async def count(self, key: str) -> int:
        """Return the number of records currently stored under ``key``."""
        ...

    async def insert(self, key: str, score: float, token: str) -> None:
        """Add one record; distinct tokens with equal scores must coexist."""
        ...

    async def set_expiry(self, key: str, seconds: int) -> None:
        """Set or refresh the time-to-live of ``key``."""
        ...


@runtime_checkable
class AtomicEventStore(OrderedEventStore, Protocol):
    """Store that can run expire/count/insert as one indivisible step."""

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
        """Return ``(admitted, count_before_insert)`` for one admission attempt."""
        ...
