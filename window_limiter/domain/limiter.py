"""Sliding window limiter running against a shared ordered event store."""

from __future__ import annotations

import logging
import time
import uuid
from typing import Any, Callable

from .contracts import AtomicEventStore, LimiterConfig, OrderedEventStore
from .decision import UNAVAILABLE_MESSAGE, Decision
from .errors import (
    AtomicAdmitUnsupported,
    InvalidIdentifierType,
    MissingIdentifier,
    MissingStore,
    StoreError,
)
from ..observability import LimiterObserver, LoggingObserver

logger = logging.getLogger(__name__)


def _now_ms() -> int:
    return int(time.time() * 1000)


class SlidingWindowLimiter:
    """Admission control over a continuously sliding time window.

    Every admitted action is stored as one record scored by its timestamp in
    the sorted set ``"<key_prefix>:<identifier>"``. The limiter itself holds no
    mutable state, so one instance can be shared by any number of concurrent
    callers and several processes can share the same store.
    """

    def __init__(
        self,
        store: OrderedEventStore | None,
        config: LimiterConfig | None = None,
        *,
        observer: LimiterObserver | None = None,
        clock: Callable[[], int] | None = None,
    ) -> None:
        """Bind the store, configuration and observer hook.

        Parameters
        ----------
        store:
            Ordered event store client shared by every limiter instance.
        config:
            Window, budget, namespace and failure policy; defaults to
            :class:`LimiterConfig` defaults (60 s window, 100 events, fail-open).
        observer:
            Receives every decision and every store failure. Defaults to a
            :class:`~window_limiter.observability.LoggingObserver`.
        clock:
            Returns the current UNIX time in milliseconds.

        Raises
        ------
        MissingStore
            When ``store`` is ``None``.
        """
        if store is None:
            raise MissingStore()
        self._store = store
        self._config = config or LimiterConfig()
        self._observer = observer or LoggingObserver()
        self._clock = clock or _now_ms

    @classmethod
    def from_options(
        cls,
        store: OrderedEventStore | None,
        *,
        observer: LimiterObserver | None = None,
        clock: Callable[[], int] | None = None,
        **options: Any,
    ) -> "SlidingWindowLimiter":
        """Build a limiter from keyword options, e.g. ``window_ms=1000, budget=5``."""
        if store is None:
            raise MissingStore()
        return cls(store, LimiterConfig(**options), observer=observer, clock=clock)

    @property
    def config(self) -> LimiterConfig:
        return self._config

    def key_for(self, identifier: str) -> str:
        return f"{self._config.key_prefix}:{identifier}"

    async def consume(self, identifier: str) -> Decision:
        """Record one action for ``identifier`` if its window still has budget.

        Store failures never escape this method: they are reported to the
        observer and resolved through the configured failure policy.

        Raises
        ------
        MissingIdentifier
            When ``identifier`` is ``None`` or empty.
        InvalidIdentifierType
            When ``identifier`` is not a string.
        """
        if identifier is None or identifier == "":
            raise MissingIdentifier()
        if not isinstance(identifier, str):
            raise InvalidIdentifierType(identifier)

        key = self.key_for(identifier)
        now = self._clock()
        window_start = now - self._config.window_ms

        try:
            admitted, count = await self._admit(key, now, window_start)
        except (StoreError, OSError) as exc:
            self._observer.on_store_error(identifier, exc)
            decision = self._unavailable()
        else:
            if admitted:
                decision = Decision(
                    allowed=True,
                    remaining=self._config.budget - count - 1,
                    limit=self._config.budget,
                    reset_time=int(now + self._config.window_ms),
                )
            else:
                decision = Decision(
                    allowed=False,
                    remaining=0,
                    limit=self._config.budget,
                    retry_after=self._config.window_seconds,
                )

        self._observer.on_decision(identifier, decision)
        return decision

    async def _admit(self, key: str, now: int, window_start: float) -> tuple[bool, int]:
        """Return ``(admitted, count_before_insert)`` for one attempt."""
        token = self._new_token(now)
        if self._config.atomic and isinstance(self._store, AtomicEventStore):
            try:
                return await self._store.admit(
                    key,
                    window_start=window_start,
                    now=now,
                    budget=self._config.budget,
                    ttl_seconds=self._config.window_seconds,
                    token=token,
                )
            except AtomicAdmitUnsupported:
                logger.debug("atomic admission unsupported by store, using stepwise protocol")

        # Not atomic: concurrent callers for the same key can both pass the count check.
        await self._store.remove_range(key, 0, window_start)
        count = await self._store.count(key)
        if count >= self._config.budget:
            return False, count
        await self._store.insert(key, now, token)
        await self._store.set_expiry(key, self._config.window_seconds)
        return True, count

    def _unavailable(self) -> Decision:
        if self._config.fail_closed:
            return Decision(
                allowed=False,
                remaining=0,
                limit=self._config.budget,
                error=UNAVAILABLE_MESSAGE,
            )
        return Decision(allowed=True, remaining=0, limit=self._config.budget, degraded=True)

    @staticmethod
    def _new_token(now: int) -> str:
        return f"{now}-{uuid.uuid4().hex}"
