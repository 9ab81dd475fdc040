"""Observer hooks the limiter reports decisions and store failures to."""

from __future__ import annotations

import hashlib
import logging
from typing import Protocol

from prometheus_client import REGISTRY, CollectorRegistry, Counter

from .domain.decision import Decision

logger = logging.getLogger(__name__)


class LimiterObserver(Protocol):
    def on_decision(self, identifier: str, decision: Decision) -> None:
        ...

    def on_store_error(self, identifier: str, exc: BaseException) -> None:
        ...


def hash_identifier(identifier: str) -> str:
    """Hash an identifier for logging without exposing IPs or API keys."""
    return hashlib.sha256(identifier.encode("utf-8")).hexdigest()[:16]


class LoggingObserver:
    """Write limiter activity to the standard logging tree."""

    def __init__(self, log: logging.Logger | None = None) -> None:
        self._log = log or logger

    def on_decision(self, identifier: str, decision: Decision) -> None:
        if decision.allowed and not decision.degraded:
            self._log.debug(
                "rate_limit.allowed",
                extra={
                    "key_hash": hash_identifier(identifier),
                    "limit": decision.limit,
                    "remaining": decision.remaining,
                },
            )
            return
        self._log.info(
            "rate_limit.%s",
            decision.outcome,
            extra={
                "key_hash": hash_identifier(identifier),
                "limit": decision.limit,
                "remaining": decision.remaining,
                "retry_after_s": decision.retry_after,
            },
        )

    def on_store_error(self, identifier: str, exc: BaseException) -> None:
        self._log.warning(
            "rate limiter store unavailable: %s",
            exc,
            extra={"key_hash": hash_identifier(identifier), "error_type": type(exc).__name__},
        )


class _Metrics:
    def __init__(self, registry: CollectorRegistry) -> None:
        self.decisions = Counter(
            "window_limiter_decisions_total",
            "Admission decisions taken by the sliding window limiter.",
            ["outcome"],
            registry=registry,
        )
        self.store_errors = Counter(
            "window_limiter_store_errors_total",
            "Ordered event store failures seen while consuming budget.",
            ["error"],
            registry=registry,
        )


_default_metrics: _Metrics | None = None


def _metrics_for(registry: CollectorRegistry | None) -> _Metrics:
    global _default_metrics
    if registry is not None and registry is not REGISTRY:
        return _Metrics(registry)
    # the process registry rejects duplicate collectors, so build them once
    if _default_metrics is None:
        _default_metrics = _Metrics(REGISTRY)
    return _default_metrics


class PrometheusObserver:
    """Count decisions by outcome and store failures by exception type."""

    def __init__(self, registry: CollectorRegistry | None = None) -> None:
        self._metrics = _metrics_for(registry)

    def on_decision(self, identifier: str, decision: Decision) -> None:
        self._metrics.decisions.labels(outcome=decision.outcome).inc()

    def on_store_error(self, identifier: str, exc: BaseException) -> None:
        self._metrics.store_errors.labels(error=type(exc).__name__).inc()


class CompositeObserver:
    """Fan one notification out to several observers, in order."""

    def __init__(self, *observers: LimiterObserver) -> None:
        self._observers = observers

    def on_decision(self, identifier: str, decision: Decision) -> None:
        for observer in self._observers:
            observer.on_decision(identifier, decision)

    def on_store_error(self, identifier: str, exc: BaseException) -> None:
        for observer in self._observers:
            observer.on_store_error(identifier, exc)
