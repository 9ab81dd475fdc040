from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any

UNAVAILABLE_MESSAGE = "Rate limiter unavailable"


class FailurePolicy(str, Enum):
    fail_open = "fail-open"
    fail_closed = "fail-closed"


@dataclass(frozen=True, slots=True)
class Decision:
    """Outcome of a single ``consume`` call.

    ``reset_time`` is only set on healthy admissions and ``retry_after`` only on
    healthy denials. ``degraded`` and ``error`` describe decisions taken while
    the store was unavailable.
    """

    allowed: bool
    remaining: int
    limit: int
    reset_time: int | None = None
    retry_after: int | None = None
    degraded: bool = False
    error: str | None = None

    @property
    def outcome(self) -> str:
        """Short label used for logs and metrics."""
        if self.degraded:
            return "degraded"
        if self.error is not None:
            return "unavailable"
        return "allowed" if self.allowed else "denied"

    def to_dict(self) -> dict[str, Any]:
        """Render the wire shape, omitting optional fields that are not set."""
        payload: dict[str, Any] = {
            "allowed": self.allowed,
            "remaining": self.remaining,
            "limit": self.limit,
        }
        if self.reset_time is not None:
            payload["resetTime"] = self.reset_time
        if self.retry_after is not None:
            payload["retryAfter"] = self.retry_after
        if self.degraded:
            payload["degraded"] = True
        if self.error is not None:
            payload["error"] = self.error
        return payload
