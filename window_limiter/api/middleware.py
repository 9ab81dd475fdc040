"""Starlette middleware enforcing the sliding window limit per client."""

from __future__ import annotations

import logging
from typing import Callable, Iterable

from fastapi import status
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import Request
from starlette.responses import JSONResponse, Response
from starlette.types import ASGIApp

from ..domain.decision import Decision
from ..domain.limiter import SlidingWindowLimiter

logger = logging.getLogger(__name__)

KeyFunc = Callable[[Request], "str | None"]

DEFAULT_EXEMPT_PATHS: tuple[str, ...] = ("/healthz", "/metrics")
UNKNOWN_CLIENT = "unknown"


def client_address(request: Request) -> str:
    """Default identifier: the originating network address.

    Falls back to the first ``X-Forwarded-For`` hop, then to a shared
    ``"unknown"`` bucket when the server does not report a peer (unix sockets).
    """
    if request.client and request.client.host:
        return request.client.host
    forwarded = request.headers.get("x-forwarded-for", "").split(",")[0].strip()
    if forwarded:
        return forwarded
    logger.warning("request has no client address, rate limiting it as %r", UNKNOWN_CLIENT)
    return UNKNOWN_CLIENT


class RateLimitMiddleware(BaseHTTPMiddleware):
    """Consume one unit of budget per request and reject callers over the limit."""

    def __init__(
        self,
        app: ASGIApp,
        limiter: SlidingWindowLimiter | None = None,
        key_func: KeyFunc | None = None,
        exempt_paths: Iterable[str] = DEFAULT_EXEMPT_PATHS,
    ) -> None:
        super().__init__(app)
        self._limiter = limiter
        self._key_func = key_func or client_address
        self._exempt_paths = frozenset(exempt_paths)

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        if request.url.path in self._exempt_paths:
            return await call_next(request)

        limiter = self._resolve_limiter(request)
        try:
            identifier = self._key_func(request)
            decision = await limiter.consume(identifier)
        except (TypeError, ValueError):
            logger.exception("rate limit middleware could not evaluate request")
            raise

        if not decision.allowed:
            response = self._rejection(decision)
        else:
            response = await call_next(request)
        apply_rate_limit_headers(response, decision)
        return response

    def _resolve_limiter(self, request: Request) -> SlidingWindowLimiter:
        limiter = self._limiter or getattr(request.app.state, "limiter", None)
        if limiter is None:
            raise RuntimeError("Rate limiter instance is required")
        return limiter

    @staticmethod
    def _rejection(decision: Decision) -> JSONResponse:
        if decision.error is not None:
            body = {"error": "Too Many Requests", "message": decision.error}
        else:
            body = {
                "error": "Too Many Requests",
                "message": "Rate limit exceeded. Please try again later.",
                "retryAfter": decision.retry_after,
            }
        return JSONResponse(status_code=status.HTTP_429_TOO_MANY_REQUESTS, content=body)


def apply_rate_limit_headers(response: Response, decision: Decision) -> None:
    """Surface the decision as ``X-RateLimit-*`` and ``Retry-After`` headers."""
    response.headers["X-RateLimit-Limit"] = str(decision.limit)
    response.headers["X-RateLimit-Remaining"] = str(decision.remaining)
    if decision.reset_time is not None:
        response.headers["X-RateLimit-Reset"] = str(decision.reset_time)
    if decision.retry_after is not None:
        response.headers["Retry-After"] = str(decision.retry_after)
    if decision.degraded:
        response.headers["X-RateLimit-Degraded"] = "true"
