"""FastAPI application wiring for the window limiter service."""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request, Response, status
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

from .api.routes import router as v1_router
from .config import Settings, get_settings
from .domain.contracts import OrderedEventStore
from .domain.limiter import SlidingWindowLimiter
from .observability import CompositeObserver, LoggingObserver, PrometheusObserver
from .store.memory_store import InMemoryEventStore
from .store.redis_store import RedisEventStore

logger = logging.getLogger(__name__)


def build_store(settings: Settings) -> OrderedEventStore:
    """Instantiate the configured store backend."""
    if settings.rate_limit_backend == "memory":
        logger.info("rate limiter using in-memory backend")
        return InMemoryEventStore()
    if settings.rate_limit_backend != "redis":
        raise ValueError(f"unknown rate limit backend {settings.rate_limit_backend!r}")
    logger.info("rate limiter configured for redis backend")
    return RedisEventStore.from_url(settings.redis_url)


def build_limiter(store: OrderedEventStore, settings: Settings) -> SlidingWindowLimiter:
    """Create the limiter with logging and Prometheus observers attached."""
    return SlidingWindowLimiter(
        store,
        settings.limiter_config(),
        observer=CompositeObserver(LoggingObserver(), PrometheusObserver()),
    )


def create_app(settings: Settings | None = None, store: OrderedEventStore | None = None) -> FastAPI:
    """Assemble the application; ``store`` overrides the configured backend."""
    settings = settings or get_settings()
    # fail fast on bad limits before serving anything
    settings.limiter_config()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Open the event store and build the shared limiter for the app lifecycle."""
        event_store = store or build_store(settings)
        app.state.store = event_store
        app.state.limiter = build_limiter(event_store, settings)
        try:
            yield
        finally:
            if store is None and isinstance(event_store, RedisEventStore):
                await event_store.close()

    app = FastAPI(title=settings.app_name, version=settings.version, lifespan=lifespan)

    @app.get("/healthz", tags=["health"])
    async def healthz(request: Request, response: Response) -> dict[str, str]:
        """Return a readiness indicator, reporting 503 while the store is unreachable."""
        ping = getattr(request.app.state.store, "ping", None)
        if ping is not None and not await ping():
            response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE
            return {"status": "unavailable", "store": "unreachable"}
        return {"status": "ok"}

    @app.get("/metrics")
    def metrics() -> Response:
        return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)

    app.include_router(v1_router)
    return app


app = create_app()
