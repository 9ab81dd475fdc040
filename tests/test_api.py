from __future__ import annotations

import fakeredis
import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient
from starlette.requests import Request

from window_limiter.api.middleware import UNKNOWN_CLIENT, RateLimitMiddleware, client_address
from window_limiter.config import Settings
from window_limiter.domain.decision import FailurePolicy
from window_limiter.domain.errors import MissingIdentifier, StoreUnavailableError
from window_limiter.domain.limiter import SlidingWindowLimiter
from window_limiter.main import create_app
from window_limiter.store.memory_store import InMemoryEventStore
from window_limiter.store.redis_store import RedisEventStore


class UnreachableStore:
    """Store standing in for a Redis outage."""

    async def remove_range(self, key, min_score, max_score):
        raise StoreUnavailableError("zremrangebyscore", ConnectionError("connection refused"))

    async def count(self, key):
        raise StoreUnavailableError("zcard", ConnectionError("connection refused"))

    async def insert(self, key, score, token):
        raise StoreUnavailableError("zadd", ConnectionError("connection refused"))

    async def set_expiry(self, key, seconds):
        raise StoreUnavailableError("expire", ConnectionError("connection refused"))


def build_app(limiter: SlidingWindowLimiter | None, **middleware_options) -> FastAPI:
    app = FastAPI()
    app.add_middleware(RateLimitMiddleware, limiter=limiter, **middleware_options)

    @app.get("/ping")
    def ping() -> dict[str, str]:
        return {"status": "pong"}

    @app.get("/healthz")
    def healthz() -> dict[str, str]:
        return {"status": "ok"}

    return app


@pytest.fixture
def limiter() -> SlidingWindowLimiter:
    return SlidingWindowLimiter.from_options(InMemoryEventStore(), budget=2, window_ms=60_000)


@pytest.fixture
def api_client(limiter):
    """Provide a test client for an app guarded by the middleware."""
    with TestClient(build_app(limiter)) as client:
        yield client


def test_allows_request_under_limit(api_client):
    response = api_client.get("/ping")

    assert response.status_code == 200
    assert response.json() == {"status": "pong"}
    assert response.headers["X-RateLimit-Limit"] == "2"
    assert response.headers["X-RateLimit-Remaining"] == "1"
    assert int(response.headers["X-RateLimit-Reset"]) > 0
    assert "Retry-After" not in response.headers


def test_blocks_request_over_limit(api_client):
    first = api_client.get("/ping")
    second = api_client.get("/ping")
    third = api_client.get("/ping")

    assert first.status_code == 200
    assert second.status_code == 200
    assert second.headers["X-RateLimit-Remaining"] == "0"
    assert third.status_code == 429
    assert third.json() == {
        "error": "Too Many Requests",
        "message": "Rate limit exceeded. Please try again later.",
        "retryAfter": 60,
    }
    assert third.headers["Retry-After"] == "60"
    assert third.headers["X-RateLimit-Remaining"] == "0"
    assert "X-RateLimit-Reset" not in third.headers


def test_exempt_paths_do_not_spend_budget(api_client):
    for _ in range(5):
        assert api_client.get("/healthz").status_code == 200

    assert api_client.get("/ping").status_code == 200


def test_uses_custom_key_func(limiter):
    def user_key(request: Request) -> str:
        return request.headers.get("X-User-Id", "anonymous")

    with TestClient(build_app(limiter, key_func=user_key)) as client:
        for _ in range(2):
            assert client.get("/ping", headers={"X-User-Id": "user123"}).status_code == 200
        assert client.get("/ping", headers={"X-User-Id": "user123"}).status_code == 429
        assert client.get("/ping", headers={"X-User-Id": "user456"}).status_code == 200


def test_degraded_admission_is_flagged():
    limiter = SlidingWindowLimiter.from_options(UnreachableStore(), budget=10)

    with TestClient(build_app(limiter)) as client:
        response = client.get("/ping")

    assert response.status_code == 200
    assert response.headers["X-RateLimit-Degraded"] == "true"
    assert response.headers["X-RateLimit-Remaining"] == "0"


def test_fail_closed_rejects_without_retry_after():
    limiter = SlidingWindowLimiter.from_options(
        UnreachableStore(), budget=10, failure_policy=FailurePolicy.fail_closed
    )

    with TestClient(build_app(limiter)) as client:
        response = client.get("/ping")

    assert response.status_code == 429
    assert response.json() == {"error": "Too Many Requests", "message": "Rate limiter unavailable"}
    assert "Retry-After" not in response.headers


def test_limiter_resolved_from_app_state(limiter):
    app = build_app(None)
    app.state.limiter = limiter

    with TestClient(app) as client:
        assert client.get("/ping").headers["X-RateLimit-Remaining"] == "1"


def test_missing_limiter_is_an_error():
    with TestClient(build_app(None)) as client:
        with pytest.raises(RuntimeError, match="Rate limiter instance is required"):
            client.get("/ping")


def test_empty_identifier_propagates(limiter):
    with TestClient(build_app(limiter, key_func=lambda request: "")) as client:
        with pytest.raises(MissingIdentifier):
            client.get("/ping")


@pytest.fixture
def service_client():
    """Run the service app against an in-memory store."""
    settings = Settings(rate_limit_requests=2, rate_limit_window_ms=30_000, rate_limit_backend="memory")
    with TestClient(create_app(settings, store=InMemoryEventStore())) as client:
        yield client


def test_decision_endpoint_spends_budget(service_client):
    first = service_client.post("/v1/decisions", json={"identifier": "user1"})
    second = service_client.post("/v1/decisions", json={"identifier": "user1"})
    third = service_client.post("/v1/decisions", json={"identifier": "user1"})

    assert first.status_code == 200
    body = first.json()
    assert body["allowed"] is True
    assert body["remaining"] == 1
    assert body["limit"] == 2
    assert "resetTime" in body
    assert "degraded" not in body
    assert second.json()["remaining"] == 0
    assert third.json() == {"allowed": False, "remaining": 0, "limit": 2, "retryAfter": 30}


def test_decision_endpoint_rejects_empty_identifier(service_client):
    response = service_client.post("/v1/decisions", json={"identifier": ""})

    assert response.status_code == 400
    assert response.json()["detail"] == "identifier is required"


def test_decision_endpoint_validates_payload(service_client):
    response = service_client.post("/v1/decisions", json={})

    assert response.status_code == 422


def test_health_and_metrics(service_client):
    service_client.post("/v1/decisions", json={"identifier": "user1"})

    assert service_client.get("/healthz").json() == {"status": "ok"}
    metrics = service_client.get("/metrics")
    assert metrics.status_code == 200
    assert "window_limiter_decisions_total" in metrics.text


def test_memory_backend_selected_from_settings():
    settings = Settings(rate_limit_backend="memory")

    with TestClient(create_app(settings)) as client:
        assert isinstance(client.app.state.store, InMemoryEventStore)


def make_request(client: tuple[str, int] | None, headers: dict[str, str] | None = None) -> Request:
    raw_headers = [(name.lower().encode(), value.encode()) for name, value in (headers or {}).items()]
    return Request({"type": "http", "method": "GET", "path": "/ping", "headers": raw_headers, "client": client})


def test_client_address_prefers_peer_address():
    request = make_request(("203.0.113.9", 5000), {"X-Forwarded-For": "198.51.100.1"})

    assert client_address(request) == "203.0.113.9"


def test_client_address_without_peer_uses_forwarded_for():
    request = make_request(None, {"X-Forwarded-For": "198.51.100.1, 10.0.0.2"})

    assert client_address(request) == "198.51.100.1"


def test_client_address_without_peer_or_header_uses_shared_bucket(caplog):
    with caplog.at_level("WARNING", logger="window_limiter.api.middleware"):
        assert client_address(make_request(None)) == UNKNOWN_CLIENT

    assert "no client address" in caplog.records[-1].getMessage()


def test_healthz_reports_reachable_redis():
    store = RedisEventStore(fakeredis.FakeAsyncRedis(server=fakeredis.FakeServer()))
    settings = Settings(rate_limit_backend="redis")

    with TestClient(create_app(settings, store=store)) as client:
        response = client.get("/healthz")

    assert response.status_code == 200
    assert response.json() == {"status": "ok"}


def test_healthz_reports_unreachable_redis():
    server = fakeredis.FakeServer()
    server.connected = False
    store = RedisEventStore(fakeredis.FakeAsyncRedis(server=server))
    settings = Settings(rate_limit_backend="redis")

    with TestClient(create_app(settings, store=store)) as client:
        response = client.get("/healthz")

    assert response.status_code == 503
    assert response.json() == {"status": "unavailable", "store": "unreachable"}
