"""HTTP-level tests for throttled routes."""

from fastapi import APIRouter, Request
from fastapi.testclient import TestClient
import pytest

from fake_redis import FakeClock, FakeRedis

from app.adapters.rate_limit.redis_store import RedisCounterStore
from app.core.app_factory import create_app
from app.core.config import Settings, ThrottleSettings
from app.core.errors import ConfigurationError
from app.core.rate_limit import (
    ThrottledRoute,
    get_route_throttle_config,
    route_identity_for,
    skip_throttle,
    throttle,
)

TIERS = {
    "default": {"window_ms": 60_000, "limit": 100},
    "auth": {"window_ms": 900_000, "limit": 5},
    "storage": {"window_ms": 3_600_000, "limit": 2},
}

router = APIRouter(route_class=ThrottledRoute)


@router.post("/auth/login")
async def login() -> dict:
    return {"token": "issued"}


@router.get("/storage/files")
async def list_files() -> dict:
    return {"files": []}


@router.get("/reports")
@throttle(tier="storage", limit=1, message="Report quota exhausted")
async def reports() -> dict:
    return {"reports": []}


@router.get("/internal/sync")
@skip_throttle()
async def internal_sync() -> dict:
    return {"synced": True}


@router.get("/partner/feed")
@skip_throttle(lambda request: request.headers.get("x-internal-caller") == "yes")
@throttle(limit=1)
async def partner_feed() -> dict:
    return {"feed": []}


def _settings(**throttle_overrides) -> Settings:
    cfg = Settings()
    options = {"tiers": TIERS}
    options.update(throttle_overrides)
    cfg.throttle = ThrottleSettings(**options)
    return cfg


def _build_client(fake_redis: FakeRedis, **throttle_overrides) -> TestClient:
    app = create_app(
        _settings(**throttle_overrides),
        store=RedisCounterStore(fake_redis, timeout_ms=50),
    )

    @app.middleware("http")
    async def fake_auth(request: Request, call_next):
        # Stands in for the upstream auth layer.
        user = request.headers.get("x-test-user")
        if user:
            request.state.user_id = user
        return await call_next(request)

    app.include_router(router)
    return TestClient(app)


@pytest.fixture
def client(fake_redis: FakeRedis) -> TestClient:
    return _build_client(fake_redis)


class TestDecision:
    def test_allows_until_limit_then_returns_429(self, client: TestClient) -> None:
        for remaining in range(4, -1, -1):
            resp = client.post("/auth/login")
            assert resp.status_code == 200
            assert resp.headers["X-RateLimit-Limit"] == "5"
            assert resp.headers["X-RateLimit-Remaining"] == str(remaining)
            assert resp.headers["X-RateLimit-Reset"] == "900"

        denied = client.post("/auth/login")

        assert denied.status_code == 429
        assert denied.headers["Retry-After"] == "900"
        assert denied.headers["X-RateLimit-Remaining"] == "0"
        assert denied.headers.get("X-Request-ID")
        body = denied.json()
        assert body["error"]["code"] == "rate_limit_exceeded"
        assert body["error"]["details"]["retry_after"] == 900
        assert "request_id" in body["error"]

    def test_block_expires(self, client: TestClient, clock: FakeClock) -> None:
        for _ in range(6):
            client.post("/auth/login")

        clock.advance(900_001)
        resp = client.post("/auth/login")

        assert resp.status_code == 200
        assert resp.headers["X-RateLimit-Remaining"] == "4"

    def test_path_auto_match_and_explicit_tier(self, client: TestClient) -> None:
        assert client.get("/storage/files").headers["X-RateLimit-Limit"] == "2"

        first = client.get("/reports")
        second = client.get("/reports")

        assert first.headers["X-RateLimit-Limit"] == "1"
        assert second.status_code == 429
        assert second.json()["error"]["message"] == "Report quota exhausted"

    def test_users_and_clients_are_counted_separately(self, client: TestClient) -> None:
        for _ in range(5):
            client.post("/auth/login", headers={"x-test-user": "alice"})

        assert client.post("/auth/login", headers={"x-test-user": "alice"}).status_code == 429
        assert client.post("/auth/login", headers={"x-test-user": "bob"}).status_code == 200
        assert client.post("/auth/login", headers={"x-real-ip": "203.0.113.9"}).status_code == 200


class TestExemptions:
    def test_probe_endpoints_never_call_store(self, client: TestClient, fake_redis: FakeRedis) -> None:
        for _ in range(20):
            assert client.get("/health").status_code == 200
            assert client.get("/live").status_code == 200

        assert fake_redis.calls == []

    def test_skip_decorator_never_calls_store(self, client: TestClient, fake_redis: FakeRedis) -> None:
        for _ in range(10):
            resp = client.get("/internal/sync")
            assert resp.status_code == 200
            assert "X-RateLimit-Limit" not in resp.headers

        assert fake_redis.calls == []

    def test_skip_predicate(self, client: TestClient, fake_redis: FakeRedis) -> None:
        for _ in range(3):
            resp = client.get("/partner/feed", headers={"x-internal-caller": "yes"})
            assert resp.status_code == 200
        assert fake_redis.calls == []

        assert client.get("/partner/feed").status_code == 200
        assert client.get("/partner/feed").status_code == 429

    def test_configured_user_agent_is_exempt(self, fake_redis: FakeRedis) -> None:
        client = _build_client(fake_redis, ignore_user_agents=["^kube-probe/"])

        resp = client.post("/auth/login", headers={"user-agent": "kube-probe/1.29"})

        assert resp.status_code == 200
        assert fake_redis.calls == []

    def test_user_agent_is_not_exempt_by_default(self, client: TestClient, fake_redis: FakeRedis) -> None:
        for _ in range(5):
            client.post("/auth/login", headers={"user-agent": "health-monitoring/1.0"})

        resp = client.post("/auth/login", headers={"user-agent": "health-monitoring/1.0"})

        assert resp.status_code == 429
        assert "eval" in fake_redis.calls


class TestFailOpen:
    def test_store_outage_lets_requests_through(self, client: TestClient, fake_redis: FakeRedis) -> None:
        fake_redis.fail = True

        for _ in range(10):
            resp = client.post("/auth/login")
            assert resp.status_code == 200
            assert "X-RateLimit-Limit" not in resp.headers

    def test_store_timeout_lets_requests_through(self, client: TestClient, fake_redis: FakeRedis) -> None:
        fake_redis.delay_s = 1.0

        resp = client.post("/auth/login")

        assert resp.status_code == 200


class TestConfiguration:
    def test_headers_can_be_disabled(self, fake_redis: FakeRedis) -> None:
        client = _build_client(fake_redis, include_headers=False)

        resp = client.post("/auth/login")

        assert resp.status_code == 200
        assert "X-RateLimit-Limit" not in resp.headers

    def test_throttling_can_be_disabled(self, fake_redis: FakeRedis) -> None:
        client = _build_client(fake_redis, enabled=False)

        for _ in range(10):
            assert client.post("/auth/login").status_code == 200
        assert fake_redis.calls == []

    def test_malformed_tiers_abort_startup(self, fake_redis: FakeRedis) -> None:
        with pytest.raises(ConfigurationError):
            create_app(
                _settings(tiers={"auth": {"window_ms": 1_000, "limit": 1}}),
                store=RedisCounterStore(fake_redis),
            )

        with pytest.raises(ConfigurationError):
            create_app(
                _settings(tiers={"default": {"window_ms": 0, "limit": 1}}),
                store=RedisCounterStore(fake_redis),
            )


def test_route_metadata_is_resolved_at_registration() -> None:
    config = get_route_throttle_config(partner_feed)

    assert config.limit == 1
    assert config.skip is False
    assert config.skip_if is not None
    assert route_identity_for(reports) == "test_rate_limit_routes.reports"

    throttled_routes = [r for r in router.routes if isinstance(r, ThrottledRoute)]
    by_path = {r.path: r for r in throttled_routes}
    assert by_path["/internal/sync"].throttle_config.skip is True
    assert by_path["/reports"].throttle_config.tier == "storage"


def test_invalid_override_fails_at_decoration() -> None:
    with pytest.raises(ValueError):
        throttle(limit=0)
