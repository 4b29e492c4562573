"""Tests for global exception handlers.

Validates that denials become 429 responses with Retry-After and that other
errors keep the consistent error format without information leakage.
"""

import asyncio
import json
from unittest.mock import AsyncMock

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient

from app.core.errors import (
    AppError,
    AuthenticationAppError,
    ConfigurationError,
    RateLimitExceeded,
)
from app.core.exception_handlers import general_exception_handler, setup_exception_handlers


@pytest.fixture
def app_with_handlers() -> FastAPI:
    """Create FastAPI app with exception handlers registered."""
    app = FastAPI()
    setup_exception_handlers(app)
    return app


@pytest.fixture
def client(app_with_handlers: FastAPI) -> TestClient:
    return TestClient(app_with_handlers, raise_server_exceptions=False)


class TestRateLimitExceededHandler:
    def test_returns_429_with_retry_after(self, client: TestClient, app_with_handlers: FastAPI):
        @app_with_handlers.get("/limited")
        async def limited():
            raise RateLimitExceeded.from_remaining_ms(4_200, tier="auth", limit=5)

        response = client.get("/limited")

        assert response.status_code == 429
        assert response.headers["Retry-After"] == "5"
        data = response.json()
        assert data["error"]["code"] == "rate_limit_exceeded"
        assert data["error"]["details"] == {"retry_after": 5, "tier": "auth", "limit": 5}
        assert "request_id" in data["error"]

    def test_extra_headers_are_forwarded(self, client: TestClient, app_with_handlers: FastAPI):
        @app_with_handlers.get("/limited-headers")
        async def limited_headers():
            exc = RateLimitExceeded.from_remaining_ms(1_000)
            exc.headers["X-RateLimit-Remaining"] = "0"
            raise exc

        response = client.get("/limited-headers")

        assert response.headers["X-RateLimit-Remaining"] == "0"
        assert response.headers["Retry-After"] == "1"

    @pytest.mark.parametrize("remaining_ms,expected", [(0, 1), (-5, 1), (999, 1), (1_001, 2), (900_000, 900)])
    def test_retry_after_is_rounded_up_to_whole_seconds(self, remaining_ms: int, expected: int):
        assert RateLimitExceeded.from_remaining_ms(remaining_ms).retry_after == expected

    def test_custom_message(self):
        exc = RateLimitExceeded.from_remaining_ms(1_000, message="Slow down")

        assert exc.message == "Slow down"
        assert str(exc) == "Slow down"
        assert exc.code == "rate_limit_exceeded"


class TestAppErrorHandler:
    def test_authentication_error_returns_403(self, client: TestClient, app_with_handlers: FastAPI):
        @app_with_handlers.get("/forbidden")
        async def forbidden():
            raise AuthenticationAppError(code="invalid_api_key", message="Invalid or missing API key")

        response = client.get("/forbidden")

        assert response.status_code == 403
        assert response.json()["error"]["code"] == "invalid_api_key"

    def test_configuration_error_returns_500(self, client: TestClient, app_with_handlers: FastAPI):
        @app_with_handlers.get("/misconfigured")
        async def misconfigured():
            raise ConfigurationError(code="throttle_tier_invalid", message="bad tier")

        assert client.get("/misconfigured").status_code == 500

    def test_generic_app_error_returns_400(self, client: TestClient, app_with_handlers: FastAPI):
        @app_with_handlers.get("/bad")
        async def bad():
            raise AppError(code="bad_request", message="Bad", details={"field": "key"})

        response = client.get("/bad")

        assert response.status_code == 400
        assert response.json()["error"]["details"] == {"field": "key"}


class TestGeneralExceptionHandler:
    def test_general_exception_handler_never_leaks_details(self):
        request = AsyncMock()
        request.url.path = "/test"
        request.method = "GET"

        exc = RuntimeError("redis://:hunter2@cache:6379 unreachable")
        response = asyncio.run(general_exception_handler(request, exc))

        data = json.loads(bytes(response.body).decode())
        assert response.status_code == 500
        assert data["error"]["code"] == "internal_server_error"
        assert "hunter2" not in json.dumps(data)
        assert "RuntimeError" not in json.dumps(data)


def test_setup_registers_specific_handlers_before_fallback(app_with_handlers: FastAPI):
    assert RateLimitExceeded in app_with_handlers.exception_handlers
    assert AppError in app_with_handlers.exception_handlers
    assert Exception in app_with_handlers.exception_handlers
