"""Admission control wiring for FastAPI routes.

This module binds the admission guard into the HTTP layer.

Design goals:
- Per-route metadata is declared with decorators and read once, when the
  route is registered, by ``ThrottledRoute``. Nothing is looked up per call.
- The guard lives on ``app.state.admission_guard``; when it is absent
  (throttling disabled) routes pass straight through.
- Denials raise ``RateLimitExceeded``; the exception handler turns it into
  a 429 with ``Retry-After``.

Usage:
    router = APIRouter(route_class=ThrottledRoute)

    @router.post("/auth/login")
    @throttle(tier="auth")
    async def login(...): ...
"""

from __future__ import annotations

import logging
from dataclasses import replace
from typing import Any, Callable, TypeVar

from fastapi import Request, Response
from fastapi.routing import APIRoute

from app.core.errors import RateLimitExceeded
from app.core.identity import resolve_user_id
from app.schemas.throttle import (
    NO_ROUTE_CONFIG,
    AdmissionDecision,
    RequestContext,
    RouteThrottleConfig,
    SkipPredicate,
)

logger = logging.getLogger(__name__)

THROTTLE_CONFIG_ATTR = "__throttle_config__"

F = TypeVar("F", bound=Callable[..., Any])


def _attach(func: F, **changes: Any) -> F:
    current: RouteThrottleConfig = getattr(func, THROTTLE_CONFIG_ATTR, NO_ROUTE_CONFIG)
    setattr(func, THROTTLE_CONFIG_ATTR, replace(current, **changes))
    return func


def throttle(
    *,
    tier: str | None = None,
    limit: int | None = None,
    window_ms: int | None = None,
    block_duration_ms: int | None = None,
    skip_if: SkipPredicate | None = None,
    message: str | None = None,
) -> Callable[[F], F]:
    """Assign an explicit tier and/or route-local limits to an endpoint.

    Must sit below the router decorator so the metadata exists when the
    route is registered.

    Args:
        tier: Registered tier name to use instead of path auto-matching.
        limit: Route-local hit limit.
        window_ms: Route-local window length.
        block_duration_ms: Route-local block duration.
        skip_if: Predicate on the request; truthy exempts that request.
        message: Custom 429 message.
    """

    # Validate eagerly so bad overrides fail at import time.
    RouteThrottleConfig(
        limit=limit,
        window_ms=window_ms,
        block_duration_ms=block_duration_ms,
    )

    changes = {
        name: value
        for name, value in (
            ("tier", tier),
            ("limit", limit),
            ("window_ms", window_ms),
            ("block_duration_ms", block_duration_ms),
            ("skip_if", skip_if),
            ("message", message),
        )
        if value is not None
    }

    def decorator(func: F) -> F:
        return _attach(func, **changes)

    return decorator


def skip_throttle(condition: SkipPredicate | None = None) -> Callable[[F], F]:
    """Exempt an endpoint from throttling, always or when ``condition`` holds."""

    def decorator(func: F) -> F:
        if condition is None:
            return _attach(func, skip=True)
        return _attach(func, skip_if=condition)

    return decorator


def get_route_throttle_config(endpoint: Callable[..., Any]) -> RouteThrottleConfig:
    return getattr(endpoint, THROTTLE_CONFIG_ATTR, NO_ROUTE_CONFIG)


def route_identity_for(endpoint: Callable[..., Any]) -> str:
    """Stable ``<module>.<handler>`` identity used in throttle keys."""

    module = (getattr(endpoint, "__module__", None) or "").rsplit(".", 1)[-1]
    name = getattr(endpoint, "__name__", None) or type(endpoint).__name__
    return f"{module}.{name}" if module else name


def build_request_context(request: Request, route_identity: str | None) -> RequestContext:
    """Project a Starlette request onto the guard's request view."""

    return RequestContext(
        method=request.method,
        path=request.url.path,
        headers=request.headers,
        client_host=request.client.host if request.client else None,
        user_id=resolve_user_id(request),
        route_identity=route_identity or f"{request.method} {request.url.path}",
        raw=request,
    )


def rate_limit_headers(decision: AdmissionDecision) -> dict[str, str]:
    """Quota headers for a counted request (empty when skipped or degraded)."""

    if decision.skipped or decision.degraded or decision.limit is None:
        return {}
    return {
        "X-RateLimit-Limit": str(decision.limit),
        "X-RateLimit-Remaining": str(decision.remaining_quota),
        "X-RateLimit-Reset": str(decision.reset_seconds),
    }


class ThrottledRoute(APIRoute):
    """APIRoute that runs the admission guard before the endpoint.

    The route's throttle metadata and identity are captured at registration.
    """

    def __init__(self, path: str, endpoint: Callable[..., Any], **kwargs: Any) -> None:
        # get_route_handler() runs inside APIRoute.__init__, so set these first.
        self.throttle_config = get_route_throttle_config(endpoint)
        self.route_identity = route_identity_for(endpoint)
        super().__init__(path, endpoint, **kwargs)

    def get_route_handler(self) -> Callable[[Request], Any]:
        original_handler = super().get_route_handler()
        route_config = self.throttle_config
        route_identity = self.route_identity

        async def throttled_handler(request: Request) -> Response:
            guard = getattr(request.app.state, "admission_guard", None)
            if guard is None:
                return await original_handler(request)

            include_headers = getattr(request.app.state, "throttle_include_headers", True)
            ctx = build_request_context(request, route_identity)

            try:
                decision = await guard.enforce(ctx, route_config)
            except RateLimitExceeded as exc:
                limit = (exc.details or {}).get("limit")
                if include_headers and limit is not None:
                    exc.headers.update(
                        {
                            "X-RateLimit-Limit": str(limit),
                            "X-RateLimit-Remaining": "0",
                            "X-RateLimit-Reset": str(exc.retry_after),
                        }
                    )
                raise

            response = await original_handler(request)
            if include_headers:
                for name, value in rate_limit_headers(decision).items():
                    response.headers.setdefault(name, value)
            return response

        return throttled_handler
