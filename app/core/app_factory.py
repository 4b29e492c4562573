from __future__ import annotations

"""Application factory for FastAPI app.

Centralizes app construction (logging, admission control, middleware,
handlers, routers) so tests can build isolated apps with their own settings
and store.

Tier configuration is validated here, before the app object exists: a
malformed tier table raises ``ConfigurationError`` and the process does not
start.
"""

import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator

from fastapi import FastAPI
from redis.asyncio import Redis

from app.adapters.rate_limit.base import AbstractCounterStore
from app.adapters.rate_limit.client import build_redis_client
from app.adapters.rate_limit.redis_store import RedisCounterStore
from app.api.routes import admin_router, health_router
from app.core.config import Settings, settings as default_settings
from app.core.exception_handlers import setup_exception_handlers
from app.core.logging import configure_logging
from app.core.middleware import request_id_middleware
from app.services.admission_guard import AdmissionGuard
from app.services.key_builder import KeyBuilder
from app.services.tier_registry import TierRegistry
from app.services.tier_selector import TierSelector

logger = logging.getLogger(__name__)


def build_admission_guard(
    app_settings: Settings,
    *,
    store: AbstractCounterStore | None = None,
    redis_client: Redis | None = None,
) -> AdmissionGuard:
    """Assemble registry, selector, key builder and store into a guard.

    Args:
        app_settings: Resolved settings.
        store: Pre-built store (tests); takes precedence over ``redis_client``.
        redis_client: Redis client to wrap; built from settings when omitted.

    Raises:
        ConfigurationError: If the tier table is invalid.
    """

    throttle_cfg = app_settings.throttle
    registry = TierRegistry.from_mapping(throttle_cfg.tiers)
    selector = TierSelector(
        registry,
        exempt_paths=throttle_cfg.exempt_paths,
        ignore_user_agents=throttle_cfg.ignore_user_agents,
    )

    if store is None:
        client = redis_client or build_redis_client(app_settings.store)
        store = RedisCounterStore(
            client,
            timeout_ms=app_settings.store.timeout_ms,
            key_prefix=app_settings.store.key_prefix,
        )

    return AdmissionGuard(
        store,
        selector,
        KeyBuilder(trust_proxy_headers=throttle_cfg.trust_proxy_headers),
    )


def create_app(
    app_settings: Settings | None = None,
    *,
    store: AbstractCounterStore | None = None,
    redis_client: Redis | None = None,
) -> FastAPI:
    """Create and configure the FastAPI application instance.

    Returns:
        Configured FastAPI app with admission control, middleware, handlers
        and routers.
    """
    cfg = app_settings or default_settings

    # Logging first so subsequent init logs are formatted as desired
    configure_logging(cfg.log, debug=cfg.app.debug)

    guard: AdmissionGuard | None = None
    if cfg.throttle.enabled:
        guard = build_admission_guard(cfg, store=store, redis_client=redis_client)
    else:
        logger.warning("throttle.disabled")

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        yield
        if guard is not None and isinstance(guard.store, RedisCounterStore):
            await guard.store.close()

    app = FastAPI(
        title="Admission Control API",
        description=(
            "Distributed rate limiting for stateless replicas sharing one Redis "
            "counter store. Requests over their tier's limit receive 429 with "
            "Retry-After; store outages fail open."
        ),
        version="0.1.0",
        lifespan=lifespan,
    )

    app.state.admission_guard = guard
    app.state.throttle_include_headers = cfg.throttle.include_headers

    # Middleware
    app.middleware("http")(request_id_middleware)

    # Exception handlers
    setup_exception_handlers(app)

    # Routers
    app.include_router(health_router)
    app.include_router(admin_router)

    return app
