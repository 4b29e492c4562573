"""Redis client construction for the throttle store."""

from __future__ import annotations

import logging

from redis.asyncio import Redis

from app.core.config import StoreSettings

logger = logging.getLogger(__name__)


def build_redis_client(store_settings: StoreSettings) -> Redis:
    """Create a lazily-connecting Redis client for the counter store.

    Socket timeouts match the store round-trip bound so a hung connection
    cannot outlive the fail-open deadline.

    Args:
        store_settings: Resolved store settings.

    Returns:
        Redis: Async client; no connection is opened until the first command.
    """

    timeout_s = store_settings.timeout_ms / 1000
    client = Redis.from_url(
        store_settings.url,
        socket_timeout=timeout_s,
        socket_connect_timeout=timeout_s,
        decode_responses=True,
    )
    logger.info(
        "throttle.store_client_created",
        extra={
            "timeout_ms": store_settings.timeout_ms,
            "key_prefix": store_settings.key_prefix,
        },
    )
    return client
