"""Redis-backed throttle counter store.

Provides distributed rate limiting across replicas: every replica sends the
same Lua script to the shared Redis instance, which runs it atomically per
key. Nothing is cached or counted in process.

Notes:
- One round-trip per operation, bounded by ``timeout_ms``. There are no
  retries on this path.
- Failures are returned as ``StoreErr`` and logged; they never raise.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable

from redis.asyncio import Redis
from redis.exceptions import RedisError

from app.adapters.rate_limit.base import (
    AbstractCounterStore,
    StoreErr,
    StoreOk,
    StoreResult,
    ThrottleRecord,
)
from app.core.errors import StoreUnavailable
from app.utils.hashing import hash_identifier

logger = logging.getLogger(__name__)


# KEYS[1] counter, KEYS[2] block marker
# ARGV[1] window_ms, ARGV[2] limit, ARGV[3] block_duration_ms
# Returns {total_hits, time_to_expire_ms, blocked}
INCREMENT_SCRIPT = """
local block_ttl = redis.call('PTTL', KEYS[2])
if block_ttl == -1 then
  redis.call('PEXPIRE', KEYS[2], ARGV[3])
  block_ttl = tonumber(ARGV[3])
end
if block_ttl > 0 then
  return {tonumber(ARGV[2]) + 1, block_ttl, 1}
end

local current = redis.call('INCR', KEYS[1])
local ttl = redis.call('PTTL', KEYS[1])
if current == 1 or ttl < 0 then
  redis.call('PEXPIRE', KEYS[1], ARGV[1])
  ttl = tonumber(ARGV[1])
end

if current > tonumber(ARGV[2]) then
  redis.call('SET', KEYS[2], '1', 'PX', ARGV[3])
  redis.call('DEL', KEYS[1])
  return {current, tonumber(ARGV[3]), 1}
end

return {current, ttl, 0}
"""


class RedisCounterStore(AbstractCounterStore):
    """Counter store running atomic scripts against a shared Redis.

    Args:
        client: ``redis.asyncio.Redis`` client (connections are lazy).
        timeout_ms: Upper bound for a single store round-trip.
        key_prefix: Namespace for every key written by this store.
    """

    THROTTLE_PREFIX = "throttle"
    BLOCK_PREFIX = "block"

    def __init__(self, client: Redis, *, timeout_ms: int = 100, key_prefix: str = "rate_limit:") -> None:
        if timeout_ms < 1:
            raise ValueError("timeout_ms must be >= 1")

        self._client = client
        self._timeout_s = timeout_ms / 1000
        self._key_prefix = key_prefix

    @property
    def client(self) -> Redis:
        return self._client

    def counter_key(self, key: str) -> str:
        # The {hash tag} keeps counter and block marker in one cluster slot.
        return f"{self._key_prefix}{self.THROTTLE_PREFIX}:{{{key}}}"

    def block_key(self, key: str) -> str:
        return f"{self._key_prefix}{self.BLOCK_PREFIX}:{{{key}}}"

    async def _run(self, operation: str, awaitable: Awaitable[Any]) -> Any:
        """Await a store call within the timeout, translating failures."""

        try:
            return await asyncio.wait_for(awaitable, timeout=self._timeout_s)
        except asyncio.TimeoutError as exc:
            raise StoreUnavailable(
                code="store_timeout",
                message=f"Store {operation} timed out",
                details={"reason": "timeout"},
            ) from exc
        except (RedisError, OSError) as exc:
            raise StoreUnavailable(
                code="store_error",
                message=f"Store {operation} failed: {type(exc).__name__}",
                details={"reason": "error"},
            ) from exc
        except Exception as exc:
            # CancelledError is a BaseException and still propagates.
            raise StoreUnavailable(
                code="store_error",
                message=f"Store {operation} failed unexpectedly: {type(exc).__name__}",
                details={"reason": "unexpected"},
            ) from exc

    def _failure(self, operation: str, key: str | None, exc: StoreUnavailable) -> StoreErr:
        cause = exc.__cause__
        error_type = type(cause).__name__ if cause is not None else None
        logger.warning(
            "throttle.store_unavailable",
            extra={
                "operation": operation,
                "error_code": exc.code,
                "error_type": error_type,
                "key_hash": hash_identifier(key) if key else None,
                "timeout_ms": int(self._timeout_s * 1000),
            },
        )
        return StoreErr(reason=exc.code, error_type=error_type)

    async def increment(
        self,
        key: str,
        window_ms: int,
        limit: int,
        block_duration_ms: int,
    ) -> StoreResult[ThrottleRecord]:
        """Count one hit for ``key`` in a single atomic script run.

        When the key is blocked the counter is left untouched and the block
        marker's remaining lifetime is reported. Crossing the limit sets the
        block marker and clears the counter, so the first hit after the block
        expires opens a fresh window at 1.
        """

        if not key:
            raise ValueError("key must be a non-empty string")

        try:
            reply = await self._run(
                "increment",
                self._client.eval(
                    INCREMENT_SCRIPT,
                    2,
                    self.counter_key(key),
                    self.block_key(key),
                    str(window_ms),
                    str(limit),
                    str(block_duration_ms),
                ),
            )
        except StoreUnavailable as exc:
            return self._failure("increment", key, exc)

        try:
            total_hits, time_to_expire, blocked = (int(v) for v in reply)
        except (TypeError, ValueError):
            logger.warning(
                "throttle.store_unavailable",
                extra={
                    "operation": "increment",
                    "error_code": "store_invalid_reply",
                    "key_hash": hash_identifier(key),
                },
            )
            return StoreErr(reason="store_invalid_reply")

        record = ThrottleRecord(
            total_hits=total_hits,
            time_to_expire_ms=max(time_to_expire, 0),
            blocked=blocked == 1,
        )
        logger.debug(
            "throttle.store_incremented",
            extra={
                "key_hash": hash_identifier(key),
                "total_hits": record.total_hits,
                "limit": limit,
                "blocked": record.blocked,
            },
        )
        return StoreOk(record)

    async def get(self, key: str) -> StoreResult[int]:
        try:
            value = await self._run("get", self._client.get(self.counter_key(key)))
        except StoreUnavailable as exc:
            return self._failure("get", key, exc)
        return StoreOk(int(value) if value else 0)

    async def reset(self, key: str) -> StoreResult[None]:
        try:
            await self._run(
                "reset",
                self._client.delete(self.counter_key(key), self.block_key(key)),
            )
        except StoreUnavailable as exc:
            return self._failure("reset", key, exc)

        logger.info("throttle.store_reset", extra={"key_hash": hash_identifier(key)})
        return StoreOk(None)

    async def is_blocked(self, key: str) -> StoreResult[int]:
        """Return the remaining block time in ms (0 when not blocked)."""

        try:
            exists = await self._run("exists", self._client.exists(self.block_key(key)))
            if not exists:
                return StoreOk(0)
            ttl = await self._run("ttl", self._client.pttl(self.block_key(key)))
        except StoreUnavailable as exc:
            return self._failure("is_blocked", key, exc)
        return StoreOk(max(int(ttl), 0))

    async def ping(self) -> StoreResult[bool]:
        try:
            pong = await self._run("ping", self._client.ping())
        except StoreUnavailable as exc:
            return self._failure("ping", None, exc)
        return StoreOk(bool(pong))

    async def close(self) -> None:
        await self._client.aclose()
