"""Admission guard orchestrating tier selection, key building and counting.

Request flow:
- Exempt requests (route skip, skip predicate, probe paths, monitoring
  agents) are allowed without touching the store.
- Everything else resolves a tier, builds a composite key and performs
  exactly one ``increment`` against the shared store.
- A store failure lets the request through (fail open) and is logged.
- A denial raises ``RateLimitExceeded`` carrying the remaining block time.

The store call is the only shared mutable state; every other step is a pure
per-request computation.
"""

from __future__ import annotations

import logging

from app.adapters.rate_limit.base import AbstractCounterStore, StoreErr
from app.core.errors import RateLimitExceeded
from app.schemas.throttle import (
    NO_ROUTE_CONFIG,
    AdmissionDecision,
    RequestContext,
    RouteThrottleConfig,
)
from app.services.key_builder import KeyBuilder
from app.services.tier_selector import TierSelector
from app.utils.hashing import hash_identifier

logger = logging.getLogger(__name__)


class AdmissionGuard:
    """Computes allow/deny decisions for inbound requests.

    Args:
        store: Shared counter store.
        selector: Exemption and tier resolution rules.
        key_builder: Composite key construction policy.
    """

    def __init__(
        self,
        store: AbstractCounterStore,
        selector: TierSelector,
        key_builder: KeyBuilder | None = None,
    ) -> None:
        self._store = store
        self._selector = selector
        self._key_builder = key_builder or KeyBuilder()

    @property
    def store(self) -> AbstractCounterStore:
        return self._store

    @property
    def selector(self) -> TierSelector:
        return self._selector

    @property
    def key_builder(self) -> KeyBuilder:
        return self._key_builder

    async def evaluate(
        self,
        ctx: RequestContext,
        route_config: RouteThrottleConfig = NO_ROUTE_CONFIG,
    ) -> AdmissionDecision:
        """Compute the admission decision without raising on denial."""

        reason = self._selector.exemption_reason(ctx, route_config)
        if reason is not None:
            logger.debug(
                "throttle.skipped",
                extra={"reason": reason, "path": ctx.path, "route": ctx.route_identity},
            )
            return AdmissionDecision.skip()

        tier = self._selector.resolve(ctx.path, route_config)
        client_ip = self._key_builder.client_ip(ctx.headers, ctx.client_host)
        key = self._key_builder.build(
            client_ip=client_ip,
            user_id=ctx.user_id,
            route_identity=ctx.route_identity,
            tier_name=tier.name,
        )

        result = await self._store.increment(
            key,
            tier.window_ms,
            tier.limit,
            tier.block_duration_ms,
        )

        if isinstance(result, StoreErr):
            logger.warning(
                "throttle.fail_open",
                extra={
                    "reason": result.reason,
                    "tier": tier.name,
                    "route": ctx.route_identity,
                    "key_hash": hash_identifier(key),
                },
            )
            return AdmissionDecision(
                allowed=True,
                tier=tier.name,
                limit=tier.limit,
                degraded=True,
            )

        record = result.value

        if record.blocked:
            logger.warning(
                "throttle.denied",
                extra={
                    "client_ip": client_ip,
                    "user_id": ctx.user_id,
                    "route": ctx.route_identity,
                    "path": ctx.path,
                    "method": ctx.method,
                    "tier": tier.name,
                    "total_hits": record.total_hits,
                    "limit": tier.limit,
                    "window_ms": tier.window_ms,
                    "retry_after_ms": record.time_to_expire_ms,
                    "key_hash": hash_identifier(key),
                },
            )
            return AdmissionDecision(
                allowed=False,
                total_hits=record.total_hits,
                remaining_ms=record.time_to_expire_ms,
                blocked=True,
                tier=tier.name,
                limit=tier.limit,
            )

        logger.debug(
            "throttle.allowed",
            extra={
                "route": ctx.route_identity,
                "tier": tier.name,
                "total_hits": record.total_hits,
                "limit": tier.limit,
                "key_hash": hash_identifier(key),
            },
        )
        return AdmissionDecision(
            allowed=True,
            total_hits=record.total_hits,
            remaining_ms=record.time_to_expire_ms,
            blocked=False,
            tier=tier.name,
            limit=tier.limit,
        )

    async def enforce(
        self,
        ctx: RequestContext,
        route_config: RouteThrottleConfig = NO_ROUTE_CONFIG,
    ) -> AdmissionDecision:
        """Evaluate the request and raise when it is denied.

        Returns:
            AdmissionDecision: The allowing decision.

        Raises:
            RateLimitExceeded: When the request exceeds its tier.
        """

        decision = await self.evaluate(ctx, route_config)
        if decision.allowed:
            return decision

        raise RateLimitExceeded.from_remaining_ms(
            decision.remaining_ms,
            message=route_config.message,
            tier=decision.tier,
            limit=decision.limit,
        )

