"""Tier resolution and exemption rules.

Resolution order, first match wins:
1. Route skip marker or skip predicate (exempt).
2. Explicit tier assignment on the route, optionally with overrides.
3. Path auto-match against registered tier names (longest name wins).
4. The ``default`` tier.

Probe endpoints (health, liveness, readiness, metrics) and monitoring user
agents are always exempt.
"""

from __future__ import annotations

import logging
import re
from typing import Iterable

from app.schemas.throttle import NO_ROUTE_CONFIG, RequestContext, RouteThrottleConfig
from app.services.tier_registry import DEFAULT_TIER_NAME, ThrottleTier, TierRegistry

logger = logging.getLogger(__name__)


def _normalize_path(path: str) -> str:
    path = path.lower()
    if len(path) > 1:
        path = path.rstrip("/")
    return path or "/"


class TierSelector:
    """Decides whether a request is exempt and which tier applies."""

    def __init__(
        self,
        registry: TierRegistry,
        *,
        exempt_paths: Iterable[str] = (),
        ignore_user_agents: Iterable[str] = (),
    ) -> None:
        self._registry = registry
        self._exempt_paths = frozenset(_normalize_path(p) for p in exempt_paths)
        self._ignored_agents = tuple(
            re.compile(pattern, re.IGNORECASE) for pattern in ignore_user_agents
        )
        # Longest names first; sorted() is stable so registry order breaks ties.
        self._auto_match_names = tuple(
            sorted(
                (name for name in registry.names if name != DEFAULT_TIER_NAME),
                key=len,
                reverse=True,
            )
        )

    @property
    def registry(self) -> TierRegistry:
        return self._registry

    def exemption_reason(
        self,
        ctx: RequestContext,
        route_config: RouteThrottleConfig = NO_ROUTE_CONFIG,
    ) -> str | None:
        """Return why the request is exempt, or ``None`` when it is counted."""

        if route_config.skip:
            return "route_skip"

        if route_config.skip_if is not None and route_config.skip_if(ctx.raw):
            return "route_predicate"

        if _normalize_path(ctx.path) in self._exempt_paths:
            return "exempt_path"

        user_agent = ctx.headers.get("user-agent") or ctx.headers.get("User-Agent")
        if user_agent and any(p.search(user_agent) for p in self._ignored_agents):
            return "ignored_user_agent"

        return None

    def is_exempt(
        self,
        ctx: RequestContext,
        route_config: RouteThrottleConfig = NO_ROUTE_CONFIG,
    ) -> bool:
        return self.exemption_reason(ctx, route_config) is not None

    def match_path(self, path: str) -> ThrottleTier | None:
        """Return the tier whose name is the longest substring of ``path``."""

        for name in self._auto_match_names:
            if name in path:
                return self._registry.get(name)
        return None

    def resolve(
        self,
        path: str,
        route_config: RouteThrottleConfig = NO_ROUTE_CONFIG,
    ) -> ThrottleTier:
        """Resolve the effective tier for a non-exempt request."""

        if route_config.tier is not None or route_config.has_overrides:
            base = self._registry.get(route_config.tier)
            if base is None:
                if route_config.tier is not None:
                    logger.warning(
                        "throttle.unknown_tier",
                        extra={"tier": route_config.tier, "path": path},
                    )
                base = self._registry.default
            return base.with_overrides(
                limit=route_config.limit,
                window_ms=route_config.window_ms,
                block_duration_ms=route_config.block_duration_ms,
            )

        matched = self.match_path(path)
        if matched is not None:
            return matched

        return self._registry.default
