"""Data shapes shared by the admission guard and the HTTP layer.

``RouteThrottleConfig`` is resolved once per route at registration time;
``RequestContext`` and ``AdmissionDecision`` live for a single request.
The pydantic models at the bottom are the admin API responses.
"""

from __future__ import annotations

import math
from dataclasses import dataclass, field
from typing import Any, Callable, Mapping

from pydantic import BaseModel, Field

SkipPredicate = Callable[[Any], bool]


@dataclass(frozen=True)
class RouteThrottleConfig:
    """Per-route throttle metadata.

    Attributes:
        skip: Exempt the route entirely.
        skip_if: Predicate evaluated against the raw request; truthy exempts it.
        tier: Explicit tier name (overrides path auto-matching).
        limit: Route-local limit override.
        window_ms: Route-local window override.
        block_duration_ms: Route-local block duration override.
        message: Custom message sent with 429 responses.
    """

    skip: bool = False
    skip_if: SkipPredicate | None = None
    tier: str | None = None
    limit: int | None = None
    window_ms: int | None = None
    block_duration_ms: int | None = None
    message: str | None = None

    def __post_init__(self) -> None:
        for name in ("limit", "window_ms", "block_duration_ms"):
            value = getattr(self, name)
            if value is not None and value < 1:
                raise ValueError(f"{name} must be >= 1")

    @property
    def has_overrides(self) -> bool:
        return any(v is not None for v in (self.limit, self.window_ms, self.block_duration_ms))


NO_ROUTE_CONFIG = RouteThrottleConfig()


@dataclass(frozen=True)
class RequestContext:
    """Framework-neutral view of an inbound request."""

    method: str
    path: str
    headers: Mapping[str, str] = field(default_factory=dict)
    client_host: str | None = None
    user_id: str | int | None = None
    route_identity: str | None = None
    raw: Any = None


@dataclass(frozen=True)
class AdmissionDecision:
    """Allow/deny outcome for one request.

    Attributes:
        allowed: Whether the request may proceed.
        total_hits: Hits counted in the window (0 when skipped or degraded).
        remaining_ms: Time until the window resets, or until the block ends.
        blocked: Whether the key is blocked.
        tier: Resolved tier name (None when skipped).
        limit: Effective limit for the request (None when skipped).
        skipped: Request was exempt; the store was not called.
        degraded: The store failed and the request was let through.
    """

    allowed: bool
    total_hits: int = 0
    remaining_ms: int = 0
    blocked: bool = False
    tier: str | None = None
    limit: int | None = None
    skipped: bool = False
    degraded: bool = False

    @classmethod
    def skip(cls) -> "AdmissionDecision":
        return cls(allowed=True, skipped=True)

    @property
    def remaining_quota(self) -> int | None:
        if self.limit is None:
            return None
        return max(0, self.limit - self.total_hits)

    @property
    def reset_seconds(self) -> int:
        return max(0, math.ceil(self.remaining_ms / 1000))

    @property
    def retry_after_seconds(self) -> int:
        return max(1, self.reset_seconds)


class ThrottleStatusResponse(BaseModel):
    """Diagnostic view of one throttle key."""

    key: str = Field(..., description="Composite throttle key that was inspected.")
    total_hits: int = Field(..., description="Hits counted in the current window.")
    blocked: bool = Field(..., description="Whether the key is currently blocked.")
    block_remaining_ms: int = Field(
        0, description="Milliseconds until the block marker expires."
    )


class ThrottleResetResponse(BaseModel):
    """Result of an administrative reset."""

    key: str = Field(..., description="Composite throttle key that was reset.")
    reset: bool = Field(True, description="Counter and block marker were cleared.")


class TierResponse(BaseModel):
    """One configured tier as exposed by the admin API."""

    name: str
    window_ms: int
    limit: int
    block_duration_ms: int
