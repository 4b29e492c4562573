"""Application-level exception types.

This module defines domain errors used across services/adapters, enabling
consistent error handling, logging, and API responses.
"""

from __future__ import annotations

import math
from dataclasses import dataclass, field
from typing import Any, NotRequired, TypedDict


class ErrorDetails(TypedDict, total=False):
    """Structured error context for observability and clients.

    Fields are optional to keep backward compatibility while encouraging
    consistent shapes across the codebase.
    """

    code: str
    message: str
    hint: str
    http_status: int
    retry_after: int
    tier: str
    limit: int
    field: str
    reason: str
    request_id: str
    context: NotRequired[dict[str, Any]]


@dataclass
class AppError(Exception):
    """Base error for application/domain failures.

    Attributes:
        code: Stable, machine-readable error code.
        message: Human-readable error message.
        details: Optional structured details for debugging/observability.
    """

    code: str
    message: str
    details: ErrorDetails | None = None

    def __post_init__(self) -> None:
        # Populate Exception args so str(error) is useful in logs/tracebacks.
        super().__init__(self.message)


class ConfigurationError(AppError):
    """Raised at startup when throttling configuration is malformed.

    Intentionally unrecoverable: the application factory lets it propagate so
    the process never starts with an invalid tier table.
    """


class StoreUnavailable(AppError):
    """Raised internally when the shared counter store cannot be reached.

    Never surfaced to HTTP clients; the counter store converts it into a
    ``StoreErr`` result and the admission guard fails open.
    """


class AuthenticationAppError(AppError):
    """Raised when authentication/authorization fails."""


@dataclass
class RateLimitExceeded(AppError):
    """Raised when a request is denied by the admission guard.

    Attributes:
        retry_after: Whole seconds the client should wait before retrying.
        headers: Extra response headers (e.g. X-RateLimit-*) to send with 429.
    """

    code: str = "rate_limit_exceeded"
    message: str = "Rate limit exceeded. Try again later."
    details: ErrorDetails | None = None
    retry_after: int = 1
    headers: dict[str, str] = field(default_factory=dict)

    @classmethod
    def from_remaining_ms(
        cls,
        remaining_ms: int,
        *,
        message: str | None = None,
        tier: str | None = None,
        limit: int | None = None,
    ) -> "RateLimitExceeded":
        """Build the error from the remaining block time in milliseconds.

        Retry-After is expressed in whole seconds, rounded up and never
        below one so clients do not retry immediately.
        """

        retry_after = max(1, math.ceil(max(remaining_ms, 0) / 1000))
        details: ErrorDetails = {"retry_after": retry_after}
        if tier is not None:
            details["tier"] = tier
        if limit is not None:
            details["limit"] = limit
        kwargs: dict[str, Any] = {"details": details, "retry_after": retry_after}
        if message:
            kwargs["message"] = message
        return cls(**kwargs)
