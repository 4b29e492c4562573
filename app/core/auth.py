"""Admin API key check.

End-user authentication is handled upstream; this module only guards the
administrative throttle endpoints (inspect/reset counters). Keys come from a
comma-separated environment variable.
"""

from __future__ import annotations

import hmac
import logging
from typing import Annotated

from fastapi import Header

from app.core.config import settings
from app.core.errors import AuthenticationAppError
from app.utils.hashing import hash_identifier

logger = logging.getLogger(__name__)


def parse_api_keys(keys_string: str | None) -> set[str]:
    """Parse comma-separated API keys into a set.

    Examples:
        >>> parse_api_keys("key1, key2 , key3 ")
        {'key1', 'key2', 'key3'}
        >>> parse_api_keys(None)
        set()
    """
    if not keys_string:
        return set()

    return {key.strip() for key in keys_string.split(",") if key.strip()}


def validate_admin_key(provided_key: str | None) -> None:
    """Validate an admin API key against the configured keys.

    Args:
        provided_key: Value of the X-API-Key header.

    Raises:
        AuthenticationAppError: If the key is missing or invalid, or no keys
            are configured while admin auth is required.
    """
    if not settings.app.admin_api_key_required:
        return

    valid_keys = parse_api_keys(settings.app.admin_api_keys)
    if not valid_keys:
        logger.error(
            "admin_auth_failed",
            extra={"reason": "admin_api_keys_not_configured"},
        )
        raise AuthenticationAppError(
            code="admin_api_keys_not_configured",
            message="Admin endpoints are enabled but no admin API keys are configured",
            details={"hint": "Set APP_ADMIN_API_KEYS or disable with APP_ADMIN_API_KEY_REQUIRED=false"},
        )

    if not provided_key:
        logger.warning("admin_auth_failed", extra={"reason": "missing_api_key"})
        raise AuthenticationAppError(
            code="missing_api_key",
            message="Missing API key. Provide X-API-Key header.",
        )

    if not any(hmac.compare_digest(provided_key, key) for key in valid_keys):
        logger.warning(
            "admin_auth_failed",
            extra={
                "reason": "invalid_api_key",
                "api_key_hash": hash_identifier(provided_key),
            },
        )
        raise AuthenticationAppError(
            code="invalid_api_key",
            message="Invalid or missing API key",
        )


async def verify_admin_key(
    x_api_key: Annotated[str | None, Header(alias="X-API-Key")] = None,
) -> None:
    """FastAPI dependency protecting admin routes.

    Usage:
        router = APIRouter(dependencies=[Depends(verify_admin_key)])

    Raises:
        AuthenticationAppError: Rendered as 403 by the exception handlers.
    """
    validate_admin_key(x_api_key)
