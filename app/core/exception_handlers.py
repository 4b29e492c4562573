"""Global exception handlers for consistent error responses.

This module provides FastAPI exception handlers that intercept all errors
(domain and unexpected) and return consistent JSON responses with proper
HTTP status codes and traceability.

Design:
- RateLimitExceeded → 429 with Retry-After (the only error clients see from
  admission control; store failures never reach this layer)
- AuthenticationAppError → 403
- ConfigurationError / other AppError → 500 / 400
- Unexpected Exception → generic 500 (safety net)
- All responses include request_id for distributed tracing
"""

import logging

from fastapi import Request
from fastapi.responses import JSONResponse

from app.core.errors import (
    AppError,
    AuthenticationAppError,
    ConfigurationError,
    RateLimitExceeded,
)
from app.core.logging import get_request_id

logger = logging.getLogger(__name__)


def _error_body(exc: AppError) -> dict:
    error_content = {
        "code": exc.code,
        "message": exc.message,
        "request_id": get_request_id(),
    }
    if exc.details:
        error_content["details"] = exc.details
    return {"error": error_content}


async def rate_limit_exceeded_handler(request: Request, exc: RateLimitExceeded) -> JSONResponse:
    """Translate a denial into ``429 Too Many Requests``.

    The body carries the machine-readable ``rate_limit_exceeded`` code and the
    retry delay; the ``Retry-After`` header carries the same value in seconds.
    """

    headers = {"Retry-After": str(exc.retry_after)}
    headers.update(exc.headers)

    return JSONResponse(
        status_code=429,
        content=_error_body(exc),
        headers=headers,
    )


async def app_error_handler(request: Request, exc: AppError) -> JSONResponse:
    """Handle domain application errors with consistent JSON format.

    Routes domain errors to appropriate HTTP status codes:
    - AuthenticationAppError → 403 Forbidden (authorization fault)
    - ConfigurationError → 500 Internal Server Error
    - any other AppError → 400 Bad Request (client fault)

    Args:
        request: FastAPI request object.
        exc: AppError instance (or subclass).

    Returns:
        JSONResponse with appropriate status code and error details.
    """
    status_code = 400
    if isinstance(exc, AuthenticationAppError):
        status_code = 403
    elif isinstance(exc, ConfigurationError):
        status_code = 500

    logger.warning(
        "app_error_handled",
        extra={
            "error_code": exc.code,
            "error_message": exc.message,
            "status_code": status_code,
            "has_details": bool(exc.details),
            "request_id": get_request_id(),
        }
    )

    return JSONResponse(
        status_code=status_code,
        content=_error_body(exc),
    )


async def general_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Fallback handler for unexpected errors (safety net).

    Logs detailed information for debugging while returning a generic
    message; no stack traces reach the client.
    """
    logger.error(
        "unhandled_exception",
        extra={
            "error_type": type(exc).__name__,
            "error_msg": str(exc),
            "request_path": request.url.path,
            "request_method": request.method,
            "request_id": get_request_id(),
        }
    )

    return JSONResponse(
        status_code=500,
        content={
            "error": {
                "code": "internal_server_error",
                "message": "An unexpected error occurred. Please try again later.",
                "request_id": get_request_id(),
            }
        },
    )


def setup_exception_handlers(app) -> None:
    """Register all exception handlers with FastAPI app.

    Specific handlers are registered before the general fallback.

    Args:
        app: FastAPI application instance.
    """
    app.exception_handler(RateLimitExceeded)(rate_limit_exceeded_handler)
    app.exception_handler(AppError)(app_error_handler)
    app.exception_handler(Exception)(general_exception_handler)
