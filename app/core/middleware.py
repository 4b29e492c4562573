"""HTTP middleware for request ID propagation and correlation.

Every request/response pair carries a request id so throttle log lines
(``throttle.denied``, ``throttle.fail_open``) can be tied to the response a
client received.

The middleware:
- Accepts the incoming request id header or generates a UUID
- Stores request_id in contextvars and on ``request.state``
- Echoes request_id and total duration in response headers
- Clears context after request completion to prevent context leaks

Usage:
    app.middleware("http")(request_id_middleware)
"""

from __future__ import annotations

import time
import uuid

from fastapi import Request, Response

from app.core.config import settings
from app.core.logging import clear_request_id, set_request_id

DURATION_HEADER = "X-Request-Duration-ms"

# Longer client-supplied ids are replaced with a generated one
MAX_REQUEST_ID_LENGTH = 128


def _incoming_request_id(request: Request, header_name: str) -> str:
    candidate = (request.headers.get(header_name) or "").strip()
    if candidate and len(candidate) <= MAX_REQUEST_ID_LENGTH:
        return candidate
    return str(uuid.uuid4())


async def request_id_middleware(request: Request, call_next) -> Response:
    """Generate or propagate the request id and time the request.

    Args:
        request: The incoming HTTP request object.
        call_next: The next middleware/route handler in the stack.

    Returns:
        Response: The downstream response with ``X-Request-ID`` (or the
            configured header) and ``X-Request-Duration-ms`` added. 429
            responses produced by the admission guard are included.
    """

    header_name = settings.log.request_id_header
    request_id = _incoming_request_id(request, header_name)
    request.state.request_id = request_id
    set_request_id(request_id)

    started = time.perf_counter()
    try:
        response: Response = await call_next(request)
    finally:
        clear_request_id()

    response.headers[header_name] = request_id
    response.headers.setdefault(DURATION_HEADER, f"{(time.perf_counter() - started) * 1000:.2f}")
    return response
