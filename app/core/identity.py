"""Client identity resolution.

Authentication happens upstream; an auth layer (middleware or dependency)
places the authenticated principal on ``request.state``. This module only
reads it. Anonymous requests resolve to ``None`` and are keyed by IP alone.
"""

from __future__ import annotations

from typing import Any, Mapping

from fastapi import Request


def _principal_id(principal: Any) -> str | int | None:
    if principal is None:
        return None
    if isinstance(principal, Mapping):
        return principal.get("user_id") or principal.get("id")
    return getattr(principal, "user_id", None) or getattr(principal, "id", None)


def resolve_user_id(request: Request) -> str | int | None:
    """Return the authenticated user id attached to the request, if any.

    Looks at ``request.state.user_id`` first, then ``request.state.user``
    (object attribute or mapping key ``user_id``/``id``).

    Args:
        request: Incoming request.

    Returns:
        The user id, or None for anonymous requests.
    """

    state = request.state
    user_id = getattr(state, "user_id", None)
    if user_id not in (None, ""):
        return user_id
    return _principal_id(getattr(state, "user", None))
