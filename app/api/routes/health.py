from __future__ import annotations

from fastapi import APIRouter, Request

from app.adapters.rate_limit.base import StoreOk
from app.core.rate_limit import ThrottledRoute

# Probe paths are exempt from throttling; ThrottledRoute is used anyway so
# the exemption list is what keeps them out of the store.
router = APIRouter(tags=["Health"], route_class=ThrottledRoute)


@router.get("/health")
def health_check() -> dict:
    """Health check endpoint.

    Returns a simple status response to verify the API is operational.

    Returns:
        dict: A dictionary with a single "status" key set to "ok".
    """

    return {"status": "ok"}


@router.get("/live")
def liveness() -> dict:
    return {"status": "ok"}


@router.get("/ready")
async def readiness(request: Request) -> dict:
    """Readiness check including the shared counter store.

    The service keeps serving (fail open) while the store is down, so the
    probe reports ``degraded`` instead of failing.
    """

    guard = getattr(request.app.state, "admission_guard", None)
    if guard is None:
        return {"status": "ok", "store": "disabled"}

    result = await guard.store.ping()
    if isinstance(result, StoreOk) and result.value:
        return {"status": "ok", "store": "up"}
    return {"status": "degraded", "store": "down"}
