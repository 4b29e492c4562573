"""Administrative throttle endpoints.

Inspect or clear a throttle key (e.g. after a false positive lockout) and
list the configured tiers. Protected by the admin API key.
"""

from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, HTTPException, Query, Request, status

from app.adapters.rate_limit.base import StoreErr
from app.core.auth import verify_admin_key
from app.core.rate_limit import ThrottledRoute, throttle
from app.schemas.throttle import ThrottleResetResponse, ThrottleStatusResponse, TierResponse
from app.services.admission_guard import AdmissionGuard
from app.utils.hashing import hash_identifier

logger = logging.getLogger(__name__)

# Admin calls are counted against the auth tier before the API key check runs.
ADMIN_REQUEST_LIMIT = 20

router = APIRouter(
    prefix="/admin/throttle",
    tags=["Admin"],
    dependencies=[Depends(verify_admin_key)],
    route_class=ThrottledRoute,
)


def get_admission_guard(request: Request) -> AdmissionGuard:
    guard = getattr(request.app.state, "admission_guard", None)
    if guard is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Throttling is disabled.",
        )
    return guard


def _store_unavailable() -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
        detail="Throttle store unavailable.",
    )


@router.get("/tiers", response_model=list[TierResponse])
@throttle(tier="auth", limit=ADMIN_REQUEST_LIMIT)
def list_tiers(guard: AdmissionGuard = Depends(get_admission_guard)) -> list[TierResponse]:
    return [
        TierResponse(
            name=tier.name,
            window_ms=tier.window_ms,
            limit=tier.limit,
            block_duration_ms=tier.block_duration_ms,
        )
        for tier in guard.selector.registry
    ]


@router.get("", response_model=ThrottleStatusResponse)
@throttle(tier="auth", limit=ADMIN_REQUEST_LIMIT)
async def get_throttle_status(
    key: str = Query(..., min_length=1, description="Composite throttle key"),
    guard: AdmissionGuard = Depends(get_admission_guard),
) -> ThrottleStatusResponse:
    """Return the hit count and block state for a key without mutating it."""

    hits = await guard.store.get(key)
    blocked_ms = await guard.store.is_blocked(key)
    if isinstance(hits, StoreErr) or isinstance(blocked_ms, StoreErr):
        raise _store_unavailable()

    return ThrottleStatusResponse(
        key=key,
        total_hits=hits.value,
        blocked=blocked_ms.value > 0,
        block_remaining_ms=blocked_ms.value,
    )


@router.delete("", response_model=ThrottleResetResponse)
@throttle(tier="auth", limit=ADMIN_REQUEST_LIMIT)
async def reset_throttle(
    key: str = Query(..., min_length=1, description="Composite throttle key"),
    guard: AdmissionGuard = Depends(get_admission_guard),
) -> ThrottleResetResponse:
    """Clear the counter and block marker for a key."""

    result = await guard.store.reset(key)
    if isinstance(result, StoreErr):
        raise _store_unavailable()

    logger.info("throttle.admin_reset", extra={"key_hash": hash_identifier(key)})
    return ThrottleResetResponse(key=key)
