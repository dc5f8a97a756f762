"""
Admin / observability endpoints
===============================

GET /api/v1/admin/health       -- database and cache reachability
GET /api/v1/admin/cache-stats  -- cached positions and history backlog
"""

import logging

from fastapi import APIRouter, Depends, Request
from sqlalchemy import text

from dispatch.api.dependencies import get_core
from dispatch.api.middleware import limiter
from dispatch.api.schemas import CacheStatsResponse, HealthResponse
from dispatch.core import DispatchCore
from dispatch.domain.errors import DependencyUnavailable
from dispatch.infrastructure.database import unit_of_work
from dispatch.infrastructure.location_store import (
    DELIVERY_TRACKING_PREFIX,
    DRIVER_LOCATION_PREFIX,
    FailoverLocationStore,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/admin", tags=["admin"])


@router.get("/health", response_model=HealthResponse, summary="Health check")
async def health(core: DispatchCore = Depends(get_core)):
    result = HealthResponse()
    try:
        async with unit_of_work(core.session_factory) as session:
            await session.execute(text("SELECT 1"))
    except DependencyUnavailable:
        logger.warning("Health check: database unreachable")
        result.database = "unavailable"
    if isinstance(core.store, FailoverLocationStore) and core.store.degraded:
        result.cache = "degraded"
    if result.database != "ok":
        result.status = "degraded"
    return result


@router.get(
    "/cache-stats",
    response_model=CacheStatsResponse,
    summary="Location cache statistics",
)
@limiter.limit("100/minute")
async def cache_stats(
    request: Request,
    core: DispatchCore = Depends(get_core),
):
    store = core.store
    try:
        drivers = await store.count_with_prefix(DRIVER_LOCATION_PREFIX)
        deliveries = await store.count_with_prefix(DELIVERY_TRACKING_PREFIX)
    except DependencyUnavailable:
        drivers = deliveries = 0
    return CacheStatsResponse(
        backend=type(store).__name__,
        degraded=isinstance(store, FailoverLocationStore) and store.degraded,
        driver_positions=drivers,
        delivery_positions=deliveries,
        pending_history=core.history.pending,
    )
