"""
Driver position endpoints
=========================

POST /api/v1/drivers/{id}/location          -- report a position
GET  /api/v1/drivers/{id}/location          -- latest position
GET  /api/v1/drivers/{id}/location/history  -- position history
"""

from __future__ import annotations

from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends, Query, Request

from dispatch.api.dependencies import get_core
from dispatch.api.middleware import limiter
from dispatch.api.schemas import ErrorResponse, PositionReport, PositionResponse
from dispatch.core import DispatchCore
from dispatch.domain.errors import NotFoundError

router = APIRouter(
    prefix="/drivers",
    tags=["drivers"],
    responses={400: {"model": ErrorResponse}, 404: {"model": ErrorResponse}},
)


@router.post(
    "/{driver_id}/location",
    response_model=PositionResponse,
    summary="Report the driver's current position",
)
@limiter.limit("600/minute")
async def report_location(
    request: Request,
    driver_id: str,
    body: PositionReport,
    core: DispatchCore = Depends(get_core),
):
    return await core.tracking.report(
        driver_id,
        body.latitude,
        body.longitude,
        timestamp=body.timestamp,
        bearing=body.bearing,
        speed=body.speed,
        accuracy=body.accuracy,
    )


@router.get(
    "/{driver_id}/location",
    response_model=PositionResponse,
    summary="Latest known position",
)
@limiter.limit("300/minute")
async def get_location(
    request: Request,
    driver_id: str,
    core: DispatchCore = Depends(get_core),
):
    position = await core.tracking.latest_driver_position(driver_id)
    if position is None:
        raise NotFoundError("No position recorded for this driver")
    return position


@router.get(
    "/{driver_id}/location/history",
    response_model=list[PositionResponse],
    summary="Position history, newest first",
)
@limiter.limit("100/minute")
async def location_history(
    request: Request,
    driver_id: str,
    since: Optional[datetime] = None,
    until: Optional[datetime] = None,
    limit: int = Query(100, ge=1, le=1000),
    offset: int = Query(0, ge=0),
    core: DispatchCore = Depends(get_core),
):
    return await core.tracking.driver_history(
        driver_id, since=since, until=until, limit=limit, offset=offset
    )
