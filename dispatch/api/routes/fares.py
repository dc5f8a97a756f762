"""
Fare endpoints
==============

POST /api/v1/fares/estimate -- price a trip without creating a delivery
"""

from fastapi import APIRouter, Depends, Request

from dispatch.api.dependencies import get_core
from dispatch.api.middleware import limiter
from dispatch.api.routes.deliveries import to_package
from dispatch.api.schemas import FareEstimateRequest, FareQuoteResponse
from dispatch.core import DispatchCore
from dispatch.domain.entities import Location

router = APIRouter(prefix="/fares", tags=["fares"])


@router.post("/estimate", response_model=FareQuoteResponse, summary="Estimate a fare")
@limiter.limit("100/minute")
async def estimate_fare(
    request: Request,
    body: FareEstimateRequest,
    core: DispatchCore = Depends(get_core),
):
    return core.fares.estimate(
        Location(body.pickup.latitude, body.pickup.longitude),
        Location(body.dropoff.latitude, body.dropoff.longitude),
        to_package(body.package),
        vehicle_class=body.vehicle_class,
        payment_method=body.payment_method,
        bad_weather=body.bad_weather,
    )
