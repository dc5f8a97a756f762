"""
Delivery endpoints
==================

POST  /api/v1/deliveries                    -- create a delivery (matching is async)
GET   /api/v1/deliveries/{id}               -- current state
POST  /api/v1/deliveries/{id}/accept        -- driver accepts
POST  /api/v1/deliveries/{id}/reject        -- driver declines
PATCH /api/v1/deliveries/{id}/status        -- lifecycle transition
POST  /api/v1/deliveries/{id}/cancel        -- cancel
POST  /api/v1/deliveries/{id}/payment       -- payment status change
POST  /api/v1/deliveries/{id}/rating        -- rider rates the driver
GET   /api/v1/deliveries/{id}/location      -- latest tracked position
GET   /api/v1/deliveries/{id}/tracking      -- tracking history
"""

from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, Query, Request

from dispatch.api.dependencies import get_core
from dispatch.api.middleware import limiter
from dispatch.api.schemas import (
    CancelRequest,
    DeliveryCreatedResponse,
    DeliveryCreateRequest,
    DeliveryResponse,
    DriverActionRequest,
    ErrorResponse,
    FareQuoteResponse,
    PackageIn,
    PaymentStatusRequest,
    PositionResponse,
    RatingRequest,
    RejectRequest,
    StatusUpdateRequest,
)
from dispatch.core import DispatchCore
from dispatch.domain.entities import Dimensions, Location, PackageAttributes, TransitionContext
from dispatch.domain.errors import NotFoundError

router = APIRouter(
    prefix="/deliveries",
    tags=["deliveries"],
    responses={
        400: {"model": ErrorResponse},
        404: {"model": ErrorResponse},
        409: {"model": ErrorResponse},
    },
)


def to_package(body: Optional[PackageIn]) -> PackageAttributes:
    if body is None:
        return PackageAttributes()
    dimensions = None
    if body.length_cm and body.width_cm and body.height_cm:
        dimensions = Dimensions(body.length_cm, body.width_cm, body.height_cm)
    return PackageAttributes(
        weight_kg=body.weight_kg,
        dimensions=dimensions,
        is_fragile=body.is_fragile,
        requires_special_handling=body.requires_special_handling,
        description=body.description,
    )


@router.post(
    "",
    status_code=201,
    response_model=DeliveryCreatedResponse,
    summary="Create a delivery request",
    responses={201: {"description": "Delivery created; drivers are offered it asynchronously."}},
)
@limiter.limit("100/minute")
async def create_delivery(
    request: Request,
    body: DeliveryCreateRequest,
    core: DispatchCore = Depends(get_core),
):
    delivery, quote = await core.deliveries.request_delivery(
        body.rider_id,
        Location(body.pickup.latitude, body.pickup.longitude),
        Location(body.dropoff.latitude, body.dropoff.longitude),
        pickup_address=body.pickup_address,
        dropoff_address=body.dropoff_address,
        package=to_package(body.package),
        vehicle_class=body.vehicle_class,
        payment_method=body.payment_method,
    )
    return DeliveryCreatedResponse(
        delivery=DeliveryResponse.model_validate(delivery),
        fare=FareQuoteResponse.model_validate(quote),
    )


@router.get("/{delivery_id}", response_model=DeliveryResponse, summary="Get a delivery")
@limiter.limit("100/minute")
async def get_delivery(
    request: Request,
    delivery_id: str,
    core: DispatchCore = Depends(get_core),
):
    return await core.deliveries.get(delivery_id)


@router.post(
    "/{delivery_id}/accept",
    response_model=DeliveryResponse,
    summary="Driver accepts a pending delivery",
    responses={409: {"description": "Delivery or driver no longer available"}},
)
@limiter.limit("100/minute")
async def accept_delivery(
    request: Request,
    delivery_id: str,
    body: DriverActionRequest,
    core: DispatchCore = Depends(get_core),
):
    return await core.deliveries.accept(delivery_id, body.driver_id)


@router.post(
    "/{delivery_id}/reject",
    response_model=DeliveryResponse,
    summary="Driver declines a delivery offer",
)
@limiter.limit("100/minute")
async def reject_delivery(
    request: Request,
    delivery_id: str,
    body: RejectRequest,
    core: DispatchCore = Depends(get_core),
):
    return await core.deliveries.reject(delivery_id, body.driver_id, body.reason)


@router.patch(
    "/{delivery_id}/status",
    response_model=DeliveryResponse,
    summary="Move a delivery to its next status",
)
@limiter.limit("100/minute")
async def update_status(
    request: Request,
    delivery_id: str,
    body: StatusUpdateRequest,
    core: DispatchCore = Depends(get_core),
):
    ctx = TransitionContext(
        driver_id=body.driver_id,
        driver_location=(
            Location(body.driver_location.latitude, body.driver_location.longitude)
            if body.driver_location
            else None
        ),
        pickup_confirmed=body.pickup_confirmed,
        delivery_confirmed=body.delivery_confirmed,
        payment_confirmed=body.payment_confirmed,
        actual_fare=body.actual_fare,
        dispute_title=body.dispute_title,
        dispute_description=body.dispute_description,
    )
    return await core.state_machine.transition(delivery_id, body.status, ctx)


@router.post(
    "/{delivery_id}/cancel",
    response_model=DeliveryResponse,
    summary="Cancel a delivery",
)
@limiter.limit("100/minute")
async def cancel_delivery(
    request: Request,
    delivery_id: str,
    body: CancelRequest,
    core: DispatchCore = Depends(get_core),
):
    return await core.state_machine.cancel(delivery_id, body.cancelled_by, body.reason)


@router.post(
    "/{delivery_id}/payment",
    response_model=DeliveryResponse,
    summary="Change the payment status",
)
@limiter.limit("100/minute")
async def change_payment(
    request: Request,
    delivery_id: str,
    body: PaymentStatusRequest,
    core: DispatchCore = Depends(get_core),
):
    return await core.state_machine.change_payment_status(
        delivery_id, body.status, TransitionContext(payment_proof=body.payment_proof)
    )


@router.post(
    "/{delivery_id}/rating",
    response_model=DeliveryResponse,
    summary="Rate the driver of a completed delivery",
)
@limiter.limit("100/minute")
async def rate_delivery(
    request: Request,
    delivery_id: str,
    body: RatingRequest,
    core: DispatchCore = Depends(get_core),
):
    return await core.deliveries.rate(delivery_id, body.rider_id, body.score)


@router.get(
    "/{delivery_id}/location",
    response_model=PositionResponse,
    summary="Latest tracked position",
)
@limiter.limit("300/minute")
async def delivery_location(
    request: Request,
    delivery_id: str,
    core: DispatchCore = Depends(get_core),
):
    position = await core.tracking.latest_delivery_position(delivery_id)
    if position is None:
        raise NotFoundError("No position recorded for this delivery")
    return position


@router.get(
    "/{delivery_id}/tracking",
    response_model=list[PositionResponse],
    summary="Tracking history, newest first",
)
@limiter.limit("100/minute")
async def delivery_tracking(
    request: Request,
    delivery_id: str,
    limit: int = Query(50, ge=1, le=500),
    offset: int = Query(0, ge=0),
    core: DispatchCore = Depends(get_core),
):
    return await core.tracking.delivery_history(delivery_id, limit=limit, offset=offset)
