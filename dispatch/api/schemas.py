"""Pydantic request / response schemas for the REST API."""

from __future__ import annotations

from datetime import datetime
from typing import Optional

from pydantic import BaseModel, Field

from dispatch.domain.enums import (
    CancelledBy,
    DeliveryStatus,
    PaymentMethod,
    PaymentStatus,
    VehicleClass,
)


# ── Requests ──────────────────────────────────────────────────────────


class Coordinates(BaseModel):
    latitude: float = Field(..., ge=-90, le=90)
    longitude: float = Field(..., ge=-180, le=180)


class PackageIn(BaseModel):
    weight_kg: Optional[float] = Field(None, gt=0)
    length_cm: Optional[float] = Field(None, gt=0)
    width_cm: Optional[float] = Field(None, gt=0)
    height_cm: Optional[float] = Field(None, gt=0)
    is_fragile: bool = False
    requires_special_handling: bool = False
    description: Optional[str] = Field(None, max_length=500)


class DeliveryCreateRequest(BaseModel):
    rider_id: str = Field(..., max_length=36)
    pickup: Coordinates
    dropoff: Coordinates
    pickup_address: str = Field("", max_length=255)
    dropoff_address: str = Field("", max_length=255)
    package: Optional[PackageIn] = None
    vehicle_class: VehicleClass = VehicleClass.BIKE
    payment_method: PaymentMethod = PaymentMethod.CASH


class FareEstimateRequest(BaseModel):
    pickup: Coordinates
    dropoff: Coordinates
    package: Optional[PackageIn] = None
    vehicle_class: VehicleClass = VehicleClass.BIKE
    payment_method: PaymentMethod = PaymentMethod.CASH
    bad_weather: bool = False


class DriverActionRequest(BaseModel):
    driver_id: str = Field(..., max_length=36)


class RejectRequest(DriverActionRequest):
    reason: Optional[str] = Field(None, max_length=255)


class StatusUpdateRequest(BaseModel):
    status: DeliveryStatus
    driver_id: Optional[str] = None
    driver_location: Optional[Coordinates] = None
    pickup_confirmed: bool = False
    delivery_confirmed: bool = False
    payment_confirmed: bool = False
    actual_fare: Optional[float] = Field(None, ge=0)
    dispute_title: Optional[str] = Field(None, max_length=120)
    dispute_description: Optional[str] = None


class CancelRequest(BaseModel):
    cancelled_by: CancelledBy
    reason: Optional[str] = Field(None, max_length=255)


class PaymentStatusRequest(BaseModel):
    status: PaymentStatus
    payment_proof: Optional[str] = Field(None, max_length=255)


class RatingRequest(BaseModel):
    rider_id: str
    score: float = Field(..., ge=1, le=5)


class PositionReport(BaseModel):
    latitude: float
    longitude: float
    timestamp: Optional[datetime] = None
    bearing: Optional[float] = Field(None, ge=0, lt=360)
    speed: Optional[float] = Field(None, ge=0)
    accuracy: Optional[float] = Field(None, ge=0)


# ── Responses ─────────────────────────────────────────────────────────


class DeliveryResponse(BaseModel):
    id: str
    rider_id: str
    driver_id: Optional[str] = None
    pickup_lat: float
    pickup_lng: float
    pickup_address: str
    dropoff_lat: float
    dropoff_lng: float
    dropoff_address: str
    vehicle_class: VehicleClass
    payment_method: PaymentMethod
    payment_status: PaymentStatus
    status: DeliveryStatus
    distance_km: Optional[float] = None
    duration_min: Optional[float] = None
    estimated_fare: Optional[float] = None
    actual_fare: Optional[float] = None
    accepted_at: Optional[datetime] = None
    picked_up_at: Optional[datetime] = None
    delivered_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None
    cancelled_by: Optional[CancelledBy] = None
    cancellation_reason: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    model_config = {"from_attributes": True}


class FareQuoteResponse(BaseModel):
    vehicle_class: VehicleClass
    distance_km: float
    duration_min: float
    base_fare: float
    distance_fare: float
    time_fare: float
    multipliers: dict[str, float]
    subtotal: float
    platform_fee: float
    payment_method_fee: float
    service_fee: float
    minimum_fare: float
    maximum_fare: float
    total: int
    estimated_arrival: Optional[datetime] = None

    model_config = {"from_attributes": True}


class DeliveryCreatedResponse(BaseModel):
    delivery: DeliveryResponse
    fare: FareQuoteResponse


class PositionResponse(BaseModel):
    entity_id: str
    latitude: float
    longitude: float
    timestamp: datetime
    status: Optional[str] = None
    bearing: Optional[float] = None
    speed: Optional[float] = None
    accuracy: Optional[float] = None

    model_config = {"from_attributes": True}


class HealthResponse(BaseModel):
    status: str = "ok"
    database: str = "ok"
    cache: str = "ok"


class CacheStatsResponse(BaseModel):
    backend: str
    degraded: bool
    driver_positions: int
    delivery_positions: int
    pending_history: int


class ErrorResponse(BaseModel):
    code: str
    message: str
