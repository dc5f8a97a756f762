"""
SQLAlchemy ORM models.

Tables
------
* ``drivers``              -- participants who fulfil deliveries
* ``deliveries``           -- one rider request and its lifecycle record
* ``driver_locations``     -- append-only driver position history
* ``delivery_tracking``    -- append-only delivery position history
* ``notifications``        -- per-recipient notification log
* ``disputes``             -- disputes opened on deliveries
* ``delivery_rejections``  -- drivers who declined a delivery offer

Indexes
-------
* **B-Tree** on ``status`` + ``updated_at`` for the auto-transition sweep,
  on driver availability columns and ``h3_cell`` for the matcher's durable
  fallback, and on ``(entity, recorded_at)`` for history queries/pruning.
"""

import uuid
from datetime import datetime, timezone

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    DateTime,
    Enum,
    Float,
    Index,
    Integer,
    String,
    Text,
    TypeDecorator,
)

from .database import Base
from dispatch.domain.enums import (
    CancelledBy,
    DeliveryStatus,
    DriverStatus,
    PaymentMethod,
    PaymentStatus,
    VehicleClass,
    VerificationStatus,
)


def _uuid() -> str:
    return str(uuid.uuid4())


def _now() -> datetime:
    return datetime.now(timezone.utc)


class UTCDateTime(TypeDecorator):
    """Stores UTC, always hands back timezone-aware UTC datetimes."""

    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        if value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        value = value.astimezone(timezone.utc)
        if dialect.name == "sqlite":
            return value.replace(tzinfo=None)
        return value

    def process_result_value(self, value, dialect):
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)


class DriverModel(Base):
    __tablename__ = "drivers"

    id = Column(String(36), primary_key=True, default=_uuid)
    name = Column(String(120), nullable=False, default="")
    status = Column(Enum(DriverStatus), default=DriverStatus.OFFLINE, nullable=False)
    is_available = Column(Boolean, default=False, nullable=False)
    verification_status = Column(
        Enum(VerificationStatus), default=VerificationStatus.PENDING, nullable=False
    )
    vehicle_class = Column(Enum(VehicleClass), default=VehicleClass.BIKE, nullable=False)

    latitude = Column(Float, nullable=True)
    longitude = Column(Float, nullable=True)
    h3_cell = Column(String(20), nullable=True)
    last_location_at = Column(UTCDateTime, nullable=True)
    available_since = Column(UTCDateTime, nullable=True)

    current_delivery_id = Column(String(36), nullable=True)
    total_earnings = Column(Float, default=0.0, nullable=False)
    todays_earnings = Column(Float, default=0.0, nullable=False)
    completed_count = Column(Integer, default=0, nullable=False)
    rating = Column(Float, default=5.0, nullable=False)
    rating_count = Column(Integer, default=0, nullable=False)

    created_at = Column(UTCDateTime, default=_now)
    updated_at = Column(UTCDateTime, default=_now, onupdate=_now)

    __table_args__ = (
        Index("idx_drivers_matchable", "status", "is_available", "verification_status"),
        Index("idx_drivers_cell", "h3_cell"),
        Index("idx_drivers_current_delivery", "current_delivery_id"),
    )


class DeliveryModel(Base):
    __tablename__ = "deliveries"

    id = Column(String(36), primary_key=True, default=_uuid)
    rider_id = Column(String(36), nullable=False)
    driver_id = Column(String(36), nullable=True)

    pickup_lat = Column(Float, nullable=False)
    pickup_lng = Column(Float, nullable=False)
    pickup_address = Column(String(255), nullable=False, default="")
    dropoff_lat = Column(Float, nullable=False)
    dropoff_lng = Column(Float, nullable=False)
    dropoff_address = Column(String(255), nullable=False, default="")

    package_weight_kg = Column(Float, nullable=True)
    package_length_cm = Column(Float, nullable=True)
    package_width_cm = Column(Float, nullable=True)
    package_height_cm = Column(Float, nullable=True)
    is_fragile = Column(Boolean, default=False, nullable=False)
    requires_special_handling = Column(Boolean, default=False, nullable=False)
    package_description = Column(Text, nullable=True)

    vehicle_class = Column(Enum(VehicleClass), default=VehicleClass.BIKE, nullable=False)
    payment_method = Column(Enum(PaymentMethod), default=PaymentMethod.CASH, nullable=False)
    payment_status = Column(
        Enum(PaymentStatus), default=PaymentStatus.PENDING, nullable=False
    )
    distance_km = Column(Float, nullable=True)
    duration_min = Column(Float, nullable=True)
    estimated_fare = Column(Float, nullable=True)
    actual_fare = Column(Float, nullable=True)

    status = Column(Enum(DeliveryStatus), default=DeliveryStatus.PENDING, nullable=False)
    accepted_at = Column(UTCDateTime, nullable=True)
    picked_up_at = Column(UTCDateTime, nullable=True)
    delivered_at = Column(UTCDateTime, nullable=True)
    completed_at = Column(UTCDateTime, nullable=True)
    cancelled_at = Column(UTCDateTime, nullable=True)
    disputed_at = Column(UTCDateTime, nullable=True)
    cancelled_by = Column(Enum(CancelledBy), nullable=True)
    cancellation_reason = Column(String(255), nullable=True)

    earnings_credited = Column(Boolean, default=False, nullable=False)
    rated = Column(Boolean, default=False, nullable=False)

    created_at = Column(UTCDateTime, default=_now)
    updated_at = Column(UTCDateTime, default=_now)

    __table_args__ = (
        Index("idx_deliveries_status_updated", "status", "updated_at"),
        Index("idx_deliveries_rider", "rider_id"),
        Index("idx_deliveries_driver", "driver_id"),
    )


class DriverLocationModel(Base):
    __tablename__ = "driver_locations"

    id = Column(Integer, primary_key=True, autoincrement=True)
    driver_id = Column(String(36), nullable=False)
    latitude = Column(Float, nullable=False)
    longitude = Column(Float, nullable=False)
    bearing = Column(Float, nullable=True)
    speed = Column(Float, nullable=True)
    accuracy = Column(Float, nullable=True)
    status = Column(String(20), nullable=True)
    recorded_at = Column(UTCDateTime, nullable=False)

    __table_args__ = (Index("idx_driver_locations_driver_time", "driver_id", "recorded_at"),)


class DeliveryTrackingModel(Base):
    __tablename__ = "delivery_tracking"

    id = Column(Integer, primary_key=True, autoincrement=True)
    delivery_id = Column(String(36), nullable=False)
    latitude = Column(Float, nullable=False)
    longitude = Column(Float, nullable=False)
    bearing = Column(Float, nullable=True)
    speed = Column(Float, nullable=True)
    accuracy = Column(Float, nullable=True)
    status = Column(String(20), nullable=True)
    recorded_at = Column(UTCDateTime, nullable=False)

    __table_args__ = (
        Index("idx_delivery_tracking_delivery_time", "delivery_id", "recorded_at"),
    )


class NotificationModel(Base):
    __tablename__ = "notifications"

    id = Column(Integer, primary_key=True, autoincrement=True)
    recipient_id = Column(String(36), nullable=False)
    type = Column(String(40), nullable=False)
    title = Column(String(120), nullable=False)
    message = Column(String(500), nullable=False)
    data = Column(JSON, nullable=True)
    response = Column(String(20), nullable=True)
    responded_at = Column(UTCDateTime, nullable=True)
    created_at = Column(UTCDateTime, default=_now)

    __table_args__ = (Index("idx_notifications_recipient", "recipient_id", "type"),)


class DisputeModel(Base):
    __tablename__ = "disputes"

    id = Column(Integer, primary_key=True, autoincrement=True)
    delivery_id = Column(String(36), nullable=False)
    rider_id = Column(String(36), nullable=False)
    driver_id = Column(String(36), nullable=True)
    title = Column(String(120), nullable=False)
    description = Column(Text, nullable=False)
    status = Column(String(20), default="OPEN", nullable=False)
    created_at = Column(UTCDateTime, default=_now)

    __table_args__ = (Index("idx_disputes_delivery", "delivery_id"),)


class DeliveryRejectionModel(Base):
    __tablename__ = "delivery_rejections"

    id = Column(Integer, primary_key=True, autoincrement=True)
    delivery_id = Column(String(36), nullable=False)
    driver_id = Column(String(36), nullable=False)
    reason = Column(String(255), nullable=True)
    created_at = Column(UTCDateTime, default=_now)

    __table_args__ = (Index("idx_rejections_delivery", "delivery_id"),)
