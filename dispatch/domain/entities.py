"""
Domain value objects shared by the fare engine, the matcher, the state
machine and tracking ingest.

Durable records (deliveries, drivers) live in the ORM layer; the objects
here are transient views that pure domain code can reason about without a
database session.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Any, Optional

from .enums import CancelledBy, DriverStatus, VehicleClass, VerificationStatus
from .geo import validate_coordinates


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime) -> datetime:
    """Treat naive datetimes as UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


# ── Value Objects ─────────────────────────────────────────────────────


@dataclass(frozen=True)
class Location:
    latitude: float
    longitude: float

    def __post_init__(self) -> None:
        validate_coordinates(self.latitude, self.longitude)


@dataclass(frozen=True)
class Dimensions:
    length_cm: float
    width_cm: float
    height_cm: float

    @property
    def volume_cm3(self) -> float:
        return self.length_cm * self.width_cm * self.height_cm


@dataclass(frozen=True)
class PackageAttributes:
    weight_kg: Optional[float] = None
    dimensions: Optional[Dimensions] = None
    is_fragile: bool = False
    requires_special_handling: bool = False
    description: Optional[str] = None


@dataclass
class PositionSample:
    """One position report, as cached and as appended to history."""

    entity_id: str
    latitude: float
    longitude: float
    timestamp: datetime
    status: Optional[str] = None
    bearing: Optional[float] = None
    speed: Optional[float] = None
    accuracy: Optional[float] = None

    def to_payload(self) -> dict[str, Any]:
        data = asdict(self)
        data["timestamp"] = as_utc(self.timestamp).isoformat()
        return data

    @classmethod
    def from_payload(cls, data: dict[str, Any]) -> "PositionSample":
        return cls(
            entity_id=data["entity_id"],
            latitude=data["latitude"],
            longitude=data["longitude"],
            timestamp=as_utc(datetime.fromisoformat(data["timestamp"])),
            status=data.get("status"),
            bearing=data.get("bearing"),
            speed=data.get("speed"),
            accuracy=data.get("accuracy"),
        )


@dataclass
class DriverSnapshot:
    """
    Everything the matcher needs to know about one driver.

    Built either from the location cache entry (fresh) or from the durable
    driver row (fallback).
    """

    driver_id: str
    latitude: float
    longitude: float
    location_at: Optional[datetime]
    status: DriverStatus = DriverStatus.OFFLINE
    is_available: bool = False
    verification_status: VerificationStatus = VerificationStatus.PENDING
    current_delivery_id: Optional[str] = None
    vehicle_class: Optional[VehicleClass] = None
    rating: float = 0.0
    completed_count: int = 0
    available_since: Optional[datetime] = None
    source: str = "cache"

    def to_cache_fields(self) -> dict[str, Any]:
        return {
            "status": self.status.value,
            "is_available": self.is_available,
            "verification_status": self.verification_status.value,
            "current_delivery_id": self.current_delivery_id,
            "vehicle_class": self.vehicle_class.value if self.vehicle_class else None,
            "rating": self.rating,
            "completed_count": self.completed_count,
            "available_since": (
                as_utc(self.available_since).isoformat()
                if self.available_since
                else None
            ),
        }

    @classmethod
    def from_cache(cls, data: dict[str, Any]) -> "DriverSnapshot":
        since = data.get("available_since")
        vehicle = data.get("vehicle_class")
        return cls(
            driver_id=data["entity_id"],
            latitude=data["latitude"],
            longitude=data["longitude"],
            location_at=as_utc(datetime.fromisoformat(data["timestamp"])),
            status=DriverStatus(data.get("status", DriverStatus.OFFLINE.value)),
            is_available=bool(data.get("is_available", False)),
            verification_status=VerificationStatus(
                data.get("verification_status", VerificationStatus.PENDING.value)
            ),
            current_delivery_id=data.get("current_delivery_id"),
            vehicle_class=VehicleClass(vehicle) if vehicle else None,
            rating=float(data.get("rating") or 0.0),
            completed_count=int(data.get("completed_count") or 0),
            available_since=as_utc(datetime.fromisoformat(since)) if since else None,
            source="cache",
        )


@dataclass
class ScoreBreakdown:
    distance: float
    rating: float
    availability: float
    experience: float


@dataclass
class MatchCandidate:
    driver: DriverSnapshot
    distance_km: float
    eligible: bool
    score: float
    breakdown: ScoreBreakdown
    pickup_eta_minutes: int = 0

    @property
    def driver_id(self) -> str:
        return self.driver.driver_id


@dataclass
class MatchResult:
    candidates: list[MatchCandidate] = field(default_factory=list)
    total_available: int = 0
    reason: str = ""


@dataclass
class TransitionContext:
    """Caller-supplied facts a transition may require."""

    driver_id: Optional[str] = None
    driver_location: Optional[Location] = None
    pickup_confirmed: bool = False
    delivery_confirmed: bool = False
    payment_confirmed: bool = False
    cancelled_by: Optional[CancelledBy] = None
    cancellation_reason: Optional[str] = None
    actual_fare: Optional[float] = None
    dispute_title: Optional[str] = None
    dispute_description: Optional[str] = None
    payment_proof: Optional[str] = None
