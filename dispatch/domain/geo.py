"""
Geospatial primitives: great-circle distance, bearing, midpoint, radius
membership, ETA and H3 spatial binning.

Assumption
----------
We use great-circle (Haversine) distance instead of a real routing engine
(OSRM / Google Maps).  Durations derived from it are therefore estimates.

Complexity: O(1) per call, except ``cells_within_km`` which is O(k²) in the
H3 ring count.
"""

from __future__ import annotations

import math
from typing import Iterable, TypeVar

import h3

from .enums import VehicleClass
from .errors import ValidationError

EARTH_RADIUS_KM = 6_371.0

# Average road speeds (km/h) per vehicle class
AVERAGE_SPEED_KMH: dict[VehicleClass, float] = {
    VehicleClass.BIKE: 30.0,
    VehicleClass.CAR: 40.0,
    VehicleClass.VAN: 35.0,
    VehicleClass.TRUCK: 25.0,
}
CITY_SPEED_KMH = 30.0
HANDLING_MINUTES = 10  # pickup + drop-off

T = TypeVar("T")


def validate_coordinates(lat: float, lng: float) -> None:
    if lat is None or lng is None or math.isnan(lat) or math.isnan(lng):
        raise ValidationError("Coordinates are required")
    if not -90.0 <= lat <= 90.0:
        raise ValidationError(f"Latitude {lat} is outside [-90, 90]")
    if not -180.0 <= lng <= 180.0:
        raise ValidationError(f"Longitude {lng} is outside [-180, 180]")


def haversine_km(lat1: float, lng1: float, lat2: float, lng2: float) -> float:
    """Return the great-circle distance in **km** between two points."""
    validate_coordinates(lat1, lng1)
    validate_coordinates(lat2, lng2)
    lat1_r, lat2_r = math.radians(lat1), math.radians(lat2)
    dlat = math.radians(lat2 - lat1)
    dlng = math.radians(lng2 - lng1)

    a = (
        math.sin(dlat / 2) ** 2
        + math.cos(lat1_r) * math.cos(lat2_r) * math.sin(dlng / 2) ** 2
    )
    return 2 * EARTH_RADIUS_KM * math.asin(min(1.0, math.sqrt(a)))


def bearing_deg(lat1: float, lng1: float, lat2: float, lng2: float) -> float:
    """Initial bearing from point 1 to point 2, degrees clockwise from north."""
    validate_coordinates(lat1, lng1)
    validate_coordinates(lat2, lng2)
    lat1_r, lat2_r = math.radians(lat1), math.radians(lat2)
    dlng = math.radians(lng2 - lng1)

    y = math.sin(dlng) * math.cos(lat2_r)
    x = math.cos(lat1_r) * math.sin(lat2_r) - math.sin(lat1_r) * math.cos(
        lat2_r
    ) * math.cos(dlng)
    return (math.degrees(math.atan2(y, x)) + 360.0) % 360.0


def midpoint(lat1: float, lng1: float, lat2: float, lng2: float) -> tuple[float, float]:
    validate_coordinates(lat1, lng1)
    validate_coordinates(lat2, lng2)
    lat1_r, lng1_r = math.radians(lat1), math.radians(lng1)
    lat2_r = math.radians(lat2)
    dlng = math.radians(lng2 - lng1)

    bx = math.cos(lat2_r) * math.cos(dlng)
    by = math.cos(lat2_r) * math.sin(dlng)
    lat3 = math.atan2(
        math.sin(lat1_r) + math.sin(lat2_r),
        math.sqrt((math.cos(lat1_r) + bx) ** 2 + by**2),
    )
    lng3 = lng1_r + math.atan2(by, math.cos(lat1_r) + bx)
    return math.degrees(lat3), (math.degrees(lng3) + 540.0) % 360.0 - 180.0


def within_radius(
    lat1: float, lng1: float, lat2: float, lng2: float, radius_km: float
) -> bool:
    return haversine_km(lat1, lng1, lat2, lng2) <= radius_km


def filter_within_radius(
    center_lat: float,
    center_lng: float,
    points: Iterable[T],
    radius_km: float,
) -> list[T]:
    """Keep items (anything with ``latitude``/``longitude``) inside the radius."""
    return [
        p
        for p in points
        if within_radius(center_lat, center_lng, p.latitude, p.longitude, radius_km)
    ]


def eta_minutes(distance_km: float, speed_kmh: float = CITY_SPEED_KMH) -> int:
    """Driving time in whole minutes at a constant average speed."""
    if distance_km < 0:
        raise ValidationError("Distance cannot be negative")
    if speed_kmh <= 0:
        raise ValidationError("Speed must be positive")
    return round(distance_km / speed_kmh * 60)


def delivery_duration_minutes(
    distance_km: float, vehicle_class: VehicleClass = VehicleClass.BIKE
) -> int:
    """Driving time for the vehicle class plus fixed handling time."""
    if distance_km < 0:
        raise ValidationError("Distance cannot be negative")
    speed = AVERAGE_SPEED_KMH.get(vehicle_class, AVERAGE_SPEED_KMH[VehicleClass.BIKE])
    return round(distance_km / speed * 60 + HANDLING_MINUTES)


# ── H3 spatial binning ───────────────────────────────────────────────


def h3_cell(lat: float, lng: float, resolution: int = 7) -> str:
    """Map a geo-point to an H3 hexagonal cell index.  O(1)."""
    validate_coordinates(lat, lng)
    return h3.latlng_to_cell(lat, lng, resolution)


def cells_within_km(
    lat: float, lng: float, radius_km: float, resolution: int = 7
) -> set[str]:
    """
    H3 cells that together cover a disc of ``radius_km`` around the point.

    Adjacent hexagon centres are ``sqrt(3) x edge`` apart, so ``k`` rings
    reach at least ``k x edge``; one extra ring absorbs the partial
    hexagon at the boundary.
    """
    origin = h3_cell(lat, lng, resolution)
    edge_km = h3.average_hexagon_edge_length(resolution, unit="km")
    k = math.ceil(radius_km / edge_km) + 1
    return set(h3.grid_disk(origin, k))
