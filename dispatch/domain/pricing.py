"""
Fare Engine
===========

Formula
-------
Subtotal = (Base + Distance x Per_KM + Duration x Per_Minute)
           x Distance_Bracket x Peak x Weekend x Weather x Package_Multipliers
Total    = clamp(Subtotal + Platform_Fee + Payment_Fee + Service_Fee,
                 1.5 x Base, 10 x Base)

* **Distance_Bracket**: 1.2 below 5 km, 1.0 up to 20 km, 0.9 beyond.
* **Peak**: 1.5 inside 07:00-10:00 and 17:00-20:00 local time.
* **Package**: fragile 1.1, heavy (>10 kg) 1.2, bulky (>50 000 cm³) 1.15,
  special handling 1.25.

Rounding
--------
Nothing is rounded until the very end: the clamped total is rounded
half-up to a whole currency unit.  The breakdown keeps unrounded component
amounts, so ``subtotal + fees`` equals the total up to that one rounding.

Complexity: O(1) per quote.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from decimal import ROUND_HALF_UP, Decimal
from typing import Optional
from zoneinfo import ZoneInfo

from .entities import Location, PackageAttributes
from .enums import PaymentMethod, VehicleClass
from .errors import ValidationError
from .geo import delivery_duration_minutes, haversine_km


@dataclass(frozen=True)
class RateCard:
    base: float
    per_km: float
    per_minute: float


RATE_CARDS: dict[VehicleClass, RateCard] = {
    VehicleClass.BIKE: RateCard(base=500, per_km=100, per_minute=10),
    VehicleClass.CAR: RateCard(base=800, per_km=150, per_minute=15),
    VehicleClass.VAN: RateCard(base=1200, per_km=200, per_minute=20),
    VehicleClass.TRUCK: RateCard(base=1500, per_km=250, per_minute=25),
}

PEAK_MULTIPLIER = 1.5
WEEKEND_MULTIPLIER = 1.2
WEATHER_MULTIPLIER = 1.3

FRAGILE_MULTIPLIER = 1.1
HEAVY_MULTIPLIER = 1.2
BULKY_MULTIPLIER = 1.15
SPECIAL_HANDLING_MULTIPLIER = 1.25
HEAVY_THRESHOLD_KG = 10.0
BULKY_THRESHOLD_CM3 = 50_000.0

PLATFORM_FEE_RATE = 0.10
SERVICE_FEE = 50.0
PAYMENT_METHOD_FEE_RATE: dict[PaymentMethod, float] = {
    PaymentMethod.CASH: 0.0,
    PaymentMethod.CARD: 0.02,
    PaymentMethod.TRANSFER: 0.01,
}

MIN_FARE_FACTOR = 1.5
MAX_FARE_FACTOR = 10.0

# Half-open local-hour windows [start, end)
PEAK_HOURS: tuple[tuple[int, int], ...] = ((7, 10), (17, 20))


@dataclass(frozen=True)
class Situational:
    is_peak_hour: bool = False
    is_weekend: bool = False
    is_bad_weather: bool = False
    payment_method: PaymentMethod = PaymentMethod.CASH


@dataclass
class FareQuote:
    vehicle_class: VehicleClass
    distance_km: float
    duration_min: float
    base_fare: float
    distance_fare: float
    time_fare: float
    multipliers: dict[str, float] = field(default_factory=dict)
    subtotal: float = 0.0
    platform_fee: float = 0.0
    payment_method_fee: float = 0.0
    service_fee: float = SERVICE_FEE
    minimum_fare: float = 0.0
    maximum_fare: float = 0.0
    total: int = 0
    estimated_arrival: Optional[datetime] = None

    @property
    def fees(self) -> float:
        return self.platform_fee + self.payment_method_fee + self.service_fee


def round_currency(amount: float) -> int:
    """Half-up rounding to a whole currency unit."""
    return int(Decimal(repr(amount)).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


class FareEngine:
    """High-level API used by delivery requests and the fare estimate endpoint."""

    def __init__(self, timezone: str = "Africa/Lagos"):
        self.timezone = timezone

    # ── Rules ─────────────────────────────────────────────────────────

    @staticmethod
    def rate_card(vehicle_class: VehicleClass) -> RateCard:
        return RATE_CARDS.get(vehicle_class, RATE_CARDS[VehicleClass.BIKE])

    @staticmethod
    def distance_multiplier(distance_km: float) -> float:
        if distance_km < 5:
            return 1.2
        if distance_km <= 20:
            return 1.0
        return 0.9

    @staticmethod
    def is_bulky(package: PackageAttributes) -> bool:
        return (
            package.dimensions is not None
            and package.dimensions.volume_cm3 > BULKY_THRESHOLD_CM3
        )

    @staticmethod
    def is_heavy(package: PackageAttributes) -> bool:
        return package.weight_kg is not None and package.weight_kg > HEAVY_THRESHOLD_KG

    def local_time(self, when: Optional[datetime] = None) -> datetime:
        """Naive datetimes are taken to already be in local time."""
        if when is None:
            return datetime.now(ZoneInfo(self.timezone))
        if when.tzinfo is None:
            return when
        return when.astimezone(ZoneInfo(self.timezone))

    def is_peak_hour(self, when: Optional[datetime] = None) -> bool:
        hour = self.local_time(when).hour
        return any(start <= hour < end for start, end in PEAK_HOURS)

    def is_weekend(self, when: Optional[datetime] = None) -> bool:
        return self.local_time(when).weekday() >= 5

    def minimum_fare(self, vehicle_class: VehicleClass) -> float:
        return self.rate_card(vehicle_class).base * MIN_FARE_FACTOR

    def maximum_fare(self, vehicle_class: VehicleClass) -> float:
        return self.rate_card(vehicle_class).base * MAX_FARE_FACTOR

    # ── Quotes ────────────────────────────────────────────────────────

    def quote(
        self,
        distance_km: float,
        duration_min: float,
        vehicle_class: VehicleClass = VehicleClass.BIKE,
        package: Optional[PackageAttributes] = None,
        situational: Optional[Situational] = None,
    ) -> FareQuote:
        if distance_km < 0 or duration_min < 0:
            raise ValidationError("Distance and duration cannot be negative")
        package = package or PackageAttributes()
        situational = situational or Situational()
        card = self.rate_card(vehicle_class)

        distance_fare = distance_km * card.per_km
        time_fare = duration_min * card.per_minute

        multipliers = {"distance": self.distance_multiplier(distance_km)}
        if situational.is_peak_hour:
            multipliers["peak_hour"] = PEAK_MULTIPLIER
        if situational.is_weekend:
            multipliers["weekend"] = WEEKEND_MULTIPLIER
        if situational.is_bad_weather:
            multipliers["weather"] = WEATHER_MULTIPLIER
        if package.is_fragile:
            multipliers["fragile"] = FRAGILE_MULTIPLIER
        if self.is_heavy(package):
            multipliers["heavy"] = HEAVY_MULTIPLIER
        if self.is_bulky(package):
            multipliers["bulky"] = BULKY_MULTIPLIER
        if package.requires_special_handling:
            multipliers["special_handling"] = SPECIAL_HANDLING_MULTIPLIER

        subtotal = card.base + distance_fare + time_fare
        for factor in multipliers.values():
            subtotal *= factor

        platform_fee = subtotal * PLATFORM_FEE_RATE
        payment_fee = subtotal * PAYMENT_METHOD_FEE_RATE.get(situational.payment_method, 0.0)
        raw_total = subtotal + platform_fee + payment_fee + SERVICE_FEE

        minimum = self.minimum_fare(vehicle_class)
        maximum = self.maximum_fare(vehicle_class)
        clamped = min(maximum, max(minimum, raw_total))

        return FareQuote(
            vehicle_class=vehicle_class,
            distance_km=distance_km,
            duration_min=duration_min,
            base_fare=card.base,
            distance_fare=distance_fare,
            time_fare=time_fare,
            multipliers=multipliers,
            subtotal=subtotal,
            platform_fee=platform_fee,
            payment_method_fee=payment_fee,
            service_fee=SERVICE_FEE,
            minimum_fare=minimum,
            maximum_fare=maximum,
            total=round_currency(clamped),
        )

    def estimate(
        self,
        pickup: Location,
        dropoff: Location,
        package: Optional[PackageAttributes] = None,
        vehicle_class: VehicleClass = VehicleClass.BIKE,
        payment_method: PaymentMethod = PaymentMethod.CASH,
        now: Optional[datetime] = None,
        bad_weather: bool = False,
    ) -> FareQuote:
        """Derive distance/duration from coordinates and flags from the clock."""
        distance = haversine_km(
            pickup.latitude, pickup.longitude, dropoff.latitude, dropoff.longitude
        )
        duration = delivery_duration_minutes(distance, vehicle_class)
        local_now = self.local_time(now)

        fare = self.quote(
            distance,
            duration,
            vehicle_class,
            package,
            Situational(
                is_peak_hour=self.is_peak_hour(local_now),
                is_weekend=self.is_weekend(local_now),
                is_bad_weather=bad_weather,
                payment_method=payment_method,
            ),
        )
        fare.estimated_arrival = local_now + timedelta(minutes=duration)
        return fare
