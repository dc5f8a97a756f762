"""
Unit tests for the fare engine.

These are pure-function tests (no I/O) so they run without any external
services.
"""

from datetime import datetime, timezone

import pytest

from dispatch.domain.entities import Dimensions, Location, PackageAttributes
from dispatch.domain.enums import PaymentMethod, VehicleClass
from dispatch.domain.errors import ValidationError
from dispatch.domain.geo import delivery_duration_minutes, haversine_km
from dispatch.domain.pricing import FareEngine, Situational, round_currency

PICKUP = Location(6.5244, 3.3792)
DROPOFF = Location(6.5344, 3.3892)

# Wednesday 2026-10-14, 12:00 / 08:00 local (naive == local)
MIDDAY = datetime(2026, 10, 14, 12, 0)
MORNING_RUSH = datetime(2026, 10, 14, 8, 0)
SATURDAY = datetime(2026, 10, 17, 12, 0)


@pytest.fixture
def engine():
    return FareEngine("Africa/Lagos")


class TestQuote:
    def test_short_bike_delivery(self, engine):
        # (500 + 155 + 130) x 1.2 = 942; + 94.2 platform + 50 service = 1086.2
        fare = engine.quote(1.55, 13, VehicleClass.BIKE)
        assert fare.subtotal == pytest.approx(942.0)
        assert fare.platform_fee == pytest.approx(94.2)
        assert fare.payment_method_fee == 0
        assert fare.service_fee == 50
        assert fare.multipliers == {"distance": 1.2}
        assert fare.total == 1086

    def test_deterministic(self, engine):
        assert engine.quote(7.3, 25, VehicleClass.CAR) == engine.quote(
            7.3, 25, VehicleClass.CAR
        )

    def test_minimum_fare_applies(self, engine):
        fare = engine.quote(0.0, 0.0, VehicleClass.TRUCK)
        assert fare.total == 2250  # 1.5 x 1500

    def test_maximum_fare_applies(self, engine):
        fare = engine.quote(200.0, 400.0, VehicleClass.BIKE)
        assert fare.total == 5000  # 10 x 500

    def test_total_between_bounds(self, engine):
        for vehicle in VehicleClass:
            fare = engine.quote(12.0, 40.0, vehicle)
            assert fare.minimum_fare <= fare.total <= fare.maximum_fare

    def test_negative_input_rejected(self, engine):
        with pytest.raises(ValidationError):
            engine.quote(-1.0, 10)

    @pytest.mark.parametrize(
        "distance,expected", [(4.99, 1.2), (5.0, 1.0), (20.0, 1.0), (20.01, 0.9)]
    )
    def test_distance_brackets(self, engine, distance, expected):
        assert engine.distance_multiplier(distance) == expected

    def test_situational_multipliers_compound(self, engine):
        plain = engine.quote(10.0, 30, VehicleClass.CAR)
        busy = engine.quote(
            10.0,
            30,
            VehicleClass.CAR,
            situational=Situational(is_peak_hour=True, is_weekend=True, is_bad_weather=True),
        )
        assert busy.subtotal == pytest.approx(plain.subtotal * 1.5 * 1.2 * 1.3)
        assert set(busy.multipliers) == {"distance", "peak_hour", "weekend", "weather"}

    def test_package_multipliers(self, engine):
        package = PackageAttributes(
            weight_kg=12,
            dimensions=Dimensions(50, 40, 30),  # 60 000 cm3
            is_fragile=True,
            requires_special_handling=True,
        )
        plain = engine.quote(10.0, 30, VehicleClass.VAN)
        loaded = engine.quote(10.0, 30, VehicleClass.VAN, package)
        assert loaded.multipliers["fragile"] == 1.1
        assert loaded.multipliers["heavy"] == 1.2
        assert loaded.multipliers["bulky"] == 1.15
        assert loaded.multipliers["special_handling"] == 1.25
        assert loaded.subtotal == pytest.approx(plain.subtotal * 1.1 * 1.2 * 1.15 * 1.25)

    def test_light_small_package_has_no_multiplier(self, engine):
        package = PackageAttributes(weight_kg=10, dimensions=Dimensions(10, 10, 10))
        fare = engine.quote(10.0, 30, VehicleClass.BIKE, package)
        assert fare.multipliers == {"distance": 1.0}

    @pytest.mark.parametrize(
        "method,rate", [(PaymentMethod.CASH, 0.0), (PaymentMethod.CARD, 0.02), (PaymentMethod.TRANSFER, 0.01)]
    )
    def test_payment_method_fee(self, engine, method, rate):
        fare = engine.quote(10.0, 30, VehicleClass.CAR, situational=Situational(payment_method=method))
        assert fare.payment_method_fee == pytest.approx(fare.subtotal * rate)

    def test_total_equals_components_rounded_once(self, engine):
        fare = engine.quote(
            8.37, 27, VehicleClass.CAR, situational=Situational(payment_method=PaymentMethod.CARD)
        )
        assert fare.total == round_currency(fare.subtotal + fare.fees)


class TestRounding:
    def test_half_up(self):
        assert round_currency(1086.5) == 1087
        assert round_currency(1085.5) == 1086

    def test_below_half(self):
        assert round_currency(1086.2) == 1086


class TestCalendar:
    def test_peak_windows_are_half_open(self, engine):
        assert engine.is_peak_hour(datetime(2026, 10, 14, 7, 0))
        assert engine.is_peak_hour(datetime(2026, 10, 14, 19, 59))
        assert not engine.is_peak_hour(datetime(2026, 10, 14, 10, 0))
        assert not engine.is_peak_hour(datetime(2026, 10, 14, 20, 0))

    def test_aware_time_is_converted_to_local(self, engine):
        # 07:30 UTC is 08:30 in Lagos (UTC+1)
        assert engine.is_peak_hour(datetime(2026, 10, 14, 7, 30, tzinfo=timezone.utc))
        # 16:30 UTC is 17:30 in Lagos
        assert engine.is_peak_hour(datetime(2026, 10, 14, 16, 30, tzinfo=timezone.utc))
        assert not engine.is_peak_hour(datetime(2026, 10, 14, 5, 30, tzinfo=timezone.utc))

    def test_weekend(self, engine):
        assert engine.is_weekend(SATURDAY)
        assert not engine.is_weekend(MIDDAY)


class TestEstimate:
    def test_matches_quote_for_same_route(self, engine):
        fare = engine.estimate(PICKUP, DROPOFF, now=MIDDAY)
        distance = haversine_km(PICKUP.latitude, PICKUP.longitude, DROPOFF.latitude, DROPOFF.longitude)
        assert fare.duration_min == delivery_duration_minutes(distance) == 13
        assert fare.total == engine.quote(distance, 13, VehicleClass.BIKE).total
        assert 1080 <= fare.total <= 1095

    def test_peak_hour_applied_from_clock(self, engine):
        fare = engine.estimate(PICKUP, DROPOFF, now=MORNING_RUSH)
        assert fare.multipliers["peak_hour"] == 1.5

    def test_weekend_and_weather(self, engine):
        fare = engine.estimate(PICKUP, DROPOFF, now=SATURDAY, bad_weather=True)
        assert "weekend" in fare.multipliers
        assert "weather" in fare.multipliers

    def test_estimated_arrival(self, engine):
        fare = engine.estimate(PICKUP, DROPOFF, now=MIDDAY)
        assert fare.estimated_arrival == datetime(2026, 10, 14, 12, 13)
