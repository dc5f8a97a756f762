"""
Driver matching tests.

Pure scoring rules first, then ``DriverMatcher`` against the in-memory
cache and the SQLite driver table.
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from dispatch.domain.entities import DriverSnapshot, Location, PositionSample
from dispatch.domain.enums import DriverStatus, VehicleClass, VerificationStatus
from dispatch.domain.errors import DependencyUnavailable
from dispatch.domain.matching import (
    EligibilityPolicy,
    availability_score,
    distance_score,
    experience_score,
    ineligibility_reason,
    rank,
    rating_score,
    score_driver,
)
from dispatch.infrastructure.location_store import MemoryLocationStore, driver_location_key
from dispatch.infrastructure.messaging import DatabaseNotifier
from dispatch.infrastructure.models import DeliveryModel
from dispatch.services.matcher import DriverMatcher
from tests.conftest import PICKUP, RecordingNotifier, make_delivery, make_driver, utc

NOW = datetime(2026, 10, 14, 12, 0, tzinfo=timezone.utc)
POLICY = EligibilityPolicy()


def _snapshot(**overrides) -> DriverSnapshot:
    values = dict(
        driver_id="d1",
        latitude=PICKUP[0],
        longitude=PICKUP[1],
        location_at=NOW - timedelta(seconds=10),
        status=DriverStatus.ONLINE,
        is_available=True,
        verification_status=VerificationStatus.VERIFIED,
        vehicle_class=VehicleClass.BIKE,
        rating=4.5,
        completed_count=30,
        available_since=NOW - timedelta(minutes=10),
    )
    values.update(overrides)
    return DriverSnapshot(**values)


# ── Scoring rules ─────────────────────────────────────────────────────


class TestSubScores:
    @pytest.mark.parametrize(
        "km,expected", [(0.5, 100), (1.0, 100), (2.9, 80), (4.0, 60), (7.9, 40), (9.0, 20)]
    )
    def test_distance(self, km, expected):
        assert distance_score(km) == expected

    def test_rating(self):
        assert rating_score(5.0) == 100
        assert rating_score(4.0) == 80
        assert rating_score(0) == 0

    @pytest.mark.parametrize("count,expected", [(0, 0), (1, 20), (25, 50), (150, 70), (1000, 100)])
    def test_experience(self, count, expected):
        assert experience_score(count) == expected

    def test_availability_penalties(self):
        fresh = _snapshot()
        assert availability_score(fresh, NOW, POLICY) == 100
        lagging = _snapshot(location_at=NOW - timedelta(seconds=45))
        assert availability_score(lagging, NOW, POLICY) == 80
        idle = _snapshot(available_since=NOW - timedelta(hours=2))
        assert availability_score(idle, NOW, POLICY) == 90

    def test_composite_weights(self):
        candidate = score_driver(_snapshot(rating=5.0, completed_count=1000), 0.5, NOW, POLICY)
        assert candidate.score == 100.0
        candidate = score_driver(_snapshot(rating=4.0, completed_count=25), 2.0, NOW, POLICY)
        # 0.4x80 + 0.3x80 + 0.2x100 + 0.1x50
        assert candidate.score == 81.0


class TestEligibility:
    def test_eligible(self):
        assert ineligibility_reason(_snapshot(), NOW, POLICY, VehicleClass.BIKE) is None

    @pytest.mark.parametrize(
        "overrides,reason",
        [
            ({"status": DriverStatus.BUSY}, "not available"),
            ({"is_available": False}, "not available"),
            ({"verification_status": VerificationStatus.PENDING}, "not verified"),
            ({"current_delivery_id": "x"}, "already assigned"),
            ({"rating": 2.5}, "rating below minimum"),
            ({"vehicle_class": VehicleClass.VAN}, "vehicle class mismatch"),
            ({"location_at": NOW - timedelta(seconds=61)}, "stale location"),
            ({"location_at": None}, "stale location"),
        ],
    )
    def test_hard_filters(self, overrides, reason):
        driver = _snapshot(**overrides)
        assert ineligibility_reason(driver, NOW, POLICY, VehicleClass.BIKE) == reason

    def test_excluded(self):
        assert ineligibility_reason(_snapshot(), NOW, POLICY, exclude_drivers={"d1"}) == "excluded"

    def test_stale_filter_can_be_disabled(self):
        lenient = EligibilityPolicy(stale_is_ineligible=False)
        stale = _snapshot(location_at=NOW - timedelta(minutes=10))
        assert ineligibility_reason(stale, NOW, lenient) is None


class TestRank:
    def test_highest_score_first_ties_to_closest(self):
        a = score_driver(_snapshot(driver_id="a"), 0.9, NOW, POLICY)
        b = score_driver(_snapshot(driver_id="b"), 0.4, NOW, POLICY)
        c = score_driver(_snapshot(driver_id="c", rating=5.0), 2.5, NOW, POLICY)
        ranked = rank([a, b, c], limit=5)
        assert [x.driver_id for x in ranked] == ["b", "a", "c"]

    def test_limit(self):
        many = [score_driver(_snapshot(driver_id=str(i)), 1.0, NOW, POLICY) for i in range(8)]
        assert len(rank(many, 3)) == 3
        assert rank(many, 0) == []


# ── DriverMatcher ─────────────────────────────────────────────────────


async def _cache_driver(store, driver_id: str, lat: float, lng: float, **overrides):
    snapshot = DriverSnapshot(
        driver_id=driver_id,
        latitude=lat,
        longitude=lng,
        location_at=utc(),
        status=DriverStatus.ONLINE,
        is_available=True,
        verification_status=VerificationStatus.VERIFIED,
        vehicle_class=VehicleClass.BIKE,
        rating=4.5,
        completed_count=25,
        available_since=utc(5),
    )
    for name, value in overrides.items():
        setattr(snapshot, name, value)
    sample = PositionSample(driver_id, lat, lng, utc())
    await store.set_if_newer(
        driver_location_key(driver_id),
        {**sample.to_payload(), **snapshot.to_cache_fields()},
        300,
        sample.timestamp.timestamp(),
    )


class _DownStore(MemoryLocationStore):
    async def keys_with_prefix(self, prefix):
        raise DependencyUnavailable("Location cache unavailable")


def _broken_session_factory():
    raise DependencyUnavailable("Durable store unavailable")


class TestDriverMatcher:
    @pytest.mark.asyncio
    async def test_ranks_nearby_cached_drivers(self, core, store):
        await _cache_driver(store, "near", PICKUP[0] + 0.001, PICKUP[1])
        await _cache_driver(store, "mid", PICKUP[0] + 0.02, PICKUP[1])
        await _cache_driver(store, "far", PICKUP[0] + 0.2, PICKUP[1])  # ~22 km

        result = await core.matcher.find_candidates(
            Location(*PICKUP), vehicle_class=VehicleClass.BIKE, max_distance_km=10
        )

        assert [c.driver_id for c in result.candidates] == ["near", "mid"]
        assert result.total_available == 2
        assert result.candidates[0].distance_km < result.candidates[1].distance_km

    @pytest.mark.asyncio
    async def test_exclusions_and_cap(self, core, store):
        for i in range(6):
            await _cache_driver(store, f"d{i}", PICKUP[0] + 0.001 * i, PICKUP[1])

        result = await core.matcher.find_candidates(
            Location(*PICKUP),
            vehicle_class=VehicleClass.BIKE,
            max_candidates=3,
            exclude_drivers={"d0"},
        )

        ids = [c.driver_id for c in result.candidates]
        assert len(ids) == 3
        assert "d0" not in ids
        assert result.total_available == 5

    @pytest.mark.asyncio
    async def test_filters_ineligible_cached_drivers(self, core, store):
        await _cache_driver(store, "busy", PICKUP[0], PICKUP[1], current_delivery_id="x")
        await _cache_driver(store, "van", PICKUP[0], PICKUP[1], vehicle_class=VehicleClass.VAN)
        await _cache_driver(
            store, "unverified", PICKUP[0], PICKUP[1],
            verification_status=VerificationStatus.PENDING,
        )

        result = await core.matcher.find_candidates(
            Location(*PICKUP), vehicle_class=VehicleClass.BIKE
        )

        assert result.candidates == []
        assert result.reason == "No eligible drivers within 10 km"

    @pytest.mark.asyncio
    async def test_supplements_from_database(self, core, session_factory):
        driver_id = await make_driver(session_factory)
        await make_driver(session_factory, lat=PICKUP[0] + 0.3, lng=PICKUP[1])  # ~33 km

        result = await core.matcher.find_candidates(
            Location(*PICKUP), vehicle_class=VehicleClass.BIKE
        )

        assert [c.driver_id for c in result.candidates] == [driver_id]
        assert result.candidates[0].driver.source == "store"

    @pytest.mark.asyncio
    async def test_cache_outage_falls_back_to_database(self, session_factory, notifier, publisher):
        driver_id = await make_driver(session_factory)
        matcher = DriverMatcher(_DownStore(), session_factory, notifier, publisher)

        result = await matcher.find_candidates(Location(*PICKUP), vehicle_class=VehicleClass.BIKE)

        assert [c.driver_id for c in result.candidates] == [driver_id]

    @pytest.mark.asyncio
    async def test_both_sources_down(self, notifier, publisher):
        matcher = DriverMatcher(_DownStore(), _broken_session_factory, notifier, publisher)

        result = await matcher.find_candidates(Location(*PICKUP), vehicle_class=VehicleClass.BIKE)

        assert result.candidates == []
        assert result.reason == "Driver location sources are unavailable"


class TestNotifyCandidates:
    @pytest.mark.asyncio
    async def test_partial_failure_is_reported(self, core, store, session_factory, notifier, publisher):
        await _cache_driver(store, "ok", PICKUP[0] + 0.001, PICKUP[1])
        await _cache_driver(store, "down", PICKUP[0] + 0.002, PICKUP[1])
        notifier.fail_for.add("down")
        delivery_id = await make_delivery(session_factory)
        async with session_factory() as session:
            delivery = await session.get(DeliveryModel, delivery_id)

        result = await core.matcher.find_candidates(
            Location(*PICKUP), vehicle_class=VehicleClass.BIKE
        )
        report = await core.matcher.notify_candidates(delivery, result.candidates)

        assert report.notified == ["ok"]
        assert report.failed == {"down": "ConnectionError"}
        offer = notifier.to("ok")[0]
        assert offer["type"] == "new_delivery"
        assert offer["data"]["delivery_id"] == delivery_id
        assert publisher.events("driver:ok") == ["new_delivery"]


class TestDriverResponses:
    @pytest.mark.asyncio
    async def test_response_is_recorded_on_offer(self, session_factory, publisher):
        notifier = DatabaseNotifier(session_factory, publisher)
        matcher = DriverMatcher(MemoryLocationStore(), session_factory, notifier, publisher)
        await notifier.notify("d1", "new_delivery", "New delivery", "...", {"delivery_id": "x"})

        assert await matcher.record_driver_response("d1", "x", "ACCEPTED") is True
        assert await matcher.record_driver_response("d1", "other", "ACCEPTED") is False
        assert publisher.events("user:d1") == ["notification"]

    @pytest.mark.asyncio
    async def test_recording_notifier_has_no_offers(self, session_factory, publisher):
        matcher = DriverMatcher(MemoryLocationStore(), session_factory, RecordingNotifier(), publisher)
        assert await matcher.record_driver_response("d1", "x", "REJECTED") is False
