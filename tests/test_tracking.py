"""Tracking ingest: position reports, cache ordering, batched history and archival."""

from __future__ import annotations

from datetime import timedelta

import pytest
from sqlalchemy import func, select

from dispatch.domain.entities import PositionSample
from dispatch.domain.enums import DeliveryStatus, DriverStatus
from dispatch.domain.errors import DependencyUnavailable, NotFoundError, ValidationError
from dispatch.infrastructure.location_store import delivery_tracking_key, driver_location_key
from dispatch.infrastructure.models import DeliveryTrackingModel, DriverLocationModel, DriverModel
from dispatch.services.tracking import DRIVER, HistoryWriter
from tests.conftest import PICKUP, load, make_delivery, make_driver, utc


async def _count(session_factory, model) -> int:
    async with session_factory() as session:
        return (await session.execute(select(func.count()).select_from(model))).scalar_one()


class TestReport:
    @pytest.mark.asyncio
    async def test_report_updates_cache(self, core, session_factory, store):
        driver_id = await make_driver(session_factory)

        sample = await core.tracking.report(driver_id, 6.53, 3.38, bearing=90, speed=12.5)

        entry = await store.get(driver_location_key(driver_id))
        assert entry["latitude"] == 6.53
        assert entry["bearing"] == 90
        assert entry["status"] == DriverStatus.ONLINE.value
        assert entry["is_available"] is True
        assert sample.entity_id == driver_id
        assert core.history.pending == 1

    @pytest.mark.asyncio
    async def test_unknown_driver(self, core):
        with pytest.raises(NotFoundError):
            await core.tracking.report("nobody", *PICKUP)

    @pytest.mark.asyncio
    async def test_invalid_coordinates(self, core, session_factory):
        driver_id = await make_driver(session_factory)
        with pytest.raises(ValidationError):
            await core.tracking.report(driver_id, 95.0, 3.38)
        assert core.history.pending == 0

    @pytest.mark.asyncio
    async def test_first_report_brings_driver_online(self, core, session_factory, store):
        driver_id = await make_driver(
            session_factory, status=DriverStatus.LOGGED_IN, is_available=False
        )

        await core.tracking.report(driver_id, *PICKUP)

        driver = await load(session_factory, DriverModel, driver_id)
        assert driver.status == DriverStatus.ONLINE
        assert driver.is_available
        assert driver.available_since is not None
        assert (await store.get(driver_location_key(driver_id)))["status"] == "ONLINE"

    @pytest.mark.asyncio
    async def test_out_of_order_report_keeps_newest_in_cache(self, core, session_factory, store):
        driver_id = await make_driver(session_factory, last_location_at=utc(60))

        await core.tracking.report(driver_id, 6.60, 3.40, timestamp=utc(1))
        await core.tracking.report(driver_id, 6.50, 3.30, timestamp=utc(3))

        entry = await store.get(driver_location_key(driver_id))
        assert entry["latitude"] == 6.60

        # both samples still reach history; the driver row keeps the newer one
        await core.history.flush()
        assert await _count(session_factory, DriverLocationModel) == 2
        driver = await load(session_factory, DriverModel, driver_id)
        assert driver.latitude == 6.60

    @pytest.mark.asyncio
    async def test_driver_on_delivery_feeds_tracking(self, core, session_factory, store, publisher):
        driver_id = await make_driver(session_factory)
        delivery_id = await make_delivery(session_factory)
        await core.state_machine.accept(delivery_id, driver_id)

        await core.tracking.report(driver_id, 6.527, 3.381)

        tracked = await store.get(delivery_tracking_key(delivery_id))
        assert tracked["driver_id"] == driver_id
        assert tracked["entity_id"] == delivery_id
        assert "location_updated" in publisher.events(f"delivery:{delivery_id}")
        assert core.history.pending == 2

        latest = await core.tracking.latest_delivery_position(delivery_id)
        assert latest.latitude == 6.527

    @pytest.mark.asyncio
    async def test_delivery_sample_carries_delivery_status(self, core, session_factory, store):
        driver_id = await make_driver(session_factory)
        delivery_id = await make_delivery(session_factory)
        await core.state_machine.accept(delivery_id, driver_id)

        await core.tracking.report(driver_id, 6.527, 3.381)

        tracked = await store.get(delivery_tracking_key(delivery_id))
        assert tracked["status"] == DeliveryStatus.ACCEPTED.value
        driver_entry = await store.get(driver_location_key(driver_id))
        assert driver_entry["status"] == DriverStatus.BUSY.value

        await core.history.flush()
        history = await core.tracking.delivery_history(delivery_id)
        assert [s.status for s in history] == ["ACCEPTED"]


class TestReads:
    @pytest.mark.asyncio
    async def test_latest_position_falls_back_to_history(self, core, session_factory, store):
        driver_id = await make_driver(session_factory)
        await core.tracking.report(driver_id, 6.53, 3.38)
        await core.history.flush()
        await store.delete(driver_location_key(driver_id))

        latest = await core.tracking.latest_driver_position(driver_id)

        assert latest is not None
        assert latest.latitude == 6.53

    @pytest.mark.asyncio
    async def test_no_position_at_all(self, core):
        assert await core.tracking.latest_driver_position("nobody") is None
        assert await core.tracking.latest_delivery_position("nothing") is None

    @pytest.mark.asyncio
    async def test_history_newest_first_with_window(self, core, session_factory):
        driver_id = await make_driver(session_factory)
        for minutes_ago, lat in ((30, 6.50), (20, 6.51), (10, 6.52)):
            await core.tracking.report(driver_id, lat, 3.38, timestamp=utc(minutes_ago))
        await core.history.flush()

        everything = await core.tracking.driver_history(driver_id)
        recent = await core.tracking.driver_history(driver_id, since=utc(25))
        page = await core.tracking.driver_history(driver_id, limit=1, offset=1)

        assert [s.latitude for s in everything] == [6.52, 6.51, 6.50]
        assert [s.latitude for s in recent] == [6.52, 6.51]
        assert [s.latitude for s in page] == [6.51]


class TestHistoryWriter:
    @pytest.mark.asyncio
    async def test_failed_flush_keeps_samples(self):
        def broken():
            raise DependencyUnavailable("Durable store unavailable")

        writer = HistoryWriter(broken)
        writer.submit(DRIVER, PositionSample("d1", *PICKUP, utc()))

        assert await writer.flush() == 0
        assert writer.pending == 1

    def test_buffer_is_bounded(self):
        writer = HistoryWriter(None, max_pending=3)
        for i in range(5):
            writer.submit(DRIVER, PositionSample(f"d{i}", *PICKUP, utc()))
        assert writer.pending == 3

    @pytest.mark.asyncio
    async def test_stop_flushes(self, session_factory):
        writer = HistoryWriter(session_factory, flush_interval=60)
        await writer.start()
        driver_id = await make_driver(session_factory)
        writer.submit(DRIVER, PositionSample(driver_id, *PICKUP, utc()))

        await writer.stop()

        assert writer.pending == 0
        assert await _count(session_factory, DriverLocationModel) == 1


class TestMaintenance:
    @pytest.mark.asyncio
    async def test_archive_moves_stale_entries_to_history(self, core, session_factory, store):
        driver_id = await make_driver(session_factory)
        await core.tracking.report(driver_id, *PICKUP, timestamp=utc(10))
        fresh_id = await make_driver(session_factory)
        await core.tracking.report(fresh_id, *PICKUP)

        archived = await core.tracking.archive_stale(timedelta(minutes=2))

        assert archived == 1
        assert await store.get(driver_location_key(driver_id)) is None
        assert await store.get(driver_location_key(fresh_id)) is not None
        # flushed once, not duplicated by the archive step
        assert await _count(session_factory, DriverLocationModel) == 2

    @pytest.mark.asyncio
    async def test_prune_removes_old_history(self, core, session_factory):
        driver_id = await make_driver(session_factory)
        delivery_id = await make_delivery(session_factory)
        await core.state_machine.accept(delivery_id, driver_id)
        await core.tracking.report(driver_id, *PICKUP, timestamp=utc(40 * 24 * 60))
        await core.tracking.report(driver_id, *PICKUP)
        await core.history.flush()

        removed = await core.tracking.prune_history(timedelta(days=30))

        assert removed == (1, 1)
        assert await _count(session_factory, DriverLocationModel) == 1
        assert await _count(session_factory, DeliveryTrackingModel) == 1
