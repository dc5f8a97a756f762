"""
Tracking Ingest
===============

Accepts driver position reports.

Per report:

1. validate coordinates;
2. ``LOGGED_IN -> ONLINE`` on the first report;
3. compare-and-swap the sample into the location cache under the driver's
   key (an older sample never overwrites a newer one);
4. for a driver on a delivery, the same under the delivery's tracking key,
   then publish to the delivery topic;
5. queue the sample for durable history.

The cache write is the latency-critical path.  Durable history goes through
``HistoryWriter``, which batches inserts and flushes on size or interval.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timedelta
from typing import Callable, Optional

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from dispatch.domain.entities import PositionSample, as_utc, utcnow
from dispatch.domain.enums import DriverStatus
from dispatch.domain.errors import DependencyUnavailable, NotFoundError
from dispatch.domain.geo import h3_cell, validate_coordinates
from dispatch.infrastructure.database import unit_of_work
from dispatch.infrastructure.location_store import (
    DELIVERY_TRACKING_PREFIX,
    DRIVER_LOCATION_PREFIX,
    TIMESTAMP_FIELD,
    LocationStore,
    delivery_tracking_key,
    driver_location_key,
)
from dispatch.infrastructure.messaging import Publisher, delivery_topic
from dispatch.infrastructure.models import DeliveryTrackingModel, DriverLocationModel
from dispatch.infrastructure.repositories import (
    DeliveryRepository,
    DriverRepository,
    PositionHistoryRepository,
)

from .matcher import snapshot_from_row

logger = logging.getLogger(__name__)

DRIVER = "driver"
DELIVERY = "delivery"


def _sample_from_row(
    entity_id: str, row: DriverLocationModel | DeliveryTrackingModel
) -> PositionSample:
    return PositionSample(
        entity_id=entity_id,
        latitude=row.latitude,
        longitude=row.longitude,
        timestamp=row.recorded_at,
        status=row.status,
        bearing=row.bearing,
        speed=row.speed,
        accuracy=row.accuracy,
    )


# ── Batched durable history ───────────────────────────────────────────


class HistoryWriter:
    """
    Buffers samples and writes them in batches.

    A failed flush puts the batch back at the front of the buffer; the
    buffer is capped at ``max_pending`` samples, oldest dropped first.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        batch_size: int = 200,
        flush_interval: float = 2.0,
        h3_resolution: int = 7,
        max_pending: int = 50_000,
    ):
        self.session_factory = session_factory
        self.batch_size = batch_size
        self.flush_interval = flush_interval
        self.h3_resolution = h3_resolution
        self.max_pending = max_pending
        self._pending: list[tuple[str, PositionSample]] = []
        self._wake = asyncio.Event()
        self._stop: Optional[asyncio.Event] = None
        self._task: Optional[asyncio.Task] = None

    def submit(self, kind: str, sample: PositionSample) -> None:
        self._pending.append((kind, sample))
        if len(self._pending) > self.max_pending:
            dropped = len(self._pending) - self.max_pending
            del self._pending[:dropped]
            logger.warning("History buffer full; dropped %d oldest samples", dropped)
        if len(self._pending) >= self.batch_size:
            self._wake.set()

    @property
    def pending(self) -> int:
        return len(self._pending)

    async def flush(self) -> int:
        """Write everything buffered; returns the number of samples stored."""
        if not self._pending:
            return 0
        batch, self._pending = self._pending, []
        drivers = [s for kind, s in batch if kind == DRIVER]
        deliveries = [s for kind, s in batch if kind == DELIVERY]

        latest: dict[str, PositionSample] = {}
        for sample in drivers:
            seen = latest.get(sample.entity_id)
            if seen is None or sample.timestamp >= seen.timestamp:
                latest[sample.entity_id] = sample

        try:
            async with unit_of_work(self.session_factory) as session:
                history = PositionHistoryRepository(session)
                await history.append_driver_samples(drivers)
                await history.append_delivery_samples(deliveries)
                driver_repo = DriverRepository(session)
                for sample in latest.values():
                    await driver_repo.update_position(
                        sample.entity_id,
                        latitude=sample.latitude,
                        longitude=sample.longitude,
                        h3_cell=h3_cell(sample.latitude, sample.longitude, self.h3_resolution),
                        recorded_at=sample.timestamp,
                    )
                await session.commit()
        except DependencyUnavailable:
            logger.warning("History flush failed; %d samples kept for retry", len(batch))
            self._pending[:0] = batch
            return 0
        logger.debug("Flushed %d position samples", len(batch))
        return len(batch)

    async def start(self) -> None:
        self._stop = asyncio.Event()
        self._task = asyncio.create_task(self._loop())
        logger.info(
            "History writer started (batch=%d, interval=%.1fs)",
            self.batch_size,
            self.flush_interval,
        )

    async def stop(self) -> None:
        if self._stop:
            self._stop.set()
            self._wake.set()
        if self._task:
            await self._task
        await self.flush()
        logger.info("History writer stopped")

    async def _loop(self) -> None:
        assert self._stop is not None
        while not self._stop.is_set():
            try:
                await asyncio.wait_for(self._wake.wait(), timeout=self.flush_interval)
            except asyncio.TimeoutError:
                pass
            self._wake.clear()
            try:
                await self.flush()
            except Exception:
                logger.exception("Unhandled error flushing position history")


# ── Ingest ────────────────────────────────────────────────────────────


class TrackingIngest:
    def __init__(
        self,
        store: LocationStore,
        session_factory: async_sessionmaker[AsyncSession],
        publisher: Publisher,
        history: HistoryWriter,
        location_ttl_seconds: int = 300,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.store = store
        self.session_factory = session_factory
        self.publisher = publisher
        self.history = history
        self.location_ttl_seconds = location_ttl_seconds
        self.clock = clock

    async def report(
        self,
        driver_id: str,
        latitude: float,
        longitude: float,
        *,
        timestamp: Optional[datetime] = None,
        bearing: Optional[float] = None,
        speed: Optional[float] = None,
        accuracy: Optional[float] = None,
    ) -> PositionSample:
        validate_coordinates(latitude, longitude)
        recorded_at = as_utc(timestamp) if timestamp else self.clock()

        async with unit_of_work(self.session_factory) as session:
            drivers = DriverRepository(session)
            driver = await drivers.get_by_id(driver_id)
            if driver is None:
                raise NotFoundError("Driver not found")
            if driver.status == DriverStatus.LOGGED_IN:
                if await drivers.go_online(driver_id, self.clock()):
                    await session.commit()
                    await session.refresh(driver)
                    logger.info("Driver %s is now ONLINE", driver_id)
            delivery_status = None
            if driver.current_delivery_id:
                delivery = await DeliveryRepository(session).get_by_id(
                    driver.current_delivery_id
                )
                if delivery is not None:
                    delivery_status = delivery.status.value

        snapshot = snapshot_from_row(driver)
        sample = PositionSample(
            entity_id=driver_id,
            latitude=latitude,
            longitude=longitude,
            timestamp=recorded_at,
            status=driver.status.value,
            bearing=bearing,
            speed=speed,
            accuracy=accuracy,
        )
        epoch = recorded_at.timestamp()

        fresh = await self.store.set_if_newer(
            driver_location_key(driver_id),
            {**sample.to_payload(), **snapshot.to_cache_fields()},
            self.location_ttl_seconds,
            epoch,
        )
        if not fresh:
            logger.debug("Out-of-order position for driver %s ignored in cache", driver_id)
        self.history.submit(DRIVER, sample)

        delivery_id = driver.current_delivery_id
        if delivery_id:
            tracked = PositionSample(
                entity_id=delivery_id,
                latitude=latitude,
                longitude=longitude,
                timestamp=recorded_at,
                status=delivery_status,
                bearing=bearing,
                speed=speed,
                accuracy=accuracy,
            )
            payload = {**tracked.to_payload(), "driver_id": driver_id}
            delivery_fresh = await self.store.set_if_newer(
                delivery_tracking_key(delivery_id),
                payload,
                self.location_ttl_seconds,
                epoch,
            )
            self.history.submit(DELIVERY, tracked)
            if delivery_fresh:
                try:
                    await self.publisher.publish(
                        delivery_topic(delivery_id), "location_updated", payload
                    )
                except Exception:
                    logger.exception("Failed to publish location for delivery %s", delivery_id)

        return sample

    # ── Reads ─────────────────────────────────────────────────────────

    async def latest_driver_position(self, driver_id: str) -> Optional[PositionSample]:
        entry = await self.store.get(driver_location_key(driver_id))
        if entry is not None:
            return PositionSample.from_payload(entry)
        async with unit_of_work(self.session_factory) as session:
            row = await PositionHistoryRepository(session).latest_driver_sample(driver_id)
        return _sample_from_row(driver_id, row) if row else None

    async def latest_delivery_position(self, delivery_id: str) -> Optional[PositionSample]:
        entry = await self.store.get(delivery_tracking_key(delivery_id))
        if entry is not None:
            return PositionSample.from_payload(entry)
        async with unit_of_work(self.session_factory) as session:
            row = await PositionHistoryRepository(session).latest_delivery_sample(delivery_id)
        return _sample_from_row(delivery_id, row) if row else None

    async def driver_history(
        self,
        driver_id: str,
        *,
        since: Optional[datetime] = None,
        until: Optional[datetime] = None,
        limit: int = 100,
        offset: int = 0,
    ) -> list[PositionSample]:
        async with unit_of_work(self.session_factory) as session:
            rows = await PositionHistoryRepository(session).driver_history(
                driver_id, since=since, until=until, limit=limit, offset=offset
            )
        return [_sample_from_row(driver_id, r) for r in rows]

    async def delivery_history(
        self, delivery_id: str, *, limit: int = 50, offset: int = 0
    ) -> list[PositionSample]:
        async with unit_of_work(self.session_factory) as session:
            rows = await PositionHistoryRepository(session).delivery_history(
                delivery_id, limit=limit, offset=offset
            )
        return [_sample_from_row(delivery_id, r) for r in rows]

    # ── Maintenance ───────────────────────────────────────────────────

    async def archive_stale(self, older_than: timedelta, now: Optional[datetime] = None) -> int:
        """Make sure old cached samples are in history, then evict them."""
        now = now or self.clock()
        cutoff = (now - older_than).timestamp()
        await self.history.flush()

        archived = 0
        for prefix, kind in ((DRIVER_LOCATION_PREFIX, DRIVER), (DELIVERY_TRACKING_PREFIX, DELIVERY)):
            for key in await self.store.keys_with_prefix(prefix):
                try:
                    if await self._archive_one(key, kind, cutoff):
                        archived += 1
                except Exception:
                    logger.exception("Failed to archive cached position %s", key)
        if archived:
            logger.info("Archived %d cached positions", archived)
        return archived

    async def _archive_one(self, key: str, kind: str, cutoff: float) -> bool:
        entry = await self.store.get(key)
        if entry is None or float(entry.get(TIMESTAMP_FIELD, 0)) > cutoff:
            return False
        sample = PositionSample.from_payload(entry)
        async with unit_of_work(self.session_factory) as session:
            history = PositionHistoryRepository(session)
            if kind == DRIVER:
                if not await history.driver_sample_exists(sample.entity_id, sample.timestamp):
                    await history.append_driver_samples([sample])
            else:
                if not await history.delivery_sample_exists(sample.entity_id, sample.timestamp):
                    await history.append_delivery_samples([sample])
            await session.commit()
        await self.store.delete(key)
        return True

    async def prune_history(
        self, retention: timedelta, now: Optional[datetime] = None
    ) -> tuple[int, int]:
        cutoff = (now or self.clock()) - retention
        async with unit_of_work(self.session_factory) as session:
            removed = await PositionHistoryRepository(session).prune_before(cutoff)
            await session.commit()
        if any(removed):
            logger.info(
                "Pruned %d driver and %d delivery history rows older than %s",
                removed[0],
                removed[1],
                cutoff.isoformat(),
            )
        return removed
