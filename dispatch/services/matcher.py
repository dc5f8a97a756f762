"""
Driver Matcher
==============

Finds, filters and ranks drivers for a pending delivery.

Algorithm
---------
1. **Retrieval** -- every cached driver position (fresh, shared across
   instances).  When the cache yields fewer than ``min_cache_hits`` drivers,
   supplement from the durable store, pre-filtered to the H3 cells that
   cover the search radius.  Cache records win on duplicate driver ids.
2. **Eligibility** -- hard filters in ``dispatch.domain.matching``.
3. **Distance** -- haversine to pickup, drop anything beyond the radius.
4. **Scoring / ranking** -- weighted sub-scores, highest first, truncated.

Matching is best-effort: an unreachable source shrinks the candidate pool,
and only when both sources fail is an empty result returned, with a reason.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Collection, Optional

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from dispatch.domain.entities import (
    DriverSnapshot,
    Location,
    MatchCandidate,
    MatchResult,
    PackageAttributes,
    utcnow,
)
from dispatch.domain.enums import VehicleClass
from dispatch.domain.errors import DependencyUnavailable
from dispatch.domain.geo import cells_within_km, haversine_km
from dispatch.domain.matching import (
    EligibilityPolicy,
    ineligibility_reason,
    rank,
    score_driver,
)
from dispatch.infrastructure.database import unit_of_work
from dispatch.infrastructure.location_store import DRIVER_LOCATION_PREFIX, LocationStore
from dispatch.infrastructure.messaging import Notifier, Publisher, driver_topic
from dispatch.infrastructure.models import DeliveryModel, DriverModel
from dispatch.infrastructure.repositories import DriverRepository, NotificationRepository

logger = logging.getLogger(__name__)

NEW_DELIVERY = "new_delivery"


@dataclass
class NotifyReport:
    notified: list[str] = field(default_factory=list)
    failed: dict[str, str] = field(default_factory=dict)


def snapshot_from_row(row: DriverModel) -> DriverSnapshot:
    return DriverSnapshot(
        driver_id=row.id,
        latitude=row.latitude,
        longitude=row.longitude,
        location_at=row.last_location_at,
        status=row.status,
        is_available=row.is_available,
        verification_status=row.verification_status,
        current_delivery_id=row.current_delivery_id,
        vehicle_class=row.vehicle_class,
        rating=row.rating or 0.0,
        completed_count=row.completed_count or 0,
        available_since=row.available_since,
        source="store",
    )


class DriverMatcher:
    def __init__(
        self,
        store: LocationStore,
        session_factory: async_sessionmaker[AsyncSession],
        notifier: Notifier,
        publisher: Publisher,
        policy: EligibilityPolicy = EligibilityPolicy(),
        min_cache_hits: int = 3,
        h3_resolution: int = 7,
        clock: Callable = utcnow,
    ):
        self.store = store
        self.session_factory = session_factory
        self.notifier = notifier
        self.publisher = publisher
        self.policy = policy
        self.min_cache_hits = min_cache_hits
        self.h3_resolution = h3_resolution
        self.clock = clock

    # ── Retrieval ─────────────────────────────────────────────────────

    async def _from_cache(self) -> list[DriverSnapshot]:
        snapshots = []
        for key in await self.store.keys_with_prefix(DRIVER_LOCATION_PREFIX):
            entry = await self.store.get(key)
            if entry is None:
                continue  # expired between scan and read
            try:
                snapshots.append(DriverSnapshot.from_cache(entry))
            except (KeyError, TypeError, ValueError):
                logger.warning("Skipping malformed cache entry %s", key)
        return snapshots

    async def _from_store(
        self,
        pickup: Location,
        max_distance_km: float,
        vehicle_class: Optional[VehicleClass],
        exclude: Collection[str],
    ) -> list[DriverSnapshot]:
        cells = cells_within_km(
            pickup.latitude, pickup.longitude, max_distance_km, self.h3_resolution
        )
        async with unit_of_work(self.session_factory) as session:
            rows = await DriverRepository(session).get_matchable(
                vehicle_class=vehicle_class, exclude=exclude, cells=cells
            )
        return [snapshot_from_row(r) for r in rows]

    # ── Public API ────────────────────────────────────────────────────

    async def find_candidates(
        self,
        pickup: Location,
        delivery_attributes: Optional[PackageAttributes] = None,
        *,
        vehicle_class: Optional[VehicleClass] = None,
        max_distance_km: float = 10.0,
        max_candidates: int = 5,
        exclude_drivers: Collection[str] = (),
    ) -> MatchResult:
        """Ranked candidates for a pickup; never raises on backend outages."""
        exclude = set(exclude_drivers)
        pool: dict[str, DriverSnapshot] = {}
        cache_ok = store_ok = True

        try:
            for snapshot in await self._from_cache():
                pool[snapshot.driver_id] = snapshot
        except DependencyUnavailable:
            logger.warning("Location cache unavailable; matching from durable store")
            cache_ok = False

        if len(pool) < self.min_cache_hits:
            try:
                for snapshot in await self._from_store(
                    pickup, max_distance_km, vehicle_class, exclude
                ):
                    pool.setdefault(snapshot.driver_id, snapshot)
            except DependencyUnavailable:
                logger.warning("Driver store unavailable during matching")
                store_ok = False

        if not cache_ok and not store_ok:
            return MatchResult(reason="Driver location sources are unavailable")

        now = self.clock()
        scored: list[MatchCandidate] = []
        for driver in pool.values():
            reason = ineligibility_reason(
                driver, now, self.policy, vehicle_class, exclude
            )
            if reason is not None:
                continue
            distance = haversine_km(
                pickup.latitude, pickup.longitude, driver.latitude, driver.longitude
            )
            if distance > max_distance_km:
                continue
            scored.append(score_driver(driver, distance, now, self.policy))

        candidates = rank(scored, max_candidates)
        result = MatchResult(candidates=candidates, total_available=len(scored))
        if not candidates:
            result.reason = f"No eligible drivers within {max_distance_km:g} km"
        logger.info(
            "Matched %d/%d drivers for pickup (%.4f, %.4f)",
            len(candidates),
            len(pool),
            pickup.latitude,
            pickup.longitude,
        )
        return result

    async def notify_candidates(
        self, delivery: DeliveryModel, candidates: list[MatchCandidate]
    ) -> NotifyReport:
        """Offer *delivery* to each candidate; failures are collected, not raised."""
        report = NotifyReport()
        for candidate in candidates:
            payload = self._offer_payload(delivery, candidate)
            try:
                await self.notifier.notify(
                    candidate.driver_id,
                    NEW_DELIVERY,
                    "New delivery request",
                    f"Pickup {candidate.distance_km:.1f} km away, "
                    f"about {candidate.pickup_eta_minutes} min.",
                    payload,
                )
                await self.publisher.publish(
                    driver_topic(candidate.driver_id), NEW_DELIVERY, payload
                )
            except Exception as exc:
                logger.exception(
                    "Failed to notify driver %s of delivery %s",
                    candidate.driver_id,
                    delivery.id,
                )
                report.failed[candidate.driver_id] = type(exc).__name__
            else:
                report.notified.append(candidate.driver_id)
        return report

    async def record_driver_response(
        self, driver_id: str, delivery_id: str, response: str
    ) -> bool:
        """Mark the driver's offer for *delivery_id* as accepted/rejected."""
        async with unit_of_work(self.session_factory) as session:
            offers = await NotificationRepository(session).get_for_recipient(
                driver_id, NEW_DELIVERY
            )
            matched = [n for n in offers if (n.data or {}).get("delivery_id") == delivery_id]
            for offer in matched:
                offer.response = response
                offer.responded_at = self.clock()
            await session.commit()
        return bool(matched)

    @staticmethod
    def _offer_payload(
        delivery: DeliveryModel, candidate: MatchCandidate
    ) -> dict[str, Any]:
        return {
            "delivery_id": delivery.id,
            "pickup": {
                "latitude": delivery.pickup_lat,
                "longitude": delivery.pickup_lng,
                "address": delivery.pickup_address,
            },
            "dropoff": {
                "latitude": delivery.dropoff_lat,
                "longitude": delivery.dropoff_lng,
                "address": delivery.dropoff_address,
            },
            "estimated_fare": delivery.estimated_fare,
            "distance_km": round(candidate.distance_km, 2),
            "pickup_eta_minutes": candidate.pickup_eta_minutes,
            "score": candidate.score,
        }
