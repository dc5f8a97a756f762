"""
Delivery requests: create, offer, accept/reject and rate.

Creating a delivery prices it, stores it as PENDING and returns at once;
finding and notifying drivers runs as a background task.  A rejection is
recorded and triggers a fresh offer round that skips everyone who has
already declined.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Collection, Coroutine, Optional

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from dispatch.domain.entities import Dimensions, Location, PackageAttributes
from dispatch.domain.enums import DeliveryStatus, PaymentMethod, VehicleClass
from dispatch.domain.errors import DeliveryUnavailable, NotFoundError, ValidationError
from dispatch.domain.pricing import FareEngine, FareQuote
from dispatch.infrastructure.database import unit_of_work
from dispatch.infrastructure.models import DeliveryModel
from dispatch.infrastructure.repositories import (
    DeliveryRepository,
    DriverRepository,
    RejectionRepository,
)

from .matcher import DriverMatcher, NotifyReport
from .state_machine import DeliveryStateMachine

logger = logging.getLogger(__name__)


def package_of(delivery: DeliveryModel) -> PackageAttributes:
    dimensions = None
    if delivery.package_length_cm and delivery.package_width_cm and delivery.package_height_cm:
        dimensions = Dimensions(
            delivery.package_length_cm,
            delivery.package_width_cm,
            delivery.package_height_cm,
        )
    return PackageAttributes(
        weight_kg=delivery.package_weight_kg,
        dimensions=dimensions,
        is_fragile=delivery.is_fragile,
        requires_special_handling=delivery.requires_special_handling,
        description=delivery.package_description,
    )


class DeliveryRequests:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        fares: FareEngine,
        matcher: DriverMatcher,
        state_machine: DeliveryStateMachine,
        max_distance_km: float = 10.0,
        max_candidates: int = 5,
    ):
        self.session_factory = session_factory
        self.fares = fares
        self.matcher = matcher
        self.state_machine = state_machine
        self.max_distance_km = max_distance_km
        self.max_candidates = max_candidates
        self._tasks: set[asyncio.Task] = set()

    # ── Background matching ───────────────────────────────────────────

    def _spawn(self, coro: Coroutine[Any, Any, Any]) -> asyncio.Task:
        task = asyncio.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def drain(self) -> None:
        """Wait for in-flight matching rounds."""
        while True:
            pending = [t for t in self._tasks if not t.done()]
            if not pending:
                return
            await asyncio.gather(*pending, return_exceptions=True)

    async def match_and_notify(
        self, delivery_id: str, exclude: Collection[str] = ()
    ) -> Optional[NotifyReport]:
        """One offer round; best-effort, so failures are logged here."""
        try:
            async with unit_of_work(self.session_factory) as session:
                delivery = await DeliveryRepository(session).get_by_id(delivery_id)
                rejected = await RejectionRepository(session).driver_ids_for(delivery_id)
            if delivery is None or delivery.status != DeliveryStatus.PENDING:
                return None
            result = await self.matcher.find_candidates(
                Location(delivery.pickup_lat, delivery.pickup_lng),
                package_of(delivery),
                vehicle_class=delivery.vehicle_class,
                max_distance_km=self.max_distance_km,
                max_candidates=self.max_candidates,
                exclude_drivers=set(exclude) | set(rejected),
            )
            if not result.candidates:
                logger.info("No drivers offered delivery %s: %s", delivery_id, result.reason)
                return NotifyReport()
            report = await self.matcher.notify_candidates(delivery, result.candidates)
            logger.info(
                "Delivery %s offered to %d drivers (%d failed)",
                delivery_id,
                len(report.notified),
                len(report.failed),
            )
            return report
        except Exception:
            logger.exception("Matching round failed for delivery %s", delivery_id)
            return None

    # ── Operations ────────────────────────────────────────────────────

    async def request_delivery(
        self,
        rider_id: str,
        pickup: Location,
        dropoff: Location,
        *,
        pickup_address: str = "",
        dropoff_address: str = "",
        package: Optional[PackageAttributes] = None,
        vehicle_class: VehicleClass = VehicleClass.BIKE,
        payment_method: PaymentMethod = PaymentMethod.CASH,
        bad_weather: bool = False,
    ) -> tuple[DeliveryModel, FareQuote]:
        package = package or PackageAttributes()
        quote = self.fares.estimate(
            pickup,
            dropoff,
            package,
            vehicle_class=vehicle_class,
            payment_method=payment_method,
            bad_weather=bad_weather,
        )
        dims = package.dimensions
        async with unit_of_work(self.session_factory) as session:
            delivery = await DeliveryRepository(session).create(
                DeliveryModel(
                    rider_id=rider_id,
                    pickup_lat=pickup.latitude,
                    pickup_lng=pickup.longitude,
                    pickup_address=pickup_address,
                    dropoff_lat=dropoff.latitude,
                    dropoff_lng=dropoff.longitude,
                    dropoff_address=dropoff_address,
                    package_weight_kg=package.weight_kg,
                    package_length_cm=dims.length_cm if dims else None,
                    package_width_cm=dims.width_cm if dims else None,
                    package_height_cm=dims.height_cm if dims else None,
                    is_fragile=package.is_fragile,
                    requires_special_handling=package.requires_special_handling,
                    package_description=package.description,
                    vehicle_class=vehicle_class,
                    payment_method=payment_method,
                    distance_km=round(quote.distance_km, 2),
                    duration_min=quote.duration_min,
                    estimated_fare=quote.total,
                    status=DeliveryStatus.PENDING,
                )
            )
            await session.commit()

        logger.info("Delivery %s created for rider %s (fare %d)", delivery.id, rider_id, quote.total)
        self._spawn(self.match_and_notify(delivery.id))
        return delivery, quote

    async def get(self, delivery_id: str) -> DeliveryModel:
        async with unit_of_work(self.session_factory) as session:
            delivery = await DeliveryRepository(session).get_by_id(delivery_id)
        if delivery is None:
            raise NotFoundError("Delivery not found")
        return delivery

    async def accept(self, delivery_id: str, driver_id: str) -> DeliveryModel:
        delivery = await self.state_machine.accept(delivery_id, driver_id)
        try:
            await self.matcher.record_driver_response(driver_id, delivery_id, "ACCEPTED")
        except Exception:
            logger.exception("Could not record acceptance by %s", driver_id)
        return delivery

    async def reject(
        self, delivery_id: str, driver_id: str, reason: Optional[str] = None
    ) -> DeliveryModel:
        async with unit_of_work(self.session_factory) as session:
            delivery = await DeliveryRepository(session).get_by_id(delivery_id)
            if delivery is None:
                raise NotFoundError("Delivery not found")
            if await DriverRepository(session).get_by_id(driver_id) is None:
                raise NotFoundError("Driver not found")
            if delivery.status != DeliveryStatus.PENDING:
                raise DeliveryUnavailable("Delivery is no longer available")
            await RejectionRepository(session).add(delivery_id, driver_id, reason)
            await session.commit()

        try:
            await self.matcher.record_driver_response(driver_id, delivery_id, "REJECTED")
        except Exception:
            logger.exception("Could not record rejection by %s", driver_id)
        self._spawn(self.match_and_notify(delivery_id, exclude={driver_id}))
        return delivery

    async def rate(self, delivery_id: str, rider_id: str, score: float) -> DeliveryModel:
        """Rider rates the driver of a completed delivery, once."""
        if not 1 <= score <= 5:
            raise ValidationError("Rating must be between 1 and 5")
        async with unit_of_work(self.session_factory) as session:
            deliveries = DeliveryRepository(session)
            delivery = await deliveries.get_by_id(delivery_id)
            if delivery is None:
                raise NotFoundError("Delivery not found")
            if delivery.rider_id != rider_id:
                raise ValidationError("Only the rider can rate this delivery")
            if delivery.status != DeliveryStatus.COMPLETED or not delivery.driver_id:
                raise ValidationError("Only completed deliveries can be rated")
            if not await deliveries.mark_rated(delivery_id):
                raise ValidationError("Delivery has already been rated")
            await DriverRepository(session).apply_rating(delivery.driver_id, score)
            await session.commit()
            delivery = await deliveries.refresh(delivery)
        return delivery
