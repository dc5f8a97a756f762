"""
Post-transition side effects.

Each ``Effect`` member has exactly one handler; the dispatcher refuses to
start with a missing one.  Handlers run after the transition has been
committed and are isolated from each other: a failure is logged and the
remaining effects still run.  Every handler is safe to run twice.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, Iterable, Optional

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from dispatch.domain.entities import DriverSnapshot, TransitionContext
from dispatch.domain.enums import DeliveryStatus, PaymentStatus
from dispatch.domain.lifecycle import DRIVER_MESSAGES, RIDER_MESSAGES, Effect
from dispatch.infrastructure.database import unit_of_work
from dispatch.infrastructure.location_store import (
    TIMESTAMP_FIELD,
    LocationStore,
    delivery_tracking_key,
    driver_location_key,
)
from dispatch.infrastructure.messaging import (
    Notifier,
    Publisher,
    delivery_topic,
    driver_topic,
)
from dispatch.infrastructure.models import DeliveryModel, DisputeModel
from dispatch.infrastructure.repositories import (
    DeliveryRepository,
    DisputeRepository,
    DriverRepository,
)

logger = logging.getLogger(__name__)

ADMIN_TOPIC = "admin:escalations"


@dataclass
class EffectContext:
    delivery: DeliveryModel
    previous: DeliveryStatus
    target: DeliveryStatus
    driver_id: Optional[str]
    transition: TransitionContext


Handler = Callable[[EffectContext], Awaitable[None]]


class EffectDispatcher:
    def __init__(
        self,
        store: LocationStore,
        session_factory: async_sessionmaker[AsyncSession],
        notifier: Notifier,
        publisher: Publisher,
        location_ttl_seconds: int = 300,
    ):
        self.store = store
        self.session_factory = session_factory
        self.notifier = notifier
        self.publisher = publisher
        self.location_ttl_seconds = location_ttl_seconds

        self.handlers: dict[Effect, Handler] = {
            Effect.NOTIFY_RIDER: self._notify_rider,
            Effect.NOTIFY_DRIVER: self._notify_driver,
            Effect.PUBLISH_STATUS: self._publish_status,
            Effect.REFRESH_DRIVER_AVAILABILITY: self._refresh_driver_availability,
            Effect.START_TRACKING: self._start_tracking,
            Effect.STOP_TRACKING: self._stop_tracking,
            Effect.REQUEST_PAYMENT_CONFIRMATION: self._request_payment_confirmation,
            Effect.CREDIT_DRIVER_EARNINGS: self._credit_driver_earnings,
            Effect.CREATE_DISPUTE: self._create_dispute,
            Effect.ESCALATE: self._escalate,
        }
        missing = set(Effect) - set(self.handlers)
        if missing:
            raise ValueError(f"No handler for effects: {sorted(e.value for e in missing)}")

    async def dispatch(self, effects: Iterable[Effect], ctx: EffectContext) -> list[Effect]:
        """Run *effects* in order; return the ones that failed."""
        failed = []
        for effect in effects:
            try:
                await self.handlers[effect](ctx)
            except Exception:
                logger.exception(
                    "Effect %s failed for delivery %s -> %s",
                    effect.value,
                    ctx.delivery.id,
                    ctx.target.value,
                )
                failed.append(effect)
        return failed

    # ── Handlers ──────────────────────────────────────────────────────

    async def _notify_rider(self, ctx: EffectContext) -> None:
        text = RIDER_MESSAGES.get(ctx.target)
        if text is None:
            return
        await self.notifier.notify(
            ctx.delivery.rider_id,
            "delivery_status",
            text.title,
            text.message,
            {"delivery_id": ctx.delivery.id, "status": ctx.target.value},
        )

    async def _notify_driver(self, ctx: EffectContext) -> None:
        text = DRIVER_MESSAGES.get(ctx.target)
        if text is None or not ctx.driver_id:
            return
        await self.notifier.notify(
            ctx.driver_id,
            "delivery_status",
            text.title,
            text.message,
            {"delivery_id": ctx.delivery.id, "status": ctx.target.value},
        )

    async def _publish_status(self, ctx: EffectContext) -> None:
        await self.publisher.publish(
            delivery_topic(ctx.delivery.id),
            "status_changed",
            {
                "delivery_id": ctx.delivery.id,
                "previous": ctx.previous.value,
                "status": ctx.target.value,
                "driver_id": ctx.driver_id,
            },
        )

    async def _refresh_driver_availability(self, ctx: EffectContext) -> None:
        """Copy the driver's committed status onto their cached position."""
        if not ctx.driver_id:
            return
        async with unit_of_work(self.session_factory) as session:
            driver = await DriverRepository(session).get_by_id(ctx.driver_id)
        if driver is None:
            return
        key = driver_location_key(driver.id)
        entry = await self.store.get(key)
        if entry is None:
            return
        snapshot = DriverSnapshot(
            driver_id=driver.id,
            latitude=entry["latitude"],
            longitude=entry["longitude"],
            location_at=None,
            status=driver.status,
            is_available=driver.is_available,
            verification_status=driver.verification_status,
            current_delivery_id=driver.current_delivery_id,
            vehicle_class=driver.vehicle_class,
            rating=driver.rating,
            completed_count=driver.completed_count,
            available_since=driver.available_since,
        )
        entry.update(snapshot.to_cache_fields())
        # Loses to a newer position report, which carries fresh fields itself
        await self.store.set_if_newer(
            key, entry, self.location_ttl_seconds, float(entry.get(TIMESTAMP_FIELD, 0))
        )

    async def _start_tracking(self, ctx: EffectContext) -> None:
        if not ctx.driver_id:
            return
        await self.publisher.publish(
            driver_topic(ctx.driver_id),
            "tracking_started",
            {"delivery_id": ctx.delivery.id},
        )

    async def _stop_tracking(self, ctx: EffectContext) -> None:
        await self.store.delete(delivery_tracking_key(ctx.delivery.id))
        if ctx.driver_id:
            await self.publisher.publish(
                driver_topic(ctx.driver_id),
                "tracking_stopped",
                {"delivery_id": ctx.delivery.id},
            )

    async def _request_payment_confirmation(self, ctx: EffectContext) -> None:
        if ctx.delivery.payment_status == PaymentStatus.PAID:
            return
        await self.notifier.notify(
            ctx.delivery.rider_id,
            "payment_confirmation",
            "Confirm payment",
            "Please confirm payment for your delivery.",
            {
                "delivery_id": ctx.delivery.id,
                "amount": ctx.delivery.actual_fare or ctx.delivery.estimated_fare,
                "payment_method": ctx.delivery.payment_method.value,
            },
        )

    async def _credit_driver_earnings(self, ctx: EffectContext) -> None:
        if not ctx.driver_id:
            return
        amount = ctx.delivery.actual_fare or ctx.delivery.estimated_fare or 0.0
        async with unit_of_work(self.session_factory) as session:
            if not await DeliveryRepository(session).mark_earnings_credited(
                ctx.delivery.id
            ):
                return
            await DriverRepository(session).credit_earnings(ctx.driver_id, amount)
            await session.commit()
        logger.info("Credited %.2f to driver %s", amount, ctx.driver_id)

    async def _create_dispute(self, ctx: EffectContext) -> None:
        async with unit_of_work(self.session_factory) as session:
            repo = DisputeRepository(session)
            if await repo.get_open_for_delivery(ctx.delivery.id) is not None:
                return
            await repo.create(
                DisputeModel(
                    delivery_id=ctx.delivery.id,
                    rider_id=ctx.delivery.rider_id,
                    driver_id=ctx.driver_id,
                    title=ctx.transition.dispute_title or "Delivery disputed",
                    description=ctx.transition.dispute_description
                    or f"Delivery moved from {ctx.previous.value} to DISPUTED",
                )
            )
            await session.commit()

    async def _escalate(self, ctx: EffectContext) -> None:
        logger.warning(
            "Delivery %s escalated (%s -> %s)",
            ctx.delivery.id,
            ctx.previous.value,
            ctx.target.value,
        )
        await self.publisher.publish(
            ADMIN_TOPIC,
            "delivery_escalated",
            {
                "delivery_id": ctx.delivery.id,
                "previous": ctx.previous.value,
                "status": ctx.target.value,
                "title": ctx.transition.dispute_title,
            },
        )
