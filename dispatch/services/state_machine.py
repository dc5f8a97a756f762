"""
Delivery State Machine
======================

Moves a delivery through its lifecycle.

Each transition:

1. checks legality against ``DELIVERY_TRANSITIONS`` and the per-origin
   guards (``dispatch.domain.lifecycle``);
2. writes the status, its timestamp column and status-specific fields with
   ``UPDATE ... WHERE status = <observed status>``, so of two concurrent
   callers only one matches a row;
3. claims or releases the driver in the same transaction;
4. after commit, dispatches the target status' effects best-effort.

Concurrency safety
------------------
* **Conditional UPDATE** decides the winner across processes.
* **Per-delivery asyncio lock** serializes callers inside one process so the
  loser fails fast on the status check instead of on the write.
* The timeout sweep re-checks the origin status and skips deliveries that
  have already moved on.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Any, Callable, Optional

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from dispatch.domain.entities import TransitionContext, utcnow
from dispatch.domain.enums import (
    CancelledBy,
    DeliveryStatus,
    PaymentMethod,
    PaymentStatus,
    VerificationStatus,
)
from dispatch.domain.errors import (
    DeliveryUnavailable,
    DispatchError,
    DriverUnavailable,
    NotFoundError,
)
from dispatch.domain.lifecycle import (
    RELEASING_STATUSES,
    STATUS_EFFECTS,
    TIMESTAMP_FIELDS,
    AutoTransition,
    auto_transitions,
    validate_payment_transition,
    validate_transition,
)
from dispatch.infrastructure.database import unit_of_work
from dispatch.infrastructure.locks import KeyedLocks
from dispatch.infrastructure.messaging import Publisher, delivery_topic
from dispatch.infrastructure.models import DeliveryModel
from dispatch.infrastructure.repositories import DeliveryRepository, DriverRepository

from .effects import EffectContext, EffectDispatcher

logger = logging.getLogger(__name__)


class DeliveryStateMachine:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        effects: EffectDispatcher,
        publisher: Publisher,
        rules: tuple[AutoTransition, ...] = auto_transitions(),
        payment_dispute_after: timedelta = timedelta(hours=24),
        sweep_batch_size: int = 500,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.session_factory = session_factory
        self.effects = effects
        self.publisher = publisher
        self.rules = rules
        self.payment_dispute_after = payment_dispute_after
        self.sweep_batch_size = sweep_batch_size
        self.clock = clock
        self.locks = KeyedLocks()

    # ── Core transition ───────────────────────────────────────────────

    async def transition(
        self,
        delivery_id: str,
        target: DeliveryStatus,
        ctx: Optional[TransitionContext] = None,
    ) -> DeliveryModel:
        delivery = await self._apply(delivery_id, target, ctx or TransitionContext())
        assert delivery is not None
        return delivery

    async def _apply(
        self,
        delivery_id: str,
        target: DeliveryStatus,
        ctx: TransitionContext,
        *,
        contested: bool = False,
        expected: Optional[DeliveryStatus] = None,
    ) -> Optional[DeliveryModel]:
        """
        Apply one transition and dispatch its effects.

        *contested*: a non-PENDING delivery raises ``DeliveryUnavailable``
        rather than ``InvalidStatusTransition`` (driver acceptance).
        *expected*: return ``None`` without changes if the delivery is no
        longer in this status (sweeps).
        """
        async with self.locks.hold(delivery_id):
            async with unit_of_work(self.session_factory) as session:
                deliveries = DeliveryRepository(session)
                drivers = DriverRepository(session)

                delivery = await deliveries.get_by_id(delivery_id)
                if delivery is None:
                    raise NotFoundError("Delivery not found")
                current = delivery.status
                if expected is not None and current != expected:
                    return None
                if contested and current != DeliveryStatus.PENDING:
                    raise DeliveryUnavailable("Delivery is no longer available")

                validate_transition(current, target, ctx)
                now = self.clock()
                driver_id = delivery.driver_id

                if target == DeliveryStatus.ACCEPTED:
                    driver_id = ctx.driver_id
                    await self._check_driver(drivers, driver_id)

                values = self._values_for(delivery, target, ctx, now)
                if not await deliveries.transition_if(delivery_id, current, values):
                    raise DeliveryUnavailable("Delivery status changed concurrently")

                if target == DeliveryStatus.ACCEPTED:
                    if not await drivers.claim(driver_id, delivery_id, now):
                        raise DriverUnavailable("Driver is not available")
                elif target in RELEASING_STATUSES and driver_id:
                    await drivers.release(driver_id, delivery_id, now)

                await session.commit()
                delivery = await deliveries.refresh(delivery)

        logger.info(
            "Delivery %s: %s -> %s", delivery_id, current.value, target.value
        )
        await self.effects.dispatch(
            STATUS_EFFECTS.get(target, ()),
            EffectContext(
                delivery=delivery,
                previous=current,
                target=target,
                driver_id=driver_id,
                transition=ctx,
            ),
        )
        return delivery

    @staticmethod
    async def _check_driver(drivers: DriverRepository, driver_id: str) -> None:
        driver = await drivers.get_by_id(driver_id)
        if driver is None:
            raise NotFoundError("Driver not found")
        if driver.verification_status != VerificationStatus.VERIFIED:
            raise DriverUnavailable("Driver is not verified")
        if driver.current_delivery_id is not None:
            raise DriverUnavailable("Driver already has an active delivery")

    @staticmethod
    def _values_for(
        delivery: DeliveryModel,
        target: DeliveryStatus,
        ctx: TransitionContext,
        now: datetime,
    ) -> dict[str, Any]:
        values: dict[str, Any] = {"status": target, "updated_at": now}
        stamp = TIMESTAMP_FIELDS.get(target)
        if stamp:
            values[stamp] = now

        if target == DeliveryStatus.ACCEPTED:
            values["driver_id"] = ctx.driver_id
        elif target == DeliveryStatus.CANCELLED:
            values["cancelled_by"] = ctx.cancelled_by or CancelledBy.SYSTEM
            values["cancellation_reason"] = ctx.cancellation_reason
        elif target == DeliveryStatus.COMPLETED:
            values["actual_fare"] = (
                ctx.actual_fare or delivery.actual_fare or delivery.estimated_fare
            )
            if delivery.payment_status in (PaymentStatus.PENDING, PaymentStatus.NOT_PAID):
                values["payment_status"] = PaymentStatus.PAID
        return values

    # ── Convenience operations ────────────────────────────────────────

    async def accept(self, delivery_id: str, driver_id: str) -> DeliveryModel:
        """PENDING -> ACCEPTED for *driver_id*; exactly one concurrent caller wins."""
        delivery = await self._apply(
            delivery_id,
            DeliveryStatus.ACCEPTED,
            TransitionContext(driver_id=driver_id),
            contested=True,
        )
        assert delivery is not None
        return delivery

    async def cancel(
        self,
        delivery_id: str,
        cancelled_by: CancelledBy,
        reason: Optional[str] = None,
    ) -> DeliveryModel:
        return await self.transition(
            delivery_id,
            DeliveryStatus.CANCELLED,
            TransitionContext(cancelled_by=cancelled_by, cancellation_reason=reason),
        )

    async def complete(
        self,
        delivery_id: str,
        payment_confirmed: bool = True,
        actual_fare: Optional[float] = None,
    ) -> DeliveryModel:
        return await self.transition(
            delivery_id,
            DeliveryStatus.COMPLETED,
            TransitionContext(payment_confirmed=payment_confirmed, actual_fare=actual_fare),
        )

    async def change_payment_status(
        self,
        delivery_id: str,
        target: PaymentStatus,
        ctx: Optional[TransitionContext] = None,
    ) -> DeliveryModel:
        """Payment has its own table; a DELIVERED delivery marked PAID completes."""
        ctx = ctx or TransitionContext()
        async with self.locks.hold(delivery_id):
            async with unit_of_work(self.session_factory) as session:
                deliveries = DeliveryRepository(session)
                delivery = await deliveries.get_by_id(delivery_id)
                if delivery is None:
                    raise NotFoundError("Delivery not found")
                current = delivery.payment_status
                validate_payment_transition(current, target, ctx)
                if not await deliveries.set_payment_status_if(
                    delivery_id, current, target, self.clock()
                ):
                    raise DeliveryUnavailable("Payment status changed concurrently")
                await session.commit()
                delivery = await deliveries.refresh(delivery)

        logger.info("Delivery %s payment: %s -> %s", delivery_id, current.value, target.value)
        try:
            await self.publisher.publish(
                delivery_topic(delivery_id),
                "payment_status_changed",
                {"delivery_id": delivery_id, "payment_status": target.value},
            )
        except Exception:
            logger.exception("Failed to publish payment status for %s", delivery_id)

        if target == PaymentStatus.PAID and delivery.status == DeliveryStatus.DELIVERED:
            completed = await self._apply(
                delivery_id,
                DeliveryStatus.COMPLETED,
                TransitionContext(payment_confirmed=True),
                expected=DeliveryStatus.DELIVERED,
            )
            if completed is not None:
                delivery = completed
        return delivery

    # ── Timeout sweep ─────────────────────────────────────────────────

    async def run_auto_transitions(self, now: Optional[datetime] = None) -> dict[str, int]:
        """Apply every timeout rule once; one bad delivery never stops the pass."""
        now = now or self.clock()
        applied: dict[str, int] = {}
        for rule in self.rules:
            async with unit_of_work(self.session_factory) as session:
                unsettled_before = None
                if rule.origin == DeliveryStatus.DELIVERED:
                    unsettled_before = now - self.payment_dispute_after
                due = await DeliveryRepository(session).get_untouched(
                    rule.origin,
                    now - rule.after,
                    limit=self.sweep_batch_size,
                    unsettled_before=unsettled_before,
                )
            count = 0
            for delivery in due:
                try:
                    if await self._auto_apply(delivery, rule, now):
                        count += 1
                except DispatchError as exc:
                    logger.info("Skipping %s in sweep: %s", delivery.id, exc.message)
                except Exception:
                    logger.exception("Auto-transition failed for delivery %s", delivery.id)
            applied[f"{rule.origin.value}->{rule.target.value}"] = count
        if any(applied.values()):
            logger.info("Auto-transition sweep: %s", applied)
        return applied

    async def _auto_apply(
        self, delivery: DeliveryModel, rule: AutoTransition, now: datetime
    ) -> bool:
        target = rule.target
        ctx = TransitionContext(
            cancelled_by=CancelledBy.SYSTEM,
            cancellation_reason=rule.reason,
            dispute_title=rule.reason,
        )
        if rule.origin == DeliveryStatus.DELIVERED:
            settled = (
                delivery.payment_status == PaymentStatus.PAID
                or delivery.payment_method == PaymentMethod.CASH
            )
            if settled:
                ctx.payment_confirmed = True
            elif delivery.delivered_at and now - delivery.delivered_at > self.payment_dispute_after:
                target = DeliveryStatus.DISPUTED
                ctx.dispute_title = "Payment not confirmed"
                ctx.dispute_description = "Payment was not confirmed after delivery"
            else:
                return False
        result = await self._apply(delivery.id, target, ctx, expected=rule.origin)
        return result is not None
