"""
Repository Pattern -- abstracts DB access so domain logic stays DB-agnostic.

Each repository receives an ``AsyncSession`` (unit-of-work) and exposes
domain-relevant queries only.  Writes on contested rows are conditional
``UPDATE ... WHERE <expected state>`` statements that report whether they
matched, so callers never do a plain read-modify-write.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any, Collection, Iterable, Optional

from sqlalchemy import delete, insert, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from .models import (
    DeliveryModel,
    DeliveryRejectionModel,
    DeliveryTrackingModel,
    DisputeModel,
    DriverLocationModel,
    DriverModel,
    NotificationModel,
)
from dispatch.domain.entities import PositionSample
from dispatch.domain.enums import (
    DeliveryStatus,
    DriverStatus,
    PaymentMethod,
    PaymentStatus,
    VehicleClass,
    VerificationStatus,
)


class DeliveryRepository:
    def __init__(self, session: AsyncSession):
        self.session = session

    async def create(self, delivery: DeliveryModel) -> DeliveryModel:
        self.session.add(delivery)
        await self.session.flush()
        return delivery

    async def get_by_id(self, delivery_id: str) -> Optional[DeliveryModel]:
        return await self.session.get(DeliveryModel, delivery_id)

    async def refresh(self, delivery: DeliveryModel) -> DeliveryModel:
        await self.session.refresh(delivery)
        return delivery

    async def transition_if(
        self, delivery_id: str, expected: DeliveryStatus, values: dict[str, Any]
    ) -> bool:
        """Apply *values* only if the status is still *expected*."""
        result = await self.session.execute(
            update(DeliveryModel)
            .where(DeliveryModel.id == delivery_id)
            .where(DeliveryModel.status == expected)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    async def set_payment_status_if(
        self,
        delivery_id: str,
        expected: PaymentStatus,
        target: PaymentStatus,
        now: datetime,
    ) -> bool:
        result = await self.session.execute(
            update(DeliveryModel)
            .where(DeliveryModel.id == delivery_id)
            .where(DeliveryModel.payment_status == expected)
            .values(payment_status=target, updated_at=now)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    async def mark_earnings_credited(self, delivery_id: str) -> bool:
        """Flip the credited flag once; False if it was already set."""
        result = await self.session.execute(
            update(DeliveryModel)
            .where(DeliveryModel.id == delivery_id)
            .where(DeliveryModel.earnings_credited.is_(False))
            .values(earnings_credited=True)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    async def mark_rated(self, delivery_id: str) -> bool:
        result = await self.session.execute(
            update(DeliveryModel)
            .where(DeliveryModel.id == delivery_id)
            .where(DeliveryModel.status == DeliveryStatus.COMPLETED)
            .where(DeliveryModel.rated.is_(False))
            .values(rated=True)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    async def get_untouched(
        self,
        status: DeliveryStatus,
        untouched_since: datetime,
        limit: int = 500,
        unsettled_before: Optional[datetime] = None,
    ) -> list[DeliveryModel]:
        """
        Oldest deliveries in *status* not updated since *untouched_since*.

        With *unsettled_before*, unpaid non-cash deliveries are left out until
        they were delivered before that instant.
        """
        query = (
            select(DeliveryModel)
            .where(DeliveryModel.status == status)
            .where(DeliveryModel.updated_at <= untouched_since)
        )
        if unsettled_before is not None:
            query = query.where(
                or_(
                    DeliveryModel.payment_method == PaymentMethod.CASH,
                    DeliveryModel.payment_status == PaymentStatus.PAID,
                    DeliveryModel.delivered_at < unsettled_before,
                )
            )
        result = await self.session.execute(
            query.order_by(DeliveryModel.updated_at).limit(limit)
        )
        return list(result.scalars().all())


class DriverRepository:
    def __init__(self, session: AsyncSession):
        self.session = session

    async def create(self, driver: DriverModel) -> DriverModel:
        self.session.add(driver)
        await self.session.flush()
        return driver

    async def get_by_id(self, driver_id: str) -> Optional[DriverModel]:
        return await self.session.get(DriverModel, driver_id)

    async def get_matchable(
        self,
        *,
        vehicle_class: VehicleClass | None = None,
        exclude: Collection[str] = (),
        cells: Collection[str] | None = None,
    ) -> list[DriverModel]:
        """ONLINE, available, verified drivers with no delivery in hand."""
        query = (
            select(DriverModel)
            .where(DriverModel.status == DriverStatus.ONLINE)
            .where(DriverModel.is_available.is_(True))
            .where(DriverModel.verification_status == VerificationStatus.VERIFIED)
            .where(DriverModel.current_delivery_id.is_(None))
            .where(DriverModel.latitude.is_not(None))
        )
        if vehicle_class is not None:
            query = query.where(DriverModel.vehicle_class == vehicle_class)
        if exclude:
            query = query.where(DriverModel.id.not_in(list(exclude)))
        if cells is not None:
            query = query.where(DriverModel.h3_cell.in_(list(cells)))
        result = await self.session.execute(query)
        return list(result.scalars().all())

    async def claim(self, driver_id: str, delivery_id: str, now: datetime) -> bool:
        """Assign *delivery_id* only if the driver is still free."""
        result = await self.session.execute(
            update(DriverModel)
            .where(DriverModel.id == driver_id)
            .where(DriverModel.status == DriverStatus.ONLINE)
            .where(DriverModel.is_available.is_(True))
            .where(DriverModel.current_delivery_id.is_(None))
            .values(
                status=DriverStatus.BUSY,
                is_available=False,
                current_delivery_id=delivery_id,
                available_since=None,
                updated_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    async def release(self, driver_id: str, delivery_id: str, now: datetime) -> bool:
        """Hand the driver back to the pool if still holding *delivery_id*."""
        result = await self.session.execute(
            update(DriverModel)
            .where(DriverModel.id == driver_id)
            .where(DriverModel.current_delivery_id == delivery_id)
            .values(
                status=DriverStatus.ONLINE,
                is_available=True,
                current_delivery_id=None,
                available_since=now,
                updated_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    async def go_online(self, driver_id: str, now: datetime) -> bool:
        """LOGGED_IN -> ONLINE on the first position report."""
        result = await self.session.execute(
            update(DriverModel)
            .where(DriverModel.id == driver_id)
            .where(DriverModel.status == DriverStatus.LOGGED_IN)
            .where(DriverModel.current_delivery_id.is_(None))
            .values(
                status=DriverStatus.ONLINE,
                is_available=True,
                available_since=now,
                updated_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    async def update_position(
        self,
        driver_id: str,
        *,
        latitude: float,
        longitude: float,
        h3_cell: str,
        recorded_at: datetime,
    ) -> bool:
        """Store the position unless a newer one is already recorded."""
        result = await self.session.execute(
            update(DriverModel)
            .where(DriverModel.id == driver_id)
            .where(
                or_(
                    DriverModel.last_location_at.is_(None),
                    DriverModel.last_location_at <= recorded_at,
                )
            )
            .values(
                latitude=latitude,
                longitude=longitude,
                h3_cell=h3_cell,
                last_location_at=recorded_at,
            )
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    async def credit_earnings(self, driver_id: str, amount: float) -> None:
        await self.session.execute(
            update(DriverModel)
            .where(DriverModel.id == driver_id)
            .values(
                total_earnings=DriverModel.total_earnings + amount,
                todays_earnings=DriverModel.todays_earnings + amount,
                completed_count=DriverModel.completed_count + 1,
            )
            .execution_options(synchronize_session=False)
        )

    async def apply_rating(self, driver_id: str, score: float) -> None:
        """Fold *score* into the running average."""
        await self.session.execute(
            update(DriverModel)
            .where(DriverModel.id == driver_id)
            .values(
                rating=(DriverModel.rating * DriverModel.rating_count + score)
                / (DriverModel.rating_count + 1),
                rating_count=DriverModel.rating_count + 1,
            )
            .execution_options(synchronize_session=False)
        )


def _sample_row(sample: PositionSample) -> dict[str, Any]:
    return {
        "latitude": sample.latitude,
        "longitude": sample.longitude,
        "bearing": sample.bearing,
        "speed": sample.speed,
        "accuracy": sample.accuracy,
        "status": sample.status,
        "recorded_at": sample.timestamp,
    }


class PositionHistoryRepository:
    def __init__(self, session: AsyncSession):
        self.session = session

    async def append_driver_samples(self, samples: Iterable[PositionSample]) -> int:
        rows = [{"driver_id": s.entity_id, **_sample_row(s)} for s in samples]
        if rows:
            await self.session.execute(insert(DriverLocationModel), rows)
        return len(rows)

    async def append_delivery_samples(self, samples: Iterable[PositionSample]) -> int:
        rows = [{"delivery_id": s.entity_id, **_sample_row(s)} for s in samples]
        if rows:
            await self.session.execute(insert(DeliveryTrackingModel), rows)
        return len(rows)

    async def driver_sample_exists(self, driver_id: str, recorded_at: datetime) -> bool:
        result = await self.session.execute(
            select(DriverLocationModel.id)
            .where(DriverLocationModel.driver_id == driver_id)
            .where(DriverLocationModel.recorded_at == recorded_at)
            .limit(1)
        )
        return result.scalar_one_or_none() is not None

    async def delivery_sample_exists(self, delivery_id: str, recorded_at: datetime) -> bool:
        result = await self.session.execute(
            select(DeliveryTrackingModel.id)
            .where(DeliveryTrackingModel.delivery_id == delivery_id)
            .where(DeliveryTrackingModel.recorded_at == recorded_at)
            .limit(1)
        )
        return result.scalar_one_or_none() is not None

    async def latest_driver_sample(self, driver_id: str) -> Optional[DriverLocationModel]:
        result = await self.session.execute(
            select(DriverLocationModel)
            .where(DriverLocationModel.driver_id == driver_id)
            .order_by(DriverLocationModel.recorded_at.desc())
            .limit(1)
        )
        return result.scalar_one_or_none()

    async def latest_delivery_sample(
        self, delivery_id: str
    ) -> Optional[DeliveryTrackingModel]:
        result = await self.session.execute(
            select(DeliveryTrackingModel)
            .where(DeliveryTrackingModel.delivery_id == delivery_id)
            .order_by(DeliveryTrackingModel.recorded_at.desc())
            .limit(1)
        )
        return result.scalar_one_or_none()

    async def driver_history(
        self,
        driver_id: str,
        *,
        since: datetime | None = None,
        until: datetime | None = None,
        limit: int = 100,
        offset: int = 0,
    ) -> list[DriverLocationModel]:
        query = select(DriverLocationModel).where(
            DriverLocationModel.driver_id == driver_id
        )
        if since is not None:
            query = query.where(DriverLocationModel.recorded_at >= since)
        if until is not None:
            query = query.where(DriverLocationModel.recorded_at <= until)
        result = await self.session.execute(
            query.order_by(DriverLocationModel.recorded_at.desc())
            .limit(limit)
            .offset(offset)
        )
        return list(result.scalars().all())

    async def delivery_history(
        self, delivery_id: str, *, limit: int = 50, offset: int = 0
    ) -> list[DeliveryTrackingModel]:
        result = await self.session.execute(
            select(DeliveryTrackingModel)
            .where(DeliveryTrackingModel.delivery_id == delivery_id)
            .order_by(DeliveryTrackingModel.recorded_at.desc())
            .limit(limit)
            .offset(offset)
        )
        return list(result.scalars().all())

    async def prune_before(self, cutoff: datetime) -> tuple[int, int]:
        drivers = await self.session.execute(
            delete(DriverLocationModel).where(DriverLocationModel.recorded_at < cutoff)
        )
        deliveries = await self.session.execute(
            delete(DeliveryTrackingModel).where(
                DeliveryTrackingModel.recorded_at < cutoff
            )
        )
        return drivers.rowcount or 0, deliveries.rowcount or 0


class NotificationRepository:
    def __init__(self, session: AsyncSession):
        self.session = session

    async def create(self, notification: NotificationModel) -> NotificationModel:
        self.session.add(notification)
        await self.session.flush()
        return notification

    async def get_for_recipient(
        self, recipient_id: str, type_: str | None = None
    ) -> list[NotificationModel]:
        query = select(NotificationModel).where(
            NotificationModel.recipient_id == recipient_id
        )
        if type_ is not None:
            query = query.where(NotificationModel.type == type_)
        result = await self.session.execute(query.order_by(NotificationModel.id))
        return list(result.scalars().all())


class DisputeRepository:
    def __init__(self, session: AsyncSession):
        self.session = session

    async def create(self, dispute: DisputeModel) -> DisputeModel:
        self.session.add(dispute)
        await self.session.flush()
        return dispute

    async def get_open_for_delivery(self, delivery_id: str) -> Optional[DisputeModel]:
        result = await self.session.execute(
            select(DisputeModel)
            .where(DisputeModel.delivery_id == delivery_id)
            .where(DisputeModel.status == "OPEN")
            .limit(1)
        )
        return result.scalar_one_or_none()


class RejectionRepository:
    def __init__(self, session: AsyncSession):
        self.session = session

    async def add(
        self, delivery_id: str, driver_id: str, reason: str | None = None
    ) -> DeliveryRejectionModel:
        rejection = DeliveryRejectionModel(
            delivery_id=delivery_id, driver_id=driver_id, reason=reason
        )
        self.session.add(rejection)
        await self.session.flush()
        return rejection

    async def driver_ids_for(self, delivery_id: str) -> list[str]:
        result = await self.session.execute(
            select(DeliveryRejectionModel.driver_id).where(
                DeliveryRejectionModel.delivery_id == delivery_id
            )
        )
        return list(result.scalars().all())
