"""
Shared test fixtures.

Each test gets its own SQLite database file (via aiosqlite) created from
the production models, an in-process location cache and recording fakes
for the publisher and notifier, so tests run without PostgreSQL or Redis.
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Any, AsyncGenerator, Optional

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from dispatch.config import Settings
from dispatch.core import DispatchCore, build_core
from dispatch.domain.enums import (
    DeliveryStatus,
    DriverStatus,
    PaymentMethod,
    VehicleClass,
    VerificationStatus,
)
from dispatch.domain.geo import h3_cell
from dispatch.infrastructure.database import Base, make_engine, make_session_factory
from dispatch.infrastructure.location_store import MemoryLocationStore
from dispatch.infrastructure.messaging import Notifier, Publisher
from dispatch.infrastructure.models import DeliveryModel, DriverModel

# Lagos Island
PICKUP = (6.5244, 3.3792)
DROPOFF = (6.5344, 3.3892)


class RecordingPublisher(Publisher):
    def __init__(self) -> None:
        self.messages: list[tuple[str, str, dict[str, Any]]] = []

    async def publish(self, topic: str, event: str, payload: dict[str, Any]) -> None:
        self.messages.append((topic, event, payload))

    def events(self, topic: str) -> list[str]:
        return [event for t, event, _ in self.messages if t == topic]


class RecordingNotifier(Notifier):
    def __init__(self) -> None:
        self.sent: list[dict[str, Any]] = []
        self.fail_for: set[str] = set()

    async def notify(
        self,
        recipient_id: str,
        type_: str,
        title: str,
        message: str,
        data: Optional[dict[str, Any]] = None,
    ) -> None:
        if recipient_id in self.fail_for:
            raise ConnectionError("push gateway down")
        self.sent.append(
            {
                "recipient_id": recipient_id,
                "type": type_,
                "title": title,
                "message": message,
                "data": data or {},
            }
        )

    def to(self, recipient_id: str) -> list[dict[str, Any]]:
        return [n for n in self.sent if n["recipient_id"] == recipient_id]


# ── Fixtures ──────────────────────────────────────────────────────────


@pytest_asyncio.fixture
async def engine(tmp_path) -> AsyncGenerator[AsyncEngine, None]:
    """Fresh database file per test, tables created from the ORM models."""
    test_engine = make_engine(f"sqlite+aiosqlite:///{tmp_path / 'dispatch.db'}")
    async with test_engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield test_engine
    await test_engine.dispose()


@pytest.fixture
def session_factory(engine) -> async_sessionmaker[AsyncSession]:
    return make_session_factory(engine)


@pytest_asyncio.fixture
async def db_session(session_factory) -> AsyncGenerator[AsyncSession, None]:
    async with session_factory() as session:
        yield session


@pytest.fixture
def store() -> MemoryLocationStore:
    return MemoryLocationStore()


@pytest.fixture
def publisher() -> RecordingPublisher:
    return RecordingPublisher()


@pytest.fixture
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest.fixture
def test_settings() -> Settings:
    return Settings(
        database_url="sqlite+aiosqlite://",
        redis_url="redis://localhost:6379/15",
    )


@pytest_asyncio.fixture
async def core(
    session_factory, store, publisher, notifier, test_settings
) -> AsyncGenerator[DispatchCore, None]:
    dispatch_core = build_core(session_factory, store, publisher, notifier, test_settings)
    yield dispatch_core
    await dispatch_core.deliveries.drain()


# ── Builders ──────────────────────────────────────────────────────────


def utc(minutes_ago: float = 0) -> datetime:
    return datetime.now(timezone.utc) - timedelta(minutes=minutes_ago)


async def make_driver(
    session_factory: async_sessionmaker[AsyncSession],
    *,
    lat: float = PICKUP[0] + 0.002,
    lng: float = PICKUP[1] + 0.002,
    **overrides: Any,
) -> str:
    """An ONLINE, available, verified bike driver near the pickup."""
    values: dict[str, Any] = {
        "name": "Test Driver",
        "status": DriverStatus.ONLINE,
        "is_available": True,
        "verification_status": VerificationStatus.VERIFIED,
        "vehicle_class": VehicleClass.BIKE,
        "latitude": lat,
        "longitude": lng,
        "h3_cell": h3_cell(lat, lng, 7),
        "last_location_at": utc(),
        "available_since": utc(5),
        "rating": 4.5,
        "completed_count": 25,
    }
    values.update(overrides)
    async with session_factory() as session:
        driver = DriverModel(**values)
        session.add(driver)
        await session.commit()
        return driver.id


async def make_delivery(
    session_factory: async_sessionmaker[AsyncSession], **overrides: Any
) -> str:
    values: dict[str, Any] = {
        "rider_id": "rider-1",
        "pickup_lat": PICKUP[0],
        "pickup_lng": PICKUP[1],
        "dropoff_lat": DROPOFF[0],
        "dropoff_lng": DROPOFF[1],
        "vehicle_class": VehicleClass.BIKE,
        "payment_method": PaymentMethod.CASH,
        "estimated_fare": 1086.0,
        "status": DeliveryStatus.PENDING,
    }
    values.update(overrides)
    async with session_factory() as session:
        delivery = DeliveryModel(**values)
        session.add(delivery)
        await session.commit()
        return delivery.id


async def load(session_factory, model, pk):
    async with session_factory() as session:
        return await session.get(model, pk)
