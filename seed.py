"""
Seed script -- populates the database with sample data for reviewers.

Run after migrations:
    python seed.py

Creates:
  - 12 sample drivers (spread around Lagos Island / Victoria Island / Ikeja)
  - 5 sample deliveries (mix of PENDING, ACCEPTED, COMPLETED)
"""

import asyncio
import uuid
from datetime import datetime, timedelta, timezone

from sqlalchemy import text

from dispatch.config import settings
from dispatch.domain.enums import (
    DeliveryStatus,
    DriverStatus,
    PaymentMethod,
    PaymentStatus,
    VehicleClass,
    VerificationStatus,
)
from dispatch.domain.geo import h3_cell
from dispatch.infrastructure.database import async_session_factory, engine
from dispatch.infrastructure.models import DeliveryModel, DriverModel

# Lagos Island (approx)
CITY_LAT, CITY_LNG = 6.5244, 3.3792


DRIVERS = [
    # Bikes near Lagos Island
    {"name": "Tunde Bakare", "vehicle": VehicleClass.BIKE, "lat": 6.5250, "lng": 3.3800, "rating": 4.8, "done": 320},
    {"name": "Chinedu Okafor", "vehicle": VehicleClass.BIKE, "lat": 6.5300, "lng": 3.3850, "rating": 4.6, "done": 75},
    {"name": "Aisha Bello", "vehicle": VehicleClass.BIKE, "lat": 6.5200, "lng": 3.3750, "rating": 4.9, "done": 1040},
    {"name": "Emeka Nwosu", "vehicle": VehicleClass.BIKE, "lat": 6.5400, "lng": 3.3900, "rating": 3.9, "done": 12},
    {"name": "Kemi Adeyemi", "vehicle": VehicleClass.BIKE, "lat": 6.5150, "lng": 3.3700, "rating": 2.8, "done": 40},
    # Cars around Victoria Island
    {"name": "Segun Ogunleye", "vehicle": VehicleClass.CAR, "lat": 6.4281, "lng": 3.4219, "rating": 4.7, "done": 210},
    {"name": "Ngozi Eze", "vehicle": VehicleClass.CAR, "lat": 6.4310, "lng": 3.4150, "rating": 4.4, "done": 55},
    {"name": "Ibrahim Musa", "vehicle": VehicleClass.CAR, "lat": 6.4350, "lng": 3.4300, "rating": 4.2, "done": 8},
    # Vans and trucks near Ikeja
    {"name": "Folake Adebayo", "vehicle": VehicleClass.VAN, "lat": 6.6018, "lng": 3.3515, "rating": 4.5, "done": 150},
    {"name": "Yusuf Lawal", "vehicle": VehicleClass.VAN, "lat": 6.5950, "lng": 3.3400, "rating": 4.1, "done": 30},
    {"name": "Bola Ahmed", "vehicle": VehicleClass.TRUCK, "lat": 6.6100, "lng": 3.3600, "rating": 4.6, "done": 95},
    {"name": "Ada Obi", "vehicle": VehicleClass.TRUCK, "lat": 6.5800, "lng": 3.3550, "rating": 4.0, "done": 3},
]

RIDERS = [str(uuid.uuid4()) for _ in range(5)]


async def seed():
    now = datetime.now(timezone.utc)
    async with async_session_factory() as session:
        # Check if already seeded
        result = await session.execute(text("SELECT count(*) FROM drivers"))
        if result.scalar() > 0:
            print("Database already seeded. Skipping.")
            return

        # ── Drivers ───────────────────────────────────────────────────
        driver_models = []
        for i, d in enumerate(DRIVERS):
            m = DriverModel(
                name=d["name"],
                vehicle_class=d["vehicle"],
                # last one is still waiting for verification
                verification_status=(
                    VerificationStatus.PENDING if i == len(DRIVERS) - 1 else VerificationStatus.VERIFIED
                ),
                status=DriverStatus.ONLINE,
                is_available=True,
                latitude=d["lat"],
                longitude=d["lng"],
                h3_cell=h3_cell(d["lat"], d["lng"], settings.h3_resolution),
                last_location_at=now,
                available_since=now - timedelta(minutes=5 * i),
                rating=d["rating"],
                rating_count=max(1, d["done"] // 2),
                completed_count=d["done"],
            )
            session.add(m)
            driver_models.append(m)
        await session.flush()
        print(f"  Created {len(driver_models)} drivers")

        # ── Deliveries ────────────────────────────────────────────────
        deliveries_data = [
            # PENDING (waiting for a driver)
            {
                "rider": RIDERS[0],
                "pickup": (6.5244, 3.3792),  # Lagos Island
                "dropoff": (6.5344, 3.3892),
                "status": DeliveryStatus.PENDING,
                "fare": 1086, "distance": 1.55, "duration": 13,
            },
            {
                "rider": RIDERS[1],
                "pickup": (6.4281, 3.4219),  # Victoria Island
                "dropoff": (6.4474, 3.4700),  # Lekki Phase 1
                "status": DeliveryStatus.PENDING,
                "vehicle": VehicleClass.CAR,
                "fare": 3470, "distance": 5.69, "duration": 19,
            },
            # ACCEPTED by the first bike
            {
                "rider": RIDERS[2],
                "pickup": (6.5250, 3.3800),
                "dropoff": (6.4550, 3.3941),  # Lagos Island Marina
                "status": DeliveryStatus.ACCEPTED,
                "driver": 0,
                "fare": 2035, "distance": 7.93, "duration": 26,
            },
            # COMPLETED
            {
                "rider": RIDERS[3],
                "pickup": (6.6018, 3.3515),  # Ikeja
                "dropoff": (6.5480, 3.3630),  # Yaba
                "status": DeliveryStatus.COMPLETED,
                "vehicle": VehicleClass.VAN,
                "done_by": 8,
                "fare": 4210, "distance": 6.13, "duration": 21,
            },
            {
                "rider": RIDERS[4],
                "pickup": (6.5300, 3.3850),
                "dropoff": (6.5000, 3.3700),
                "status": DeliveryStatus.COMPLETED,
                "done_by": 1,
                "fare": 1300, "distance": 3.74, "duration": 17,
            },
        ]

        for d in deliveries_data:
            driver = None
            if "driver" in d:
                driver = driver_models[d["driver"]]
            elif "done_by" in d:
                driver = driver_models[d["done_by"]]
            delivery = DeliveryModel(
                rider_id=d["rider"],
                driver_id=driver.id if driver else None,
                pickup_lat=d["pickup"][0],
                pickup_lng=d["pickup"][1],
                dropoff_lat=d["dropoff"][0],
                dropoff_lng=d["dropoff"][1],
                vehicle_class=d.get("vehicle", VehicleClass.BIKE),
                payment_method=PaymentMethod.CASH,
                payment_status=(
                    PaymentStatus.PAID if d["status"] == DeliveryStatus.COMPLETED else PaymentStatus.PENDING
                ),
                distance_km=d["distance"],
                duration_min=d["duration"],
                estimated_fare=d["fare"],
                actual_fare=d["fare"] if d["status"] == DeliveryStatus.COMPLETED else None,
                status=d["status"],
                accepted_at=now if driver else None,
                completed_at=now if d["status"] == DeliveryStatus.COMPLETED else None,
                earnings_credited=d["status"] == DeliveryStatus.COMPLETED,
            )
            session.add(delivery)
            await session.flush()
            if d["status"] == DeliveryStatus.ACCEPTED:
                # Keep the driver/delivery coupling consistent
                driver.status = DriverStatus.BUSY
                driver.is_available = False
                driver.current_delivery_id = delivery.id
                driver.available_since = None
        print(f"  Created {len(deliveries_data)} deliveries")

        await session.commit()
        print("\nSeed complete!")


async def main():
    print("Seeding database...")
    await seed()
    await engine.dispose()


if __name__ == "__main__":
    asyncio.run(main())
