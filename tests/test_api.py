"""
Integration tests for the REST API endpoints.

The app is built around the test ``DispatchCore`` (SQLite, in-memory
location cache, recording publisher/notifier), so no lifespan wiring or
external services are involved.
"""

from __future__ import annotations

import json
from dataclasses import replace
from unittest.mock import AsyncMock

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient

from dispatch.api.app import create_app
from dispatch.api.middleware import limiter
from dispatch.api.realtime import ConnectionRegistry, LocalPublisher
from dispatch.domain.entities import Location
from dispatch.domain.enums import DriverStatus, PaymentMethod
from dispatch.infrastructure.models import DriverModel
from tests.conftest import DROPOFF, PICKUP, load, make_delivery, make_driver

DELIVERY_BODY = {
    "rider_id": "rider-1",
    "pickup": {"latitude": PICKUP[0], "longitude": PICKUP[1]},
    "dropoff": {"latitude": DROPOFF[0], "longitude": DROPOFF[1]},
    "pickup_address": "12 Marina Rd",
    "dropoff_address": "4 Broad St",
}


@pytest_asyncio.fixture
async def client(core, session_factory):
    limiter.reset()
    app = create_app(core=core)
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac


async def _drive_to_delivered(client, delivery_id: str, driver_id: str):
    steps = [
        {"status": "DRIVER_EN_ROUTE", "driver_location": {"latitude": 6.52, "longitude": 3.37}},
        {"status": "ARRIVED_AT_PICKUP"},
        {"status": "IN_TRANSIT", "pickup_confirmed": True},
        {"status": "ARRIVED_AT_DROPOFF"},
        {"status": "DELIVERED", "delivery_confirmed": True},
    ]
    await client.post(f"/api/v1/deliveries/{delivery_id}/accept", json={"driver_id": driver_id})
    for step in steps:
        resp = await client.patch(f"/api/v1/deliveries/{delivery_id}/status", json=step)
        assert resp.status_code == 200, resp.text


# ── Deliveries ────────────────────────────────────────────────────────


class TestCreateDelivery:
    @pytest.mark.asyncio
    async def test_create_prices_and_offers(self, client, core, session_factory, notifier):
        driver_id = await make_driver(session_factory)

        resp = await client.post("/api/v1/deliveries", json=DELIVERY_BODY)
        await core.deliveries.drain()

        assert resp.status_code == 201
        body = resp.json()
        assert body["delivery"]["status"] == "PENDING"
        assert body["delivery"]["pickup_address"] == "12 Marina Rd"
        assert body["delivery"]["estimated_fare"] == body["fare"]["total"]
        assert body["fare"]["duration_min"] == 13
        offers = [n for n in notifier.to(driver_id) if n["type"] == "new_delivery"]
        assert offers[0]["data"]["delivery_id"] == body["delivery"]["id"]

    @pytest.mark.asyncio
    async def test_package_affects_price(self, client):
        plain = await client.post("/api/v1/deliveries", json=DELIVERY_BODY)
        fragile = await client.post(
            "/api/v1/deliveries",
            json={**DELIVERY_BODY, "package": {"is_fragile": True, "weight_kg": 15}},
        )
        assert fragile.json()["fare"]["total"] > plain.json()["fare"]["total"]
        assert fragile.json()["fare"]["multipliers"]["heavy"] == 1.2

    @pytest.mark.asyncio
    async def test_bad_coordinates(self, client):
        body = {**DELIVERY_BODY, "pickup": {"latitude": 95, "longitude": 3.0}}
        resp = await client.post("/api/v1/deliveries", json=body)
        assert resp.status_code == 400
        assert resp.json()["code"] == "VALIDATION_ERROR"

    @pytest.mark.asyncio
    async def test_get_missing(self, client):
        resp = await client.get("/api/v1/deliveries/does-not-exist")
        assert resp.status_code == 404
        assert resp.json() == {"code": "NOT_FOUND", "message": "Delivery not found"}


class TestAcceptReject:
    @pytest.mark.asyncio
    async def test_accept_then_second_driver_conflicts(self, client, session_factory):
        first = await make_driver(session_factory)
        second = await make_driver(session_factory)
        delivery_id = await make_delivery(session_factory)

        ok = await client.post(
            f"/api/v1/deliveries/{delivery_id}/accept", json={"driver_id": first}
        )
        late = await client.post(
            f"/api/v1/deliveries/{delivery_id}/accept", json={"driver_id": second}
        )

        assert ok.status_code == 200
        assert ok.json()["driver_id"] == first
        assert ok.json()["status"] == "ACCEPTED"
        assert late.status_code == 409
        assert late.json()["code"] == "DELIVERY_UNAVAILABLE"

    @pytest.mark.asyncio
    async def test_reject_reoffers_to_others(self, client, core, session_factory, notifier):
        declining = await make_driver(session_factory)
        other = await make_driver(session_factory, lat=PICKUP[0] + 0.004)
        created = await client.post("/api/v1/deliveries", json=DELIVERY_BODY)
        delivery_id = created.json()["delivery"]["id"]
        await core.deliveries.drain()

        resp = await client.post(
            f"/api/v1/deliveries/{delivery_id}/reject",
            json={"driver_id": declining, "reason": "Too far"},
        )
        await core.deliveries.drain()

        assert resp.status_code == 200
        assert resp.json()["status"] == "PENDING"
        assert len(notifier.to(declining)) == 1
        assert len(notifier.to(other)) == 2

    @pytest.mark.asyncio
    async def test_reject_accepted_delivery(self, client, session_factory):
        driver_id = await make_driver(session_factory)
        other = await make_driver(session_factory)
        delivery_id = await make_delivery(session_factory)
        await client.post(f"/api/v1/deliveries/{delivery_id}/accept", json={"driver_id": driver_id})

        resp = await client.post(
            f"/api/v1/deliveries/{delivery_id}/reject", json={"driver_id": other}
        )
        assert resp.status_code == 409


class TestStatusEndpoints:
    @pytest.mark.asyncio
    async def test_missing_guard_context(self, client, session_factory):
        driver_id = await make_driver(session_factory)
        delivery_id = await make_delivery(session_factory)
        await client.post(f"/api/v1/deliveries/{delivery_id}/accept", json={"driver_id": driver_id})

        resp = await client.patch(
            f"/api/v1/deliveries/{delivery_id}/status", json={"status": "DRIVER_EN_ROUTE"}
        )
        assert resp.status_code == 400
        assert resp.json()["code"] == "VALIDATION_ERROR"

    @pytest.mark.asyncio
    async def test_invalid_transition(self, client, session_factory):
        delivery_id = await make_delivery(session_factory)
        resp = await client.patch(
            f"/api/v1/deliveries/{delivery_id}/status", json={"status": "DELIVERED"}
        )
        assert resp.status_code == 409
        assert resp.json() == {
            "code": "INVALID_STATUS_TRANSITION",
            "message": "Cannot transition from PENDING to DELIVERED",
        }

    @pytest.mark.asyncio
    async def test_cancel(self, client, session_factory):
        delivery_id = await make_delivery(session_factory)
        resp = await client.post(
            f"/api/v1/deliveries/{delivery_id}/cancel",
            json={"cancelled_by": "RIDER", "reason": "No longer needed"},
        )
        assert resp.status_code == 200
        assert resp.json()["status"] == "CANCELLED"
        assert resp.json()["cancelled_by"] == "RIDER"

    @pytest.mark.asyncio
    async def test_payment_completes_delivered_delivery(self, client, session_factory):
        driver_id = await make_driver(session_factory)
        delivery_id = await make_delivery(session_factory, payment_method=PaymentMethod.CARD)
        await _drive_to_delivered(client, delivery_id, driver_id)

        resp = await client.post(
            f"/api/v1/deliveries/{delivery_id}/payment",
            json={"status": "PAID", "payment_proof": "card-auth-77"},
        )

        assert resp.status_code == 200
        assert resp.json()["payment_status"] == "PAID"
        assert resp.json()["status"] == "COMPLETED"
        driver = await load(session_factory, DriverModel, driver_id)
        assert driver.status == DriverStatus.ONLINE

    @pytest.mark.asyncio
    async def test_rating_once(self, client, session_factory):
        driver_id = await make_driver(session_factory)
        delivery_id = await make_delivery(session_factory)
        await _drive_to_delivered(client, delivery_id, driver_id)
        await client.patch(
            f"/api/v1/deliveries/{delivery_id}/status",
            json={"status": "COMPLETED", "payment_confirmed": True},
        )

        first = await client.post(
            f"/api/v1/deliveries/{delivery_id}/rating", json={"rider_id": "rider-1", "score": 5}
        )
        again = await client.post(
            f"/api/v1/deliveries/{delivery_id}/rating", json={"rider_id": "rider-1", "score": 1}
        )

        assert first.status_code == 200
        assert again.status_code == 400
        driver = await load(session_factory, DriverModel, driver_id)
        assert driver.rating == 5.0
        assert driver.rating_count == 1

    @pytest.mark.asyncio
    async def test_rating_by_stranger(self, client, session_factory):
        delivery_id = await make_delivery(session_factory)
        resp = await client.post(
            f"/api/v1/deliveries/{delivery_id}/rating", json={"rider_id": "someone", "score": 4}
        )
        assert resp.status_code == 400


# ── Tracking ──────────────────────────────────────────────────────────


class TestDriverLocation:
    @pytest.mark.asyncio
    async def test_report_and_read_back(self, client, session_factory):
        driver_id = await make_driver(session_factory)

        posted = await client.post(
            f"/api/v1/drivers/{driver_id}/location",
            json={"latitude": 6.53, "longitude": 3.38, "bearing": 45.0},
        )
        latest = await client.get(f"/api/v1/drivers/{driver_id}/location")

        assert posted.status_code == 200
        assert posted.json()["entity_id"] == driver_id
        assert latest.json()["latitude"] == 6.53
        assert latest.json()["bearing"] == 45.0

    @pytest.mark.asyncio
    async def test_out_of_range_position(self, client, session_factory):
        driver_id = await make_driver(session_factory)
        resp = await client.post(
            f"/api/v1/drivers/{driver_id}/location", json={"latitude": 95, "longitude": 3.38}
        )
        assert resp.status_code == 400
        assert resp.json()["code"] == "VALIDATION_ERROR"

    @pytest.mark.asyncio
    async def test_unknown_driver(self, client):
        resp = await client.get("/api/v1/drivers/nobody/location")
        assert resp.status_code == 404

    @pytest.mark.asyncio
    async def test_history(self, client, core, session_factory):
        driver_id = await make_driver(session_factory)
        for lat in (6.50, 6.51):
            await client.post(
                f"/api/v1/drivers/{driver_id}/location", json={"latitude": lat, "longitude": 3.38}
            )
        await core.history.flush()

        resp = await client.get(f"/api/v1/drivers/{driver_id}/location/history")

        assert resp.status_code == 200
        assert len(resp.json()) == 2

    @pytest.mark.asyncio
    async def test_delivery_location_follows_driver(self, client, session_factory):
        driver_id = await make_driver(session_factory)
        delivery_id = await make_delivery(session_factory)
        await client.post(f"/api/v1/deliveries/{delivery_id}/accept", json={"driver_id": driver_id})
        await client.post(
            f"/api/v1/drivers/{driver_id}/location", json={"latitude": 6.529, "longitude": 3.383}
        )

        resp = await client.get(f"/api/v1/deliveries/{delivery_id}/location")

        assert resp.status_code == 200
        assert resp.json()["entity_id"] == delivery_id
        assert resp.json()["latitude"] == 6.529

    @pytest.mark.asyncio
    async def test_delivery_tracking_history(self, client, core, session_factory):
        driver_id = await make_driver(session_factory)
        delivery_id = await make_delivery(session_factory)
        await client.post(f"/api/v1/deliveries/{delivery_id}/accept", json={"driver_id": driver_id})
        for lat in (6.526, 6.527):
            await client.post(
                f"/api/v1/drivers/{driver_id}/location", json={"latitude": lat, "longitude": 3.381}
            )
        await core.history.flush()

        resp = await client.get(f"/api/v1/deliveries/{delivery_id}/tracking")

        assert resp.status_code == 200
        assert [p["entity_id"] for p in resp.json()] == [delivery_id, delivery_id]


# ── Fares & admin ─────────────────────────────────────────────────────


class TestFares:
    @pytest.mark.asyncio
    async def test_estimate(self, client, core):
        resp = await client.post(
            "/api/v1/fares/estimate",
            json={
                "pickup": DELIVERY_BODY["pickup"],
                "dropoff": DELIVERY_BODY["dropoff"],
                "payment_method": "CARD",
            },
        )
        expected = core.fares.estimate(
            Location(*PICKUP), Location(*DROPOFF), payment_method=PaymentMethod.CARD
        )
        assert resp.status_code == 200
        assert resp.json()["total"] == expected.total
        assert resp.json()["payment_method_fee"] > 0


class TestAdmin:
    @pytest.mark.asyncio
    async def test_health(self, client):
        resp = await client.get("/api/v1/admin/health")
        assert resp.status_code == 200
        assert resp.json() == {"status": "ok", "database": "ok", "cache": "ok"}

    @pytest.mark.asyncio
    async def test_health_reports_unreachable_database(self, core):
        def unreachable():
            raise OSError("connection refused")

        app = create_app(core=replace(core, session_factory=unreachable))
        async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
            resp = await ac.get("/api/v1/admin/health")

        assert resp.status_code == 200
        assert resp.json() == {"status": "degraded", "database": "unavailable", "cache": "ok"}

    @pytest.mark.asyncio
    async def test_cache_stats(self, client, session_factory):
        driver_id = await make_driver(session_factory)
        await client.post(
            f"/api/v1/drivers/{driver_id}/location", json={"latitude": 6.53, "longitude": 3.38}
        )

        resp = await client.get("/api/v1/admin/cache-stats")

        assert resp.json() == {
            "backend": "MemoryLocationStore",
            "degraded": False,
            "driver_positions": 1,
            "delivery_positions": 0,
            "pending_history": 1,
        }


# ── Realtime ──────────────────────────────────────────────────────────


class TestRealtime:
    @pytest.mark.asyncio
    async def test_local_publisher_reaches_subscribers(self):
        registry = ConnectionRegistry()
        socket = AsyncMock()
        await registry.connect("delivery:abc", socket)

        await LocalPublisher(registry).publish("delivery:abc", "status_changed", {"status": "ACCEPTED"})

        socket.accept.assert_awaited_once()
        message = json.loads(socket.send_text.call_args.args[0])
        assert message == {"event": "status_changed", "payload": {"status": "ACCEPTED"}}

    @pytest.mark.asyncio
    async def test_dead_socket_is_dropped(self):
        registry = ConnectionRegistry()
        socket = AsyncMock()
        socket.send_text = AsyncMock(side_effect=RuntimeError("closed"))
        await registry.connect("delivery:abc", socket)

        assert await registry.broadcast("delivery:abc", "{}") == 0
        assert registry.count() == 0
