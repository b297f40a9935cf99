"""Tests API / API tests."""

import hashlib
import hmac
import json
import time

import pytest

from livetrack.api.ws_tracking import TrackingConnectionManager, location_message
from livetrack.config import settings
from livetrack.models.driver import DriverStatus
from livetrack.models.order import DeliveryProvider, DeliveryStatus
from livetrack.schemas.delivery import CourierStatus, ProviderDelivery
from livetrack.schemas.tracking import DriverLocationRecord
from livetrack.services.dispatch import DispatchService

from conftest import OTHER_TENANT, TENANT, auth

DISPATCHER = auth("dispatcher")
CUSTOMER = auth("customer", user_id="cust-1")

ORDER_BODY = {
    "id": "ord-1",
    "pickup": {"lat": 37.5538, "lng": -77.4603},
    "dropoff": {"lat": 37.5600, "lng": -77.4603},
}

DELIVERY_REQUEST = {
    "order_id": "ord-1", "business_id": TENANT,
    "pickup_address": "901 E Byrd St", "pickup_phone": "+18045550100", "pickup_business_name": "Mohn Bistro",
    "dropoff_address": "2 N 5th St", "dropoff_phone": "+18045550199", "dropoff_name": "Jordan",
    "order_value": 2599,
}


@pytest.mark.asyncio
async def test_health(client):
    response = await client.get("/api/")
    assert response.status_code == 200
    assert response.json()["status"] == "running"

    response = await client.get("/")
    assert response.status_code == 200


@pytest.mark.asyncio
async def test_requires_token(client):
    response = await client.get("/api/dispatch/orders/pending")
    assert response.status_code in (401, 403)

    response = await client.get("/api/dispatch/orders/pending", headers={"Authorization": "Bearer garbage"})
    assert response.status_code == 401


@pytest.mark.asyncio
async def test_role_check(client):
    response = await client.get("/api/dispatch/orders/pending", headers=CUSTOMER)
    assert response.status_code == 403


@pytest.mark.asyncio
async def test_order_intake_and_assignment(client):
    response = await client.post("/api/orders/", json=ORDER_BODY, headers=CUSTOMER)
    assert response.status_code == 201
    assert response.json()["delivery_status"] == "unassigned"
    assert response.json()["tenant_id"] == TENANT

    response = await client.post("/api/orders/", json=ORDER_BODY, headers=CUSTOMER)
    assert response.status_code == 409

    for driver_id, name in (("drv-1", "Sam"), ("drv-2", "Kim")):
        response = await client.post("/api/drivers/", json={"id": driver_id, "name": name}, headers=DISPATCHER)
        assert response.status_code == 201

    response = await client.get("/api/dispatch/orders/pending", headers=DISPATCHER)
    assert [o["id"] for o in response.json()] == ["ord-1"]

    response = await client.post(
        "/api/dispatch/assign",
        json={"order_id": "ord-1", "driver_id": "drv-1", "expected_version": 1},
        headers=DISPATCHER,
    )
    assert response.status_code == 200
    data = response.json()
    assert data["delivery_status"] == "assigned"
    assert data["version"] == 2
    assert data["driver_synced"] is True

    # Second repartiteur, version perimee / Second dispatcher, stale version
    response = await client.post(
        "/api/dispatch/assign",
        json={"order_id": "ord-1", "driver_id": "drv-2", "expected_version": 1},
        headers=DISPATCHER,
    )
    assert response.status_code == 409
    assert response.json() == {
        "error": "order_already_assigned",
        "detail": "This order was already assigned. Refresh and try again.",
    }

    response = await client.get("/api/orders/ord-1", headers=DISPATCHER)
    assert response.json()["driver_id"] == "drv-1"

    response = await client.get("/api/dispatch/drivers", headers=DISPATCHER)
    assert [d["id"] for d in response.json()] == ["drv-2"]


@pytest.mark.asyncio
async def test_reassign_release_cancel(client, make_driver, make_order):
    await make_driver("drv-1")
    await make_driver("drv-2")
    await make_order("ord-1")

    await client.post("/api/dispatch/assign", json={"order_id": "ord-1", "driver_id": "drv-1"}, headers=DISPATCHER)
    response = await client.post(
        "/api/dispatch/orders/ord-1/reassign", json={"driver_id": "drv-2"}, headers=DISPATCHER,
    )
    assert response.status_code == 200
    assert response.json()["previous_driver_id"] == "drv-1"

    response = await client.post("/api/dispatch/orders/ord-1/release", headers=DISPATCHER)
    assert response.json()["delivery_status"] == "unassigned"
    assert response.json()["driver_id"] is None

    response = await client.post("/api/dispatch/orders/ord-1/cancel", headers=DISPATCHER)
    assert response.json()["delivery_status"] == "cancelled"

    response = await client.post("/api/dispatch/orders/ord-1/cancel", headers=DISPATCHER)
    assert response.status_code == 409


@pytest.mark.asyncio
async def test_order_is_tenant_scoped(client, make_order):
    await make_order("ord-1")
    response = await client.get("/api/orders/ord-1", headers=auth("owner", tenant_id=OTHER_TENANT))
    assert response.status_code == 404
    assert response.json()["error"] == "order_not_found"


@pytest.mark.asyncio
async def test_tracking_snapshot(client, store, make_driver, make_order):
    await make_driver("drv-1")
    await make_order("ord-1")
    await client.post("/api/dispatch/assign", json={"order_id": "ord-1", "driver_id": "drv-1"}, headers=DISPATCHER)

    response = await client.get("/api/tracking/orders/ord-1", headers=CUSTOMER)
    assert response.status_code == 200
    assert response.json()["driver_id"] == "drv-1"
    assert response.json()["eta_minutes"] is None

    response = await client.get("/api/tracking/drivers/drv-1", headers=DISPATCHER)
    assert response.status_code == 404

    await store.write(DriverLocationRecord(
        tenant_id=TENANT, driver_id="drv-1", lat=37.5540, lng=-77.4603,
        timestamp=time.time(), status=DriverStatus.IN_TRANSIT,
    ))
    response = await client.get("/api/tracking/orders/ord-1", headers=CUSTOMER)
    data = response.json()
    assert data["driver_status"] == "in_transit"
    assert data["driver_location"]["is_stale"] is False
    assert data["eta_minutes"] == 1
    assert data["customer"] == {"lat": 37.56, "lng": -77.4603}

    response = await client.get("/api/tracking/drivers/drv-1", headers=DISPATCHER)
    assert response.json()["lat"] == 37.554


@pytest.mark.asyncio
async def test_tracking_snapshot_ignores_idle_record(client, store, make_driver, make_order):
    await make_driver("drv-1")
    await make_order("ord-1")
    # Position laissee par la course precedente / Position left by the previous run
    await store.write(DriverLocationRecord(
        tenant_id=TENANT, driver_id="drv-1", lat=37.6000, lng=-77.5000,
        timestamp=time.time(), status=DriverStatus.IDLE,
    ))
    await client.post("/api/dispatch/assign", json={"order_id": "ord-1", "driver_id": "drv-1"}, headers=DISPATCHER)

    data = (await client.get("/api/tracking/orders/ord-1", headers=CUSTOMER)).json()
    assert data["driver_id"] == "drv-1"
    assert data["driver_status"] == "idle"
    assert data["driver_location"] is None
    assert data["eta_minutes"] is None


@pytest.mark.asyncio
async def test_driver_status_buttons(client, store, make_driver, wait_until):
    await make_driver("drv-1")
    driver = auth("driver", user_id="drv-1")

    response = await client.post("/api/driver/status/complete", headers=driver)
    assert response.status_code == 409
    assert response.json()["error"] == "invalid_state_transition"

    response = await client.post("/api/driver/status/start", headers=driver)
    assert response.status_code == 200
    assert response.json()["current_status"] == "in_transit"

    response = await client.post("/api/driver/fixes", json={"fixes": [
        {"lat": 37.5540, "lng": -77.4603, "timestamp": time.time() - 1},
        {"lat": 37.5545, "lng": -77.4603, "timestamp": time.time()},
    ]}, headers=driver)
    assert response.status_code == 200
    assert response.json()["accepted"] == 2
    assert response.json()["tracking"] is True

    await wait_until(lambda: store.read(TENANT, "drv-1") is not None)
    assert store.read(TENANT, "drv-1").lat == 37.5545

    response = await client.post("/api/driver/status/arrive", headers=driver)
    assert response.json()["current_status"] == "at_restaurant"


@pytest.mark.asyncio
async def test_driver_permission_denied(client, registry, make_driver):
    await make_driver("drv-1")
    registry.source_for(TENANT, "drv-1").deny_permission()
    response = await client.post("/api/driver/status/start", headers=auth("driver", user_id="drv-1"))
    assert response.status_code == 403
    assert response.json()["error"] == "permission_denied"


@pytest.mark.asyncio
async def test_delivery_providers_and_create(client, make_order):
    await make_order("ord-1")
    response = await client.get("/api/delivery/providers", headers=CUSTOMER)
    assert response.json() == ["community"]

    response = await client.post(
        "/api/delivery/create", json={"provider": "community", "request": DELIVERY_REQUEST}, headers=DISPATCHER,
    )
    assert response.status_code == 400

    # DoorDash non configure / DoorDash not configured
    response = await client.post(
        "/api/delivery/create", json={"provider": "doordash", "request": DELIVERY_REQUEST}, headers=DISPATCHER,
    )
    assert response.status_code == 502
    assert response.json()["error"] == "provider_error"


@pytest.mark.asyncio
async def test_create_delivery_cancelled_when_assigned_meanwhile(
    client, gateway, session_factory, make_driver, make_order, monkeypatch,
):
    await make_driver("drv-1")
    await make_order("ord-1")
    cancelled: list[tuple[DeliveryProvider, str]] = []

    async def create_while_assigning(provider, request, quote_id=None):
        async with session_factory() as other:
            await DispatchService(other, TENANT).assign("ord-1", "drv-1")
            await other.commit()
        return ProviderDelivery(provider=provider, provider_delivery_id="del_race", status=CourierStatus.CREATED)

    async def record_cancel(provider, provider_delivery_id):
        cancelled.append((provider, provider_delivery_id))

    monkeypatch.setattr(gateway, "create", create_while_assigning)
    monkeypatch.setattr(gateway, "cancel", record_cancel)

    response = await client.post(
        "/api/delivery/create", json={"provider": "uber", "request": DELIVERY_REQUEST}, headers=DISPATCHER,
    )
    assert response.status_code == 409
    assert response.json()["error"] == "order_already_assigned"
    assert cancelled == [(DeliveryProvider.UBER, "del_race")]

    response = await client.get("/api/orders/ord-1", headers=DISPATCHER)
    assert response.json()["delivery_status"] == "assigned"
    assert response.json()["driver_id"] == "drv-1"
    assert response.json()["provider_delivery_id"] is None


@pytest.mark.asyncio
async def test_webhook_updates_order(client, make_order, monkeypatch):
    monkeypatch.setattr(settings, "UBER_WEBHOOK_SIGNING_KEY", "uber-key")
    await make_order("ord-1", status=DeliveryStatus.AWAITING_COURIER,
                     provider=DeliveryProvider.UBER, provider_delivery_id="del_1")
    body = json.dumps({"data": {"id": "del_1", "status": "pickup_complete", "courier": {"name": "Maria"}}}).encode()

    response = await client.post("/api/delivery/webhook", content=body, headers={"X-Uber-Signature": "forged"})
    assert response.status_code == 401
    assert response.json()["error"] == "invalid_webhook"

    signature = hmac.new(b"uber-key", body, hashlib.sha256).hexdigest()
    response = await client.post("/api/delivery/webhook", content=body, headers={"X-Uber-Signature": signature})
    assert response.status_code == 200
    assert response.json() == {"received": True}

    response = await client.get("/api/orders/ord-1", headers=DISPATCHER)
    assert response.json()["delivery_status"] == "picked_up"
    assert response.json()["courier_name"] == "Maria"


# ─── WebSocket ───

class FakeSocket:
    def __init__(self, broken: bool = False):
        self.broken = broken
        self.sent: list[dict] = []

    async def accept(self):
        pass

    async def send_text(self, data: str):
        if self.broken:
            raise RuntimeError("socket closed")
        self.sent.append(json.loads(data))


@pytest.mark.asyncio
async def test_connection_manager_broadcast():
    manager = TrackingConnectionManager()
    good, broken, other = FakeSocket(), FakeSocket(broken=True), FakeSocket()
    await manager.connect(good, TENANT)
    await manager.connect(broken, TENANT)
    await manager.connect(other, OTHER_TENANT)

    await manager.broadcast(TENANT, {"type": "order_status", "order_id": "ord-1"})
    assert good.sent == [{"type": "order_status", "order_id": "ord-1"}]
    assert other.sent == []
    assert manager.active_connections[TENANT] == [good]

    manager.disconnect(good, TENANT)
    assert TENANT not in manager.active_connections


@pytest.mark.asyncio
async def test_connection_manager_listeners():
    manager = TrackingConnectionManager()
    received: list[dict] = []

    def broken(message):
        raise RuntimeError("listener bug")

    manager.add_listener(TENANT, broken)
    manager.add_listener(TENANT, received.append)
    await manager.broadcast(TENANT, {"type": "assignment", "order_id": "ord-1"})
    await manager.broadcast(OTHER_TENANT, {"type": "assignment", "order_id": "ord-9"})
    assert received == [{"type": "assignment", "order_id": "ord-1"}]

    manager.remove_listener(TENANT, broken)
    manager.remove_listener(TENANT, received.append)
    assert manager.listeners == {}


def test_location_message():
    record = DriverLocationRecord(
        tenant_id=TENANT, driver_id="drv-1", lat=37.55, lng=-77.46,
        timestamp=1_700_000_000, status=DriverStatus.DELIVERING,
    )
    message = location_message(record)
    assert message["type"] == "location"
    assert message["status"] == "delivering"
