"""Tests machine a etats chauffeur / Driver status machine tests."""

import time

import pytest
from sqlalchemy import select, update

from livetrack.exceptions import DriverNotFound, InvalidStateTransition, PermissionDenied
from livetrack.models.audit import AuditLog
from livetrack.models.driver import DriverStatus
from livetrack.models.order import DeliveryStatus, Order
from livetrack.schemas.tracking import GPSFix
from livetrack.services import status_machine
from livetrack.services.dispatch import DispatchService
from livetrack.services.status_machine import ACTIONS, DriverStatusMachine, next_status

from conftest import OTHER_TENANT, TENANT

VALID = {
    (DriverStatus.IDLE, "start"),
    (DriverStatus.IN_TRANSIT, "arrive"),
    (DriverStatus.AT_RESTAURANT, "depart"),
    (DriverStatus.DELIVERING, "complete"),
}


@pytest.mark.parametrize("status", list(DriverStatus))
@pytest.mark.parametrize("action", list(ACTIONS))
def test_transition_matrix(status, action):
    if (status, action) in VALID:
        assert next_status(status, action) is ACTIONS[action]
    else:
        with pytest.raises(InvalidStateTransition):
            next_status(status, action)


def test_unknown_action():
    with pytest.raises(InvalidStateTransition) as exc:
        next_status(DriverStatus.IDLE, "teleport")
    assert exc.value.target == "teleport"


async def test_full_delivery_cycle(db, store, registry, make_driver, make_order, wait_until):
    driver = await make_driver("drv-1")
    await make_order("ord-1")
    await DispatchService(db, TENANT).assign("ord-1", "drv-1")
    machine = DriverStatusMachine(db, TENANT, "drv-1", registry)

    await machine.start()
    assert driver.current_status is DriverStatus.IN_TRANSIT
    assert registry.handle_for(TENANT, "drv-1").active

    registry.source_for(TENANT, "drv-1").push(GPSFix(lat=37.5540, lng=-77.4603, timestamp=time.time()))
    await wait_until(lambda: store.read(TENANT, "drv-1") is not None)
    assert store.read(TENANT, "drv-1").status is DriverStatus.IN_TRANSIT

    await machine.arrive()
    await wait_until(lambda: store.read(TENANT, "drv-1").status is DriverStatus.AT_RESTAURANT)

    await machine.depart()
    await wait_until(lambda: store.read(TENANT, "drv-1").status is DriverStatus.DELIVERING)
    order = await db.get(Order, "ord-1")
    assert order.delivery_status is DeliveryStatus.PICKED_UP

    await machine.complete_delivery()
    assert store.read(TENANT, "drv-1").status is DriverStatus.IDLE
    assert driver.current_status is DriverStatus.IDLE
    assert driver.active_order_id is None
    assert order.delivery_status is DeliveryStatus.DELIVERED
    assert registry.handle_for(TENANT, "drv-1") is None

    result = await db.execute(select(AuditLog).where(AuditLog.action == "STATUS"))
    assert [log.user for log in result.scalars().all()] == ["driver:drv-1", "driver:drv-1"]


async def test_invalid_transition_has_no_side_effect(db, store, registry, make_driver):
    driver = await make_driver("drv-1")
    machine = DriverStatusMachine(db, TENANT, "drv-1", registry)

    for action in ("arrive", "depart", "complete"):
        with pytest.raises(InvalidStateTransition):
            await machine.apply(action)

    assert driver.current_status is DriverStatus.IDLE
    assert registry.handle_for(TENANT, "drv-1") is None
    assert store.read(TENANT, "drv-1") is None


async def test_permission_denied_keeps_idle(db, store, registry, make_driver):
    driver = await make_driver("drv-1")
    registry.source_for(TENANT, "drv-1").deny_permission()

    with pytest.raises(PermissionDenied):
        await DriverStatusMachine(db, TENANT, "drv-1", registry).start()

    assert driver.current_status is DriverStatus.IDLE
    assert registry.handle_for(TENANT, "drv-1") is None
    assert store.read(TENANT, "drv-1") is None


async def test_cycle_without_order(db, registry, make_driver):
    driver = await make_driver("drv-1")
    machine = DriverStatusMachine(db, TENANT, "drv-1", registry)
    for action in ("start", "arrive", "depart", "complete"):
        await machine.apply(action)
    assert driver.current_status is DriverStatus.IDLE


async def test_unknown_driver(db, registry, make_driver):
    await make_driver("drv-9", tenant_id=OTHER_TENANT)
    with pytest.raises(DriverNotFound):
        await DriverStatusMachine(db, TENANT, "drv-404", registry).start()
    with pytest.raises(DriverNotFound):
        await DriverStatusMachine(db, TENANT, "drv-9", registry).start()


async def test_pickup_skipped_when_order_moved_meanwhile(db, registry, make_driver, make_order, monkeypatch):
    driver = await make_driver("drv-1")
    await make_order("ord-1")
    await DispatchService(db, TENANT).assign("ord-1", "drv-1")
    machine = DriverStatusMachine(db, TENANT, "drv-1", registry)
    await machine.start()
    await machine.arrive()

    real_write = status_machine.write_order_if

    async def racing_write(session, order_id, tenant_id, version, conditions, **values):
        # Reaffectee juste avant l'ecriture / Reassigned right before the write
        await session.execute(
            update(Order).where(Order.id == order_id)
            .values(driver_id="drv-2", version=Order.version + 1)
            .execution_options(synchronize_session=False)
        )
        return await real_write(session, order_id, tenant_id, version, conditions, **values)

    monkeypatch.setattr(status_machine, "write_order_if", racing_write)
    await machine.depart()

    order = await db.get(Order, "ord-1")
    assert order.driver_id == "drv-2"
    assert order.delivery_status is DeliveryStatus.ASSIGNED
    assert order.version == 3
    assert driver.current_status is DriverStatus.DELIVERING
    result = await db.execute(select(AuditLog).where(AuditLog.action == "STATUS"))
    assert result.scalars().all() == []
