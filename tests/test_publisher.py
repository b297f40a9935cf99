"""Tests publication GPS / GPS publisher tests."""

import asyncio
import time

import pytest

from livetrack.exceptions import LocationUnavailable, PermissionDenied, StoreConnectionLost
from livetrack.models.driver import DriverStatus
from livetrack.schemas.tracking import DriverLocationRecord, GPSFix
from livetrack.services import eta
from livetrack.services.location_store import LocationStore
from livetrack.services.publisher import (
    DeviceGeolocationSource,
    ReplayGeolocationSource,
    TrackingRegistry,
    start_tracking,
)
from livetrack.services.subscriber import subscribe

from conftest import CUSTOMER, TENANT

FAST = {"sample_interval": 0.01, "min_publish_interval": 0, "fix_timeout": 5}


def make_fix(lat: float, ts: float | None = None, lng: float = -77.4603) -> GPSFix:
    return GPSFix(lat=lat, lng=lng, timestamp=ts if ts is not None else time.time())


class GatedStore(LocationStore):
    """Store dont les ecritures attendent un feu vert / Store whose writes wait for a go signal."""

    def __init__(self):
        super().__init__()
        self.gate = asyncio.Event()
        self.written: list[DriverLocationRecord] = []

    async def write(self, record):
        await self.gate.wait()
        self.written.append(record)
        await super().write(record)


async def test_driver_moves_toward_customer(store, wait_until):
    received, statuses = [], []
    sub = subscribe(store, TENANT, "drv-1", received.append, statuses.append)
    await asyncio.sleep(0.01)

    now = time.time()
    lats = [37.5500, 37.5510, 37.5520]
    source = ReplayGeolocationSource([make_fix(lat, now + i) for i, lat in enumerate(lats)])
    handle = await start_tracking(TENANT, "drv-1", source, store, **FAST)

    await wait_until(lambda: len(received) == 3)
    assert [r.lat for r in received] == lats
    assert all(r.status is DriverStatus.IN_TRANSIT for r in received)
    assert statuses == [DriverStatus.IN_TRANSIT]

    etas = [eta.estimate(r.lat, r.lng, *CUSTOMER, speed_kmh=1.0) for r in received]
    assert etas[0] > etas[1] > etas[2]

    await handle.cancel()
    await wait_until(lambda: len(received) == 4)
    assert received[-1].status is DriverStatus.IDLE
    assert received[-1].lat == lats[-1]
    assert statuses == [DriverStatus.IN_TRANSIT, DriverStatus.IDLE]
    sub.unsubscribe()


async def test_cancel_is_idempotent():
    store = GatedStore()
    store.gate.set()
    source = DeviceGeolocationSource()
    handle = await start_tracking(TENANT, "drv-1", source, store, **FAST)
    source.push(make_fix(37.55))
    await asyncio.sleep(0.05)

    await handle.cancel()
    await handle.cancel()
    assert [r.status for r in store.written] == [DriverStatus.IN_TRANSIT, DriverStatus.IDLE]
    assert not handle.active


async def test_cancel_without_position_writes_nothing(store):
    handle = await start_tracking(TENANT, "drv-1", DeviceGeolocationSource(), store, **FAST)
    await handle.cancel()
    assert store.read(TENANT, "drv-1") is None


async def test_permission_denied_at_start(store):
    source = ReplayGeolocationSource([make_fix(37.55)], permission_granted=False)
    with pytest.raises(PermissionDenied):
        await start_tracking(TENANT, "drv-1", source, store, **FAST)
    assert store.read(TENANT, "drv-1") is None


async def test_permission_revoked_stops_sampling(store, wait_until):
    errors = []
    source = DeviceGeolocationSource()
    handle = await start_tracking(TENANT, "drv-1", source, store, on_error=errors.append, **FAST)
    source.push(make_fix(37.55))
    await wait_until(lambda: store.read(TENANT, "drv-1") is not None)

    source.deny_permission()
    await wait_until(lambda: errors)
    assert isinstance(errors[0], PermissionDenied)
    assert not handle.active
    await handle.cancel()


async def test_fix_timeout_keeps_last_position(store, wait_until):
    errors = []
    source = DeviceGeolocationSource()
    handle = await start_tracking(
        TENANT, "drv-1", source, store, on_error=errors.append,
        sample_interval=0, min_publish_interval=0, fix_timeout=0.05,
    )
    source.push(make_fix(37.55))
    await wait_until(lambda: any(isinstance(e, LocationUnavailable) for e in errors))

    record = store.read(TENANT, "drv-1")
    assert record.lat == 37.55
    assert record.status is DriverStatus.IN_TRANSIT
    assert handle.active
    await handle.cancel()


async def test_local_update_before_write(store, wait_until):
    local = []
    source = DeviceGeolocationSource()
    handle = await start_tracking(
        TENANT, "drv-1", source, store, on_local_update=lambda lat, lng: local.append((lat, lng)), **FAST
    )
    source.push(make_fix(37.55))
    await wait_until(lambda: local)
    assert local == [(37.55, -77.4603)]
    await handle.cancel()


async def test_latest_sample_wins():
    store = GatedStore()
    source = DeviceGeolocationSource()
    handle = await start_tracking(
        TENANT, "drv-1", source, store, sample_interval=0, min_publish_interval=0, fix_timeout=5
    )
    now = time.time()
    for i, lat in enumerate([37.550, 37.551, 37.552]):
        source.push(make_fix(lat, now + i))
        await asyncio.sleep(0.01)

    # Premiere ecriture bloquee : 37.551 remplace par 37.552
    assert handle.samples_dropped == 1
    store.gate.set()
    await asyncio.sleep(0.02)
    assert [r.lat for r in store.written] == [37.550, 37.552]
    await handle.cancel()


async def test_min_publish_interval_drops_samples(store):
    source = DeviceGeolocationSource()
    handle = await start_tracking(
        TENANT, "drv-1", source, store, sample_interval=0, min_publish_interval=10, fix_timeout=5
    )
    source.push(make_fix(37.550))
    await asyncio.sleep(0.01)
    source.push(make_fix(37.551))
    await asyncio.sleep(0.01)

    assert handle.samples_taken == 1
    assert handle.samples_dropped == 1
    assert store.read(TENANT, "drv-1").lat == 37.550
    await handle.cancel()


async def test_store_connection_lost_is_reported(store, wait_until):
    errors = []
    source = DeviceGeolocationSource()
    handle = await start_tracking(TENANT, "drv-1", source, store, on_error=errors.append, **FAST)
    store.disconnect()
    source.push(make_fix(37.55))
    await wait_until(lambda: errors)
    assert isinstance(errors[0], StoreConnectionLost)
    store.reconnect()
    await handle.cancel()


async def test_set_status_republishes_last_position(store, wait_until):
    source = DeviceGeolocationSource()
    handle = await start_tracking(TENANT, "drv-1", source, store, **FAST)
    source.push(make_fix(37.55))
    await wait_until(lambda: store.read(TENANT, "drv-1") is not None)

    handle.set_status(DriverStatus.AT_RESTAURANT)
    await wait_until(lambda: store.read(TENANT, "drv-1").status is DriverStatus.AT_RESTAURANT)
    assert store.read(TENANT, "drv-1").lat == 37.55
    await handle.cancel()


# ─── Registre / Registry ───

async def test_registry_start_reuses_active_handle(store):
    registry = TrackingRegistry(store, **FAST)
    first = await registry.start(TENANT, "drv-1")
    second = await registry.start(TENANT, "drv-1", status=DriverStatus.DELIVERING)
    assert first is second
    assert second.status is DriverStatus.DELIVERING
    await registry.shutdown()
    assert registry.handle_for(TENANT, "drv-1") is None


async def test_registry_stop_without_handle_writes_idle(store):
    store.seed(DriverLocationRecord(
        tenant_id=TENANT, driver_id="drv-1", lat=37.55, lng=-77.46,
        timestamp=time.time() - 60, status=DriverStatus.DELIVERING,
    ))
    registry = TrackingRegistry(store, **FAST)

    await registry.set_status(TENANT, "drv-1", DriverStatus.AT_RESTAURANT)
    assert store.read(TENANT, "drv-1").status is DriverStatus.AT_RESTAURANT
    await registry.stop(TENANT, "drv-1")
    assert store.read(TENANT, "drv-1").status is DriverStatus.IDLE


async def test_registry_records_last_error(store, wait_until):
    registry = TrackingRegistry(store, **FAST)
    seen = []
    registry.add_error_listener(TENANT, "drv-1", seen.append)
    await registry.start(TENANT, "drv-1")
    registry.source_for(TENANT, "drv-1").deny_permission()

    await wait_until(lambda: seen)
    assert isinstance(registry.last_error(TENANT, "drv-1"), PermissionDenied)
    await registry.shutdown()
