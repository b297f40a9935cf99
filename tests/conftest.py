"""Fixtures partagees / Shared fixtures."""

import asyncio
from datetime import datetime, timezone

import httpx
import pytest
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

import livetrack.models  # noqa: F401
from livetrack.database import Base, get_db
from livetrack.main import app
from livetrack.models.driver import Driver, DriverStatus
from livetrack.models.order import DeliveryProvider, DeliveryStatus, Order
from livetrack.services.delivery_providers import DeliveryGateway
from livetrack.services.location_store import LocationStore
from livetrack.services.publisher import TrackingRegistry
from livetrack.utils.auth import create_access_token

TENANT = "resto-1"
OTHER_TENANT = "resto-2"

# Richmond, VA
RESTAURANT = (37.5538, -77.4603)
CUSTOMER = (37.5600, -77.4603)


async def _wait_until(predicate, timeout: float = 2.0):
    async def _poll():
        while not predicate():
            await asyncio.sleep(0.005)

    await asyncio.wait_for(_poll(), timeout)


@pytest.fixture
def wait_until():
    return _wait_until


@pytest.fixture
async def engine():
    engine = create_async_engine(
        "sqlite+aiosqlite://",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


@pytest.fixture
async def db(session_factory):
    async with session_factory() as session:
        yield session


@pytest.fixture
def store():
    return LocationStore()


@pytest.fixture
async def registry(store):
    registry = TrackingRegistry(store, sample_interval=0.01, min_publish_interval=0, fix_timeout=5)
    yield registry
    await registry.shutdown()


@pytest.fixture
def make_driver(db):
    async def _make(driver_id: str, tenant_id: str = TENANT, name: str | None = None,
                    status: DriverStatus = DriverStatus.IDLE, active_order_id: str | None = None) -> Driver:
        driver = Driver(
            id=driver_id, tenant_id=tenant_id, name=name or driver_id,
            current_status=status, active_order_id=active_order_id,
        )
        db.add(driver)
        await db.commit()
        return driver

    return _make


@pytest.fixture
def make_order(db):
    async def _make(order_id: str, tenant_id: str = TENANT,
                    status: DeliveryStatus = DeliveryStatus.UNASSIGNED,
                    provider: DeliveryProvider = DeliveryProvider.SELF_MANAGED,
                    driver_id: str | None = None, provider_delivery_id: str | None = None) -> Order:
        now = datetime.now(timezone.utc).isoformat(timespec="seconds")
        order = Order(
            id=order_id, tenant_id=tenant_id, driver_id=driver_id,
            delivery_status=status, delivery_provider=provider,
            pickup_lat=RESTAURANT[0], pickup_lng=RESTAURANT[1],
            dropoff_lat=CUSTOMER[0], dropoff_lng=CUSTOMER[1],
            provider_delivery_id=provider_delivery_id,
            version=1, created_at=now, updated_at=now,
        )
        db.add(order)
        await db.commit()
        return order

    return _make


def courier_handler(request: httpx.Request) -> httpx.Response:
    """Transporteurs factices par defaut / Default fake couriers."""
    return httpx.Response(404, json={"message": "not mocked"})


@pytest.fixture
async def gateway():
    client = httpx.AsyncClient(transport=httpx.MockTransport(courier_handler))
    gateway = DeliveryGateway(client)
    yield gateway
    await client.aclose()


@pytest.fixture
async def client(session_factory, store, registry, gateway):
    async def override_get_db():
        async with session_factory() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise

    app.dependency_overrides[get_db] = override_get_db
    app.state.store = store
    app.state.registry = registry
    app.state.gateway = gateway
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac
    app.dependency_overrides.clear()


def auth(role: str, user_id: str = "user-1", tenant_id: str = TENANT) -> dict:
    token = create_access_token(user_id, tenant_id, role)
    return {"Authorization": f"Bearer {token}"}
