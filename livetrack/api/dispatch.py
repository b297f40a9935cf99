"""Routes repartition / Dispatch routes."""

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from livetrack.api.deps import TenantContext, get_store, require_role
from livetrack.api.ws_tracking import manager
from livetrack.database import get_db
from livetrack.schemas.dispatch import (
    AssignmentCreate,
    AssignmentRead,
    AvailableDriverRead,
    OrderRead,
    ReassignCreate,
)
from livetrack.schemas.tracking import Coordinates, DriverLocationRead
from livetrack.services.dispatch import AssignmentResult, DispatchService
from livetrack.services.location_store import LocationStore
from livetrack.services.subscriber import is_stale

router = APIRouter()

dispatcher_only = require_role("owner", "dispatcher")


def _service(db: AsyncSession, ctx: TenantContext, store: LocationStore | None = None) -> DispatchService:
    return DispatchService(db, ctx.tenant_id, user=ctx.actor, store=store)


async def _announce(ctx: TenantContext, event: str, result: AssignmentResult) -> AssignmentRead:
    read = AssignmentRead(
        order_id=result.order_id,
        driver_id=result.driver_id,
        delivery_status=result.delivery_status,
        version=result.version,
        driver_synced=result.driver_synced,
        previous_driver_id=result.previous_driver_id,
    )
    await manager.broadcast(ctx.tenant_id, {"type": "assignment", "event": event, **read.model_dump(mode="json")})
    return read


@router.get("/orders/pending", response_model=list[OrderRead])
async def list_pending_orders(
    db: AsyncSession = Depends(get_db),
    ctx: TenantContext = Depends(dispatcher_only),
):
    """Commandes en attente de chauffeur / Orders waiting for a driver."""
    return await _service(db, ctx).pending_orders()


@router.get("/drivers", response_model=list[AvailableDriverRead])
async def list_available_drivers(
    near_lat: float | None = None,
    near_lng: float | None = None,
    db: AsyncSession = Depends(get_db),
    ctx: TenantContext = Depends(dispatcher_only),
    store: LocationStore = Depends(get_store),
):
    """Chauffeurs disponibles, les plus proches d'abord / Available drivers, nearest first."""
    near = None
    if near_lat is not None and near_lng is not None:
        near = Coordinates(lat=near_lat, lng=near_lng)

    result = []
    for driver, location, distance in await _service(db, ctx, store).available_drivers(near):
        read = AvailableDriverRead.model_validate(driver)
        if location is not None:
            read.location = DriverLocationRead(**location.model_dump(), is_stale=is_stale(location))
        read.distance_km = distance
        result.append(read)
    return result


@router.post("/assign", response_model=AssignmentRead)
async def assign_order(
    data: AssignmentCreate,
    db: AsyncSession = Depends(get_db),
    ctx: TenantContext = Depends(dispatcher_only),
):
    """Affecter une commande a un chauffeur / Assign an order to a driver."""
    result = await _service(db, ctx).assign(data.order_id, data.driver_id, data.expected_version)
    return await _announce(ctx, "assigned", result)


@router.post("/orders/{order_id}/reassign", response_model=AssignmentRead)
async def reassign_order(
    order_id: str,
    data: ReassignCreate,
    db: AsyncSession = Depends(get_db),
    ctx: TenantContext = Depends(dispatcher_only),
):
    """Changer de chauffeur / Change driver."""
    result = await _service(db, ctx).reassign(order_id, data.driver_id, data.expected_version)
    return await _announce(ctx, "reassigned", result)


@router.post("/orders/{order_id}/release", response_model=AssignmentRead)
async def release_order(
    order_id: str,
    expected_version: int | None = None,
    db: AsyncSession = Depends(get_db),
    ctx: TenantContext = Depends(dispatcher_only),
):
    """Remettre en attente / Put back in the pending list."""
    result = await _service(db, ctx).release(order_id, expected_version)
    return await _announce(ctx, "released", result)


@router.post("/orders/{order_id}/cancel", response_model=OrderRead)
async def cancel_order(
    order_id: str,
    db: AsyncSession = Depends(get_db),
    ctx: TenantContext = Depends(dispatcher_only),
):
    """Annuler la commande / Cancel the order."""
    order = await _service(db, ctx).cancel_order(order_id)
    await manager.broadcast(ctx.tenant_id, {
        "type": "order_status",
        "order_id": order.id,
        "delivery_status": order.delivery_status.value,
    })
    return order
