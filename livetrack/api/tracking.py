"""Routes suivi temps reel web / Real-time web tracking routes."""

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.ext.asyncio import AsyncSession

from livetrack.api.deps import TenantContext, get_store, require_role
from livetrack.database import get_db
from livetrack.models.driver import DriverStatus
from livetrack.schemas.tracking import Coordinates, DriverLocationRead, OrderTrackingRead
from livetrack.services import eta
from livetrack.services.dispatch import DispatchService
from livetrack.services.location_store import LocationStore

router = APIRouter()


@router.get("/drivers/{driver_id}", response_model=DriverLocationRead)
async def get_driver_location(
    driver_id: str,
    db: AsyncSession = Depends(get_db),
    ctx: TenantContext = Depends(require_role("owner", "dispatcher")),
    store: LocationStore = Depends(get_store),
):
    """Derniere position connue + fraicheur / Last known location + liveness."""
    service = DispatchService(db, ctx.tenant_id, store=store)
    await service.get_driver(driver_id)
    record, stale = service.location_of(driver_id)
    if record is None:
        raise HTTPException(status_code=404, detail="No location yet for this driver")
    return DriverLocationRead(**record.model_dump(), is_stale=stale)


@router.get("/orders/{order_id}", response_model=OrderTrackingRead)
async def get_order_tracking(
    order_id: str,
    db: AsyncSession = Depends(get_db),
    ctx: TenantContext = Depends(require_role("owner", "dispatcher", "customer")),
    store: LocationStore = Depends(get_store),
):
    """Vue client : statut, chauffeur, ETA / Customer view: status, driver, ETA.

    L'ETA vise toujours le client / The ETA always targets the customer.
    """
    service = DispatchService(db, ctx.tenant_id, store=store)
    order = await service.get_order(order_id)
    customer = Coordinates(lat=order.dropoff_lat, lng=order.dropoff_lng)

    snapshot = OrderTrackingRead(
        order_id=order.id,
        delivery_status=order.delivery_status,
        driver_id=order.driver_id,
        restaurant=Coordinates(lat=order.pickup_lat, lng=order.pickup_lng),
        customer=customer,
        tracking_url=order.tracking_url,
        courier_name=order.courier_name,
    )
    if order.driver_id is not None:
        record, stale = service.location_of(order.driver_id)
        if record is not None and record.status is DriverStatus.IDLE:
            # Reste d'une course precedente, pas une position suivie / Left over from a previous run, not tracked
            snapshot.driver_status = record.status
        elif record is not None:
            snapshot.driver_location = DriverLocationRead(**record.model_dump(), is_stale=stale)
            snapshot.driver_status = record.status
            snapshot.eta_minutes = eta.estimate(record.lat, record.lng, customer.lat, customer.lng)
    return snapshot
