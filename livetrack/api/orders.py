"""Routes commandes (champs livraison) / Order routes (delivery fields only)."""

import uuid
from datetime import datetime, timezone

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.ext.asyncio import AsyncSession

from livetrack.api.deps import TenantContext, require_role
from livetrack.database import get_db
from livetrack.models.order import DeliveryStatus, Order
from livetrack.schemas.dispatch import OrderCreate, OrderRead
from livetrack.services.dispatch import DispatchService

router = APIRouter()


@router.post("/", response_model=OrderRead, status_code=201)
async def create_order(
    data: OrderCreate,
    db: AsyncSession = Depends(get_db),
    ctx: TenantContext = Depends(require_role("owner", "dispatcher", "customer")),
):
    """Creer une commande depuis le checkout / Create an order from checkout."""
    order_id = data.id or uuid.uuid4().hex
    if await db.get(Order, order_id) is not None:
        raise HTTPException(status_code=409, detail="Order already exists")

    now = datetime.now(timezone.utc).isoformat(timespec="seconds")
    order = Order(
        id=order_id,
        tenant_id=ctx.tenant_id,
        delivery_status=DeliveryStatus.UNASSIGNED,
        delivery_provider=data.delivery_provider,
        pickup_lat=data.pickup.lat,
        pickup_lng=data.pickup.lng,
        dropoff_lat=data.dropoff.lat,
        dropoff_lng=data.dropoff.lng,
        version=1,
        created_at=now,
        updated_at=now,
    )
    db.add(order)
    await db.flush()
    return order


@router.get("/{order_id}", response_model=OrderRead)
async def get_order(
    order_id: str,
    db: AsyncSession = Depends(get_db),
    ctx: TenantContext = Depends(require_role("owner", "dispatcher", "customer")),
):
    """Detail d'une commande / Get one order."""
    return await DispatchService(db, ctx.tenant_id).get_order(order_id)
