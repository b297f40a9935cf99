"""Routes transporteurs tiers / Third-party courier routes.

Le webhook n'est pas authentifie par JWT : verification propre au
transporteur (signature HMAC Uber).
The webhook is not JWT-authenticated: provider-specific verification.
"""

import logging

from fastapi import APIRouter, Depends, HTTPException, Request
from sqlalchemy.ext.asyncio import AsyncSession

from livetrack.api.deps import TenantContext, get_gateway, require_role
from livetrack.api.ws_tracking import manager
from livetrack.config import settings
from livetrack.database import get_db
from livetrack.exceptions import OrderAlreadyAssigned, ProviderError
from livetrack.models.order import UNOWNED_STATUSES, DeliveryProvider
from livetrack.rate_limit import limiter
from livetrack.schemas.delivery import DeliveryCreate, DeliveryQuote, ProviderDelivery, QuoteCreate
from livetrack.services.delivery_providers import DeliveryGateway
from livetrack.services.dispatch import DispatchService, ingest_courier_update

logger = logging.getLogger(__name__)

router = APIRouter()


@router.get("/providers", response_model=list[DeliveryProvider])
async def list_providers(
    ctx: TenantContext = Depends(require_role("owner", "dispatcher", "customer")),
    gateway: DeliveryGateway = Depends(get_gateway),
):
    """Modes de livraison disponibles / Available delivery providers."""
    return gateway.available_providers()


@router.post("/quote", response_model=list[DeliveryQuote])
async def get_quotes(
    data: QuoteCreate,
    ctx: TenantContext = Depends(require_role("owner", "dispatcher", "customer")),
    gateway: DeliveryGateway = Depends(get_gateway),
):
    """Devis transporteurs, le moins cher d'abord / Courier quotes, cheapest first."""
    return await gateway.quote(data.request, data.providers)


@router.post("/create", response_model=ProviderDelivery, status_code=201)
async def create_delivery(
    data: DeliveryCreate,
    db: AsyncSession = Depends(get_db),
    ctx: TenantContext = Depends(require_role("owner", "dispatcher")),
    gateway: DeliveryGateway = Depends(get_gateway),
):
    """Confier la commande a un transporteur / Hand the order to a courier."""
    if data.provider in (DeliveryProvider.COMMUNITY, DeliveryProvider.SELF_MANAGED):
        raise HTTPException(status_code=400, detail="Community deliveries are dispatched locally")

    service = DispatchService(db, ctx.tenant_id, user=ctx.actor)
    # Verifier avant l'appel externe / Check before the external call
    order = await service.get_order(data.request.order_id)
    if order.delivery_status not in UNOWNED_STATUSES:
        raise OrderAlreadyAssigned(order.id)
    version = order.version

    delivery = await gateway.create(data.provider, data.request, data.quote_id)
    try:
        order = await service.hand_off(data.request.order_id, delivery, expected_version=version)
    except OrderAlreadyAssigned:
        # Affectee localement pendant l'appel : annuler la course / Assigned locally meanwhile: cancel the courier run
        logger.warning("Order %s changed during %s dispatch, cancelling delivery %s",
                       data.request.order_id, delivery.provider.value, delivery.provider_delivery_id)
        try:
            await gateway.cancel(delivery.provider, delivery.provider_delivery_id)
        except ProviderError as exc:
            logger.error("Could not cancel %s delivery %s: %s",
                         delivery.provider.value, delivery.provider_delivery_id, exc)
        raise
    await manager.broadcast(ctx.tenant_id, {
        "type": "order_status",
        "order_id": order.id,
        "delivery_status": order.delivery_status.value,
        "provider": delivery.provider.value,
    })
    return delivery


@router.get("/status", response_model=ProviderDelivery)
async def get_delivery_status(
    provider: DeliveryProvider,
    delivery_id: str,
    db: AsyncSession = Depends(get_db),
    ctx: TenantContext = Depends(require_role("owner", "dispatcher", "customer")),
    gateway: DeliveryGateway = Depends(get_gateway),
):
    """Statut chez le transporteur, reporte sur la commande / Courier status, mirrored onto the order."""
    delivery = await gateway.status(provider, delivery_id)
    order = await ingest_courier_update(db, delivery, ctx.tenant_id)
    if order is None:
        raise HTTPException(status_code=404, detail="Delivery not found")
    return delivery


@router.post("/webhook")
@limiter.limit(settings.RATE_LIMIT_DEFAULT)
async def delivery_webhook(
    request: Request,
    db: AsyncSession = Depends(get_db),
    gateway: DeliveryGateway = Depends(get_gateway),
):
    """Mises a jour DoorDash / Uber / DoorDash and Uber status updates."""
    raw_body = await request.body()
    delivery = gateway.parse_webhook(
        {key.lower(): value for key, value in request.headers.items()}, raw_body,
    )
    logger.info("Delivery webhook: %s %s -> %s",
                delivery.provider.value, delivery.provider_delivery_id, delivery.status.value)

    order = await ingest_courier_update(db, delivery)
    if order is not None:
        await manager.broadcast(order.tenant_id, {
            "type": "order_status",
            "order_id": order.id,
            "delivery_status": order.delivery_status.value,
            "courier_name": order.courier_name,
        })
    return {"received": True}
