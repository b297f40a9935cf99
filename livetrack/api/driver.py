"""Endpoints application chauffeur / Driver app endpoints.

Auth par JWT role `driver` ; le chauffeur n'agit que sur lui-meme.
"""

from fastapi import APIRouter, Depends, Request
from sqlalchemy.ext.asyncio import AsyncSession

from livetrack.api.deps import TenantContext, get_registry, require_role
from livetrack.api.ws_tracking import manager
from livetrack.config import settings
from livetrack.database import get_db
from livetrack.rate_limit import limiter
from livetrack.schemas.dispatch import DriverRead
from livetrack.schemas.tracking import GPSFixBatch
from livetrack.services.publisher import TrackingRegistry
from livetrack.services.status_machine import DriverStatusMachine

router = APIRouter()


@router.post("/fixes")
@limiter.limit(settings.RATE_LIMIT_GPS)
async def submit_fixes(
    request: Request,
    data: GPSFixBatch,
    ctx: TenantContext = Depends(require_role("driver")),
    registry: TrackingRegistry = Depends(get_registry),
):
    """Positions GPS en repli HTTP / GPS fixes over HTTP fallback.

    Seule la plus recente compte : la source garde le dernier fix.
    Only the latest matters: the source keeps the last fix.
    """
    source = registry.source_for(ctx.tenant_id, ctx.user_id)
    for fix in sorted(data.fixes, key=lambda f: f.timestamp):
        source.push(fix)
    handle = registry.handle_for(ctx.tenant_id, ctx.user_id)
    error = registry.last_error(ctx.tenant_id, ctx.user_id)
    return {
        "accepted": len(data.fixes),
        "tracking": handle is not None and handle.active,
        "error": error.code if error else None,
    }


@router.post("/status/{action}", response_model=DriverRead)
async def change_status(
    action: str,
    db: AsyncSession = Depends(get_db),
    ctx: TenantContext = Depends(require_role("driver")),
    registry: TrackingRegistry = Depends(get_registry),
):
    """Bouton de statut : start, arrive, depart, complete / Status button."""
    machine = DriverStatusMachine(db, ctx.tenant_id, ctx.user_id, registry)
    driver = await machine.apply(action)

    await manager.broadcast(ctx.tenant_id, {
        "type": "driver_status",
        "driver_id": driver.id,
        "status": driver.current_status.value,
        "active_order_id": driver.active_order_id,
    })
    return driver
