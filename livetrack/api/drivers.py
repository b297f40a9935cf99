"""Routes chauffeurs (profil) / Driver routes (profile only)."""

import uuid
from datetime import datetime, timezone

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from livetrack.api.deps import TenantContext, require_role
from livetrack.database import get_db
from livetrack.models.driver import Driver, DriverStatus
from livetrack.schemas.dispatch import DriverCreate, DriverRead

router = APIRouter()


@router.post("/", response_model=DriverRead, status_code=201)
async def create_driver(
    data: DriverCreate,
    db: AsyncSession = Depends(get_db),
    ctx: TenantContext = Depends(require_role("owner", "dispatcher")),
):
    """Enregistrer un chauffeur / Register a driver."""
    driver_id = data.id or uuid.uuid4().hex
    if await db.get(Driver, driver_id) is not None:
        raise HTTPException(status_code=409, detail="Driver already exists")

    driver = Driver(
        id=driver_id,
        tenant_id=ctx.tenant_id,
        name=data.name,
        phone=data.phone,
        vehicle=data.vehicle,
        current_status=DriverStatus.IDLE,
        created_at=datetime.now(timezone.utc).isoformat(timespec="seconds"),
    )
    db.add(driver)
    await db.flush()
    return driver


@router.get("/", response_model=list[DriverRead])
async def list_drivers(
    db: AsyncSession = Depends(get_db),
    ctx: TenantContext = Depends(require_role("owner", "dispatcher")),
):
    """Lister les chauffeurs du tenant / List the tenant's drivers."""
    result = await db.execute(select(Driver).where(Driver.tenant_id == ctx.tenant_id).order_by(Driver.name))
    return result.scalars().all()
