"""Routes API / API routes."""

from fastapi import APIRouter

from livetrack.api import (
    delivery,
    dispatch,
    driver,
    drivers,
    orders,
    tracking,
)

api_router = APIRouter(prefix="/api")

api_router.include_router(driver.router, prefix="/driver", tags=["driver"])
api_router.include_router(dispatch.router, prefix="/dispatch", tags=["dispatch"])
api_router.include_router(tracking.router, prefix="/tracking", tags=["tracking"])
api_router.include_router(delivery.router, prefix="/delivery", tags=["delivery"])
api_router.include_router(orders.router, prefix="/orders", tags=["orders"])
api_router.include_router(drivers.router, prefix="/drivers", tags=["drivers"])
