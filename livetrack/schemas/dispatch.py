"""Schemas repartition / Dispatch schemas: drivers, orders, assignments."""

from pydantic import BaseModel, ConfigDict, Field

from livetrack.models.driver import DriverStatus
from livetrack.models.order import DeliveryProvider, DeliveryStatus
from livetrack.schemas.tracking import Coordinates, DriverLocationRead


# ─── Driver ───

class DriverCreate(BaseModel):
    id: str | None = Field(default=None, max_length=64)
    name: str = Field(min_length=1, max_length=100)
    phone: str | None = Field(default=None, max_length=30)
    vehicle: str | None = Field(default=None, max_length=50)


class DriverRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)
    id: str
    tenant_id: str
    name: str
    phone: str | None = None
    vehicle: str | None = None
    current_status: DriverStatus
    active_order_id: str | None = None


class AvailableDriverRead(DriverRead):
    location: DriverLocationRead | None = None
    distance_km: float | None = None


# ─── Order ───

class OrderCreate(BaseModel):
    """Creation par le checkout / Created by checkout."""
    id: str | None = Field(default=None, max_length=64)
    pickup: Coordinates
    dropoff: Coordinates
    delivery_provider: DeliveryProvider = DeliveryProvider.SELF_MANAGED


class OrderRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)
    id: str
    tenant_id: str
    driver_id: str | None = None
    delivery_status: DeliveryStatus
    delivery_provider: DeliveryProvider
    pickup_lat: float
    pickup_lng: float
    dropoff_lat: float
    dropoff_lng: float
    provider_delivery_id: str | None = None
    tracking_url: str | None = None
    courier_name: str | None = None
    version: int
    updated_at: str | None = None


# ─── Assignment ───

class AssignmentCreate(BaseModel):
    order_id: str
    driver_id: str
    # Version vue par le repartiteur / Version the dispatcher saw
    expected_version: int | None = None


class ReassignCreate(BaseModel):
    driver_id: str
    expected_version: int | None = None


class AssignmentRead(BaseModel):
    order_id: str
    driver_id: str | None
    delivery_status: DeliveryStatus
    version: int
    driver_synced: bool = True
    previous_driver_id: str | None = None
