"""Schemas transporteurs tiers / Third-party courier schemas."""

import enum

from pydantic import BaseModel, Field

from livetrack.models.order import DeliveryProvider


class CourierStatus(str, enum.Enum):
    """Statut normalise entre transporteurs / Status normalized across couriers."""
    CREATED = "created"
    ASSIGNED = "assigned"
    PICKING_UP = "picking_up"
    PICKED_UP = "picked_up"
    DELIVERING = "delivering"
    DELIVERED = "delivered"
    CANCELLED = "cancelled"
    RETURNED = "returned"


class DeliveryItem(BaseModel):
    name: str = Field(min_length=1, max_length=200)
    quantity: int = Field(ge=1)


class DeliveryRequest(BaseModel):
    order_id: str
    business_id: str
    pickup_address: str
    pickup_phone: str
    pickup_business_name: str
    pickup_instructions: str | None = None
    dropoff_address: str
    dropoff_phone: str
    dropoff_name: str
    dropoff_instructions: str | None = None
    order_value: int = Field(ge=0)  # cents
    tip: int = Field(default=0, ge=0)  # cents
    items: list[DeliveryItem] = []


class DeliveryQuote(BaseModel):
    provider: DeliveryProvider
    fee_cents: int
    eta_minutes: int
    quote_id: str
    expires_at: str  # ISO 8601


class ProviderDelivery(BaseModel):
    """Statut de livraison normalise / Normalized delivery status."""
    provider: DeliveryProvider
    provider_delivery_id: str
    status: CourierStatus
    driver_name: str | None = None
    driver_phone: str | None = None
    driver_lat: float | None = None
    driver_lng: float | None = None
    tracking_url: str | None = None
    estimated_delivery_time: str | None = None
    fee_cents: int | None = None


class QuoteCreate(BaseModel):
    request: DeliveryRequest
    providers: list[DeliveryProvider] | None = None


class DeliveryCreate(BaseModel):
    provider: DeliveryProvider
    request: DeliveryRequest
    quote_id: str | None = None
