"""Schemas suivi temps reel / Real-time tracking schemas: fixes, locations, customer view."""

from pydantic import BaseModel, ConfigDict, Field

from livetrack.models.driver import DriverStatus
from livetrack.models.order import DeliveryStatus


class Coordinates(BaseModel):
    model_config = ConfigDict(frozen=True)
    lat: float = Field(ge=-90, le=90)
    lng: float = Field(ge=-180, le=180)


# ─── GPS ───

class GPSFix(BaseModel):
    """Position brute de l'appareil / Raw device fix."""
    model_config = ConfigDict(frozen=True)
    lat: float = Field(ge=-90, le=90)
    lng: float = Field(ge=-180, le=180)
    timestamp: float = Field(ge=0)  # epoch secondes / epoch seconds
    speed: float | None = None
    heading: float | None = Field(default=None, ge=0, le=360)
    accuracy: float | None = Field(default=None, ge=0)


class GPSFixBatch(BaseModel):
    """Lot de positions (repli HTTP) / Fix batch (HTTP fallback)."""
    fixes: list[GPSFix] = Field(min_length=1, max_length=100)


class DriverLocationRecord(BaseModel):
    """Enregistrement du store, valide a la frontiere / Store record, validated at the boundary."""
    model_config = ConfigDict(frozen=True, from_attributes=True)
    tenant_id: str = Field(min_length=1, max_length=64)
    driver_id: str = Field(min_length=1, max_length=64)
    lat: float = Field(ge=-90, le=90)
    lng: float = Field(ge=-180, le=180)
    timestamp: float = Field(ge=0)
    status: DriverStatus
    speed: float | None = None
    heading: float | None = None
    accuracy: float | None = None

    @property
    def position(self) -> Coordinates:
        return Coordinates(lat=self.lat, lng=self.lng)


class DriverLocationRead(DriverLocationRecord):
    is_stale: bool = False


class OrderTrackingRead(BaseModel):
    """Vue client du suivi / Customer tracking snapshot."""
    order_id: str
    delivery_status: DeliveryStatus
    driver_id: str | None = None
    driver_status: DriverStatus | None = None
    restaurant: Coordinates
    customer: Coordinates
    driver_location: DriverLocationRead | None = None
    eta_minutes: int | None = None
    tracking_url: str | None = None
    courier_name: str | None = None
