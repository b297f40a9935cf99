"""Modele Chauffeur / Driver model."""

import enum

from sqlalchemy import Enum, String
from sqlalchemy.orm import Mapped, mapped_column

from livetrack.database import Base


class DriverStatus(str, enum.Enum):
    """Statut chauffeur / Driver status (mirrors the published location status)."""
    IDLE = "idle"
    IN_TRANSIT = "in_transit"
    AT_RESTAURANT = "at_restaurant"
    DELIVERING = "delivering"


class Driver(Base):
    __tablename__ = "drivers"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    tenant_id: Mapped[str] = mapped_column(String(64), index=True, nullable=False)
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    phone: Mapped[str | None] = mapped_column(String(30))
    vehicle: Mapped[str | None] = mapped_column(String(50))
    current_status: Mapped[DriverStatus] = mapped_column(
        Enum(DriverStatus, values_callable=lambda e: [m.value for m in e]),
        default=DriverStatus.IDLE,
        nullable=False,
    )
    # Une seule livraison a la fois / At most one delivery at a time
    active_order_id: Mapped[str | None] = mapped_column(String(64))
    created_at: Mapped[str | None] = mapped_column(String(32))  # ISO 8601

    def __repr__(self) -> str:
        return f"<Driver {self.id} - {self.name}>"
