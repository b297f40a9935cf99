"""Modele Derniere position chauffeur / Driver last-known location model."""

from sqlalchemy import Enum, Float, String
from sqlalchemy.orm import Mapped, mapped_column

from livetrack.database import Base
from livetrack.models.driver import DriverStatus


class DriverLocation(Base):
    """Derniere position connue, ecrasee a chaque echantillon / Last-known position, overwritten on every sample."""
    __tablename__ = "driver_locations"

    tenant_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    driver_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    lat: Mapped[float] = mapped_column(Float, nullable=False)
    lng: Mapped[float] = mapped_column(Float, nullable=False)
    timestamp: Mapped[float] = mapped_column(Float, nullable=False)  # epoch secondes / epoch seconds
    status: Mapped[DriverStatus] = mapped_column(
        Enum(DriverStatus, values_callable=lambda e: [m.value for m in e]), nullable=False
    )
    speed: Mapped[float | None] = mapped_column(Float)
    heading: Mapped[float | None] = mapped_column(Float)
    accuracy: Mapped[float | None] = mapped_column(Float)

    def __repr__(self) -> str:
        return f"<DriverLocation {self.tenant_id}/{self.driver_id}>"
