"""Modele Commande (champs livraison) / Order model (delivery-relevant fields)."""

import enum

from sqlalchemy import Enum, Float, Integer, String
from sqlalchemy.orm import Mapped, mapped_column

from livetrack.database import Base


class DeliveryStatus(str, enum.Enum):
    """Statut de livraison de la commande / Order delivery status."""
    UNASSIGNED = "unassigned"
    AWAITING_COURIER = "awaiting_courier"
    ASSIGNED = "assigned"
    PICKED_UP = "picked_up"
    IN_TRANSIT = "in_transit"
    DELIVERED = "delivered"
    CANCELLED = "cancelled"


class DeliveryProvider(str, enum.Enum):
    """Mode de livraison / Delivery provider."""
    SELF_MANAGED = "self_managed"
    DOORDASH = "doordash"
    UBER = "uber"
    COMMUNITY = "community"


# Statuts sans chauffeur / Statuses without an owning driver
UNOWNED_STATUSES = frozenset({DeliveryStatus.UNASSIGNED, DeliveryStatus.AWAITING_COURIER})
# Statuts ou un chauffeur porte la commande / Statuses where a driver carries the order
ACTIVE_STATUSES = frozenset({DeliveryStatus.ASSIGNED, DeliveryStatus.PICKED_UP, DeliveryStatus.IN_TRANSIT})
TERMINAL_STATUSES = frozenset({DeliveryStatus.DELIVERED, DeliveryStatus.CANCELLED})

ORDER_TRANSITIONS: dict[DeliveryStatus, frozenset[DeliveryStatus]] = {
    DeliveryStatus.UNASSIGNED: frozenset({
        DeliveryStatus.AWAITING_COURIER, DeliveryStatus.ASSIGNED, DeliveryStatus.CANCELLED,
    }),
    DeliveryStatus.AWAITING_COURIER: frozenset({
        DeliveryStatus.UNASSIGNED, DeliveryStatus.ASSIGNED, DeliveryStatus.PICKED_UP,
        DeliveryStatus.IN_TRANSIT, DeliveryStatus.DELIVERED, DeliveryStatus.CANCELLED,
    }),
    DeliveryStatus.ASSIGNED: frozenset({
        DeliveryStatus.UNASSIGNED, DeliveryStatus.PICKED_UP, DeliveryStatus.IN_TRANSIT,
        DeliveryStatus.DELIVERED, DeliveryStatus.CANCELLED,
    }),
    DeliveryStatus.PICKED_UP: frozenset({
        DeliveryStatus.IN_TRANSIT, DeliveryStatus.DELIVERED, DeliveryStatus.CANCELLED,
    }),
    DeliveryStatus.IN_TRANSIT: frozenset({DeliveryStatus.DELIVERED, DeliveryStatus.CANCELLED}),
    DeliveryStatus.DELIVERED: frozenset(),
    DeliveryStatus.CANCELLED: frozenset(),
}


def can_transition(current: DeliveryStatus, target: DeliveryStatus) -> bool:
    """Transition de commande autorisee ? / Is the order transition allowed?"""
    return target in ORDER_TRANSITIONS[current]


def _enum_values(e):
    return [m.value for m in e]


class Order(Base):
    __tablename__ = "orders"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    tenant_id: Mapped[str] = mapped_column(String(64), index=True, nullable=False)
    driver_id: Mapped[str | None] = mapped_column(String(64), index=True)
    delivery_status: Mapped[DeliveryStatus] = mapped_column(
        Enum(DeliveryStatus, values_callable=_enum_values),
        default=DeliveryStatus.UNASSIGNED,
        nullable=False,
    )
    delivery_provider: Mapped[DeliveryProvider] = mapped_column(
        Enum(DeliveryProvider, values_callable=_enum_values),
        default=DeliveryProvider.SELF_MANAGED,
        nullable=False,
    )
    pickup_lat: Mapped[float] = mapped_column(Float, nullable=False)
    pickup_lng: Mapped[float] = mapped_column(Float, nullable=False)
    dropoff_lat: Mapped[float] = mapped_column(Float, nullable=False)
    dropoff_lng: Mapped[float] = mapped_column(Float, nullable=False)

    # Transporteur tiers / Third-party courier
    provider_delivery_id: Mapped[str | None] = mapped_column(String(100), index=True)
    tracking_url: Mapped[str | None] = mapped_column(String(500))
    courier_name: Mapped[str | None] = mapped_column(String(100))

    # Concurrence optimiste / Optimistic concurrency
    version: Mapped[int] = mapped_column(Integer, default=1, nullable=False)
    created_at: Mapped[str | None] = mapped_column(String(32))  # ISO 8601
    updated_at: Mapped[str | None] = mapped_column(String(32))  # ISO 8601

    def __repr__(self) -> str:
        return f"<Order {self.id} - {self.tenant_id}>"
