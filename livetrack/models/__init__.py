"""
Modèles SQLAlchemy / SQLAlchemy models.
Importer tous les modèles ici pour que create_all les détecte.
Import all models here so create_all can detect them.
"""

from livetrack.models.audit import AuditLog
from livetrack.models.driver import Driver, DriverStatus
from livetrack.models.driver_location import DriverLocation
from livetrack.models.order import DeliveryProvider, DeliveryStatus, Order

__all__ = [
    "AuditLog",
    "Driver",
    "DriverStatus",
    "DriverLocation",
    "DeliveryProvider",
    "DeliveryStatus",
    "Order",
]
