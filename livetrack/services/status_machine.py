"""
Machine a etats du chauffeur / Driver status machine.

idle -> in_transit -> at_restaurant -> delivering -> idle

Les transitions sont des actions du chauffeur (boutons de l'application).
Entrer dans in_transit demarre la publication GPS ; revenir a idle l'arrete.
Transitions are driver button presses. Entering in_transit starts the
location publisher; returning to idle stops it.
"""

import json
import logging
from datetime import datetime, timezone

from sqlalchemy.ext.asyncio import AsyncSession

from livetrack.exceptions import DriverNotFound, InvalidStateTransition
from livetrack.models.audit import AuditLog
from livetrack.models.driver import Driver, DriverStatus
from livetrack.models.order import DeliveryStatus, Order, can_transition
from livetrack.services.dispatch import reconcile_driver, write_order_if
from livetrack.services.publisher import GeolocationSource, TrackingRegistry

logger = logging.getLogger(__name__)

TRANSITIONS: dict[DriverStatus, DriverStatus] = {
    DriverStatus.IDLE: DriverStatus.IN_TRANSIT,
    DriverStatus.IN_TRANSIT: DriverStatus.AT_RESTAURANT,
    DriverStatus.AT_RESTAURANT: DriverStatus.DELIVERING,
    DriverStatus.DELIVERING: DriverStatus.IDLE,
}

# Bouton -> statut cible / Button -> target status
ACTIONS: dict[str, DriverStatus] = {
    "start": DriverStatus.IN_TRANSIT,
    "arrive": DriverStatus.AT_RESTAURANT,
    "depart": DriverStatus.DELIVERING,
    "complete": DriverStatus.IDLE,
}


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="seconds")


def next_status(current: DriverStatus, action: str) -> DriverStatus:
    """Statut apres l'action, ou InvalidStateTransition / Status after the action, or InvalidStateTransition."""
    target = ACTIONS.get(action)
    if target is None:
        raise InvalidStateTransition(current.value, action)
    if TRANSITIONS[current] != target:
        raise InvalidStateTransition(current.value, target.value)
    return target


class DriverStatusMachine:
    def __init__(self, db: AsyncSession, tenant_id: str, driver_id: str, registry: TrackingRegistry):
        self.db = db
        self.tenant_id = tenant_id
        self.driver_id = driver_id
        self.registry = registry

    async def _load_driver(self) -> Driver:
        driver = await self.db.get(Driver, self.driver_id)
        if driver is None or driver.tenant_id != self.tenant_id:
            raise DriverNotFound(f"Driver {self.driver_id} not found")
        return driver

    async def _owned_order(self, driver: Driver) -> Order | None:
        await reconcile_driver(self.db, self.tenant_id, driver)
        if driver.active_order_id is None:
            return None
        order = await self.db.get(Order, driver.active_order_id, populate_existing=True)
        if order is None or order.tenant_id != self.tenant_id or order.driver_id != driver.id:
            return None
        return order

    async def apply(self, action: str, source: GeolocationSource | None = None) -> Driver:
        """Appliquer une action du chauffeur / Apply a driver action.

        Toute la validation precede les effets de bord : une transition
        refusee ne touche ni le store ni la base.
        Validation precedes every side effect: a rejected transition touches
        neither the store nor the database.
        """
        driver = await self._load_driver()
        current = driver.current_status
        target = next_status(current, action)

        if target is DriverStatus.IN_TRANSIT:
            # PermissionDenied remonte ici, avant toute ecriture / PermissionDenied surfaces here, before any write
            await self.registry.start(self.tenant_id, self.driver_id, source=source, status=target)
        elif target is DriverStatus.IDLE:
            await self._complete(driver)
        else:
            await self.registry.set_status(self.tenant_id, self.driver_id, target)
            if target is DriverStatus.DELIVERING:
                await self._advance_order(driver, DeliveryStatus.PICKED_UP)

        driver.current_status = target
        await self.db.flush()
        logger.info("Driver %s/%s: %s -> %s", self.tenant_id, self.driver_id, current.value, target.value)
        return driver

    async def start(self, source: GeolocationSource | None = None) -> Driver:
        return await self.apply("start", source)

    async def arrive(self) -> Driver:
        return await self.apply("arrive")

    async def depart(self) -> Driver:
        return await self.apply("depart")

    async def complete_delivery(self) -> Driver:
        return await self.apply("complete")

    async def _complete(self, driver: Driver):
        await self.registry.stop(self.tenant_id, self.driver_id)
        await self._advance_order(driver, DeliveryStatus.DELIVERED)
        driver.active_order_id = None

    async def _advance_order(self, driver: Driver, target: DeliveryStatus):
        order = await self._owned_order(driver)
        if order is None:
            # Aucune commande active / No active order
            logger.warning("Driver %s has no owned order to move to %s", driver.id, target.value)
            return
        if order.delivery_status == target or not can_transition(order.delivery_status, target):
            return
        previous = order.delivery_status
        # Seulement si la commande est toujours a ce chauffeur / Only while the order still belongs to this driver
        written = await write_order_if(
            self.db, order.id, self.tenant_id, order.version,
            [Order.driver_id == driver.id, Order.delivery_status == previous],
            delivery_status=target,
        )
        if not written:
            logger.warning("Order %s changed before driver %s could move it to %s",
                           order.id, driver.id, target.value)
            await self.db.refresh(order)
            return
        self.db.add(AuditLog(
            tenant_id=self.tenant_id,
            entity_type="order", entity_id=order.id, action="STATUS",
            changes=json.dumps({"delivery_status": [previous.value, target.value], "driver_id": driver.id}),
            user=f"driver:{driver.id}",
            timestamp=_now_iso(),
        ))
        await self.db.flush()
        await self.db.refresh(order)
