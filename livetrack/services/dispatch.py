"""
Service de repartition / Dispatch service.

Affecte une commande en attente a un chauffeur disponible.
Assigns a pending order to an available driver.

Pas de transaction multi-enregistrements cote store : la commande est ecrite
d'abord (conditionnee par sa version), le lien chauffeur ensuite avec
quelques essais. Une courte fenetre (commande affectee, chauffeur pas encore
lie) est possible ; les lecteurs la reconcilient (`reconcile_driver`).
The order is written first, conditional on its version; the driver link
follows with a few retries. A short window (order assigned, driver not yet
linked) is possible and readers reconcile it (`reconcile_driver`).
"""

import asyncio
import json
import logging
from dataclasses import dataclass
from datetime import datetime, timezone

from sqlalchemy import or_, select, update
from sqlalchemy.exc import OperationalError
from sqlalchemy.ext.asyncio import AsyncSession

from livetrack.config import settings
from livetrack.exceptions import (
    DriverNotFound,
    DriverUnavailable,
    OrderAlreadyAssigned,
    OrderNotFound,
)
from livetrack.models.audit import AuditLog
from livetrack.models.driver import Driver, DriverStatus
from livetrack.models.order import (
    ACTIVE_STATUSES,
    TERMINAL_STATUSES,
    UNOWNED_STATUSES,
    DeliveryStatus,
    Order,
    can_transition,
)
from livetrack.schemas.delivery import CourierStatus, ProviderDelivery
from livetrack.schemas.tracking import Coordinates, DriverLocationRecord
from livetrack.services.location_store import LocationStore
from livetrack.services.subscriber import is_stale
from livetrack.utils.geo import haversine

logger = logging.getLogger(__name__)

# Chauffeurs qui peuvent recevoir une commande / Drivers that can take an order
ASSIGNABLE_DRIVER_STATUSES = frozenset({DriverStatus.IDLE, DriverStatus.IN_TRANSIT})

COURIER_TO_DELIVERY_STATUS: dict[CourierStatus, DeliveryStatus] = {
    CourierStatus.CREATED: DeliveryStatus.AWAITING_COURIER,
    CourierStatus.ASSIGNED: DeliveryStatus.ASSIGNED,
    CourierStatus.PICKING_UP: DeliveryStatus.ASSIGNED,
    CourierStatus.PICKED_UP: DeliveryStatus.PICKED_UP,
    CourierStatus.DELIVERING: DeliveryStatus.IN_TRANSIT,
    CourierStatus.DELIVERED: DeliveryStatus.DELIVERED,
    CourierStatus.CANCELLED: DeliveryStatus.CANCELLED,
    CourierStatus.RETURNED: DeliveryStatus.CANCELLED,
}


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="seconds")


async def write_order_if(
    db: AsyncSession, order_id: str, tenant_id: str, version: int, conditions: list, **values,
) -> bool:
    """Ecriture conditionnee par la version / Version-conditional order write.

    Incremente la version ; False si la commande a change entre-temps.
    Bumps the version; False if the order changed in the meantime.
    """
    result = await db.execute(
        update(Order)
        .where(
            Order.id == order_id,
            Order.tenant_id == tenant_id,
            Order.version == version,
            *conditions,
        )
        .values(version=version + 1, updated_at=_now_iso(), **values)
        .execution_options(synchronize_session=False)
    )
    return result.rowcount == 1


@dataclass
class AssignmentResult:
    order_id: str
    driver_id: str | None
    delivery_status: DeliveryStatus
    version: int
    # False : lien chauffeur non confirme, reconcilie a la lecture / driver link unconfirmed, reconciled on read
    driver_synced: bool = True
    previous_driver_id: str | None = None


async def reconcile_driver(db: AsyncSession, tenant_id: str, driver: Driver) -> Driver:
    """Aligner driver.active_order_id sur les commandes / Align driver.active_order_id with the orders.

    La commande fait foi : une commande active portant ce chauffeur le lie,
    un lien vers une commande terminee ou reprise est efface.
    The order is authoritative: an active order carrying this driver links
    it, a link to a finished or reassigned order is cleared.
    """
    result = await db.execute(
        select(Order).where(
            Order.tenant_id == tenant_id,
            Order.driver_id == driver.id,
            Order.delivery_status.in_(ACTIVE_STATUSES),
        ).order_by(Order.updated_at.desc()).limit(1)
    )
    owned = result.scalar_one_or_none()
    expected = owned.id if owned is not None else None
    if driver.active_order_id != expected:
        logger.info("Reconciling driver %s: active order %s -> %s", driver.id, driver.active_order_id, expected)
        driver.active_order_id = expected
        await db.flush()
    return driver


class DispatchService:
    def __init__(
        self,
        db: AsyncSession,
        tenant_id: str,
        user: str | None = None,
        store: LocationStore | None = None,
        retries: int | None = None,
        retry_delay: float | None = None,
    ):
        self.db = db
        self.tenant_id = tenant_id
        self.user = user
        self.store = store
        self.retries = settings.ASSIGN_DRIVER_RETRIES if retries is None else retries
        self.retry_delay = settings.ASSIGN_RETRY_DELAY_SECONDS if retry_delay is None else retry_delay

    # ─── Lectures / Reads ───

    async def get_order(self, order_id: str) -> Order:
        order = await self.db.get(Order, order_id)
        if order is None or order.tenant_id != self.tenant_id:
            raise OrderNotFound(f"Order {order_id} not found")
        return order

    async def get_driver(self, driver_id: str) -> Driver:
        driver = await self.db.get(Driver, driver_id)
        if driver is None or driver.tenant_id != self.tenant_id:
            raise DriverNotFound(f"Driver {driver_id} not found")
        return driver

    async def pending_orders(self) -> list[Order]:
        """Commandes sans chauffeur / Orders without a driver."""
        result = await self.db.execute(
            select(Order).where(
                Order.tenant_id == self.tenant_id,
                Order.delivery_status.in_(UNOWNED_STATUSES),
            ).order_by(Order.created_at, Order.id)
        )
        return list(result.scalars().all())

    async def available_drivers(self, near: Coordinates | None = None) -> list[tuple[Driver, DriverLocationRecord | None, float | None]]:
        """Chauffeurs libres, les plus proches d'abord / Free drivers, nearest first.

        Renvoie (chauffeur, derniere position, distance km) / Returns (driver, last location, distance km).
        """
        result = await self.db.execute(select(Driver).where(Driver.tenant_id == self.tenant_id))
        available = []
        for driver in result.scalars().all():
            await reconcile_driver(self.db, self.tenant_id, driver)
            if driver.active_order_id is not None or driver.current_status not in ASSIGNABLE_DRIVER_STATUSES:
                continue
            location = self.store.read(self.tenant_id, driver.id) if self.store is not None else None
            distance = None
            if near is not None and location is not None:
                distance = round(haversine(location.lat, location.lng, near.lat, near.lng), 3)
            available.append((driver, location, distance))

        available.sort(key=lambda item: (item[2] is None, item[2] or 0.0, item[0].name))
        return available

    def location_of(self, driver_id: str) -> tuple[DriverLocationRecord | None, bool]:
        """Derniere position et fraicheur / Last location and staleness."""
        if self.store is None:
            return None, False
        record = self.store.read(self.tenant_id, driver_id)
        return record, record is not None and is_stale(record)

    # ─── Affectation / Assignment ───

    async def assign(self, order_id: str, driver_id: str, expected_version: int | None = None) -> AssignmentResult:
        order = await self.get_order(order_id)
        driver = await self.get_driver(driver_id)

        if order.delivery_status not in UNOWNED_STATUSES:
            raise OrderAlreadyAssigned(order_id)
        version = order.version if expected_version is None else expected_version
        if version != order.version:
            raise OrderAlreadyAssigned(order_id)
        self._check_driver_available(driver, order_id)

        previous_status = order.delivery_status
        await self._write_order(
            order_id,
            version,
            [Order.delivery_status.in_(UNOWNED_STATUSES)],
            driver_id=driver_id,
            delivery_status=DeliveryStatus.ASSIGNED,
        )

        try:
            synced = await self._link_driver(driver_id, order_id)
        except DriverUnavailable:
            # Chauffeur pris entre-temps : annuler l'ecriture commande / Driver taken meanwhile: undo the order write
            await self._write_order(
                order_id, version + 1, [], driver_id=None, delivery_status=previous_status,
            )
            raise

        self._audit("ASSIGN", order_id, {
            "driver_id": driver_id,
            "delivery_status": [previous_status.value, DeliveryStatus.ASSIGNED.value],
            "driver_synced": synced,
        })
        await self.db.flush()
        await self.db.refresh(order)
        logger.info("Order %s assigned to driver %s (driver_synced=%s)", order_id, driver_id, synced)
        return AssignmentResult(order_id, driver_id, order.delivery_status, order.version, synced)

    async def reassign(self, order_id: str, driver_id: str, expected_version: int | None = None) -> AssignmentResult:
        """Changer de chauffeur avant le ramassage / Change driver before pickup."""
        order = await self.get_order(order_id)
        driver = await self.get_driver(driver_id)
        if order.delivery_status is not DeliveryStatus.ASSIGNED:
            raise OrderAlreadyAssigned(order_id)
        version = order.version if expected_version is None else expected_version
        if version != order.version:
            raise OrderAlreadyAssigned(order_id)
        previous_driver_id = order.driver_id
        if previous_driver_id == driver_id:
            return AssignmentResult(order_id, driver_id, order.delivery_status, order.version, True, previous_driver_id)
        self._check_driver_available(driver, order_id)

        await self._write_order(
            order_id,
            version,
            [Order.delivery_status == DeliveryStatus.ASSIGNED],
            driver_id=driver_id,
        )
        try:
            synced = await self._link_driver(driver_id, order_id)
        except DriverUnavailable:
            await self._write_order(order_id, version + 1, [], driver_id=previous_driver_id)
            raise
        if previous_driver_id is not None:
            await self._unlink_driver(previous_driver_id, order_id)

        self._audit("REASSIGN", order_id, {"driver_id": [previous_driver_id, driver_id], "driver_synced": synced})
        await self.db.flush()
        await self.db.refresh(order)
        logger.info("Order %s reassigned from %s to %s", order_id, previous_driver_id, driver_id)
        return AssignmentResult(order_id, driver_id, order.delivery_status, order.version, synced, previous_driver_id)

    async def release(self, order_id: str, expected_version: int | None = None) -> AssignmentResult:
        """Remettre la commande en attente / Put the order back in the pending list."""
        order = await self.get_order(order_id)
        if order.delivery_status is not DeliveryStatus.ASSIGNED:
            raise OrderAlreadyAssigned(order_id)
        version = order.version if expected_version is None else expected_version
        if version != order.version:
            raise OrderAlreadyAssigned(order_id)
        previous_driver_id = order.driver_id

        await self._write_order(
            order_id,
            version,
            [Order.delivery_status == DeliveryStatus.ASSIGNED],
            driver_id=None,
            delivery_status=DeliveryStatus.UNASSIGNED,
        )
        if previous_driver_id is not None:
            await self._unlink_driver(previous_driver_id, order_id)

        self._audit("RELEASE", order_id, {"driver_id": [previous_driver_id, None]})
        await self.db.flush()
        await self.db.refresh(order)
        return AssignmentResult(order_id, None, order.delivery_status, order.version, True, previous_driver_id)

    async def cancel_order(self, order_id: str) -> Order:
        """Annuler la commande, liberer le chauffeur / Cancel the order, free the driver.

        Le driver_id est conserve pour l'historique / driver_id is kept for history.
        """
        order = await self.get_order(order_id)
        if order.delivery_status in TERMINAL_STATUSES:
            raise OrderAlreadyAssigned(order_id)
        previous_status = order.delivery_status
        await self._write_order(
            order_id,
            order.version,
            [Order.delivery_status.not_in(TERMINAL_STATUSES)],
            delivery_status=DeliveryStatus.CANCELLED,
        )
        if order.driver_id is not None:
            await self._unlink_driver(order.driver_id, order_id)

        self._audit("CANCEL", order_id, {"delivery_status": [previous_status.value, DeliveryStatus.CANCELLED.value]})
        await self.db.flush()
        await self.db.refresh(order)
        logger.info("Order %s cancelled", order_id)
        return order

    async def hand_off(
        self, order_id: str, delivery: ProviderDelivery, expected_version: int | None = None,
    ) -> Order:
        """Confier la commande a un transporteur tiers / Hand the order to a third-party courier.

        `expected_version` est la version lue avant l'appel au transporteur ;
        une affectation locale entre-temps leve OrderAlreadyAssigned.
        `expected_version` is the version read before the courier call; a
        local assignment in between raises OrderAlreadyAssigned.
        """
        order = await self.get_order(order_id)
        if order.delivery_status not in UNOWNED_STATUSES:
            raise OrderAlreadyAssigned(order_id)
        version = order.version if expected_version is None else expected_version
        previous_status = order.delivery_status

        await self._write_order(
            order_id,
            version,
            [Order.delivery_status.in_(UNOWNED_STATUSES), Order.driver_id.is_(None)],
            delivery_provider=delivery.provider,
            provider_delivery_id=delivery.provider_delivery_id,
            tracking_url=delivery.tracking_url,
            courier_name=delivery.driver_name,
            delivery_status=DeliveryStatus.AWAITING_COURIER,
        )
        self._audit("HANDOFF", order_id, {
            "provider": delivery.provider.value,
            "provider_delivery_id": delivery.provider_delivery_id,
            "delivery_status": [previous_status.value, DeliveryStatus.AWAITING_COURIER.value],
        })
        await self.db.flush()
        await self.db.refresh(order)
        logger.info("Order %s handed to %s (%s)", order_id, delivery.provider.value, delivery.provider_delivery_id)
        return order

    # ─── Ecritures conditionnelles / Conditional writes ───

    def _check_driver_available(self, driver: Driver, order_id: str):
        if driver.active_order_id is not None and driver.active_order_id != order_id:
            raise DriverUnavailable(driver.id)
        if driver.current_status not in ASSIGNABLE_DRIVER_STATUSES:
            raise DriverUnavailable(driver.id)

    async def _write_order(self, order_id: str, version: int, conditions: list, **values):
        if not await write_order_if(self.db, order_id, self.tenant_id, version, conditions, **values):
            raise OrderAlreadyAssigned(order_id)

    async def _write_driver_link(self, driver_id: str, order_id: str) -> int:
        result = await self.db.execute(
            update(Driver)
            .where(
                Driver.id == driver_id,
                Driver.tenant_id == self.tenant_id,
                or_(Driver.active_order_id.is_(None), Driver.active_order_id == order_id),
            )
            .values(active_order_id=order_id)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount

    async def _link_driver(self, driver_id: str, order_id: str) -> bool:
        """Lier le chauffeur, avec essais / Link the driver, with retries.

        DriverUnavailable si un autre lien existe deja ; False si la base ne
        confirme pas l'ecriture apres tous les essais.
        DriverUnavailable if another link already exists; False if the
        database cannot confirm the write after every retry.
        """
        for attempt in range(1, self.retries + 1):
            try:
                async with self.db.begin_nested():
                    linked = await self._write_driver_link(driver_id, order_id)
            except OperationalError as exc:
                logger.warning("Driver link %s -> %s failed (attempt %d/%d): %s",
                               driver_id, order_id, attempt, self.retries, exc)
                await asyncio.sleep(self.retry_delay * attempt)
                continue
            if linked == 0:
                raise DriverUnavailable(driver_id)
            await self._refresh_driver(driver_id)
            return True
        logger.error("Driver %s not linked to order %s, left for reconcile-on-read", driver_id, order_id)
        return False

    async def _unlink_driver(self, driver_id: str, order_id: str):
        await self.db.execute(
            update(Driver)
            .where(
                Driver.id == driver_id,
                Driver.tenant_id == self.tenant_id,
                Driver.active_order_id == order_id,
            )
            .values(active_order_id=None)
            .execution_options(synchronize_session=False)
        )
        await self._refresh_driver(driver_id)

    async def _refresh_driver(self, driver_id: str):
        await self.db.get(Driver, driver_id, populate_existing=True)

    def _audit(self, action: str, order_id: str, changes: dict):
        self.db.add(AuditLog(
            tenant_id=self.tenant_id,
            entity_type="order", entity_id=order_id, action=action,
            changes=json.dumps(changes),
            user=self.user,
            timestamp=_now_iso(),
        ))


# ─── Webhooks transporteurs / Courier webhooks ───

async def ingest_courier_update(
    db: AsyncSession, update_: ProviderDelivery, tenant_id: str | None = None,
) -> Order | None:
    """Appliquer un statut transporteur a la commande / Apply a courier status to its order.

    Les etats terminaux sont definitifs et les retours en arriere ignores.
    L'ecriture est conditionnee par la version : si la commande change
    entre la lecture et l'ecriture, elle est relue et le statut reapplique.
    Terminal states are final and backwards moves are ignored. The write is
    version-conditional: if the order changes between read and write it is
    read again and the status re-applied.
    """
    query = select(Order).where(
        Order.provider_delivery_id == update_.provider_delivery_id,
        Order.delivery_provider == update_.provider,
    ).execution_options(populate_existing=True)
    if tenant_id is not None:
        query = query.where(Order.tenant_id == tenant_id)

    attempts = max(settings.ASSIGN_DRIVER_RETRIES, 1)
    for _ in range(attempts):
        order = (await db.execute(query)).scalar_one_or_none()
        if order is None:
            logger.warning("Webhook for unknown delivery %s (%s)", update_.provider_delivery_id, update_.provider.value)
            return None

        previous = order.delivery_status
        if previous in TERMINAL_STATUSES:
            logger.info("Order %s already %s, ignoring courier status %s", order.id, previous.value, update_.status.value)
            return order
        if order.driver_id is not None:
            logger.warning("Order %s is carried by local driver %s, ignoring courier status %s",
                           order.id, order.driver_id, update_.status.value)
            return order

        changes: dict = {"courier_status": update_.status.value}
        values: dict = {}
        if update_.driver_name and update_.driver_name != order.courier_name:
            values["courier_name"] = update_.driver_name
            changes["courier_name"] = update_.driver_name
        if update_.tracking_url and update_.tracking_url != order.tracking_url:
            values["tracking_url"] = update_.tracking_url

        target = COURIER_TO_DELIVERY_STATUS[update_.status]
        if target != previous:
            if not can_transition(previous, target):
                logger.info("Order %s: ignoring courier move %s -> %s", order.id, previous.value, target.value)
                return order
            values["delivery_status"] = target
            changes["delivery_status"] = [previous.value, target.value]

        # Commande transporteur : aucun chauffeur local / Courier order: no local driver
        written = await write_order_if(
            db, order.id, order.tenant_id, order.version,
            [Order.delivery_status == previous, Order.driver_id.is_(None)],
            **values,
        )
        if not written:
            logger.info("Order %s changed during courier update, retrying", order.id)
            continue

        db.add(AuditLog(
            tenant_id=order.tenant_id,
            entity_type="order", entity_id=order.id, action="WEBHOOK",
            changes=json.dumps(changes),
            user=f"provider:{update_.provider.value}",
            timestamp=_now_iso(),
        ))
        await db.flush()
        await db.refresh(order)
        return order

    logger.error("Courier update for order %s lost to concurrent writes", order.id)
    raise OrderAlreadyAssigned(order.id)
