"""WebSocket temps reel pour suivi chauffeurs / Real-time WebSocket for driver tracking.

- /ws/dispatch : tableau de repartition (positions du tenant + evenements)
- /ws/tracking/orders/{order_id} : carte client (commandes de rendu)
- /ws/driver : appareil du chauffeur (positions GPS, refus de permission)
"""

import asyncio
import contextlib
import json
import logging
from collections.abc import Callable

from fastapi import APIRouter, Depends, Query, WebSocket, WebSocketDisconnect
from pydantic import ValidationError
from sqlalchemy.ext.asyncio import AsyncSession

from livetrack.api.deps import TenantContext, context_from_token
from livetrack.database import get_db
from livetrack.exceptions import TrackingError
from livetrack.models.order import Order
from livetrack.schemas.tracking import Coordinates, DriverLocationRecord, GPSFix
from livetrack.services.location_store import LocationStore
from livetrack.services.map_renderer import CommandMapSurface, LiveMapRenderer, LiveMapView
from livetrack.services.subscriber import subscribe_all

logger = logging.getLogger(__name__)

router = APIRouter()


class TrackingConnectionManager:
    """Gestionnaire de connexions WebSocket par tenant / Per-tenant WebSocket connection manager.

    Les ecouteurs recoivent aussi chaque diffusion, dans le processus.
    Listeners also receive every broadcast, in-process.
    """

    def __init__(self):
        self.active_connections: dict[str, list[WebSocket]] = {}
        self.listeners: dict[str, list[Callable[[dict], None]]] = {}

    async def connect(self, websocket: WebSocket, tenant_id: str):
        await websocket.accept()
        self.active_connections.setdefault(tenant_id, []).append(websocket)

    def disconnect(self, websocket: WebSocket, tenant_id: str):
        connections = self.active_connections.get(tenant_id, [])
        if websocket in connections:
            connections.remove(websocket)
        if not connections:
            self.active_connections.pop(tenant_id, None)

    def add_listener(self, tenant_id: str, listener: Callable[[dict], None]):
        self.listeners.setdefault(tenant_id, []).append(listener)

    def remove_listener(self, tenant_id: str, listener: Callable[[dict], None]):
        listeners = self.listeners.get(tenant_id, [])
        if listener in listeners:
            listeners.remove(listener)
        if not listeners:
            self.listeners.pop(tenant_id, None)

    async def broadcast(self, tenant_id: str, message: dict):
        """Envoyer aux clients du tenant / Broadcast to the tenant's clients."""
        for listener in list(self.listeners.get(tenant_id, [])):
            try:
                listener(message)
            except Exception:
                logger.exception("Tracking listener failed on %s", message.get("type"))
        data = json.dumps(message, ensure_ascii=False)
        disconnected = []
        for connection in list(self.active_connections.get(tenant_id, [])):
            try:
                await connection.send_text(data)
            except Exception:
                disconnected.append(connection)
        for conn in disconnected:
            self.disconnect(conn, tenant_id)

    async def send_personal(self, websocket: WebSocket, message: dict):
        await websocket.send_text(json.dumps(message, ensure_ascii=False))


# Singleton global / Global singleton
manager = TrackingConnectionManager()


def location_message(record: DriverLocationRecord) -> dict:
    return {"type": "location", **record.model_dump(mode="json")}


class OrderMapFeed:
    """Carte d'une commande qui suit ses affectations / An order's map that follows its assignments.

    Ecoute les evenements `assignment` du tenant : une affectation, une
    reaffectation ou une liberation change le chauffeur suivi sans
    remonter la carte. Un evenement recu avant `open` l'emporte sur le
    chauffeur lu a la connexion.
    Listens to the tenant's `assignment` events: an assignment, a
    reassignment or a release switches the followed driver without
    remounting the map. An event received before `open` wins over the
    driver read at connect time.
    """

    def __init__(self, connections: TrackingConnectionManager, store: LocationStore, tenant_id: str, order_id: str):
        self.connections = connections
        self.store = store
        self.tenant_id = tenant_id
        self.order_id = order_id
        self.view: LiveMapView | None = None
        self._has_pending = False
        self._pending_driver: str | None = None

    def listen(self) -> "OrderMapFeed":
        self.connections.add_listener(self.tenant_id, self.on_event)
        return self

    def open(self, renderer: LiveMapRenderer, driver_id: str | None) -> LiveMapView:
        if self.view is None:
            if self._has_pending:
                driver_id = self._pending_driver
            self.view = LiveMapView(self.store, self.tenant_id, driver_id, renderer).mount()
        return self.view

    def on_event(self, message: dict):
        if message.get("type") != "assignment" or message.get("order_id") != self.order_id:
            return
        driver_id = message.get("driver_id")
        if self.view is None:
            self._has_pending = True
            self._pending_driver = driver_id
            return
        logger.info("Order %s map now follows driver %s", self.order_id, driver_id)
        self.view.follow(driver_id)

    def close(self):
        self.connections.remove_listener(self.tenant_id, self.on_event)
        if self.view is not None:
            self.view.unmount()


async def _authenticate(websocket: WebSocket, token: str, roles: tuple[str, ...]) -> TenantContext | None:
    ctx = context_from_token(token) if token else None
    if ctx is None or ctx.role not in roles:
        await websocket.close(code=4001, reason="Invalid token")
        return None
    return ctx


async def _pump(websocket: WebSocket, queue: asyncio.Queue):
    """Vider la file vers le client / Drain the queue to the client."""
    while True:
        message = await queue.get()
        await websocket.send_text(json.dumps(message, ensure_ascii=False))


async def _hold_open(websocket: WebSocket, pump: asyncio.Task):
    """Garder la connexion ouverte, recevoir pings / Keep the connection alive."""
    try:
        while True:
            await websocket.receive_text()
    except WebSocketDisconnect:
        pass
    finally:
        pump.cancel()
        with contextlib.suppress(asyncio.CancelledError, Exception):
            await pump


@router.websocket("/ws/dispatch")
async def websocket_dispatch(
    websocket: WebSocket,
    token: str = Query(default=""),
):
    """Tableau de repartition / Dispatch board.

    Types de messages : location, assignment, driver_status, order_status
    """
    ctx = await _authenticate(websocket, token, ("owner", "dispatcher"))
    if ctx is None:
        return

    await manager.connect(websocket, ctx.tenant_id)
    queue: asyncio.Queue = asyncio.Queue()
    subscription = subscribe_all(
        websocket.app.state.store, ctx.tenant_id,
        lambda record: queue.put_nowait(location_message(record)),
        on_connection_change=lambda state: queue.put_nowait({"type": "connection", "state": state.value}),
    )
    pump = asyncio.create_task(_pump(websocket, queue))
    try:
        await _hold_open(websocket, pump)
    finally:
        subscription.unsubscribe()
        manager.disconnect(websocket, ctx.tenant_id)


@router.websocket("/ws/tracking/orders/{order_id}")
async def websocket_order_tracking(
    websocket: WebSocket,
    order_id: str,
    token: str = Query(default=""),
    show_route: bool = Query(default=True),
    db: AsyncSession = Depends(get_db),
):
    """Carte de suivi client, en commandes de rendu / Customer tracking map as render commands.

    La carte suit le chauffeur de la commande, y compris une affectation ou
    une reaffectation faite apres la connexion.
    The map follows the order's driver, including an assignment or a
    reassignment made after the connection.
    """
    ctx = await _authenticate(websocket, token, ("owner", "dispatcher", "customer"))
    if ctx is None:
        return

    # Ecouter avant de lire la commande / Listen before reading the order
    feed = OrderMapFeed(manager, websocket.app.state.store, ctx.tenant_id, order_id).listen()
    try:
        order = await db.get(Order, order_id)
        if order is None or order.tenant_id != ctx.tenant_id:
            await websocket.close(code=4004, reason="Order not found")
            return
        restaurant = Coordinates(lat=order.pickup_lat, lng=order.pickup_lng)
        customer = Coordinates(lat=order.dropoff_lat, lng=order.dropoff_lng)
        driver_id = order.driver_id
        # Liberer la connexion DB pendant la session / Release the DB connection for the session
        await db.commit()

        await websocket.accept()
        queue: asyncio.Queue = asyncio.Queue()
        renderer = LiveMapRenderer(CommandMapSurface(queue.put_nowait), restaurant, customer, show_route=show_route)
        feed.open(renderer, driver_id)
        pump = asyncio.create_task(_pump(websocket, queue))
        await _hold_open(websocket, pump)
    finally:
        feed.close()


@router.websocket("/ws/driver")
async def websocket_driver(
    websocket: WebSocket,
    token: str = Query(default=""),
):
    """Flux GPS de l'appareil du chauffeur / Driver device GPS stream.

    Messages recus : {"type": "fix", lat, lng, timestamp, ...},
    {"type": "permission_denied"}, {"type": "permission_granted"}.
    Messages envoyes : {"type": "error", "error", "detail"}.
    """
    ctx = await _authenticate(websocket, token, ("driver",))
    if ctx is None:
        return

    registry = websocket.app.state.registry
    source = registry.source_for(ctx.tenant_id, ctx.user_id)
    await websocket.accept()

    queue: asyncio.Queue = asyncio.Queue()

    def _on_error(exc: TrackingError):
        queue.put_nowait({"type": "error", "error": exc.code, "detail": exc.user_message})

    registry.add_error_listener(ctx.tenant_id, ctx.user_id, _on_error)
    pump = asyncio.create_task(_pump(websocket, queue))
    try:
        while True:
            message = json.loads(await websocket.receive_text())
            if not isinstance(message, dict):
                continue
            kind = message.get("type")
            if kind == "fix":
                try:
                    source.push(GPSFix.model_validate(message))
                except ValidationError:
                    queue.put_nowait({"type": "error", "error": "invalid_fix", "detail": "Invalid GPS fix"})
            elif kind == "permission_denied":
                source.deny_permission()
            elif kind == "permission_granted":
                source.grant_permission()
    except (WebSocketDisconnect, ValueError):
        pass
    finally:
        registry.remove_error_listener(ctx.tenant_id, ctx.user_id, _on_error)
        pump.cancel()
        with contextlib.suppress(asyncio.CancelledError, Exception):
            await pump
