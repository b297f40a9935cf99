"""
Abonnement aux positions chauffeur / Driver location subscriptions.

Chaque abonnement est une ressource : acquise a l'ouverture, liberee par
`unsubscribe()` (idempotent) ou en sortie de `async with`.
Each subscription is a resource: acquired on open, released by
`unsubscribe()` (idempotent) or on leaving `async with`.
"""

import asyncio
import enum
import logging
import time
from collections.abc import AsyncIterator, Callable

from livetrack.config import settings
from livetrack.models.driver import DriverStatus
from livetrack.schemas.tracking import DriverLocationRecord
from livetrack.services.location_store import LocationStore

logger = logging.getLogger(__name__)


class ConnectionState(str, enum.Enum):
    LIVE = "live"
    RECONNECTING = "reconnecting"


def is_stale(record: DriverLocationRecord, window: float | None = None, now: float | None = None) -> bool:
    """Position trop vieille : chauffeur peut-etre hors ligne / Too old: driver may be offline."""
    window = settings.LIVENESS_WINDOW_SECONDS if window is None else window
    now = time.time() if now is None else now
    return now - record.timestamp > window


class Subscription:
    """Flux des positions d'un chauffeur (ou d'un tenant) / Location stream of one driver (or one tenant).

    Les mises a jour arrivent dans l'ordre d'application du store, sans
    tampon ni reordonnancement. Aucun callback n'est appele apres le retour
    de `unsubscribe()`.
    Updates arrive in store-apply order, without buffering or reordering.
    No callback fires once `unsubscribe()` has returned.
    """

    def __init__(
        self,
        store: LocationStore,
        tenant_id: str,
        driver_id: str | None,
        on_location: Callable[[DriverLocationRecord], None],
        on_status_change: Callable[[DriverStatus], None] | None = None,
        on_liveness_change: Callable[[bool], None] | None = None,
        on_connection_change: Callable[[ConnectionState], None] | None = None,
        liveness_window: float | None = None,
        reconnect_base_delay: float | None = None,
        reconnect_max_delay: float | None = None,
    ):
        self.store = store
        self.tenant_id = tenant_id
        self.driver_id = driver_id
        self._on_location = on_location
        self._on_status_change = on_status_change
        self._on_liveness_change = on_liveness_change
        self._on_connection_change = on_connection_change
        self._liveness_window = settings.LIVENESS_WINDOW_SECONDS if liveness_window is None else liveness_window
        self._base_delay = (
            settings.RECONNECT_BASE_DELAY_SECONDS if reconnect_base_delay is None else reconnect_base_delay
        )
        self._max_delay = settings.RECONNECT_MAX_DELAY_SECONDS if reconnect_max_delay is None else reconnect_max_delay

        self._active = False
        self._task: asyncio.Task | None = None
        self._watch = None
        self._last_status: dict[str, DriverStatus] = {}
        self._alive: bool | None = None
        self._connection = ConnectionState.LIVE
        self.reconnect_attempts = 0

    @property
    def active(self) -> bool:
        return self._active

    @property
    def connection_state(self) -> ConnectionState:
        return self._connection

    def start(self) -> "Subscription":
        if self._active or self._task is not None:
            return self
        self._active = True
        self._task = asyncio.create_task(self._run(), name=f"subscription:{self.tenant_id}:{self.driver_id}")
        return self

    def unsubscribe(self):
        """Liberer l'abonnement (idempotent, sur meme si la connexion est tombee).

        Release the subscription (idempotent, safe after the connection dropped).
        """
        if not self._active:
            return
        self._active = False
        if self._watch is not None:
            self._watch.close()
        if self._task is not None and not self._task.done() and self._task is not asyncio.current_task():
            self._task.cancel()

    async def __aenter__(self) -> "Subscription":
        return self.start()

    async def __aexit__(self, exc_type, exc, tb):
        self.unsubscribe()

    # ─── Boucle / Loop ───

    async def _run(self):
        delay = self._base_delay
        while self._active:
            try:
                self._watch = self.store.watch(self.tenant_id, self.driver_id)
            except ConnectionError:
                self._connection_lost()
                await asyncio.sleep(delay)
                delay = min(delay * 2, self._max_delay)
                continue

            if self._connection is ConnectionState.RECONNECTING:
                self._set_connection(ConnectionState.LIVE)
            delay = self._base_delay

            try:
                await self._consume()
            except ConnectionError:
                self._watch.close()
                self._connection_lost()
                await asyncio.sleep(delay)
                delay = min(delay * 2, self._max_delay)
            except StopAsyncIteration:
                return

    async def _consume(self):
        while self._active:
            try:
                record = await asyncio.wait_for(self._watch.get(), timeout=self._liveness_window)
            except asyncio.TimeoutError:
                self._set_alive(False)
                continue
            self._deliver(record)

    def _deliver(self, record: DriverLocationRecord):
        if not self._active:
            return
        self._call(self._on_location, record)

        previous = self._last_status.get(record.driver_id)
        if record.status != previous:
            self._last_status[record.driver_id] = record.status
            if self._on_status_change is not None and self._active:
                self._call(self._on_status_change, record.status)

        self._set_alive(not is_stale(record, self._liveness_window))

    def _set_alive(self, alive: bool):
        if alive == self._alive:
            return
        self._alive = alive
        if self._on_liveness_change is not None and self._active:
            self._call(self._on_liveness_change, alive)

    def _connection_lost(self):
        self.reconnect_attempts += 1
        if self._connection is not ConnectionState.RECONNECTING:
            logger.warning("Location stream lost for %s/%s, reconnecting", self.tenant_id, self.driver_id)
            self._set_connection(ConnectionState.RECONNECTING)

    def _set_connection(self, state: ConnectionState):
        self._connection = state
        if self._on_connection_change is not None and self._active:
            self._call(self._on_connection_change, state)

    def _call(self, callback, *args):
        if not self._active:
            return
        try:
            callback(*args)
        except Exception:
            logger.exception("Subscriber callback failed for %s/%s", self.tenant_id, self.driver_id)


def subscribe(
    store: LocationStore,
    tenant_id: str,
    driver_id: str,
    on_location: Callable[[DriverLocationRecord], None],
    on_status_change: Callable[[DriverStatus], None] | None = None,
    **options,
) -> Subscription:
    """S'abonner a un chauffeur / Subscribe to one driver.

    Utilisable directement (appeler `unsubscribe()`) ou via `async with`.
    Usable directly (call `unsubscribe()`) or through `async with`.
    """
    subscription = Subscription(store, tenant_id, driver_id, on_location, on_status_change, **options)
    return subscription.start()


def subscribe_all(
    store: LocationStore,
    tenant_id: str,
    on_update: Callable[[DriverLocationRecord], None],
    **options,
) -> Subscription:
    """S'abonner a tous les chauffeurs du tenant (tableau de repartition) / Subscribe to every driver of a tenant."""
    subscription = Subscription(store, tenant_id, None, on_update, **options)
    return subscription.start()


async def stream_locations(
    store: LocationStore,
    tenant_id: str,
    driver_id: str,
    **options,
) -> AsyncIterator[DriverLocationRecord]:
    """Forme iterateur asynchrone, liberee en sortie de boucle / Async iterator form, released when the loop exits."""
    queue: asyncio.Queue[DriverLocationRecord] = asyncio.Queue()
    subscription = subscribe(store, tenant_id, driver_id, queue.put_nowait, **options)
    try:
        while True:
            yield await queue.get()
    finally:
        subscription.unsubscribe()
