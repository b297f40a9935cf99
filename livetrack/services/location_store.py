"""
Store de positions temps reel / Real-time location store.

Derniere position + statut par (tenant, chauffeur), avec lectures en flux.
Latest location + status per (tenant, driver), with streaming reads.

Les ecritures sont appliquees de facon synchrone avant tout await : l'ordre
d'application est l'ordre de livraison aux abonnes.
Writes are applied synchronously before any await, so the apply order is
the delivery order seen by watchers.
"""

import asyncio
import logging
from collections.abc import Awaitable, Callable

from livetrack.schemas.tracking import DriverLocationRecord

logger = logging.getLogger(__name__)

_CLOSED = object()

PersistHook = Callable[[DriverLocationRecord], Awaitable[None]]


class StoreWatch:
    """Lecture en flux d'une cle ou d'un tenant / Streaming read of one key or one tenant."""

    def __init__(self, store: "LocationStore", key: tuple[str, str | None]):
        self._store = store
        self.key = key
        self._queue: asyncio.Queue = asyncio.Queue()
        self.closed = False

    def _push(self, record: DriverLocationRecord):
        if not self.closed:
            self._queue.put_nowait(record)

    def _fail(self, exc: Exception):
        if not self.closed:
            self._queue.put_nowait(exc)

    async def get(self) -> DriverLocationRecord:
        """Prochain enregistrement / Next record.

        Leve ConnectionError si la connexion tombe, StopAsyncIteration si fermee.
        Raises ConnectionError if the connection drops, StopAsyncIteration once closed.
        """
        if self.closed and self._queue.empty():
            raise StopAsyncIteration
        item = await self._queue.get()
        if item is _CLOSED:
            raise StopAsyncIteration
        if isinstance(item, Exception):
            self.closed = True
            raise item
        return item

    def __aiter__(self):
        return self

    async def __anext__(self) -> DriverLocationRecord:
        return await self.get()

    def close(self):
        """Fermer la lecture (idempotent) / Close the watch (idempotent)."""
        if self.closed:
            return
        self.closed = True
        self._store._detach(self)
        self._queue.put_nowait(_CLOSED)


class LocationStore:
    """Store en memoire type base temps reel / In-memory realtime-database style store.

    Un seul ecrivain par cle (le publisher du chauffeur), plusieurs lecteurs.
    One writer per key (the driver's publisher), many readers.
    """

    def __init__(self, persist: PersistHook | None = None):
        self._records: dict[tuple[str, str], DriverLocationRecord] = {}
        self._watches: dict[tuple[str, str | None], set[StoreWatch]] = {}
        self._persist = persist
        self.connected = True

    async def write(self, record: DriverLocationRecord):
        """Ecraser la position du chauffeur / Overwrite the driver's location (no append)."""
        if not self.connected:
            raise ConnectionError("location store unreachable")
        key = (record.tenant_id, record.driver_id)
        self._records[key] = record
        for watch in list(self._watches.get(key, ())):
            watch._push(record)
        for watch in list(self._watches.get((record.tenant_id, None), ())):
            watch._push(record)
        if self._persist is not None:
            try:
                await self._persist(record)
            except Exception:
                # La persistance est un miroir : ne pas casser le flux / persistence is a mirror
                logger.exception("Failed to persist location for %s/%s", *key)

    def read(self, tenant_id: str, driver_id: str) -> DriverLocationRecord | None:
        return self._records.get((tenant_id, driver_id))

    def read_all(self, tenant_id: str) -> dict[str, DriverLocationRecord]:
        """Toutes les positions d'un tenant / All locations of a tenant."""
        return {d: r for (t, d), r in self._records.items() if t == tenant_id}

    def seed(self, record: DriverLocationRecord):
        """Charger une position connue sans notifier (demarrage) / Load a known position without notifying (startup)."""
        self._records.setdefault((record.tenant_id, record.driver_id), record)

    def watch(self, tenant_id: str, driver_id: str | None = None) -> StoreWatch:
        """Ouvrir une lecture en flux / Open a streaming read.

        Comme un listener de base temps reel, la valeur courante est livree d'abord.
        Like a realtime-database listener, the current value is delivered first.
        driver_id=None ecoute tout le tenant / watches the whole tenant.
        """
        if not self.connected:
            raise ConnectionError("location store unreachable")
        key = (tenant_id, driver_id)
        watch = StoreWatch(self, key)
        self._watches.setdefault(key, set()).add(watch)
        if driver_id is None:
            for record in self.read_all(tenant_id).values():
                watch._push(record)
        else:
            current = self.read(tenant_id, driver_id)
            if current is not None:
                watch._push(current)
        return watch

    def _detach(self, watch: StoreWatch):
        watches = self._watches.get(watch.key)
        if watches is not None:
            watches.discard(watch)
            if not watches:
                del self._watches[watch.key]

    def watcher_count(self, tenant_id: str, driver_id: str | None = None) -> int:
        return len(self._watches.get((tenant_id, driver_id), ()))

    def disconnect(self):
        """Couper les connexions (panne reseau, maintenance) / Drop every connection (network blip, maintenance)."""
        self.connected = False
        for watches in list(self._watches.values()):
            for watch in list(watches):
                watch._fail(ConnectionError("location store connection lost"))
        self._watches.clear()
        logger.warning("Location store disconnected")

    def reconnect(self):
        self.connected = True
        logger.info("Location store reconnected")
