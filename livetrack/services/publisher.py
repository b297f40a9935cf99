"""
Publication des positions chauffeur / Driver location publisher.

Echantillonne la source GPS de l'appareil et ecrase la position du chauffeur
dans le store. Fraicheur avant exhaustivite : une seule ecriture en vol par
chauffeur, un nouvel echantillon remplace celui en attente.
Samples the device GPS source and overwrites the driver's record in the
store. Freshness over completeness: one write in flight per driver, a new
sample replaces the pending one instead of queueing.
"""

import asyncio
import contextlib
import logging
import time
from abc import ABC, abstractmethod
from collections.abc import Callable

from livetrack.config import settings
from livetrack.exceptions import (
    LocationUnavailable,
    PermissionDenied,
    StoreConnectionLost,
    TrackingError,
)
from livetrack.models.driver import DriverStatus
from livetrack.schemas.tracking import DriverLocationRecord, GPSFix
from livetrack.services.location_store import LocationStore

logger = logging.getLogger(__name__)

LocalUpdate = Callable[[float, float], None]
ErrorCallback = Callable[[TrackingError], None]


# ─── Sources GPS / GPS sources ───

class GeolocationSource(ABC):
    """Capacite de geolocalisation de l'appareil / Device geolocation capability."""

    @abstractmethod
    async def request_permission(self):
        """Leve PermissionDenied si l'acces est refuse / Raise PermissionDenied if access is refused."""

    @abstractmethod
    async def next_fix(self) -> GPSFix:
        """Prochaine position, LocationUnavailable sinon / Next fix, or LocationUnavailable."""


class DeviceGeolocationSource(GeolocationSource):
    """Source alimentee par l'appareil du chauffeur (WebSocket / HTTP).

    Source fed by the driver's device over WebSocket or HTTP. Keeps only the
    latest fix: a slow consumer skips stale fixes.
    """

    def __init__(self):
        self._latest: GPSFix | None = None
        self._denied = False
        self._changed = asyncio.Event()

    def push(self, fix: GPSFix):
        self._latest = fix
        self._changed.set()

    def deny_permission(self):
        """L'appareil signale un refus d'acces / The device reports access refused."""
        self._denied = True
        self._changed.set()

    def grant_permission(self):
        self._denied = False

    async def request_permission(self):
        if self._denied:
            raise PermissionDenied()

    async def next_fix(self) -> GPSFix:
        while True:
            if self._denied:
                raise PermissionDenied()
            if self._latest is not None:
                fix, self._latest = self._latest, None
                self._changed.clear()
                return fix
            self._changed.clear()
            await self._changed.wait()


class ReplayGeolocationSource(GeolocationSource):
    """Rejoue une trace enregistree (simulation, demo) / Replays a recorded trace (simulation, demo).

    Apres la derniere position, plus aucun fix n'arrive.
    After the last fix, no further fix ever arrives.
    """

    def __init__(self, fixes: list[GPSFix], interval: float = 0.0, permission_granted: bool = True):
        self._fixes = list(fixes)
        self._interval = interval
        self._permission_granted = permission_granted

    async def request_permission(self):
        if not self._permission_granted:
            raise PermissionDenied()

    async def next_fix(self) -> GPSFix:
        if not self._fixes:
            await asyncio.Event().wait()
        if self._interval:
            await asyncio.sleep(self._interval)
        return self._fixes.pop(0)


# ─── Publisher ───

class TrackingHandle:
    """Suivi actif d'un chauffeur / Active tracking of one driver.

    `await handle.cancel()` arrete l'echantillonnage et ecrit un dernier
    enregistrement `idle` ; les appels suivants ne font rien.
    `await handle.cancel()` stops sampling and writes one final `idle`
    record; later calls are no-ops.
    """

    def __init__(
        self,
        tenant_id: str,
        driver_id: str,
        source: GeolocationSource,
        store: LocationStore,
        on_local_update: LocalUpdate | None = None,
        on_error: ErrorCallback | None = None,
        status: DriverStatus = DriverStatus.IN_TRANSIT,
        sample_interval: float | None = None,
        min_publish_interval: float | None = None,
        fix_timeout: float | None = None,
    ):
        self.tenant_id = tenant_id
        self.driver_id = driver_id
        self.status = status
        self._source = source
        self._store = store
        self._on_local_update = on_local_update
        self._on_error = on_error
        self._sample_interval = settings.SAMPLE_INTERVAL_SECONDS if sample_interval is None else sample_interval
        self._min_publish_interval = (
            settings.MIN_PUBLISH_INTERVAL_SECONDS if min_publish_interval is None else min_publish_interval
        )
        self._fix_timeout = settings.LOCATION_FIX_TIMEOUT_SECONDS if fix_timeout is None else fix_timeout

        self._sample_task: asyncio.Task | None = None
        self._write_task: asyncio.Task | None = None
        self._pending: DriverLocationRecord | None = None
        self._last_record: DriverLocationRecord | None = None
        self._last_publish_at: float | None = None
        self._stopped = False
        self._cancelled = False
        self.samples_taken = 0
        self.samples_dropped = 0

    @property
    def active(self) -> bool:
        return not self._stopped

    @property
    def last_record(self) -> DriverLocationRecord | None:
        return self._last_record

    def _start(self):
        self._sample_task = asyncio.create_task(
            self._sample_loop(), name=f"tracking:{self.tenant_id}:{self.driver_id}"
        )

    async def _sample_loop(self):
        retry_delay = 0.0
        loop = asyncio.get_running_loop()
        while not self._stopped:
            try:
                fix = await asyncio.wait_for(self._source.next_fix(), timeout=self._fix_timeout)
            except asyncio.TimeoutError:
                self._report(LocationUnavailable(
                    f"No GPS fix for {self.driver_id} within {self._fix_timeout:g}s"
                ))
                # Backoff exponentiel (transitoire) / Exponential backoff (transient)
                retry_delay = min(max(retry_delay * 2, self._fix_timeout), settings.LOCATION_RETRY_MAX_DELAY_SECONDS)
                await asyncio.sleep(retry_delay)
                continue
            except PermissionDenied as exc:
                # Pas de nouvel essai silencieux / No silent retry
                self._stopped = True
                self._report(exc)
                return
            retry_delay = 0.0

            now = loop.time()
            if self._last_publish_at is not None and now - self._last_publish_at < self._min_publish_interval:
                self.samples_dropped += 1
                continue
            self._last_publish_at = now
            self._take_sample(fix)

            if self._sample_interval:
                await asyncio.sleep(self._sample_interval)

    def _take_sample(self, fix: GPSFix):
        self.samples_taken += 1
        record = DriverLocationRecord(
            tenant_id=self.tenant_id,
            driver_id=self.driver_id,
            lat=fix.lat,
            lng=fix.lng,
            timestamp=fix.timestamp,
            status=self.status,
            speed=fix.speed,
            heading=fix.heading,
            accuracy=fix.accuracy,
        )
        if self._on_local_update is not None:
            try:
                self._on_local_update(fix.lat, fix.lng)
            except Exception:
                logger.exception("Local update callback failed for driver %s", self.driver_id)
        self._offer(record)

    def _offer(self, record: DriverLocationRecord):
        self._last_record = record
        if self._write_task is not None and not self._write_task.done():
            if self._pending is not None:
                self.samples_dropped += 1
            self._pending = record
            return
        self._write_task = asyncio.create_task(self._write_loop(record))

    async def _write_loop(self, record: DriverLocationRecord | None):
        while record is not None:
            try:
                await self._store.write(record)
            except ConnectionError as exc:
                self._report(StoreConnectionLost(str(exc)))
            if self._stopped:
                break
            record, self._pending = self._pending, None

    def set_status(self, status: DriverStatus):
        """Changer le statut publie, republie la derniere position / Change the published status, republishing the last position."""
        if self._stopped:
            return
        self.status = status
        if self._last_record is not None:
            self._offer(self._last_record.model_copy(update={"status": status, "timestamp": time.time()}))

    def _report(self, exc: TrackingError):
        logger.warning("Tracking %s/%s: %s", self.tenant_id, self.driver_id, exc.detail)
        if self._on_error is not None:
            try:
                self._on_error(exc)
            except Exception:
                logger.exception("Error callback failed for driver %s", self.driver_id)

    async def cancel(self):
        if self._cancelled:
            return
        self._cancelled = True
        self._stopped = True
        self._pending = None

        task = self._sample_task
        if task is not None and task is not asyncio.current_task() and not task.done():
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task
        # L'ecriture en vol se termine avant l'enregistrement idle
        # The in-flight write completes before the idle record
        if self._write_task is not None and not self._write_task.done():
            await self._write_task

        last = self._last_record or self._store.read(self.tenant_id, self.driver_id)
        if last is None:
            logger.info("No known position for %s/%s, skipping idle record", self.tenant_id, self.driver_id)
            return
        idle = last.model_copy(update={"status": DriverStatus.IDLE, "timestamp": time.time()})
        try:
            await self._store.write(idle)
        except ConnectionError as exc:
            self._report(StoreConnectionLost(str(exc)))
        logger.info("Tracking stopped for %s/%s", self.tenant_id, self.driver_id)


async def start_tracking(
    tenant_id: str,
    driver_id: str,
    source: GeolocationSource,
    store: LocationStore,
    on_local_update: LocalUpdate | None = None,
    on_error: ErrorCallback | None = None,
    **options,
) -> TrackingHandle:
    """Demarrer le suivi GPS d'un chauffeur / Start GPS tracking for a driver.

    Leve PermissionDenied tout de suite si l'acces est refuse ; les erreurs
    suivantes arrivent par `on_error`.
    Raises PermissionDenied right away if access is refused; later errors
    arrive through `on_error`.
    """
    await source.request_permission()
    handle = TrackingHandle(
        tenant_id, driver_id, source, store,
        on_local_update=on_local_update, on_error=on_error, **options,
    )
    handle._start()
    logger.info("Tracking started for %s/%s", tenant_id, driver_id)
    return handle


class TrackingRegistry:
    """Suivis actifs par chauffeur, cote serveur / Active tracking per driver, server side.

    Garde la source de l'appareil de chaque chauffeur et son suivi en cours.
    Holds each driver's device source and current tracking handle.
    """

    def __init__(self, store: LocationStore, **options):
        self.store = store
        self._options = options
        self._sources: dict[tuple[str, str], DeviceGeolocationSource] = {}
        self._handles: dict[tuple[str, str], TrackingHandle] = {}
        self._errors: dict[tuple[str, str], TrackingError] = {}
        self._listeners: dict[tuple[str, str], set[ErrorCallback]] = {}

    def source_for(self, tenant_id: str, driver_id: str) -> DeviceGeolocationSource:
        key = (tenant_id, driver_id)
        if key not in self._sources:
            self._sources[key] = DeviceGeolocationSource()
        return self._sources[key]

    def handle_for(self, tenant_id: str, driver_id: str) -> TrackingHandle | None:
        return self._handles.get((tenant_id, driver_id))

    def last_error(self, tenant_id: str, driver_id: str) -> TrackingError | None:
        return self._errors.get((tenant_id, driver_id))

    def add_error_listener(self, tenant_id: str, driver_id: str, listener: ErrorCallback):
        self._listeners.setdefault((tenant_id, driver_id), set()).add(listener)

    def remove_error_listener(self, tenant_id: str, driver_id: str, listener: ErrorCallback):
        self._listeners.get((tenant_id, driver_id), set()).discard(listener)

    def _error_sink(self, key: tuple[str, str]) -> ErrorCallback:
        def _on_error(exc: TrackingError):
            self._errors[key] = exc
            for listener in list(self._listeners.get(key, ())):
                listener(exc)
        return _on_error

    async def start(
        self,
        tenant_id: str,
        driver_id: str,
        source: GeolocationSource | None = None,
        status: DriverStatus = DriverStatus.IN_TRANSIT,
    ) -> TrackingHandle:
        key = (tenant_id, driver_id)
        current = self._handles.get(key)
        if current is not None and current.active:
            current.set_status(status)
            return current
        self._errors.pop(key, None)
        handle = await start_tracking(
            tenant_id, driver_id,
            source or self.source_for(tenant_id, driver_id),
            self.store,
            on_error=self._error_sink(key),
            status=status,
            **self._options,
        )
        self._handles[key] = handle
        return handle

    async def set_status(self, tenant_id: str, driver_id: str, status: DriverStatus):
        handle = self._handles.get((tenant_id, driver_id))
        if handle is not None and handle.active:
            handle.set_status(status)
            return
        # Pas de suivi en memoire (redemarrage) : republier la derniere position
        # No tracking in memory (restart): republish the last known position
        await self._rewrite_status(tenant_id, driver_id, status)

    async def stop(self, tenant_id: str, driver_id: str):
        handle = self._handles.pop((tenant_id, driver_id), None)
        if handle is not None:
            await handle.cancel()
        else:
            await self._rewrite_status(tenant_id, driver_id, DriverStatus.IDLE)

    async def _rewrite_status(self, tenant_id: str, driver_id: str, status: DriverStatus):
        last = self.store.read(tenant_id, driver_id)
        if last is None or last.status == status:
            return
        try:
            await self.store.write(last.model_copy(update={"status": status, "timestamp": time.time()}))
        except ConnectionError as exc:
            self._error_sink((tenant_id, driver_id))(StoreConnectionLost(str(exc)))

    async def shutdown(self):
        for key in list(self._handles):
            await self.stop(*key)
