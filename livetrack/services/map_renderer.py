"""
Carte de suivi en direct / Live tracking map.

Un seul rendu parametre pour le tableau de repartition et la page client :
marqueurs restaurant, client et chauffeur, deplacement anime du chauffeur,
trace optionnel, surcouche ETA et legende.
One parameterized renderer for the dispatch board and the customer page:
restaurant, customer and driver markers, eased driver movement, optional
route line, ETA overlay and legend.

Le rendu parle a une `MapSurface` : tout SDK de carte offrant marqueurs,
deplacement de marqueur et couche de lignes convient.
The renderer talks to a `MapSurface`: any map SDK offering markers,
marker moves and a line layer fits.
"""

import enum
import logging
from abc import ABC, abstractmethod
from collections.abc import Callable

from livetrack.config import settings
from livetrack.models.driver import DriverStatus
from livetrack.schemas.tracking import Coordinates, DriverLocationRecord
from livetrack.services import eta
from livetrack.services.location_store import LocationStore
from livetrack.services.subscriber import ConnectionState, Subscription
from livetrack.utils.geo import lerp

logger = logging.getLogger(__name__)

RESTAURANT_MARKER = "restaurant"
CUSTOMER_MARKER = "customer"
DRIVER_MARKER = "driver"
ROUTE_LINE = "route"

STATUS_CAPTIONS = {
    DriverStatus.IN_TRANSIT: "Driver is on the way",
    DriverStatus.AT_RESTAURANT: "Driver picking up order",
    DriverStatus.DELIVERING: "Driver delivering",
}

LEGEND = [
    {"marker": DRIVER_MARKER, "label": "Your Driver"},
    {"marker": CUSTOMER_MARKER, "label": "Delivery Location"},
    {"marker": RESTAURANT_MARKER, "label": "Restaurant"},
]


class MapState(str, enum.Enum):
    WAITING_FOR_DRIVER = "waiting_for_driver"
    LIVE = "live"
    RECONNECTING = "reconnecting"
    STALE = "stale"


def ease_in_out_cubic(t: float) -> float:
    if t < 0.5:
        return 4 * t * t * t
    return 1 - (-2 * t + 2) ** 3 / 2


def interpolate(start: Coordinates, end: Coordinates, duration_ms: int, fps: int) -> list[Coordinates]:
    """Images intermediaires d'une animation, derniere = arrivee / Animation frames, last one is the target."""
    count = max(1, round(duration_ms / 1000 * fps))
    frames = []
    for i in range(1, count + 1):
        lat, lng = lerp(start.lat, start.lng, end.lat, end.lng, ease_in_out_cubic(i / count))
        frames.append(Coordinates(lat=lat, lng=lng))
    frames[-1] = end
    return frames


# ─── Surfaces ───

class MapSurface(ABC):
    """Primitives de carte attendues / Expected map primitives."""

    @abstractmethod
    def add_marker(self, marker_id: str, position: Coordinates, kind: str):
        ...

    @abstractmethod
    def move_marker(self, marker_id: str, frames: list[Coordinates], duration_ms: int):
        ...

    @abstractmethod
    def remove_marker(self, marker_id: str):
        ...

    @abstractmethod
    def set_line(self, line_id: str, coordinates: list[Coordinates]):
        ...

    @abstractmethod
    def remove_line(self, line_id: str):
        ...

    @abstractmethod
    def set_overlay(self, overlay: dict):
        ...

    @abstractmethod
    def set_state(self, state: MapState):
        ...


class GeoJSONMapSurface(MapSurface):
    """Carte en memoire au format GeoJSON / In-memory map as a GeoJSON feature collection."""

    def __init__(self):
        self.markers: dict[str, dict] = {}
        self.lines: dict[str, list[Coordinates]] = {}
        self.overlay: dict = {}
        self.state: MapState | None = None
        self.animations: list[tuple[str, list[Coordinates], int]] = []

    def add_marker(self, marker_id, position, kind):
        self.markers[marker_id] = {"position": position, "kind": kind}

    def move_marker(self, marker_id, frames, duration_ms):
        self.animations.append((marker_id, frames, duration_ms))
        self.markers[marker_id]["position"] = frames[-1]

    def remove_marker(self, marker_id):
        self.markers.pop(marker_id, None)

    def set_line(self, line_id, coordinates):
        self.lines[line_id] = list(coordinates)

    def remove_line(self, line_id):
        self.lines.pop(line_id, None)

    def set_overlay(self, overlay):
        self.overlay = dict(overlay)

    def set_state(self, state):
        self.state = state

    def to_geojson(self) -> dict:
        features = [
            {
                "type": "Feature",
                "id": marker_id,
                "geometry": {"type": "Point", "coordinates": [m["position"].lng, m["position"].lat]},
                "properties": {"kind": m["kind"]},
            }
            for marker_id, m in self.markers.items()
        ]
        features += [
            {
                "type": "Feature",
                "id": line_id,
                "geometry": {"type": "LineString", "coordinates": [[c.lng, c.lat] for c in coords]},
                "properties": {},
            }
            for line_id, coords in self.lines.items()
        ]
        return {"type": "FeatureCollection", "features": features}


class CommandMapSurface(MapSurface):
    """Emet des commandes JSON pour un client carto du navigateur / Emits JSON commands for a browser map client."""

    def __init__(self, emit: Callable[[dict], None]):
        self._emit = emit

    def add_marker(self, marker_id, position, kind):
        self._emit({"op": "marker.add", "id": marker_id, "kind": kind, "lngLat": [position.lng, position.lat]})

    def move_marker(self, marker_id, frames, duration_ms):
        self._emit({
            "op": "marker.move",
            "id": marker_id,
            "durationMs": duration_ms,
            "frames": [[f.lng, f.lat] for f in frames],
        })

    def remove_marker(self, marker_id):
        self._emit({"op": "marker.remove", "id": marker_id})

    def set_line(self, line_id, coordinates):
        self._emit({"op": "line.set", "id": line_id, "coordinates": [[c.lng, c.lat] for c in coordinates]})

    def remove_line(self, line_id):
        self._emit({"op": "line.remove", "id": line_id})

    def set_overlay(self, overlay):
        self._emit({"op": "overlay.set", "overlay": overlay})

    def set_state(self, state):
        self._emit({"op": "state.set", "state": state.value})


# ─── Rendu / Renderer ───

class LiveMapRenderer:
    """Garde le marqueur chauffeur synchronise avec la derniere position.

    Keeps the driver marker in sync with the latest DriverLocation. The
    handlers below plug straight into a `Subscription`.
    """

    def __init__(
        self,
        surface: MapSurface,
        restaurant: Coordinates,
        customer: Coordinates,
        show_route: bool = True,
        show_legend: bool = True,
        show_eta: bool = True,
        route_geometry: list[Coordinates] | None = None,
        animation_ms: int | None = None,
        fps: int | None = None,
        speed_kmh: float | None = None,
    ):
        self.surface = surface
        self.restaurant = restaurant
        self.customer = customer
        self.show_route = show_route
        self.show_legend = show_legend
        self.show_eta = show_eta
        self.route_geometry = list(route_geometry or [])
        self.animation_ms = settings.MARKER_ANIMATION_MS if animation_ms is None else animation_ms
        self.fps = settings.MARKER_ANIMATION_FPS if fps is None else fps
        self.speed_kmh = speed_kmh

        self.state = MapState.WAITING_FOR_DRIVER
        self.last_record: DriverLocationRecord | None = None
        self.driver_status: DriverStatus | None = None
        self.eta_minutes: int | None = None
        self._connection = ConnectionState.LIVE
        self._alive = True
        self._rendered = False

    @property
    def driver_position(self) -> Coordinates | None:
        return self.last_record.position if self.last_record else None

    def render_initial(self):
        """Restaurant et client, en attente du chauffeur / Restaurant and customer, waiting for the driver."""
        if self._rendered:
            return
        self._rendered = True
        self.surface.add_marker(RESTAURANT_MARKER, self.restaurant, "restaurant")
        self.surface.add_marker(CUSTOMER_MARKER, self.customer, "customer")
        self._refresh_overlay()
        self.surface.set_state(self.state)

    def on_location(self, record: DriverLocationRecord):
        last = self.last_record
        # Plus ancien : rien a faire / Older: nothing to do
        if last is not None and record.timestamp < last.timestamp:
            return
        if record.status is DriverStatus.IDLE:
            self.clear_driver(DriverStatus.IDLE)
            return
        if last is not None:
            # Doublon / Duplicate
            if (record.timestamp, record.lat, record.lng) == (last.timestamp, last.lat, last.lng):
                if record.status != last.status:
                    self.on_status_change(record.status)
                return

        self.render_initial()
        if last is None:
            self.surface.add_marker(DRIVER_MARKER, record.position, "driver")
        elif (record.lat, record.lng) != (last.lat, last.lng):
            frames = interpolate(last.position, record.position, self.animation_ms, self.fps)
            self.surface.move_marker(DRIVER_MARKER, frames, self.animation_ms)
        self.last_record = record

        if self.show_route:
            self.surface.set_line(ROUTE_LINE, [record.position, *(self.route_geometry or [self.customer])])
        self.eta_minutes = eta.estimate(record.lat, record.lng, self.customer.lat, self.customer.lng, self.speed_kmh)
        if record.status != self.driver_status:
            self.driver_status = record.status
        self._refresh_overlay()
        self._update_state()

    def clear_driver(self, status: DriverStatus | None = None):
        """Retirer le chauffeur de la carte / Take the driver off the map.

        Sert au repos (un record idle reste d'une course precedente, ce n'est
        pas une position suivie) et au changement de chauffeur suivi.
        Used on idle (an idle record is left over from a previous run, not a
        tracked position) and when the followed driver changes.
        """
        self.render_initial()
        if self.last_record is not None:
            self.surface.remove_marker(DRIVER_MARKER)
            if self.show_route:
                self.surface.remove_line(ROUTE_LINE)
        self.last_record = None
        self.driver_status = status
        self.eta_minutes = None
        self._refresh_overlay()
        self._update_state()

    def reset_connection(self):
        self._connection = ConnectionState.LIVE
        self._alive = True
        self._update_state()

    def on_status_change(self, status: DriverStatus):
        self.driver_status = status
        self._refresh_overlay()

    def on_connection_change(self, state: ConnectionState):
        # La derniere position reste affichee / The last-known marker stays on the map
        self._connection = state
        self._update_state()

    def on_liveness_change(self, alive: bool):
        self._alive = alive
        self._update_state()

    def set_route_geometry(self, geometry: list[Coordinates]):
        self.route_geometry = list(geometry)
        if self.show_route and self.last_record is not None:
            self.surface.set_line(ROUTE_LINE, [self.last_record.position, *(self.route_geometry or [self.customer])])

    def _update_state(self):
        if self._connection is ConnectionState.RECONNECTING:
            state = MapState.RECONNECTING
        elif self.last_record is None:
            state = MapState.WAITING_FOR_DRIVER
        elif not self._alive:
            state = MapState.STALE
        else:
            state = MapState.LIVE
        if state != self.state:
            self.state = state
            self.surface.set_state(state)

    def _refresh_overlay(self):
        overlay: dict = {}
        if self.show_eta and self.eta_minutes is not None:
            overlay["eta_minutes"] = self.eta_minutes
            overlay["caption"] = STATUS_CAPTIONS.get(self.driver_status, "")
        elif self.last_record is None:
            overlay["caption"] = "Waiting for driver"
        if self.show_legend:
            overlay["legend"] = LEGEND
        self.surface.set_overlay(overlay)


class LiveMapView:
    """Rendu + abonnement, monte/demonte ensemble / Renderer plus subscription, mounted and unmounted together."""

    def __init__(
        self,
        store: LocationStore,
        tenant_id: str,
        driver_id: str | None,
        renderer: LiveMapRenderer,
        **subscription_options,
    ):
        self.store = store
        self.tenant_id = tenant_id
        self.driver_id = driver_id
        self.renderer = renderer
        self._options = subscription_options
        self.subscription: Subscription | None = None

    def mount(self) -> "LiveMapView":
        self.renderer.render_initial()
        if self.driver_id is not None and self.subscription is None:
            self.subscription = Subscription(
                self.store,
                self.tenant_id,
                self.driver_id,
                self.renderer.on_location,
                self.renderer.on_status_change,
                on_liveness_change=self.renderer.on_liveness_change,
                on_connection_change=self.renderer.on_connection_change,
                **self._options,
            ).start()
        return self

    def follow(self, driver_id: str | None):
        """Suivre un autre chauffeur sur la meme carte / Follow another driver on the same map."""
        if driver_id == self.driver_id:
            return
        self.unmount()
        self.driver_id = driver_id
        self.renderer.clear_driver()
        self.renderer.reset_connection()
        self.mount()

    def unmount(self):
        if self.subscription is not None:
            self.subscription.unsubscribe()
            self.subscription = None

    async def __aenter__(self) -> "LiveMapView":
        return self.mount()

    async def __aexit__(self, exc_type, exc, tb):
        self.unmount()
