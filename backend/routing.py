import logging
import threading
import uuid
from bisect import bisect_left
from datetime import datetime, timedelta
from typing import Callable, Dict, List, Optional, Sequence

import requests

from . import config
from .errors import RouteError
from .geo import calculate_eta, lerp_point, path_lengths
from .models import (
    Coordinates,
    DeliveryWithDetails,
    FleetLocation,
    Hub,
    MapMarker,
    MapSessionView,
    RouteResult,
    Vehicle,
)

log = logging.getLogger("fleetops.routing")

# =========================
# DIRECTIONS
# =========================
# Driving directions come from OSRM (default) or Mapbox. Only geometry,
# distance and duration are consumed. A failed fetch goes straight back to the
# caller as RouteError, without retry or a straight-line substitute.


def _directions_request(origin: Coordinates, destination: Coordinates, provider: str):
    # Both services expect longitude,latitude
    leg = f"{origin.lng},{origin.lat};{destination.lng},{destination.lat}"
    if provider == "mapbox":
        url = f"{config.MAPBOX_BASE_URL}/directions/v5/mapbox/driving/{leg}"
        params = {
            "geometries": "geojson",
            "overview": "full",
            "access_token": config.MAPBOX_TOKEN,
        }
    else:
        url = f"{config.OSRM_BASE_URL}/route/v1/driving/{leg}"
        params = {
            "overview": "full",       # Get full route geometry
            "geometries": "geojson",  # Return as GeoJSON
            "steps": "false"          # Don't need turn-by-turn instructions
        }
    return url, params


def fetch_directions(origin: Coordinates, destination: Coordinates,
                     provider: Optional[str] = None) -> RouteResult:
    """
    Fetch a driving route between two points.

    Returns a RouteResult with:
    - coordinates: [lng, lat] pairs along the road (GeoJSON order)
    - distance: metres
    - duration: seconds

    Raises RouteError when the service is unreachable or finds no route.
    """
    provider = (provider or config.ROUTING_PROVIDER).lower()
    url, params = _directions_request(origin, destination, provider)

    try:
        response = requests.get(url, params=params, timeout=config.ROUTING_TIMEOUT)
    except requests.exceptions.Timeout:
        log.warning("[ROUTE] %s request timed out", provider)
        raise RouteError("Could not fetch route: routing service timed out")
    except requests.exceptions.RequestException as e:
        log.warning("[ROUTE] %s request error: %s", provider, e)
        raise RouteError("Could not fetch route")

    if response.status_code != 200:
        log.warning("[ROUTE] %s HTTP error: %s", provider, response.status_code)
        raise RouteError(f"Could not fetch route: HTTP {response.status_code}")

    try:
        data = response.json()
    except ValueError:
        raise RouteError("Could not fetch route: invalid response")
    if not isinstance(data, dict):
        log.warning("[ROUTE] %s returned a %s body", provider, type(data).__name__)
        raise RouteError("Could not fetch route: invalid response")

    routes = data.get("routes") or []
    if data.get("code") != "Ok" or not routes:
        log.warning("[ROUTE] %s found no route: %s", provider, data.get("code"))
        raise RouteError("No route found between these points")

    try:
        route = routes[0]
        coordinates = [[float(c[0]), float(c[1])]
                       for c in (route.get("geometry") or {}).get("coordinates") or []]
        distance = float(route.get("distance") or 0)
        duration = float(route.get("duration") or 0)
    except (AttributeError, TypeError, IndexError, KeyError, ValueError) as e:
        log.warning("[ROUTE] %s route could not be parsed: %s", provider, e)
        raise RouteError("Could not fetch route: invalid response")
    if not coordinates:
        raise RouteError("No route found between these points")

    result = RouteResult(
        coordinates=coordinates,
        distance=distance,
        duration=duration,
        provider=provider,
    )
    log.info("[ROUTE] Route fetched: %d points, %s", len(coordinates), result.summary())
    return result


def route_eta(route: RouteResult, now: Optional[datetime] = None) -> datetime:
    """Arrival time from the service's duration, or average speed when it gave none."""
    if route.duration:
        return (now or datetime.now()) + timedelta(seconds=route.duration)
    return calculate_eta(route.distance, now=now)


# =========================
# ROUTE ANIMATION
# =========================
class RouteAnimation:
    """
    Grows a polyline from its start to its end over a fixed number of frames.

    Growth is proportional to distance travelled, so long straight segments
    and dense curves draw at the same speed. Each frame is the visible prefix
    of the route plus one interpolated head point.
    """

    def __init__(self, coordinates: Sequence[Sequence[float]], frames: int = None):
        self.coordinates = [list(c) for c in coordinates]
        self.frames = max(1, frames if frames is not None else config.ROUTE_ANIMATION_FRAMES)
        self.frame_index = 0
        self.cancelled = False
        self._lengths = path_lengths(self.coordinates) if self.coordinates else [0.0]

    @property
    def total_km(self) -> float:
        return self._lengths[-1]

    @property
    def done(self) -> bool:
        return self.cancelled or self.frame_index >= self.frames

    def frame(self, index: int) -> List[List[float]]:
        if not self.coordinates:
            return []
        progress = min(1.0, max(0.0, index / self.frames))
        if progress >= 1.0 or self.total_km == 0:
            return [list(c) for c in self.coordinates] if progress >= 1.0 else [self.coordinates[0]]

        target = progress * self.total_km
        # first vertex at or beyond the target distance
        k = bisect_left(self._lengths, target)
        if k == 0:
            return [self.coordinates[0]]
        seg_start, seg_end = self._lengths[k - 1], self._lengths[k]
        t = (target - seg_start) / (seg_end - seg_start) if seg_end > seg_start else 1.0
        head = lerp_point(self.coordinates[k - 1], self.coordinates[k], t)
        return [list(c) for c in self.coordinates[:k]] + [head]

    def next_frame(self) -> List[List[float]]:
        if not self.done:
            self.frame_index += 1
        return self.frame(self.frame_index)

    def cancel(self):
        self.cancelled = True


# =========================
# MAP MARKERS
# =========================
def marker_id(kind: str, record_id: str) -> str:
    # record ids are only unique within their own collection
    return f"{kind}:{record_id}"


def _marker(kind: str, record_id: str, label: str, coordinates: Coordinates,
            status: Optional[str] = None) -> MapMarker:
    return MapMarker(id=marker_id(kind, record_id), kind=kind, record_id=record_id,
                     label=label, coordinates=coordinates, status=status)


def build_markers(locations: List[FleetLocation], hubs: List[Hub],
                  terminals: List[Hub]) -> List[MapMarker]:
    """Vehicle, hub and terminal markers; anything without coordinates is skipped."""
    markers = [
        _marker("vehicle", loc.vehicle_id, f"{loc.vehicle_registration} ({loc.driver_name})",
                loc.coordinates, loc.status)
        for loc in locations if loc.coordinates is not None
    ]
    for kind, places in (("hub", hubs), ("terminal", terminals)):
        for place in places:
            if place.coordinates is None:
                log.warning("[MAP] %s %s is missing valid coordinates", kind, place.name)
                continue
            markers.append(_marker(kind, place.id, place.name, place.coordinates))
    return markers


def build_driver_markers(vehicle: Optional[Vehicle],
                         deliveries: List[DeliveryWithDetails]) -> List[MapMarker]:
    """
    Markers for one driver's map: their vehicle, plus one marker per delivery
    destination of the shift.
    """
    markers = []
    if vehicle is not None and vehicle.current_location is not None:
        markers.append(_marker("vehicle", vehicle.id, vehicle.registration,
                               vehicle.current_location))
    for delivery in deliveries:
        destination = delivery.destination
        if destination is None or destination.coordinates is None:
            log.warning("[MAP] Delivery %s has no destination coordinates", delivery.id)
            continue
        markers.append(_marker("delivery", delivery.id, destination.name,
                               destination.coordinates, delivery.status))
    return markers


def next_pending_delivery(deliveries: List[DeliveryWithDetails]) -> Optional[DeliveryWithDetails]:
    """First pending delivery whose destination can be routed to."""
    return next(
        (d for d in deliveries
         if d.status == "pending" and d.destination is not None
         and d.destination.coordinates is not None),
        None,
    )


# =========================
# MAP SESSION (STATE MACHINE)
# =========================
# idle -> markers_rendered -> route_requested -> route_animating
#   -> markers_rendered (animation finished, route stays drawn)
#   -> route_requested  (another route asked for: current one replaced)

IDLE = "idle"
MARKERS_RENDERED = "markers_rendered"
ROUTE_REQUESTED = "route_requested"
ROUTE_ANIMATING = "route_animating"


class MapSession:
    def __init__(self, session_id: str, frames: int = None, driver_id: Optional[str] = None):
        self.id = session_id
        self.frames = frames
        # set for a driver's own map; None for the fleet-wide map
        self.driver_id = driver_id
        self.state = IDLE
        self.markers: List[MapMarker] = []
        self.selected_marker_id: Optional[str] = None
        self.route: Optional[RouteResult] = None
        self.animation: Optional[RouteAnimation] = None
        self.visible_path: List[List[float]] = []
        self.eta: Optional[str] = None
        self.error: Optional[str] = None
        self._request_seq = 0
        self._lock = threading.Lock()

    def _resting_state(self) -> str:
        return MARKERS_RENDERED if self.markers else IDLE

    def render_markers(self, markers: List[MapMarker]):
        """Replace markers from polled state; a running route is left alone."""
        with self._lock:
            self.markers = list(markers)
            if self.state in (IDLE, MARKERS_RENDERED):
                self.state = self._resting_state()
            if self.selected_marker_id and not any(m.id == self.selected_marker_id for m in self.markers):
                self.selected_marker_id = None

    def select_marker(self, marker_id: str) -> Optional[MapMarker]:
        with self._lock:
            marker = next((m for m in self.markers if m.id == marker_id), None)
            self.selected_marker_id = marker.id if marker else None
            return marker

    def request_route(self, origin: Coordinates, destination: Coordinates,
                      fetch: Callable = fetch_directions) -> RouteResult:
        with self._lock:
            if self.animation:
                self.animation.cancel()
            self._request_seq += 1
            seq = self._request_seq
            self.state = ROUTE_REQUESTED
            self.error = None

        try:
            route = fetch(origin, destination)
        except RouteError as e:
            with self._lock:
                if seq == self._request_seq:
                    self.error = str(e)
                    self.route, self.animation, self.visible_path, self.eta = None, None, [], None
                    self.state = self._resting_state()
            raise

        with self._lock:
            if seq != self._request_seq:
                # a newer request replaced this one while it was in flight
                return route
            self.route = route
            self.animation = RouteAnimation(route.coordinates, self.frames)
            self.visible_path = self.animation.frame(0)
            self.eta = route_eta(route).isoformat()
            self.state = ROUTE_ANIMATING
        log.info("[MAP] Session %s drawing route (%s)", self.id, route.summary())
        return route

    def tick(self) -> List[List[float]]:
        """Advance the route animation by one frame."""
        with self._lock:
            if self.state != ROUTE_ANIMATING or self.animation is None:
                return self.visible_path
            self.visible_path = self.animation.next_frame()
            if self.animation.done:
                self.state = self._resting_state()
            return self.visible_path

    def close_popup(self):
        """Dismiss the selection and clear the route."""
        with self._lock:
            if self.animation:
                self.animation.cancel()
            self._request_seq += 1
            self.selected_marker_id = None
            self.route, self.animation, self.visible_path, self.eta = None, None, [], None
            self.state = self._resting_state()

    def cancel(self):
        with self._lock:
            if self.animation:
                self.animation.cancel()
            self._request_seq += 1

    def view(self) -> MapSessionView:
        with self._lock:
            return MapSessionView(
                id=self.id,
                state=self.state,
                driver_id=self.driver_id,
                markers=self.markers,
                selected_marker_id=self.selected_marker_id,
                route=self.route,
                route_summary=self.route.summary() if self.route else None,
                eta=self.eta,
                visible_path=self.visible_path,
                frame=self.animation.frame_index if self.animation else 0,
                frames=self.animation.frames if self.animation else 0,
                error=self.error,
            )


class MapSessionRegistry:
    def __init__(self):
        self._sessions: Dict[str, MapSession] = {}
        self._lock = threading.Lock()

    def create(self, frames: int = None, driver_id: Optional[str] = None) -> MapSession:
        session = MapSession(f"map_{uuid.uuid4().hex[:8]}", frames, driver_id)
        with self._lock:
            self._sessions[session.id] = session
        return session

    def get(self, session_id: str) -> Optional[MapSession]:
        with self._lock:
            return self._sessions.get(session_id)

    def remove(self, session_id: str) -> bool:
        with self._lock:
            session = self._sessions.pop(session_id, None)
        if session is None:
            return False
        session.cancel()
        return True

    def clear(self):
        with self._lock:
            sessions = list(self._sessions.values())
            self._sessions.clear()
        for session in sessions:
            session.cancel()
