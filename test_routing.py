"""
Tests for directions fetching, route animation and the live map session.
"""
from datetime import datetime
from unittest.mock import MagicMock, patch

import pytest
import requests

from backend.errors import RouteError
from backend.geo import calculate_eta, haversine, path_lengths
from backend.models import (
    Coordinates,
    DeliveryWithDetails,
    FleetLocation,
    Hub,
    MapMarker,
    RouteResult,
    Terminal,
    Vehicle,
)
from backend.routing import (
    IDLE,
    MARKERS_RENDERED,
    ROUTE_ANIMATING,
    MapSession,
    MapSessionRegistry,
    RouteAnimation,
    build_driver_markers,
    build_markers,
    fetch_directions,
    next_pending_delivery,
    route_eta,
)

ORIGIN = Coordinates(lat=12.9716, lng=77.5946)
DESTINATION = Coordinates(lat=13.0827, lng=80.2707)

OSRM_OK = {
    "code": "Ok",
    "routes": [{
        "geometry": {"type": "LineString",
                     "coordinates": [[77.5946, 12.9716], [78.5, 12.9], [80.2707, 13.0827]]},
        "distance": 346000.0,
        "duration": 21600.0,
    }],
}


def _response(payload, status=200):
    response = MagicMock()
    response.status_code = status
    response.json.return_value = payload
    return response


# =========================
# DIRECTIONS
# =========================
class TestFetchDirections:
    @patch("backend.routing.requests.get")
    def test_osrm_route_is_parsed(self, mock_get):
        mock_get.return_value = _response(OSRM_OK)

        route = fetch_directions(ORIGIN, DESTINATION, provider="osrm")

        url = mock_get.call_args[0][0]
        assert url.endswith("/route/v1/driving/77.5946,12.9716;80.2707,13.0827")
        assert mock_get.call_args[1]["params"]["geometries"] == "geojson"
        assert route.coordinates[0] == [77.5946, 12.9716]
        assert route.distance == 346000.0
        assert route.duration == 21600.0
        assert route.summary() == "346.00 km • ~360 min"

    @patch("backend.routing.requests.get")
    def test_mapbox_request_carries_token(self, mock_get):
        mock_get.return_value = _response(OSRM_OK)

        with patch("backend.routing.config.MAPBOX_TOKEN", "pk.test"):
            route = fetch_directions(ORIGIN, DESTINATION, provider="mapbox")

        url = mock_get.call_args[0][0]
        assert "/directions/v5/mapbox/driving/77.5946,12.9716;80.2707,13.0827" in url
        assert mock_get.call_args[1]["params"]["access_token"] == "pk.test"
        assert route.provider == "mapbox"

    @patch("backend.routing.requests.get")
    def test_no_route_raises(self, mock_get):
        mock_get.return_value = _response({"code": "NoRoute", "routes": []})
        with pytest.raises(RouteError):
            fetch_directions(ORIGIN, DESTINATION, provider="osrm")

    @patch("backend.routing.requests.get")
    def test_http_error_raises(self, mock_get):
        mock_get.return_value = _response({}, status=503)
        with pytest.raises(RouteError, match="HTTP 503"):
            fetch_directions(ORIGIN, DESTINATION, provider="osrm")

    @patch("backend.routing.requests.get")
    def test_timeout_is_not_retried(self, mock_get):
        mock_get.side_effect = requests.exceptions.Timeout()
        with pytest.raises(RouteError, match="timed out"):
            fetch_directions(ORIGIN, DESTINATION, provider="osrm")
        assert mock_get.call_count == 1

    @patch("backend.routing.requests.get")
    def test_non_object_body_raises(self, mock_get):
        mock_get.return_value = _response([OSRM_OK])
        with pytest.raises(RouteError, match="invalid response"):
            fetch_directions(ORIGIN, DESTINATION, provider="osrm")

    @pytest.mark.parametrize("geometry", [
        {"coordinates": [[77.5946]]},
        {"coordinates": [None, [80.27, 13.08]]},
        {"coordinates": [["east", "north"]]},
        "LINESTRING(77.59 12.97)",
    ])
    @patch("backend.routing.requests.get")
    def test_malformed_geometry_raises(self, mock_get, geometry):
        mock_get.return_value = _response({"code": "Ok", "routes": [{"geometry": geometry}]})
        with pytest.raises(RouteError, match="invalid response"):
            fetch_directions(ORIGIN, DESTINATION, provider="osrm")

    @patch("backend.routing.requests.get")
    def test_non_object_route_raises(self, mock_get):
        mock_get.return_value = _response({"code": "Ok", "routes": ["r1"]})
        with pytest.raises(RouteError, match="invalid response"):
            fetch_directions(ORIGIN, DESTINATION, provider="osrm")


# =========================
# GEOMETRY
# =========================
def test_haversine_and_path_lengths():
    assert haversine(0, 0, 0, 0) == 0
    # one degree of latitude is ~111 km
    assert 110 < haversine(0, 0, 1, 0) < 112
    lengths = path_lengths([[0, 0], [0, 1], [0, 2]])
    assert lengths[0] == 0
    assert lengths[2] == pytest.approx(2 * lengths[1])


def test_eta_from_duration_or_speed():
    now = datetime(2024, 1, 15, 8, 0, 0)
    assert calculate_eta(40000, now=now) == datetime(2024, 1, 15, 9, 0, 0)

    timed = RouteResult(coordinates=[[0, 0], [0, 1]], distance=40000, duration=1800)
    untimed = RouteResult(coordinates=[[0, 0], [0, 1]], distance=40000, duration=0)
    assert route_eta(timed, now=now) == datetime(2024, 1, 15, 8, 30, 0)
    assert route_eta(untimed, now=now) == datetime(2024, 1, 15, 9, 0, 0)


# =========================
# ROUTE ANIMATION
# =========================
class TestRouteAnimation:
    LINE = [[0.0, 0.0], [0.0, 1.0], [0.0, 2.0]]

    def test_first_and_last_frames(self):
        animation = RouteAnimation(self.LINE, frames=4)
        assert animation.frame(0) == [[0.0, 0.0]]
        assert animation.frame(4) == self.LINE

    def test_head_is_interpolated_by_distance(self):
        animation = RouteAnimation(self.LINE, frames=4)

        quarter = animation.frame(1)
        assert quarter[0] == [0.0, 0.0]
        assert quarter[-1][1] == pytest.approx(0.5, abs=1e-6)

        three_quarters = animation.frame(3)
        assert three_quarters[:2] == self.LINE[:2]
        assert three_quarters[-1][1] == pytest.approx(1.5, abs=1e-6)

    def test_visible_path_only_grows(self):
        animation = RouteAnimation(self.LINE, frames=10)
        sizes = []
        while not animation.done:
            sizes.append(len(animation.next_frame()))
        assert sizes == sorted(sizes)
        assert animation.frame_index == 10

    def test_cancel_stops_animation(self):
        animation = RouteAnimation(self.LINE, frames=10)
        animation.next_frame()
        animation.cancel()
        assert animation.done
        assert animation.next_frame() == animation.frame(1)


# =========================
# MAP SESSION
# =========================
def _route():
    return RouteResult(coordinates=[[0.0, 0.0], [0.0, 1.0]], distance=111000, duration=5400)


def _markers():
    return [
        MapMarker(id="vehicle:v1", kind="vehicle", record_id="v1", label="TN01",
                  coordinates=ORIGIN, status="active"),
        MapMarker(id="terminal:t1", kind="terminal", record_id="t1", label="Port",
                  coordinates=DESTINATION),
    ]


class TestMapSession:
    def test_markers_move_idle_session_to_rendered(self):
        session = MapSession("map_1", frames=3)
        assert session.state == IDLE

        session.render_markers(_markers())

        assert session.state == MARKERS_RENDERED
        assert session.select_marker("terminal:t1").label == "Port"
        assert session.select_marker("missing") is None

    def test_route_animates_then_rests(self):
        session = MapSession("map_1", frames=3)
        session.render_markers(_markers())

        session.request_route(ORIGIN, DESTINATION, fetch=lambda o, d: _route())
        assert session.state == ROUTE_ANIMATING
        assert session.eta is not None

        for _ in range(3):
            session.tick()

        assert session.state == MARKERS_RENDERED
        assert session.visible_path == _route().coordinates
        assert session.route is not None

    def test_new_request_replaces_running_animation(self):
        session = MapSession("map_1", frames=5)
        session.render_markers(_markers())
        session.request_route(ORIGIN, DESTINATION, fetch=lambda o, d: _route())
        first = session.animation
        session.tick()

        other = RouteResult(coordinates=[[1.0, 1.0], [2.0, 2.0]], distance=1000, duration=60)
        session.request_route(ORIGIN, DESTINATION, fetch=lambda o, d: other)

        assert first.cancelled
        assert session.animation is not first
        assert session.route.distance == 1000
        assert session.animation.frame_index == 0

    def test_failed_fetch_records_error_and_returns_to_markers(self):
        session = MapSession("map_1", frames=5)
        session.render_markers(_markers())

        def broken(origin, destination):
            raise RouteError("No route found between these points")

        with pytest.raises(RouteError):
            session.request_route(ORIGIN, DESTINATION, fetch=broken)

        assert session.state == MARKERS_RENDERED
        assert session.error == "No route found between these points"
        assert session.route is None

    def test_close_popup_clears_route(self):
        session = MapSession("map_1", frames=5)
        session.render_markers(_markers())
        session.select_marker("vehicle:v1")
        session.request_route(ORIGIN, DESTINATION, fetch=lambda o, d: _route())
        animation = session.animation

        session.close_popup()

        assert animation.cancelled
        assert session.state == MARKERS_RENDERED
        assert session.route is None and session.visible_path == []
        assert session.selected_marker_id is None

    def test_marker_refresh_does_not_interrupt_animation(self):
        session = MapSession("map_1", frames=5)
        session.render_markers(_markers())
        session.request_route(ORIGIN, DESTINATION, fetch=lambda o, d: _route())

        session.render_markers(_markers()[:1])

        assert session.state == ROUTE_ANIMATING
        assert len(session.markers) == 1

    def test_view_is_camel_case(self):
        session = MapSession("map_1", frames=5)
        session.render_markers(_markers())
        session.request_route(ORIGIN, DESTINATION, fetch=lambda o, d: _route())

        view = session.view().model_dump(by_alias=True)

        assert view["routeSummary"] == "111.00 km • ~90 min"
        assert view["frames"] == 5
        assert view["visiblePath"] == [[0.0, 0.0]]


def test_build_markers_skips_missing_coordinates():
    locations = [
        FleetLocation(vehicle_id="v1", vehicle_registration="TN01", driver_id="d1",
                      driver_name="John", shift_id="s1", date="2024-01-15", status="active",
                      coordinates=ORIGIN),
        FleetLocation(vehicle_id="v2", vehicle_registration="KA05", driver_id="d2",
                      shift_id="s2", date="2024-01-15", status="active"),
    ]
    hubs = [Hub(id="h1", name="North", coordinates=ORIGIN), Hub(id="h2", name="Nowhere")]
    terminals = [Hub(id="t1", name="Port", type="terminal", coordinates=DESTINATION)]

    markers = build_markers(locations, hubs, terminals)

    assert [(m.id, m.record_id) for m in markers] == [
        ("vehicle:v1", "v1"), ("hub:h1", "h1"), ("terminal:t1", "t1")]
    assert markers[0].label == "TN01 (John)"


def test_same_record_id_in_two_collections_stays_distinct():
    locations = [FleetLocation(vehicle_id="1", vehicle_registration="TN01", driver_id="d1",
                               driver_name="John", shift_id="s1", date="2024-01-15",
                               status="active", coordinates=ORIGIN)]
    terminals = [Hub(id="1", name="Port", type="terminal", coordinates=DESTINATION)]
    session = MapSession("map_1", frames=3)
    session.render_markers(build_markers(locations, [], terminals))

    assert len({m.id for m in session.markers}) == 2
    assert session.select_marker("terminal:1").label == "Port"
    assert session.selected_marker_id == "terminal:1"
    assert session.select_marker("vehicle:1").kind == "vehicle"


def _driver_deliveries():
    port = Terminal(id="t1", name="Port", coordinates=DESTINATION)
    unplaced = Terminal(id="t2", name="Unmapped Yard")
    return [
        DeliveryWithDetails(id="dl1", shift_id="s1", order_id="o1", status="completed",
                            destination=port),
        DeliveryWithDetails(id="dl2", shift_id="s1", order_id="o2", status="pending",
                            destination=unplaced),
        DeliveryWithDetails(id="dl3", shift_id="s1", order_id="o3", status="pending",
                            destination=port),
    ]


def test_driver_markers_cover_vehicle_and_delivery_destinations():
    vehicle = Vehicle(id="v1", registration="TN01", current_location=ORIGIN)

    markers = build_driver_markers(vehicle, _driver_deliveries())

    assert [m.id for m in markers] == ["vehicle:v1", "delivery:dl1", "delivery:dl3"]
    assert markers[2].label == "Port"
    assert markers[2].status == "pending"
    assert build_driver_markers(Vehicle(id="v2", registration="KA05"), []) == []


def test_next_pending_delivery_needs_a_mapped_destination():
    deliveries = _driver_deliveries()

    assert next_pending_delivery(deliveries).id == "dl3"
    assert next_pending_delivery(deliveries[:2]) is None
    assert next_pending_delivery([DeliveryWithDetails(id="x", shift_id="s1", order_id="o9")]) is None


def test_registry_create_get_remove():
    registry = MapSessionRegistry()
    session = registry.create(frames=3)

    assert session.id.startswith("map_")
    assert registry.get(session.id) is session
    assert registry.remove(session.id)
    assert registry.get(session.id) is None
    assert not registry.remove(session.id)
