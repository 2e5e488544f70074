import logging
import threading
from datetime import datetime, timezone
from typing import Callable, Dict, List, Optional

from pydantic import ValidationError

from . import config
from . import store as resources
from .errors import StoreError
from .models import (
    Allocation,
    Coordinates,
    Driver,
    FleetLocation,
    FleetSnapshot,
    GpsUpdate,
    Shift,
    Vehicle,
)
from .workflow import today_str

log = logging.getLogger("fleetops.fleet")


# =========================
# FLEET LOCATIONS (DERIVED)
# =========================
def derive_fleet_locations(shifts: List[Shift], vehicles: List[Vehicle], drivers: List[Driver],
                           allocations: List[Allocation], today: str) -> List[FleetLocation]:
    """
    One location per active shift dated today, joined with its vehicle,
    driver and allocation. Shifts whose vehicle no longer exists are skipped.
    """
    vehicles_by_id = {v.id: v for v in vehicles}
    drivers_by_id = {d.id: d for d in drivers}

    locations = []
    for shift in shifts:
        if shift.status != "active" or shift.date != today:
            continue
        vehicle = vehicles_by_id.get(shift.vehicle_id)
        if vehicle is None:
            continue
        driver = drivers_by_id.get(shift.driver_id)
        todays = [
            a for a in allocations
            if a.vehicle_id == shift.vehicle_id and a.date == today and a.status != "cancelled"
        ]
        allocation = next((a for a in todays if a.shift_id == shift.id), None) \
            or next(iter(todays), None)

        locations.append(FleetLocation(
            vehicle_id=vehicle.id,
            vehicle_registration=vehicle.registration,
            vehicle_type=vehicle.type,
            driver_id=shift.driver_id,
            driver_name=driver.name if driver else "Unknown Driver",
            driver_phone=driver.phone if driver else "",
            shift_id=shift.id,
            allocation_id=allocation.id if allocation else None,
            date=shift.date,
            status=shift.status,
            coordinates=vehicle.current_location,
        ))
    return locations


def _load_valid(store, resource: str, model) -> list:
    # one malformed record must not blank the whole map
    records = []
    for raw in store.list(resource):
        try:
            records.append(model(**raw))
        except ValidationError as e:
            log.warning("[FLEET] Skipping invalid %s record %s: %d errors",
                        resource, raw.get("id"), e.error_count())
    return records


def fetch_fleet_locations(store, today: Optional[str] = None) -> List[FleetLocation]:
    return derive_fleet_locations(
        shifts=_load_valid(store, resources.SHIFTS, Shift),
        vehicles=_load_valid(store, resources.VEHICLES, Vehicle),
        drivers=_load_valid(store, resources.DRIVERS, Driver),
        allocations=_load_valid(store, resources.ALLOCATIONS, Allocation),
        today=today or today_str(),
    )


def filter_locations(locations: List[FleetLocation], driver_id: Optional[str] = None,
                     vehicle_id: Optional[str] = None,
                     status: Optional[str] = None) -> List[FleetLocation]:
    filtered = locations
    if driver_id:
        filtered = [loc for loc in filtered if loc.driver_id == driver_id]
    if vehicle_id:
        filtered = [loc for loc in filtered if loc.vehicle_id == vehicle_id]
    if status:
        filtered = [loc for loc in filtered if loc.status == status]
    return filtered


# =========================
# FLEET TRACKER (POLLING CACHE)
# =========================
# The cache is replaced wholesale on every successful poll. A failed poll keeps
# the previous locations and records the error next to last_updated so callers
# can tell the data is stale.

class FleetTracker:
    def __init__(self, store_factory: Callable, interval: float = None,
                 auto_refresh: bool = None):
        self._store_factory = store_factory
        self.interval = interval if interval is not None else config.FLEET_POLL_INTERVAL
        self.auto_refresh = config.FLEET_AUTO_REFRESH if auto_refresh is None else auto_refresh
        self.last_updated: Optional[str] = None
        self.error: Optional[str] = None
        self._locations: List[FleetLocation] = []
        self._lock = threading.Lock()
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def refresh(self, today: Optional[str] = None) -> List[FleetLocation]:
        """Fetch fresh locations now (manual refresh override)."""
        try:
            locations = fetch_fleet_locations(self._store_factory(), today)
        except StoreError as e:
            with self._lock:
                self.error = str(e) or "Failed to fetch fleet locations"
            log.warning("[FLEET] Refresh failed: %s", e)
            raise

        with self._lock:
            self._locations = locations
            self.last_updated = datetime.now(timezone.utc).isoformat()
            self.error = None
        log.debug("[FLEET] %d vehicles on shift", len(locations))
        return locations

    def snapshot(self, driver_id: Optional[str] = None, vehicle_id: Optional[str] = None,
                 status: Optional[str] = None) -> FleetSnapshot:
        with self._lock:
            locations = list(self._locations)
            last_updated, error = self.last_updated, self.error
        return FleetSnapshot(
            locations=filter_locations(locations, driver_id, vehicle_id, status),
            last_updated=last_updated,
            error=error,
            auto_refresh=self.auto_refresh,
        )

    def set_auto_refresh(self, enabled: bool):
        self.auto_refresh = enabled
        log.info("[FLEET] Auto refresh %s", "enabled" if enabled else "disabled")

    # ----- background polling -----
    def _run(self):
        while not self._stop.is_set():
            if self.auto_refresh:
                try:
                    self.refresh()
                except StoreError:
                    pass  # recorded in self.error; next tick tries again
                except Exception as e:
                    log.exception("[FLEET] Unexpected refresh failure")
                    with self._lock:
                        self.error = f"Failed to fetch fleet locations: {e}"
            self._stop.wait(self.interval)

    def start(self):
        if self._thread and self._thread.is_alive():
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._run, name="fleet-poller", daemon=True)
        self._thread.start()
        log.info("[FLEET] Polling every %ss", self.interval)

    def stop(self):
        self._stop.set()
        if self._thread:
            self._thread.join(timeout=5)
            self._thread = None

    @property
    def running(self) -> bool:
        return bool(self._thread and self._thread.is_alive())


# =========================
# GPS TRACKING SIMULATION
# =========================
class _TrackedVehicle:
    def __init__(self, vehicle_id: str, driver_id: Optional[str], coordinates: Coordinates):
        self.vehicle_id = vehicle_id
        self.driver_id = driver_id
        self.coordinates = coordinates
        self.stop_event = threading.Event()
        self.thread: Optional[threading.Thread] = None


class GpsTracker:
    """
    Periodically persists a vehicle's current position: the vehicle record's
    currentLocation is overwritten and a gpsUpdates entry appended.
    """

    def __init__(self, store_factory: Callable, interval: float = None):
        self._store_factory = store_factory
        self.interval = interval if interval is not None else config.GPS_UPDATE_INTERVAL
        self._tracked: Dict[str, _TrackedVehicle] = {}
        self._lock = threading.Lock()

    def send_update(self, vehicle_id: str, driver_id: Optional[str],
                    coordinates: Coordinates, timestamp: Optional[str] = None) -> GpsUpdate:
        store = self._store_factory()
        location = coordinates.to_store()
        store.update(resources.VEHICLES, vehicle_id, {"currentLocation": location})
        update = GpsUpdate(
            vehicle_id=vehicle_id,
            driver_id=driver_id,
            coordinates=coordinates,
            timestamp=timestamp or datetime.now(timezone.utc).isoformat(),
        )
        saved = GpsUpdate(**store.create(resources.GPS_UPDATES, update.to_store()))
        log.debug("[GPS] Vehicle %s at (%s, %s)", vehicle_id, coordinates.lat, coordinates.lng)
        return saved

    def set_location(self, vehicle_id: str, coordinates: Coordinates) -> bool:
        """Move a tracked vehicle; the next periodic update sends the new position."""
        with self._lock:
            tracked = self._tracked.get(vehicle_id)
            if tracked is None:
                return False
            tracked.coordinates = coordinates
        return True

    def _run(self, tracked: _TrackedVehicle):
        while not tracked.stop_event.wait(self.interval):
            try:
                self.send_update(tracked.vehicle_id, tracked.driver_id, tracked.coordinates)
            except StoreError as e:
                log.warning("[GPS] Update for vehicle %s failed: %s", tracked.vehicle_id, e)

    def start(self, vehicle_id: str, driver_id: Optional[str], coordinates: Coordinates) -> GpsUpdate:
        """
        Send one update immediately, then keep sending every interval.

        Starting a vehicle that is already tracked replaces its loop; the swap
        happens under the lock so concurrent starts leave exactly one loop.
        """
        first = self.send_update(vehicle_id, driver_id, coordinates)

        tracked = _TrackedVehicle(vehicle_id, driver_id, coordinates)
        tracked.thread = threading.Thread(
            target=self._run, args=(tracked,), name=f"gps-{vehicle_id}", daemon=True
        )
        with self._lock:
            previous = self._tracked.pop(vehicle_id, None)
            if previous is not None:
                previous.stop_event.set()
            self._tracked[vehicle_id] = tracked
            tracked.thread.start()
        if previous is not None and previous.thread:
            previous.thread.join(timeout=5)
        log.info("[GPS] Tracking started for vehicle %s (every %ss)", vehicle_id, self.interval)
        return first

    def stop(self, vehicle_id: str) -> bool:
        with self._lock:
            tracked = self._tracked.pop(vehicle_id, None)
        if tracked is None:
            return False
        tracked.stop_event.set()
        if tracked.thread:
            tracked.thread.join(timeout=5)
        log.info("[GPS] Tracking stopped for vehicle %s", vehicle_id)
        return True

    def stop_all(self):
        with self._lock:
            vehicle_ids = list(self._tracked)
        for vehicle_id in vehicle_ids:
            self.stop(vehicle_id)

    def tracked_vehicles(self) -> List[str]:
        with self._lock:
            return sorted(self._tracked)
