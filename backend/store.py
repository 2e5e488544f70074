import logging
from typing import Any, Dict, List, Optional

import requests

from . import config
from .errors import NotFoundError, StoreError

log = logging.getLogger("fleetops.store")

# =========================
# RESOURCES
# =========================
HUBS = "hubs"
TERMINALS = "terminals"
PRODUCTS = "products"
DRIVERS = "drivers"
VEHICLES = "vehicles"
ORDERS = "orders"
ALLOCATIONS = "allocations"
SHIFTS = "shifts"
DELIVERIES = "deliveries"
GPS_UPDATES = "gpsUpdates"

RESOURCES = (
    HUBS, TERMINALS, PRODUCTS, DRIVERS, VEHICLES,
    ORDERS, ALLOCATIONS, SHIFTS, DELIVERIES, GPS_UPDATES,
)


class StoreClient:
    """
    Thin client for the generic REST JSON store.

    One endpoint per resource, GET (list / by id / query-string filters),
    POST, PUT, PATCH and DELETE. No auth, no pagination, no retry: any
    transport problem or non-2xx answer becomes a StoreError.
    """

    def __init__(self, base_url: str = None, timeout: float = None,
                 session: Optional[requests.Session] = None):
        self.base_url = (base_url or config.STORE_BASE_URL).rstrip("/")
        self.timeout = timeout if timeout is not None else config.STORE_TIMEOUT
        self.session = session or requests.Session()
        self.session.headers.update({"Content-Type": "application/json"})

    def _url(self, resource: str, record_id: Optional[str] = None) -> str:
        if record_id is None:
            return f"{self.base_url}/{resource}"
        return f"{self.base_url}/{resource}/{record_id}"

    def _request(self, method: str, resource: str, record_id: Optional[str] = None,
                 params: Optional[Dict[str, Any]] = None, payload: Any = None) -> Any:
        url = self._url(resource, record_id)
        try:
            response = self.session.request(
                method, url, params=params, json=payload, timeout=self.timeout
            )
        except requests.exceptions.Timeout:
            log.warning("[STORE] %s %s timed out", method, url)
            raise StoreError(resource, "request timed out")
        except requests.exceptions.RequestException as e:
            log.warning("[STORE] %s %s failed: %s", method, url, e)
            raise StoreError(resource, str(e))

        if response.status_code == 404 and record_id is not None:
            raise NotFoundError(resource, record_id)
        if not response.ok:
            log.warning("[STORE] %s %s -> HTTP %s", method, url, response.status_code)
            raise StoreError(resource, f"HTTP {response.status_code}", response.status_code)

        if not response.content:
            return None
        try:
            return response.json()
        except ValueError:
            raise StoreError(resource, "response was not valid JSON", response.status_code)

    # =========================
    # CRUD
    # =========================
    def list(self, resource: str, **filters) -> List[Dict[str, Any]]:
        params = {k: v for k, v in filters.items() if v is not None} or None
        return self._request("GET", resource, params=params) or []

    def get(self, resource: str, record_id: str) -> Dict[str, Any]:
        return self._request("GET", resource, record_id)

    def create(self, resource: str, data: Dict[str, Any]) -> Dict[str, Any]:
        created = self._request("POST", resource, payload=data)
        log.debug("[STORE] created %s/%s", resource, (created or {}).get("id"))
        return created

    def replace(self, resource: str, record_id: str, data: Dict[str, Any]) -> Dict[str, Any]:
        return self._request("PUT", resource, record_id, payload=data)

    def update(self, resource: str, record_id: str, data: Dict[str, Any]) -> Dict[str, Any]:
        return self._request("PATCH", resource, record_id, payload=data)

    def delete(self, resource: str, record_id: str) -> None:
        self._request("DELETE", resource, record_id)

    # =========================
    # QUERIES
    # =========================
    def vehicle_allocations(self, vehicle_id: str, date: str) -> List[Dict[str, Any]]:
        """
        Non-cancelled allocations holding a vehicle on a date.

        The query-string filters only narrow the download; a store that
        ignores them still yields the right records.
        """
        booked = self.list(ALLOCATIONS, vehicleId=vehicle_id, date=date)
        return [
            a for a in booked
            if str(a.get("vehicleId")) == str(vehicle_id)
            and a.get("date") == date
            and a.get("status") != "cancelled"
        ]

    def check_vehicle_availability(self, vehicle_id: str, date: str) -> bool:
        """True when no non-cancelled allocation holds the vehicle on that date."""
        return not self.vehicle_allocations(vehicle_id, date)
