import copy
import itertools

import pytest

from backend import store as resources
from backend.errors import NotFoundError
from backend.store import StoreClient


class FakeStore(StoreClient):
    """In-memory stand-in for the REST JSON store; the query helpers come from StoreClient."""

    def __init__(self, data=None):
        self.data = {resource: [] for resource in resources.RESOURCES}
        for resource, records in (data or {}).items():
            self.data[resource] = copy.deepcopy(records)
        self._ids = itertools.count(1000)
        self.writes = []

    def _find(self, resource, record_id):
        record = next((r for r in self.data[resource] if str(r.get("id")) == str(record_id)), None)
        if record is None:
            raise NotFoundError(resource, record_id)
        return record

    def list(self, resource, **filters):
        return [
            copy.deepcopy(r) for r in self.data[resource]
            if all(v is None or str(r.get(k)) == str(v) for k, v in filters.items())
        ]

    def get(self, resource, record_id):
        return copy.deepcopy(self._find(resource, record_id))

    def create(self, resource, data):
        record = copy.deepcopy(data)
        record.setdefault("id", str(next(self._ids)))
        self.data[resource].append(record)
        self.writes.append(("POST", resource, record["id"]))
        return copy.deepcopy(record)

    def replace(self, resource, record_id, data):
        record = self._find(resource, record_id)
        record.clear()
        record.update(copy.deepcopy(data), id=record_id)
        self.writes.append(("PUT", resource, record_id))
        return copy.deepcopy(record)

    def update(self, resource, record_id, data):
        record = self._find(resource, record_id)
        record.update(copy.deepcopy(data))
        self.writes.append(("PATCH", resource, record_id))
        return copy.deepcopy(record)

    def delete(self, resource, record_id):
        record = self._find(resource, record_id)
        self.data[resource].remove(record)
        self.writes.append(("DELETE", resource, record_id))


TODAY = "2024-01-15"


def seed_data():
    return {
        resources.HUBS: [
            {"id": "h1", "name": "North Hub", "type": "hub", "address": "1 Depot Rd",
             "coordinates": {"lat": 12.97, "lng": 77.59}, "products": []},
        ],
        resources.TERMINALS: [
            {"id": "t1", "name": "Port Terminal", "type": "terminal", "address": "Dock 4",
             "coordinates": {"lat": 13.08, "lng": 80.27},
             "products": [{"productId": "p1", "productName": "Diesel", "quantity": 5}]},
        ],
        resources.PRODUCTS: [
            {"id": "p1", "name": "Diesel", "sku": "DSL-01", "category": "Fuel",
             "price": 90, "unit": "liter", "stockQuantity": 100},
            {"id": "p2", "name": "Cement", "sku": "CMT-01", "category": "Building",
             "price": 400, "unit": "box", "stockQuantity": 3},
        ],
        resources.DRIVERS: [
            {"id": "d1", "name": "John Doe", "license": "DL123", "phone": "555-0101",
             "status": "active"},
            {"id": "d2", "name": "Jane Smith", "license": "DL456", "phone": "555-0102",
             "status": "inactive"},
        ],
        resources.VEHICLES: [
            {"id": "v1", "registration": "TN01AB1234", "capacity": 1000, "type": "Truck",
             "currentLocation": {"lat": 12.9, "lng": 77.6}},
            {"id": "v2", "registration": "KA05CD5678", "capacity": 500, "type": "Van"},
        ],
        resources.ALLOCATIONS: [
            {"id": "a1", "date": TODAY, "vehicleId": "v1", "driverId": "d1",
             "status": "allocated"},
        ],
    }


@pytest.fixture
def store():
    return FakeStore(seed_data())


@pytest.fixture
def empty_store():
    return FakeStore()
