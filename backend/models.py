from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel


# =========================
# BASE
# =========================
# The REST store speaks camelCase JSON; attributes stay snake_case in Python.
class StoreModel(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        coerce_numbers_to_str=True,
        extra="allow",
    )

    def to_store(self) -> Dict[str, Any]:
        """Payload for POST/PUT/PATCH against the store (camelCase, no unset id)."""
        data = self.model_dump(by_alias=True, exclude_none=True)
        if data.get("id") is None:
            data.pop("id", None)
        return data


class PatchModel(StoreModel):
    """Partial update: only the fields the caller actually sent."""

    def to_store(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True, exclude_unset=True)


class Coordinates(StoreModel):
    lat: float
    lng: float


class ProductLine(StoreModel):
    product_id: str
    product_name: str = ""
    quantity: float = 0


# =========================
# MASTER DATA
# =========================
class Hub(StoreModel):
    id: Optional[str] = None
    name: str
    type: str = "hub"
    address: str = ""
    coordinates: Optional[Coordinates] = None
    products: List[ProductLine] = []


class Terminal(Hub):
    type: str = "terminal"


class Product(StoreModel):
    id: Optional[str] = None
    name: str
    sku: str = ""
    category: str = ""
    price: float = 0.0
    unit: str = "piece"  # kg, liter, piece, box, ton
    description: str = ""
    stock_quantity: float = 0


class Driver(StoreModel):
    id: Optional[str] = None
    name: str
    license: str = ""
    phone: str = ""
    email: Optional[str] = None
    status: Optional[str] = None


class Vehicle(StoreModel):
    id: Optional[str] = None
    registration: str
    capacity: float = 0
    type: str = ""
    current_location: Optional[Coordinates] = None


class LocationUpdate(PatchModel):
    name: Optional[str] = None
    address: Optional[str] = None
    coordinates: Optional[Coordinates] = None
    products: Optional[List[ProductLine]] = None


class ProductUpdate(PatchModel):
    name: Optional[str] = None
    sku: Optional[str] = None
    category: Optional[str] = None
    price: Optional[float] = None
    unit: Optional[str] = None
    description: Optional[str] = None
    stock_quantity: Optional[float] = None


class DriverUpdate(PatchModel):
    name: Optional[str] = None
    license: Optional[str] = None
    phone: Optional[str] = None
    email: Optional[str] = None
    status: Optional[str] = None


class VehicleUpdate(PatchModel):
    registration: Optional[str] = None
    capacity: Optional[float] = None
    type: Optional[str] = None
    current_location: Optional[Coordinates] = None


# =========================
# OPERATIONS
# =========================
class Order(StoreModel):
    id: Optional[str] = None
    destination_id: str
    product_id: str
    quantity: float
    delivery_date: str
    assigned_driver_id: Optional[str] = None
    vehicle_id: Optional[str] = None
    status: str = "pending"


class OrderUpdate(PatchModel):
    destination_id: Optional[str] = None
    product_id: Optional[str] = None
    quantity: Optional[float] = None
    delivery_date: Optional[str] = None
    assigned_driver_id: Optional[str] = None
    vehicle_id: Optional[str] = None
    status: Optional[str] = None


class Allocation(StoreModel):
    id: Optional[str] = None
    date: str
    vehicle_id: str
    driver_id: str
    shift_id: Optional[str] = None
    status: str = "allocated"  # allocated, pending, completed, cancelled


class AllocationUpdate(PatchModel):
    date: Optional[str] = None
    vehicle_id: Optional[str] = None
    driver_id: Optional[str] = None
    shift_id: Optional[str] = None
    status: Optional[str] = None


class Shift(StoreModel):
    id: Optional[str] = None
    driver_id: str
    vehicle_id: str
    date: str
    status: str = "pending"  # pending, active, completed
    start_time: Optional[str] = None
    end_time: Optional[str] = None


class Delivery(StoreModel):
    id: Optional[str] = None
    shift_id: str
    order_id: str
    status: str = "pending"  # pending, in-progress, completed, failed
    failure_reason: Optional[str] = None


class GpsUpdate(StoreModel):
    id: Optional[str] = None
    vehicle_id: str
    driver_id: Optional[str] = None
    coordinates: Coordinates
    timestamp: str


# =========================
# DERIVED / RESPONSE MODELS
# =========================
class DeliveryWithDetails(Delivery):
    order: Optional[Order] = None
    destination: Optional[Hub] = None
    product: Optional[Product] = None


class OrderDetails(StoreModel):
    order: Order
    product: Optional[Product] = None
    driver: Optional[Driver] = None
    vehicle: Optional[Vehicle] = None
    destination: Optional[Hub] = None


class ShiftSummary(Shift):
    total_deliveries: int = 0
    completed_deliveries: int = 0
    failed_deliveries: int = 0


class FleetLocation(StoreModel):
    vehicle_id: str
    vehicle_registration: str
    vehicle_type: str = ""
    driver_id: str
    driver_name: str = "Unknown Driver"
    driver_phone: str = ""
    shift_id: str
    allocation_id: Optional[str] = None
    date: str
    status: str
    coordinates: Optional[Coordinates] = None


class MapMarker(StoreModel):
    id: str  # "<kind>:<recordId>", unique across kinds
    kind: str  # vehicle, hub, terminal, delivery
    record_id: Optional[str] = None
    label: str
    coordinates: Coordinates
    status: Optional[str] = None


class RouteResult(StoreModel):
    coordinates: List[List[float]]  # [lng, lat] pairs, GeoJSON order
    distance: float  # metres
    duration: float  # seconds
    provider: str = "osrm"

    def summary(self) -> str:
        return f"{self.distance / 1000:.2f} km • ~{round(self.duration / 60)} min"


class AvailabilityEntry(StoreModel):
    id: str
    label: str
    available: bool
    allocation_id: Optional[str] = None


class Availability(StoreModel):
    date: str
    drivers: List[AvailabilityEntry] = []
    vehicles: List[AvailabilityEntry] = []


class DistributionBucket(StoreModel):
    name: str
    value: float
    color: Optional[str] = None


class DashboardMetrics(StoreModel):
    total_vehicles: int = 0
    active_vehicles: int = 0
    total_drivers: int = 0
    active_drivers: int = 0
    total_orders: int = 0
    completed_orders: int = 0
    pending_orders: int = 0
    in_transit_orders: int = 0
    total_deliveries: int = 0
    completed_deliveries: int = 0
    pending_deliveries: int = 0
    in_progress_deliveries: int = 0
    failed_deliveries: int = 0
    total_revenue: float = 0.0
    total_products_delivered: float = 0
    orders_over_time: List[Dict[str, Any]] = []
    delivery_status_distribution: List[DistributionBucket] = []
    vehicle_type_distribution: List[DistributionBucket] = []
    monthly_revenue: List[Dict[str, Any]] = []


class FleetSnapshot(StoreModel):
    locations: List[FleetLocation] = []
    last_updated: Optional[str] = None
    error: Optional[str] = None
    auto_refresh: bool = True


class MapSessionView(StoreModel):
    id: str
    state: str
    driver_id: Optional[str] = None
    markers: List[MapMarker] = []
    selected_marker_id: Optional[str] = None
    route: Optional[RouteResult] = None
    route_summary: Optional[str] = None
    eta: Optional[str] = None
    visible_path: List[List[float]] = []
    frame: int = 0
    frames: int = 0
    error: Optional[str] = None
