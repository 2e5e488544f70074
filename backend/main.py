import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import Depends, FastAPI, HTTPException, Query, Request
from fastapi.encoders import jsonable_encoder
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from . import config
from . import store as resources
from .allocation import (
    availability_for_date,
    describe_conflict,
    find_vehicle_conflict,
    load_allocations,
    save_allocation,
    update_allocation,
)
from .dashboard import load_metrics
from .errors import AllocationConflictError, NotFoundError, RouteError, StoreError, WorkflowError
from .fleet import FleetTracker, GpsTracker
from .models import (
    Allocation,
    AllocationUpdate,
    Coordinates,
    Driver,
    DriverUpdate,
    Hub,
    LocationUpdate,
    Order,
    OrderUpdate,
    Product,
    ProductUpdate,
    StoreModel,
    Terminal,
    Vehicle,
    VehicleUpdate,
)
from .routing import (
    MapSessionRegistry,
    build_driver_markers,
    build_markers,
    marker_id,
    next_pending_delivery,
)
from .status import format_status_text, get_status_color
from .store import StoreClient
from .workflow import (
    complete_delivery,
    create_order,
    end_shift,
    fail_delivery,
    order_details,
    shift_deliveries_with_details,
    shift_history,
    start_shift,
    todays_shift,
    update_order,
)

logging.basicConfig(
    level=config.LOG_LEVEL,
    format="%(asctime)s %(levelname)s %(name)s %(message)s",
)
log = logging.getLogger("fleetops.api")


# =========================
# STORE DEPENDENCY
# =========================
def get_store() -> StoreClient:
    return StoreClient()


def _store_factory():
    # Background threads resolve the store the same way requests do
    return app.dependency_overrides.get(get_store, get_store)()


fleet_tracker = FleetTracker(_store_factory)
gps_tracker = GpsTracker(_store_factory)
map_sessions = MapSessionRegistry()


@asynccontextmanager
async def lifespan(app: FastAPI):
    if fleet_tracker.auto_refresh:
        fleet_tracker.start()
    yield
    fleet_tracker.stop()
    gps_tracker.stop_all()
    map_sessions.clear()
    log.info("[API] Background workers stopped")


app = FastAPI(title="Fleet Operations Backend", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=config.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# =========================
# ERROR MAPPING
# =========================
@app.exception_handler(NotFoundError)
async def not_found_handler(request: Request, exc: NotFoundError):
    return JSONResponse(status_code=404, content={"detail": exc.message})


@app.exception_handler(StoreError)
async def store_error_handler(request: Request, exc: StoreError):
    log.error("[API] %s %s: store failure: %s", request.method, request.url.path, exc)
    return JSONResponse(status_code=502, content={"detail": f"Data store error ({exc})"})


@app.exception_handler(AllocationConflictError)
async def conflict_handler(request: Request, exc: AllocationConflictError):
    return JSONResponse(status_code=409, content={
        "detail": exc.message,
        "conflict": jsonable_encoder(exc.conflict),
    })


@app.exception_handler(WorkflowError)
async def workflow_error_handler(request: Request, exc: WorkflowError):
    return JSONResponse(status_code=400, content={"detail": str(exc)})


@app.exception_handler(RouteError)
async def route_error_handler(request: Request, exc: RouteError):
    return JSONResponse(status_code=502, content={"detail": str(exc)})


# =========================
# MASTER DATA
# =========================
# Hubs, terminals, products, drivers and vehicles are plain records: list,
# fetch, create, replace, patch and delete against the store.

def register_master_data(path: str, resource: str, model, update_model, label: str):
    @app.get(f"/{path}", name=f"list_{path}")
    def list_records(store: StoreClient = Depends(get_store)):
        return [model(**r) for r in store.list(resource)]

    @app.get(f"/{path}/{{record_id}}", name=f"get_{path}")
    def get_record(record_id: str, store: StoreClient = Depends(get_store)):
        return model(**store.get(resource, record_id))

    @app.post(f"/{path}", status_code=201, name=f"create_{path}")
    def create_record(data: model, store: StoreClient = Depends(get_store)):
        created = model(**store.create(resource, data.to_store()))
        log.info("[MASTER] Created %s %s", label.lower(), created.id)
        return created

    @app.put(f"/{path}/{{record_id}}", name=f"replace_{path}")
    def replace_record(record_id: str, data: model, store: StoreClient = Depends(get_store)):
        payload = data.to_store()
        payload["id"] = record_id
        return model(**store.replace(resource, record_id, payload))

    @app.patch(f"/{path}/{{record_id}}", name=f"update_{path}")
    def update_record(record_id: str, changes: update_model,
                      store: StoreClient = Depends(get_store)):
        return model(**store.update(resource, record_id, changes.to_store()))

    @app.delete(f"/{path}/{{record_id}}", name=f"delete_{path}")
    def delete_record(record_id: str, store: StoreClient = Depends(get_store)):
        store.delete(resource, record_id)
        log.info("[MASTER] Deleted %s %s", label.lower(), record_id)
        return {"message": f"{label} {record_id} deleted"}


register_master_data("hubs", resources.HUBS, Hub, LocationUpdate, "Hub")
register_master_data("terminals", resources.TERMINALS, Terminal, LocationUpdate, "Terminal")
register_master_data("products", resources.PRODUCTS, Product, ProductUpdate, "Product")
register_master_data("drivers", resources.DRIVERS, Driver, DriverUpdate, "Driver")
register_master_data("vehicles", resources.VEHICLES, Vehicle, VehicleUpdate, "Vehicle")


# =========================
# ALLOCATIONS
# =========================
@app.get("/allocations")
def list_allocations(date: Optional[str] = None, store: StoreClient = Depends(get_store)):
    return [Allocation(**a) for a in store.list(resources.ALLOCATIONS, date=date)]


@app.get("/allocations/conflict")
def check_conflict(vehicle_id: str = Query(..., alias="vehicleId"),
                   date: str = Query(...),
                   exclude_id: Optional[str] = Query(None, alias="excludeId"),
                   store: StoreClient = Depends(get_store)):
    booked = [Allocation(**a) for a in store.vehicle_allocations(vehicle_id, date)]
    conflict = find_vehicle_conflict(vehicle_id, date, booked, exclude_id)
    if conflict is None:
        return {"conflict": False, "allocation": None, "message": None}
    return {
        "conflict": True,
        "allocation": conflict,
        "message": describe_conflict(store, conflict),
    }


@app.get("/allocations/availability")
def get_availability(date: str, store: StoreClient = Depends(get_store)):
    return availability_for_date(
        date,
        [Driver(**d) for d in store.list(resources.DRIVERS)],
        [Vehicle(**v) for v in store.list(resources.VEHICLES)],
        load_allocations(store),
    )


@app.post("/allocations", status_code=201)
def create_allocation(data: Allocation, store: StoreClient = Depends(get_store)):
    saved, warnings = save_allocation(store, data)
    return {"allocation": saved, "warnings": warnings}


@app.patch("/allocations/{allocation_id}")
def patch_allocation(allocation_id: str, changes: AllocationUpdate,
                     store: StoreClient = Depends(get_store)):
    saved, warnings = update_allocation(store, allocation_id, changes)
    return {"allocation": saved, "warnings": warnings}


@app.delete("/allocations/{allocation_id}")
def delete_allocation(allocation_id: str, store: StoreClient = Depends(get_store)):
    store.delete(resources.ALLOCATIONS, allocation_id)
    return {"message": f"Allocation {allocation_id} deleted"}


# =========================
# ORDERS
# =========================
@app.get("/orders")
def list_orders(status: Optional[str] = None,
                driver_id: Optional[str] = Query(None, alias="driverId"),
                store: StoreClient = Depends(get_store)):
    return [
        Order(**o)
        for o in store.list(resources.ORDERS, status=status, assignedDriverId=driver_id)
    ]


@app.get("/orders/{order_id}")
def get_order(order_id: str, store: StoreClient = Depends(get_store)):
    return order_details(store, order_id)


@app.post("/orders", status_code=201)
def post_order(data: Order, store: StoreClient = Depends(get_store)):
    order, shift, delivery = create_order(store, data)
    return {"order": order, "shift": shift, "delivery": delivery}


@app.patch("/orders/{order_id}")
def patch_order(order_id: str, changes: OrderUpdate, store: StoreClient = Depends(get_store)):
    order, shift, delivery = update_order(store, order_id, changes)
    return {"order": order, "shift": shift, "delivery": delivery}


@app.delete("/orders/{order_id}")
def delete_order(order_id: str, store: StoreClient = Depends(get_store)):
    store.delete(resources.ORDERS, order_id)
    return {"message": f"Order {order_id} deleted"}


# =========================
# DRIVER WORKFLOW
# =========================
class FailureRequest(StoreModel):
    reason: str = ""


@app.get("/drivers/{driver_id}/shifts/today")
def get_todays_shift(driver_id: str, store: StoreClient = Depends(get_store)):
    shift = todays_shift(store, driver_id)
    deliveries = shift_deliveries_with_details(store, shift.id) if shift else []
    return {"shift": shift, "deliveries": deliveries}


@app.get("/drivers/{driver_id}/shifts/history")
def get_shift_history(driver_id: str, store: StoreClient = Depends(get_store)):
    return shift_history(store, driver_id)


@app.post("/shifts/{shift_id}/start")
def post_start_shift(shift_id: str, store: StoreClient = Depends(get_store)):
    return start_shift(store, shift_id)


@app.post("/shifts/{shift_id}/end")
def post_end_shift(shift_id: str, store: StoreClient = Depends(get_store)):
    shift, failed = end_shift(store, shift_id)
    gps_tracker.stop(shift.vehicle_id)
    return {"shift": shift, "failedDeliveries": failed}


@app.get("/shifts/{shift_id}/deliveries")
def get_shift_deliveries(shift_id: str, store: StoreClient = Depends(get_store)):
    return shift_deliveries_with_details(store, shift_id)


@app.post("/deliveries/{delivery_id}/complete")
def post_complete_delivery(delivery_id: str, store: StoreClient = Depends(get_store)):
    return complete_delivery(store, delivery_id)


@app.post("/deliveries/{delivery_id}/fail")
def post_fail_delivery(delivery_id: str, request: FailureRequest,
                       store: StoreClient = Depends(get_store)):
    return fail_delivery(store, delivery_id, request.reason)


# =========================
# FLEET TRACKING
# =========================
class GpsRequest(StoreModel):
    driver_id: Optional[str] = None
    coordinates: Coordinates


@app.get("/fleet/locations")
def get_fleet_locations(driver_id: Optional[str] = Query(None, alias="driverId"),
                        vehicle_id: Optional[str] = Query(None, alias="vehicleId"),
                        status: Optional[str] = None):
    if fleet_tracker.last_updated is None:
        # Nothing cached yet: first caller pays for the fetch
        fleet_tracker.refresh()
    return fleet_tracker.snapshot(driver_id, vehicle_id, status)


@app.post("/fleet/refresh")
def refresh_fleet():
    fleet_tracker.refresh()
    return fleet_tracker.snapshot()


@app.post("/fleet/auto-refresh")
def set_fleet_auto_refresh(enabled: bool):
    fleet_tracker.set_auto_refresh(enabled)
    if enabled:
        fleet_tracker.start()
    else:
        fleet_tracker.stop()
    return {"autoRefresh": enabled, "interval": fleet_tracker.interval}


@app.post("/gps/{vehicle_id}")
def post_gps_update(vehicle_id: str, request: GpsRequest):
    # keep a running tracker in step with the manual position
    gps_tracker.set_location(vehicle_id, request.coordinates)
    return gps_tracker.send_update(vehicle_id, request.driver_id, request.coordinates)


@app.post("/gps/{vehicle_id}/start")
def start_gps(vehicle_id: str, request: GpsRequest):
    first = gps_tracker.start(vehicle_id, request.driver_id, request.coordinates)
    return {"message": f"Tracking vehicle {vehicle_id}", "interval": gps_tracker.interval,
            "update": first}


@app.post("/gps/{vehicle_id}/stop")
def stop_gps(vehicle_id: str):
    if not gps_tracker.stop(vehicle_id):
        raise HTTPException(status_code=404, detail="Vehicle is not being tracked")
    return {"message": f"Stopped tracking vehicle {vehicle_id}"}


# =========================
# LIVE MAP
# =========================
class RouteRequest(StoreModel):
    origin_id: Optional[str] = None
    destination_id: Optional[str] = None
    origin: Optional[Coordinates] = None
    destination: Optional[Coordinates] = None


def _session_or_404(session_id: str):
    session = map_sessions.get(session_id)
    if session is None:
        raise HTTPException(status_code=404, detail="Map session not found")
    return session


def _current_markers(store: StoreClient):
    if fleet_tracker.last_updated is None:
        fleet_tracker.refresh()
    return build_markers(
        fleet_tracker.snapshot().locations,
        [Hub(**h) for h in store.list(resources.HUBS)],
        [Terminal(**t) for t in store.list(resources.TERMINALS)],
    )


def _driver_map(store: StoreClient, driver_id: str):
    """Today's shift vehicle and deliveries for one driver's map."""
    shift = todays_shift(store, driver_id)
    if shift is None:
        raise HTTPException(status_code=404, detail="No shift found for today")
    try:
        vehicle = Vehicle(**store.get(resources.VEHICLES, shift.vehicle_id))
    except NotFoundError:
        log.warning("[MAP] Vehicle %s of shift %s not found", shift.vehicle_id, shift.id)
        vehicle = None
    return vehicle, shift_deliveries_with_details(store, shift.id)


@app.post("/map/sessions", status_code=201)
def create_map_session(driver_id: Optional[str] = Query(None, alias="driverId"),
                       store: StoreClient = Depends(get_store)):
    """
    Open a live map.

    Without driverId this is the fleet map (every tracked vehicle, hub and
    terminal). With driverId it is that driver's map: their vehicle and
    today's delivery destinations, with the route from the vehicle to the
    next pending delivery requested straight away. A failed route leaves the
    session open with the error recorded.
    """
    if driver_id is None:
        markers = _current_markers(store)
        session = map_sessions.create()
        session.render_markers(markers)
        log.info("[MAP] Session %s opened with %d markers", session.id, len(markers))
        return session.view()

    vehicle, deliveries = _driver_map(store, driver_id)
    session = map_sessions.create(driver_id=driver_id)
    session.render_markers(build_driver_markers(vehicle, deliveries))
    log.info("[MAP] Session %s opened for driver %s with %d deliveries",
             session.id, driver_id, len(deliveries))

    target = next_pending_delivery(deliveries)
    if vehicle is not None and vehicle.current_location is not None and target is not None:
        session.select_marker(marker_id("delivery", target.id))
        try:
            session.request_route(vehicle.current_location, target.destination.coordinates)
        except RouteError as e:
            log.warning("[MAP] Session %s route to next delivery failed: %s", session.id, e)
    return session.view()


@app.get("/map/sessions/{session_id}")
def get_map_session(session_id: str):
    return _session_or_404(session_id).view()


@app.post("/map/sessions/{session_id}/markers")
def refresh_map_markers(session_id: str, store: StoreClient = Depends(get_store)):
    session = _session_or_404(session_id)
    if session.driver_id:
        session.render_markers(build_driver_markers(*_driver_map(store, session.driver_id)))
    else:
        session.render_markers(_current_markers(store))
    return session.view()


@app.post("/map/sessions/{session_id}/route")
def request_map_route(session_id: str, request: RouteRequest):
    session = _session_or_404(session_id)

    def resolve(marker_id: Optional[str], coordinates: Optional[Coordinates], end: str):
        if coordinates is not None:
            return coordinates
        if marker_id:
            marker = session.select_marker(marker_id)
            if marker is None:
                raise HTTPException(status_code=404, detail=f"Marker {marker_id} not found")
            return marker.coordinates
        raise HTTPException(status_code=400, detail=f"Route {end} is required")

    origin = resolve(request.origin_id, request.origin, "origin")
    destination = resolve(request.destination_id, request.destination, "destination")
    session.request_route(origin, destination)
    return session.view()


@app.post("/map/sessions/{session_id}/tick")
def tick_map_session(session_id: str):
    session = _session_or_404(session_id)
    session.tick()
    return session.view()


@app.post("/map/sessions/{session_id}/close-popup")
def close_map_popup(session_id: str):
    session = _session_or_404(session_id)
    session.close_popup()
    return session.view()


@app.delete("/map/sessions/{session_id}")
def delete_map_session(session_id: str):
    if not map_sessions.remove(session_id):
        raise HTTPException(status_code=404, detail="Map session not found")
    return {"message": f"Map session {session_id} closed"}


# =========================
# HELPERS
# =========================
@app.get("/status/{status}")
def describe_status(status: str):
    return {"status": status, "color": get_status_color(status), "label": format_status_text(status)}


@app.get("/dashboard")
def get_dashboard(store: StoreClient = Depends(get_store)):
    return load_metrics(store)


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
