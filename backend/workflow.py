import logging
from datetime import date, datetime, timezone
from typing import List, Optional, Tuple

from . import store as resources
from .allocation import find_driver_allocation, load_allocations
from .errors import NotFoundError, WorkflowError
from .models import (
    Delivery,
    DeliveryWithDetails,
    Driver,
    Hub,
    Order,
    OrderDetails,
    OrderUpdate,
    Product,
    ProductLine,
    Shift,
    ShiftSummary,
    Terminal,
    Vehicle,
)

log = logging.getLogger("fleetops.workflow")

SHIFT_ENDED_REASON = "Shift ended without completion"
OPEN_DELIVERY_STATUSES = ("pending", "in-progress")


def today_str() -> str:
    return date.today().isoformat()


def now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _load(store, resource: str, model, **filters) -> list:
    return [model(**record) for record in store.list(resource, **filters)]


# =========================
# ORDER -> SHIFT -> DELIVERY
# =========================
# Four sequential store writes with no transaction around them. If one fails
# the exception propagates and whatever was already written stays written.

def sync_order_delivery(store, order: Order) -> Tuple[Optional[Shift], Optional[Delivery]]:
    """
    Link an order to its driver's shift for the delivery date.

    1. Look up the driver's allocation for that date (none -> nothing to do)
    2. Find or create the Shift for (driver, vehicle, date)
    3. Find or create the Delivery for (order, shift)
    4. Backfill allocation.shiftId if it is still empty

    Safe to call again with the same order: existing shift and delivery are
    reused, never duplicated.
    """
    if not order.assigned_driver_id or not order.delivery_date:
        return None, None

    allocation = find_driver_allocation(
        order.assigned_driver_id, order.delivery_date, load_allocations(store)
    )
    if allocation is None:
        log.info("[SHIFT] Driver %s has no vehicle allocated on %s - order %s left unscheduled",
                 order.assigned_driver_id, order.delivery_date, order.id)
        return None, None

    if order.vehicle_id != allocation.vehicle_id:
        store.update(resources.ORDERS, order.id, {"vehicleId": allocation.vehicle_id})
        order.vehicle_id = allocation.vehicle_id

    shifts = _load(store, resources.SHIFTS, Shift,
                   driverId=allocation.driver_id, date=allocation.date)
    shift = next(
        (
            s for s in shifts
            if s.driver_id == allocation.driver_id
            and s.vehicle_id == allocation.vehicle_id
            and s.date == allocation.date
        ),
        None,
    )
    if shift is None:
        shift = Shift(**store.create(resources.SHIFTS, Shift(
            driver_id=allocation.driver_id,
            vehicle_id=allocation.vehicle_id,
            date=allocation.date,
            status="pending",
        ).to_store()))
        log.info("[SHIFT] Created shift %s for driver %s, vehicle %s on %s",
                 shift.id, shift.driver_id, shift.vehicle_id, shift.date)

    deliveries = _load(store, resources.DELIVERIES, Delivery, orderId=order.id)
    delivery = next(
        (d for d in deliveries if d.order_id == order.id and d.shift_id == shift.id),
        None,
    )
    if delivery is None:
        delivery = Delivery(**store.create(resources.DELIVERIES, Delivery(
            shift_id=shift.id,
            order_id=order.id,
            status="pending",
        ).to_store()))
        log.info("[DELIVERY] Created delivery %s for order %s on shift %s",
                 delivery.id, order.id, shift.id)

    if not allocation.shift_id:
        store.update(resources.ALLOCATIONS, allocation.id, {"shiftId": shift.id})

    return shift, delivery


def _check_order(order: Order):
    if not order.destination_id:
        raise WorkflowError("Please select a destination")
    if not order.product_id:
        raise WorkflowError("Please select a product")
    if order.quantity <= 0:
        raise WorkflowError("Please enter a valid quantity")
    if not order.delivery_date:
        raise WorkflowError("Please select a delivery date")


def create_order(store, data: Order) -> Tuple[Order, Optional[Shift], Optional[Delivery]]:
    _check_order(data)
    order = Order(**store.create(resources.ORDERS, data.to_store()))
    log.info("[ORDER] Created order %s for destination %s", order.id, order.destination_id)
    shift, delivery = sync_order_delivery(store, order)
    return order, shift, delivery


def update_order(store, order_id: str, changes: OrderUpdate
                 ) -> Tuple[Order, Optional[Shift], Optional[Delivery]]:
    if changes.quantity is not None and changes.quantity <= 0:
        raise WorkflowError("Please enter a valid quantity")
    order = Order(**store.update(resources.ORDERS, order_id, changes.to_store()))
    log.info("[ORDER] Updated order %s", order_id)
    shift, delivery = sync_order_delivery(store, order)
    return order, shift, delivery


# =========================
# SHIFT LIFECYCLE
# =========================
def start_shift(store, shift_id: str, now: Optional[str] = None) -> Shift:
    shift = Shift(**store.get(resources.SHIFTS, shift_id))
    if shift.status != "pending":
        raise WorkflowError(f"Only pending shifts can be started (shift is {shift.status})")
    updated = Shift(**store.update(resources.SHIFTS, shift_id, {
        "status": "active",
        "startTime": now or now_iso(),
    }))
    log.info("[SHIFT] Shift %s started by driver %s", shift_id, shift.driver_id)
    return updated


def end_shift(store, shift_id: str, now: Optional[str] = None) -> Tuple[Shift, List[Delivery]]:
    """
    Close a shift. Every delivery still pending or in progress is marked
    failed with SHIFT_ENDED_REASON, then the shift becomes completed.

    Returns the closed shift and the deliveries that were failed.
    """
    shift = Shift(**store.get(resources.SHIFTS, shift_id))
    if shift.status == "completed":
        raise WorkflowError("Shift is already completed")

    failed = []
    for delivery in _load(store, resources.DELIVERIES, Delivery, shiftId=shift_id):
        if delivery.shift_id != shift_id or delivery.status not in OPEN_DELIVERY_STATUSES:
            continue
        failed.append(Delivery(**store.update(resources.DELIVERIES, delivery.id, {
            "status": "failed",
            "failureReason": SHIFT_ENDED_REASON,
        })))

    closed = Shift(**store.update(resources.SHIFTS, shift_id, {
        "status": "completed",
        "endTime": now or now_iso(),
    }))
    log.info("[SHIFT] Shift %s ended, %d open deliveries failed", shift_id, len(failed))
    return closed, failed


# =========================
# DELIVERY LIFECYCLE
# =========================
def _open_delivery(store, delivery_id: str) -> Delivery:
    delivery = Delivery(**store.get(resources.DELIVERIES, delivery_id))
    if delivery.status not in OPEN_DELIVERY_STATUSES:
        raise WorkflowError(f"Delivery {delivery_id} is already {delivery.status}")
    return delivery


def find_destination(store, destination_id: str) -> Tuple[str, Hub]:
    """Orders point at a terminal or a hub; terminals are checked first."""
    try:
        return resources.TERMINALS, Terminal(**store.get(resources.TERMINALS, destination_id))
    except NotFoundError:
        return resources.HUBS, Hub(**store.get(resources.HUBS, destination_id))


def complete_delivery(store, delivery_id: str) -> Delivery:
    """
    Mark a delivery and its order completed, then book the goods in at the
    destination.

    Everything is read before anything is written, so a failed lookup leaves
    the delivery open for another attempt. The destination's product list is
    then updated (line incremented or appended) and written back whole
    (read-modify-write with no concurrency guard). The product's central
    stockQuantity drops by the same amount floored at zero. The delivery and
    order are marked completed last.
    """
    delivery = _open_delivery(store, delivery_id)
    order = Order(**store.get(resources.ORDERS, delivery.order_id))
    try:
        product = Product(**store.get(resources.PRODUCTS, order.product_id))
    except NotFoundError:
        product = None
    resource, destination = find_destination(store, order.destination_id)

    lines = list(destination.products)
    line = next((p for p in lines if p.product_id == order.product_id), None)
    if line is not None:
        line.quantity += order.quantity
    else:
        lines.append(ProductLine(
            product_id=order.product_id,
            product_name=product.name if product else "",
            quantity=order.quantity,
        ))
    store.update(resource, destination.id, {"products": [p.to_store() for p in lines]})

    if product is not None:
        store.update(resources.PRODUCTS, product.id, {
            "stockQuantity": max(0, product.stock_quantity - order.quantity),
        })

    updated = Delivery(**store.update(resources.DELIVERIES, delivery_id, {
        "status": "completed",
        "failureReason": None,
    }))
    store.update(resources.ORDERS, order.id, {"status": "completed"})

    log.info("[DELIVERY] Delivery %s completed: %s x %s booked in at %s",
             delivery_id, order.quantity, order.product_id, destination.id)
    return updated


def fail_delivery(store, delivery_id: str, reason: str) -> Delivery:
    """Mark a delivery failed with a reason and cancel its order."""
    if not reason or not reason.strip():
        raise WorkflowError("Please provide a failure reason")
    delivery = _open_delivery(store, delivery_id)

    updated = Delivery(**store.update(resources.DELIVERIES, delivery_id, {
        "status": "failed",
        "failureReason": reason.strip(),
    }))
    store.update(resources.ORDERS, delivery.order_id, {"status": "cancelled"})
    log.info("[DELIVERY] Delivery %s failed: %s", delivery_id, reason.strip())
    return updated


# =========================
# DRIVER VIEWS
# =========================
def todays_shift(store, driver_id: str, today: Optional[str] = None) -> Optional[Shift]:
    today = today or today_str()
    return next(
        (s for s in _load(store, resources.SHIFTS, Shift, driverId=driver_id)
         if s.driver_id == driver_id and s.date == today),
        None,
    )


def shift_deliveries_with_details(store, shift_id: str) -> List[DeliveryWithDetails]:
    deliveries = [
        d for d in _load(store, resources.DELIVERIES, Delivery, shiftId=shift_id)
        if d.shift_id == shift_id
    ]
    if not deliveries:
        return []

    orders = {o.id: o for o in _load(store, resources.ORDERS, Order)}
    destinations = {h.id: h for h in _load(store, resources.HUBS, Hub)}
    destinations.update({t.id: t for t in _load(store, resources.TERMINALS, Terminal)})
    products = {p.id: p for p in _load(store, resources.PRODUCTS, Product)}

    enriched = []
    for delivery in deliveries:
        order = orders.get(delivery.order_id)
        enriched.append(DeliveryWithDetails(
            **delivery.model_dump(),
            order=order,
            destination=destinations.get(order.destination_id) if order else None,
            product=products.get(order.product_id) if order else None,
        ))
    return enriched


def shift_history(store, driver_id: str) -> List[ShiftSummary]:
    """Driver's shifts, newest first, with delivery outcome counts."""
    shifts = [
        s for s in _load(store, resources.SHIFTS, Shift, driverId=driver_id)
        if s.driver_id == driver_id
    ]
    shifts.sort(key=lambda s: s.date, reverse=True)

    deliveries = _load(store, resources.DELIVERIES, Delivery)
    history = []
    for shift in shifts:
        own = [d for d in deliveries if d.shift_id == shift.id]
        history.append(ShiftSummary(
            **shift.model_dump(),
            total_deliveries=len(own),
            completed_deliveries=sum(1 for d in own if d.status == "completed"),
            failed_deliveries=sum(1 for d in own if d.status == "failed"),
        ))
    return history


def order_details(store, order_id: str) -> OrderDetails:
    """Order joined with its product, driver, vehicle and destination."""
    order = Order(**store.get(resources.ORDERS, order_id))

    def lookup(resource, model, record_id):
        if not record_id:
            return None
        try:
            return model(**store.get(resource, record_id))
        except NotFoundError:
            return None

    try:
        _, destination = find_destination(store, order.destination_id)
    except NotFoundError:
        destination = None

    return OrderDetails(
        order=order,
        product=lookup(resources.PRODUCTS, Product, order.product_id),
        driver=lookup(resources.DRIVERS, Driver, order.assigned_driver_id),
        vehicle=lookup(resources.VEHICLES, Vehicle, order.vehicle_id),
        destination=destination,
    )
