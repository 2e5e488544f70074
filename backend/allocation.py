import logging
from typing import Dict, List, Optional, Tuple

from . import store as resources
from .errors import AllocationConflictError, StoreError, WorkflowError
from .models import (
    Allocation,
    AllocationUpdate,
    Availability,
    AvailabilityEntry,
    Driver,
    Vehicle,
)

log = logging.getLogger("fleetops.allocation")

# =========================
# DOUBLE-BOOKING CHECK
# =========================
# One non-cancelled allocation per (vehicle, date). The check is a linear scan
# over a list fetched right before the write; the store does not enforce it, so
# two clients writing at the same time can still double-book a vehicle.

CANCELLED = "cancelled"


def _is_live(allocation: Allocation) -> bool:
    return allocation.status != CANCELLED


def find_vehicle_conflict(vehicle_id: str, date: str, allocations: List[Allocation],
                          exclude_id: Optional[str] = None) -> Optional[Allocation]:
    """Existing non-cancelled allocation holding the vehicle on that date, if any."""
    return next(
        (
            a for a in allocations
            if a.vehicle_id == vehicle_id
            and a.date == date
            and a.id != exclude_id
            and _is_live(a)
        ),
        None,
    )


def has_vehicle_conflict(vehicle_id: str, date: str, allocations: List[Allocation],
                         exclude_id: Optional[str] = None) -> bool:
    return find_vehicle_conflict(vehicle_id, date, allocations, exclude_id) is not None


def find_driver_allocation(driver_id: str, date: str, allocations: List[Allocation],
                           exclude_id: Optional[str] = None) -> Optional[Allocation]:
    """The allocation giving a driver a vehicle on that date."""
    return next(
        (
            a for a in allocations
            if a.driver_id == driver_id
            and a.date == date
            and a.id != exclude_id
            and _is_live(a)
        ),
        None,
    )


def availability_for_date(date: str, drivers: List[Driver], vehicles: List[Vehicle],
                          allocations: List[Allocation]) -> Availability:
    """Which drivers and vehicles are still free on a date (display only)."""
    booked_drivers: Dict[str, str] = {}
    booked_vehicles: Dict[str, str] = {}
    for a in allocations:
        if a.date != date or not _is_live(a):
            continue
        booked_drivers.setdefault(a.driver_id, a.id)
        booked_vehicles.setdefault(a.vehicle_id, a.id)

    return Availability(
        date=date,
        drivers=[
            AvailabilityEntry(
                id=d.id,
                label=d.name,
                available=d.id not in booked_drivers,
                allocation_id=booked_drivers.get(d.id),
            )
            for d in drivers
        ],
        vehicles=[
            AvailabilityEntry(
                id=v.id,
                label=v.registration,
                available=v.id not in booked_vehicles,
                allocation_id=booked_vehicles.get(v.id),
            )
            for v in vehicles
        ],
    )


def load_allocations(store) -> List[Allocation]:
    return [Allocation(**a) for a in store.list(resources.ALLOCATIONS)]


def describe_conflict(store, conflict: Allocation) -> str:
    """'TN01AB1234 is already allocated to John Doe on this date.'"""
    try:
        vehicle = store.get(resources.VEHICLES, conflict.vehicle_id)
        registration = vehicle.get("registration") or "Unknown Vehicle"
    except StoreError:
        registration = "Unknown Vehicle"
    try:
        driver = store.get(resources.DRIVERS, conflict.driver_id)
        driver_name = driver.get("name") or "Unknown Driver"
    except StoreError:
        driver_name = "Unknown Driver"
    return f"{registration} is already allocated to {driver_name} on this date."


# =========================
# SAVE
# =========================
def save_allocation(store, data: Allocation, allocation_id: Optional[str] = None
                    ) -> Tuple[Allocation, List[str]]:
    """
    Create (allocation_id is None) or update an allocation.

    RULES:
    1. date, vehicleId and driverId are required
    2. Vehicle double booking blocks the write (AllocationConflictError)
    3. Driver double booking is only reported back as a warning

    Returns the saved allocation and any warnings.
    """
    if not data.date:
        raise WorkflowError("Please select a date")
    if not data.vehicle_id:
        raise WorkflowError("Please select a vehicle")
    if not data.driver_id:
        raise WorkflowError("Please select a driver")

    allocations = load_allocations(store)

    warnings: List[str] = []
    if _is_live(data):
        conflict = find_vehicle_conflict(data.vehicle_id, data.date, allocations, allocation_id)
        if conflict:
            log.info("[ALLOCATION] Vehicle %s already allocated on %s (allocation %s)",
                     data.vehicle_id, data.date, conflict.id)
            raise AllocationConflictError(conflict, describe_conflict(store, conflict))

        driver_booking = find_driver_allocation(data.driver_id, data.date, allocations, allocation_id)
        if driver_booking:
            warnings.append(
                f"Driver already has allocation {driver_booking.id} on {data.date}"
            )

    if allocation_id is None:
        saved = Allocation(**store.create(resources.ALLOCATIONS, data.to_store()))
        log.info("[ALLOCATION] Created %s: vehicle %s -> driver %s on %s",
                 saved.id, saved.vehicle_id, saved.driver_id, saved.date)
    else:
        saved = Allocation(**store.update(resources.ALLOCATIONS, allocation_id, data.to_store()))
        log.info("[ALLOCATION] Updated %s", allocation_id)
    return saved, warnings


def update_allocation(store, allocation_id: str, changes: AllocationUpdate
                      ) -> Tuple[Allocation, List[str]]:
    """PATCH semantics: merge the changes onto the stored record, then re-check."""
    current = Allocation(**store.get(resources.ALLOCATIONS, allocation_id))
    merged = current.model_copy(update=changes.model_dump(exclude_unset=True))
    return save_allocation(store, merged, allocation_id)
