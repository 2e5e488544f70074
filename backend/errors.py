from typing import Optional


class FleetOpsError(Exception):
    """Base class for every error raised by the fleet backend."""


class StoreError(FleetOpsError):
    """A call to the REST data store failed (transport error or non-2xx)."""

    def __init__(self, resource: str, message: str, status_code: Optional[int] = None):
        super().__init__(f"{resource}: {message}")
        self.resource = resource
        self.message = message
        self.status_code = status_code


class NotFoundError(StoreError):
    def __init__(self, resource: str, record_id: str):
        super().__init__(resource, f"{record_id} not found", status_code=404)
        self.record_id = record_id


class AllocationConflictError(FleetOpsError):
    """The vehicle already has a non-cancelled allocation on that date."""

    def __init__(self, conflict, message: str = "Vehicle is already allocated on this date"):
        super().__init__(message)
        self.conflict = conflict
        self.message = message


class WorkflowError(FleetOpsError):
    """Invalid shift / delivery / order transition or input."""


class RouteError(FleetOpsError):
    """Directions could not be fetched for the requested leg."""
