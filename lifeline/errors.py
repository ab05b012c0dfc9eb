from __future__ import annotations


class DispatchError(RuntimeError):
    """Base error for the dispatch core."""


class NoHospitalAvailable(DispatchError):
    """No active hospital within the search radius."""


class InvalidTransition(DispatchError):
    """Requested status is not reachable from the current one."""

    def __init__(self, current: str, requested: str) -> None:
        super().__init__(f"Cannot transition emergency from {current!r} to {requested!r}")
        self.current = current
        self.requested = requested


class ConcurrentConflict(DispatchError):
    """A conditional write lost against a concurrent writer. Retry against current state."""


class EmergencyNotFound(DispatchError):
    pass


class AmbulanceNotFound(DispatchError):
    pass


class AmbulanceAccessDenied(DispatchError):
    """Location reported by someone other than the ambulance's driver."""


class EstimationUnavailable(DispatchError):
    """Route estimate failed or timed out."""


class GeoIndexUnavailable(DispatchError):
    """Nearest-neighbour query could not reach the store."""


class NotificationDeliveryFailure(DispatchError):
    """A deliverer could not hand a notification to its channel."""
