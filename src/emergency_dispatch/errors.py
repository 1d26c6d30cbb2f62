from __future__ import annotations


class DispatchError(Exception):
    """Base class for dispatch core errors."""


class InvalidInput(DispatchError, ValueError):
    """Malformed coordinates or missing incident fields; raised before any mutation."""


class NotFound(DispatchError, KeyError):
    def __str__(self) -> str:
        return str(self.args[0]) if self.args else "not found"


class NoEligibleCandidate(DispatchError):
    def __init__(self, message: str = "No available ambulance or hospital found", incident=None) -> None:
        super().__init__(message)
        self.incident = incident


class ReservationConflict(DispatchError):
    """A concurrent incident claimed the ambulance or the last bed first."""


class CollaboratorUnavailable(DispatchError):
    """Routing or AI triage failed or timed out. Always recovered locally."""


class CapacityInvariantViolation(DispatchError):
    """A bed counter would leave its [0, total] band."""


class IllegalTransition(DispatchError):
    def __init__(self, status, event: str) -> None:
        super().__init__(f"Cannot apply '{event}' to incident in state '{getattr(status, 'value', status)}'")
        self.status = status
        self.event = event


class StaleIncident(DispatchError):
    """The stored incident moved on after this copy was loaded."""

    def __init__(self, incident_id: str, status) -> None:
        super().__init__(
            f"Incident {incident_id} was changed concurrently (now '{getattr(status, 'value', status)}')"
        )
        self.incident_id = incident_id
        self.status = status
