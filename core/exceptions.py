"""
Centralized exception hierarchy for trip tracking errors.

These exceptions are raised inside the library and carried as values in
``TripResult`` / ``PositionResult`` objects, so callers of the tracker can
inspect the failure kind without try/except around every transition.
"""


class TripTrackerError(Exception):
    """Base exception for all application-specific errors."""

    code = "error"

    def __init__(self, message: str, details: dict | None = None) -> None:
        self.message = message
        self.details = details or {}
        super().__init__(self.message)


class ValidationError(TripTrackerError):
    """Exception raised when input validation fails."""

    code = "validation_error"


class StateError(TripTrackerError):
    """Exception raised when an operation is invalid for the lifecycle state."""

    code = "state_error"


class NoActiveTripError(StateError):
    """Exception raised when an operation needs an active trip and there is none."""

    code = "no_active_trip"


class LocationError(TripTrackerError):
    """Base exception for positioning failures."""

    code = "location_error"


class LocationPermissionDenied(LocationError):
    """The user or platform refused access to the positioning source."""

    code = "permission_denied"


class LocationUnavailable(LocationError):
    """The positioning source could not produce a fix."""

    code = "position_unavailable"


class LocationTimeout(LocationError):
    """No fix was produced within the acquisition timeout."""

    code = "timeout"


class LocationUnsupported(LocationError):
    """No positioning source exists on this platform."""

    code = "unsupported"


class PersistenceError(TripTrackerError):
    """Exception raised when the durable store cannot be read or written."""

    code = "persistence_error"


class PersistenceCorruptError(PersistenceError):
    """Exception raised when a stored record fails to parse."""

    code = "persistence_corrupt"


class ExternalServiceError(TripTrackerError):
    """Exception raised when remote service calls fail."""

    code = "external_service_error"


class ResourceNotFoundError(TripTrackerError):
    """Exception raised when a requested resource is not found."""

    code = "not_found"
