"""Standardized exception hierarchy for the dispatch engine.

Every error the engine surfaces to callers carries a stable ``code`` so the
transport layer can map it to a response without inspecting messages.
"""

from typing import Any, ClassVar


class DispatchError(Exception):
    """Base exception for all dispatch engine errors."""

    code: ClassVar[str] = "DISPATCH_ERROR"

    def __init__(self, message: str, details: dict[str, Any] | None = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> dict[str, Any]:
        return {"code": self.code, "message": self.message, "details": self.details}


class TransientError(DispatchError):
    """Errors that may succeed on retry."""

    code = "TRANSIENT_ERROR"


class NetworkError(TransientError):
    """Network-related transient errors (timeout, connection refused)."""

    code = "NETWORK_ERROR"


class PersistenceError(TransientError):
    """Storage backend timed out, was locked, or lost its connection."""

    code = "PERSISTENCE_ERROR"


class PermanentError(DispatchError):
    """Errors that will not succeed on retry."""

    code = "PERMANENT_ERROR"


class ValidationError(PermanentError):
    """Invalid input or data format."""

    code = "VALIDATION_ERROR"


class InvalidCoordinates(ValidationError):
    """Longitude/latitude outside WGS84 ranges or malformed."""

    code = "INVALID_COORDINATES"


class FareInputError(ValidationError, ValueError):
    """Distance, duration or surge multiplier outside accepted bounds."""

    code = "INVALID_FARE_INPUT"


class InvalidRadius(ValidationError, ValueError):
    """Search radius outside the configured bounds."""

    code = "INVALID_RADIUS"


class NotFoundError(PermanentError):
    """Requested entity does not exist."""

    code = "NOT_FOUND"


class RideNotFound(NotFoundError):
    code = "RIDE_NOT_FOUND"


class DriverNotFound(NotFoundError):
    code = "DRIVER_NOT_FOUND"


class StateError(PermanentError):
    """Operation not allowed in the entity's current state."""

    code = "STATE_ERROR"


class InvalidTransition(StateError):
    """Requested status is not reachable from the ride's current status."""

    code = "INVALID_TRANSITION"


class AssignmentConflict(StateError):
    """Lost the accept race, or the ride/driver is no longer open."""

    code = "ASSIGNMENT_CONFLICT"


class ActiveRideExists(StateError):
    """Rider already has a non-terminal ride."""

    code = "ACTIVE_RIDE_EXISTS"


class DriverAlreadyActive(StateError):
    """Driver is already bound to a non-terminal ride."""

    code = "DRIVER_ALREADY_ACTIVE"


class RideNotCompleted(StateError):
    """Payment or rating written before the ride completed."""

    code = "RIDE_NOT_COMPLETED"


class RatingAlreadyExists(StateError):
    code = "RATING_ALREADY_EXISTS"


class AuthorizationError(PermanentError):
    code = "AUTHORIZATION_ERROR"


class Forbidden(AuthorizationError):
    """Actor is not a party to the ride or lacks the role for the transition."""

    code = "FORBIDDEN"


class ConfigurationError(PermanentError):
    """Missing or invalid configuration."""

    code = "CONFIGURATION_ERROR"


class InternalError(DispatchError):
    """Unexpected failure, fatal to the individual call only."""

    code = "INTERNAL_ERROR"
