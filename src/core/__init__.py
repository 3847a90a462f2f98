"""Cross-cutting primitives: errors, retry and correlation."""

from .correlation import CorrelationFilter, get_current_correlation_id, with_correlation
from .exceptions import (
    ActiveRideExists,
    AssignmentConflict,
    DispatchError,
    DriverAlreadyActive,
    DriverNotFound,
    Forbidden,
    InternalError,
    InvalidCoordinates,
    InvalidTransition,
    PersistenceError,
    RideNotCompleted,
    RideNotFound,
    TransientError,
)
from .retry import RetryConfig, with_retry_sync

__all__ = [
    "ActiveRideExists",
    "AssignmentConflict",
    "CorrelationFilter",
    "DispatchError",
    "DriverAlreadyActive",
    "DriverNotFound",
    "Forbidden",
    "InternalError",
    "InvalidCoordinates",
    "InvalidTransition",
    "PersistenceError",
    "RetryConfig",
    "RideNotCompleted",
    "RideNotFound",
    "TransientError",
    "get_current_correlation_id",
    "with_correlation",
    "with_retry_sync",
]
