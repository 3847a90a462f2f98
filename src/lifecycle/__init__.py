"""Ride booking, status transitions, payment and rating."""

from .permissions import ActorRole, authorize_party, authorize_transition
from .ride_lifecycle import RideLifecycle, to_location

__all__ = [
    "ActorRole",
    "RideLifecycle",
    "authorize_party",
    "authorize_transition",
    "to_location",
]
