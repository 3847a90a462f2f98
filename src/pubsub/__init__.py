"""Topic-based broadcast of ride and driver updates."""

from .broadcaster import EventBroadcaster, InMemoryBroadcaster, Subscription
from .channels import (
    DriverEventMessage,
    RideEventMessage,
    driver_topic,
    ride_topic,
    validate_topic,
)

__all__ = [
    "DriverEventMessage",
    "EventBroadcaster",
    "InMemoryBroadcaster",
    "RideEventMessage",
    "Subscription",
    "driver_topic",
    "ride_topic",
    "validate_topic",
]
