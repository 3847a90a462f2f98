"""Pub/sub topic naming and message schemas for ride and driver updates."""

from pydantic import BaseModel

from db.utils import utc_now
from driver import DriverAvailability
from ride import Ride

RIDE_TOPIC_PREFIX = "ride:"
DRIVER_TOPIC_PREFIX = "driver:"

# Event names
EVENT_RIDE_REQUESTED = "ride.requested"
EVENT_RIDE_STATUS_CHANGED = "ride.status_changed"
EVENT_RIDE_DRIVER_ASSIGNED = "ride.driver_assigned"
EVENT_RIDE_PAYMENT_RECORDED = "ride.payment_recorded"
EVENT_RIDE_RATED = "ride.rated"
EVENT_RIDE_DRIVER_LOCATION = "ride.driver_location"
EVENT_DRIVER_AVAILABILITY_CHANGED = "driver.availability_changed"
EVENT_DRIVER_LOCATION_UPDATED = "driver.location_updated"


def ride_topic(ride_id: str) -> str:
    return f"{RIDE_TOPIC_PREFIX}{ride_id}"


def driver_topic(driver_id: str) -> str:
    return f"{DRIVER_TOPIC_PREFIX}{driver_id}"


def validate_topic(topic: str) -> str:
    """Return topic unchanged, or raise ValueError if it names no ride or driver."""
    for prefix in (RIDE_TOPIC_PREFIX, DRIVER_TOPIC_PREFIX):
        if topic.startswith(prefix) and len(topic) > len(prefix):
            return topic
    raise ValueError(
        f"Topic '{topic}' is not valid. Expected '{RIDE_TOPIC_PREFIX}<id>' "
        f"or '{DRIVER_TOPIC_PREFIX}<id>'"
    )


class RideEventMessage(BaseModel):
    """Ride state change with enough context to render it."""

    event: str
    ride_id: str
    rider_id: str
    status: str
    previous_status: str | None = None
    driver_id: str | None = None
    proposed_driver_id: str | None = None
    fare: float | None = None
    reason: str | None = None
    driver_location: tuple[float, float] | None = None
    version: int
    timestamp: str


class DriverEventMessage(BaseModel):
    """Driver availability or position change."""

    event: str
    driver_id: str
    is_available: bool
    location: tuple[float, float] | None = None
    ride_id: str | None = None
    version: int
    timestamp: str


EventMessage = RideEventMessage | DriverEventMessage


def ride_event(
    ride: Ride,
    event: str,
    previous_status: str | None = None,
    reason: str | None = None,
    driver_location: tuple[float, float] | None = None,
) -> RideEventMessage:
    return RideEventMessage(
        event=event,
        ride_id=ride.ride_id,
        rider_id=ride.rider_id,
        status=ride.status.value,
        previous_status=previous_status,
        driver_id=ride.driver_id,
        proposed_driver_id=ride.proposed_driver_id,
        fare=ride.fare.final if ride.fare.final is not None else ride.fare.estimated,
        reason=reason,
        driver_location=driver_location,
        version=ride.version,
        timestamp=utc_now().isoformat(),
    )


def driver_event(
    driver: DriverAvailability, event: str, ride_id: str | None = None
) -> DriverEventMessage:
    return DriverEventMessage(
        event=event,
        driver_id=driver.driver_id,
        is_available=driver.is_available,
        location=driver.location.as_tuple() if driver.location else None,
        ride_id=ride_id,
        version=driver.version,
        timestamp=utc_now().isoformat(),
    )
