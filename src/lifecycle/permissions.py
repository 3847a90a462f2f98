"""Who may request which status change."""

from enum import Enum

from core.exceptions import Forbidden
from ride import Ride, RideStatus


class ActorRole(str, Enum):
    RIDER = "rider"
    DRIVER = "driver"
    ADMIN = "admin"
    SYSTEM = "system"


ALLOWED_ROLES: dict[RideStatus, frozenset[ActorRole]] = {
    RideStatus.MATCHED: frozenset({ActorRole.SYSTEM}),
    RideStatus.ACCEPTED: frozenset({ActorRole.DRIVER}),
    RideStatus.IN_PROGRESS: frozenset({ActorRole.DRIVER}),
    RideStatus.COMPLETED: frozenset({ActorRole.DRIVER}),
    RideStatus.CANCELLED: frozenset({ActorRole.RIDER, ActorRole.DRIVER, ActorRole.ADMIN}),
}


def role_of(
    ride: Ride, actor_id: str, is_admin: bool = False, is_system: bool = False
) -> ActorRole | None:
    """Role the actor plays on this ride, or None if it is not a party.

    System authority comes only from the caller's flag, never from the id.
    """
    if is_system:
        return ActorRole.SYSTEM
    if actor_id == ride.rider_id:
        return ActorRole.RIDER
    if ride.driver_id is not None and actor_id == ride.driver_id:
        return ActorRole.DRIVER
    if is_admin:
        return ActorRole.ADMIN
    return None


def authorize_transition(
    ride: Ride,
    actor_id: str,
    new_status: RideStatus,
    is_admin: bool = False,
    is_system: bool = False,
) -> ActorRole:
    """Return the actor's role, or raise Forbidden.

    Accepting is checked separately: the accepting driver is not yet bound
    to the ride, so any driver may request it.
    """
    if new_status == RideStatus.ACCEPTED and not is_system:
        return ActorRole.DRIVER

    role = role_of(ride, actor_id, is_admin, is_system)
    if role is None:
        raise Forbidden(
            "Actor is not a party to this ride",
            {"ride_id": ride.ride_id, "actor_id": actor_id},
        )
    if role not in ALLOWED_ROLES.get(new_status, frozenset()):
        raise Forbidden(
            f"A {role.value} may not move a ride to {new_status.value}",
            {"ride_id": ride.ride_id, "actor_id": actor_id, "status": new_status.value},
        )
    return role


def authorize_party(ride: Ride, actor_id: str, is_admin: bool = False) -> ActorRole:
    role = role_of(ride, actor_id, is_admin)
    if role is None:
        raise Forbidden(
            "Actor is not a party to this ride",
            {"ride_id": ride.ride_id, "actor_id": actor_id},
        )
    return role
