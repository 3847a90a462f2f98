"""Ride booking and the guarded status state machine.

Every status change is read, validated against VALID_TRANSITIONS, checked
against the actor's role and then committed with a compare-and-set on the
status and version that were read. A concurrent change in between makes
the write miss and surfaces as InvalidTransition; it is never retried here.
"""

import logging
import uuid
from typing import Any

from pydantic import ValidationError as PydanticValidationError
from sqlalchemy.orm import sessionmaker

from core.exceptions import (
    ActiveRideExists,
    FareInputError,
    InvalidTransition,
    RatingAlreadyExists,
    RideNotCompleted,
    RideNotFound,
    ValidationError,
)
from core.retry import RetryConfig, with_retry_sync
from db import transaction, translate_errors
from db.repositories import DriverRepository, RideRepository
from db.utils import utc_now
from fare import FareCalculator, FareEstimate
from matching.dispatch_matcher import DispatchMatcher
from matching.geo_index import GeoIndex
from matching.surge_pricing import SurgePricingCalculator
from metrics.prometheus_exporter import dispatch_rides_booked_total, dispatch_transitions_total
from pubsub.broadcaster import EventBroadcaster
from pubsub.channels import (
    EVENT_DRIVER_AVAILABILITY_CHANGED,
    EVENT_RIDE_PAYMENT_RECORDED,
    EVENT_RIDE_RATED,
    EVENT_RIDE_REQUESTED,
    EVENT_RIDE_STATUS_CHANGED,
    driver_event,
    driver_topic,
    ride_event,
    ride_topic,
)
from ride import (
    TERMINAL_STATUSES,
    TIMELINE_FIELDS,
    Coordinates,
    Location,
    PaymentInfo,
    Ride,
    RideStatus,
    can_transition,
)

from .permissions import ActorRole, authorize_party, authorize_transition

logger = logging.getLogger(__name__)

SPECIAL_INSTRUCTIONS_MAX = 300
FEEDBACK_MAX = 500

LocationInput = Location | Coordinates | tuple[float, float] | dict[str, Any]


def to_location(value: LocationInput) -> Location:
    """Accept a Location, Coordinates, (lon, lat) pair or a mapping."""
    if isinstance(value, Location):
        return value
    if isinstance(value, Coordinates):
        return Location(coordinates=value)
    if isinstance(value, dict):
        return Location.model_validate(value)
    return Location(coordinates=Coordinates.from_pair(value))


class RideLifecycle:
    def __init__(
        self,
        session_factory: sessionmaker[Any],
        fare_calculator: FareCalculator,
        surge_calculator: SurgePricingCalculator,
        geo_index: GeoIndex,
        matcher: DispatchMatcher,
        broadcaster: EventBroadcaster,
        read_retry: RetryConfig | None = None,
    ):
        self._session_factory = session_factory
        self._fare = fare_calculator
        self._surge = surge_calculator
        self._geo_index = geo_index
        self._matcher = matcher
        self._broadcaster = broadcaster
        self._read_retry = read_retry or RetryConfig()

    def estimate_fare(
        self, pickup: LocationInput, destination: LocationInput
    ) -> FareEstimate:
        pickup_loc = to_location(pickup)
        destination_loc = to_location(destination)
        surge = self._surge.current_multiplier(pickup_loc.coordinates)
        return self._fare.estimate(
            pickup_loc.coordinates.as_tuple(), destination_loc.coordinates.as_tuple(), surge
        )

    def book_ride(
        self,
        rider_id: str,
        pickup: LocationInput,
        destination: LocationInput,
        special_instructions: str | None = None,
    ) -> Ride:
        """Price and persist a new ride in REQUESTED state.

        Raises:
            InvalidCoordinates: pickup or destination is malformed
            ActiveRideExists: the rider already has a non-terminal ride
        """
        if not rider_id:
            raise ValidationError("rider_id is required")
        too_long = special_instructions and len(special_instructions) > SPECIAL_INSTRUCTIONS_MAX
        if too_long:
            raise ValidationError(
                f"Special instructions cannot exceed {SPECIAL_INSTRUCTIONS_MAX} characters"
            )

        pickup_loc = to_location(pickup)
        destination_loc = to_location(destination)

        with self._session_factory() as session, translate_errors("book_ride"):
            if RideRepository(session).get_active_for_rider(rider_id) is not None:
                raise ActiveRideExists(
                    "Rider already has an active ride", {"rider_id": rider_id}
                )

        estimate = self.estimate_fare(pickup_loc, destination_loc)
        ride_id = str(uuid.uuid4())

        with self._session_factory() as session, translate_errors("book_ride"):
            with transaction(session):
                repo = RideRepository(session)
                repo.create(
                    ride_id=ride_id,
                    rider_id=rider_id,
                    pickup=pickup_loc,
                    destination=destination_loc,
                    pickup_cell=self._geo_index.cell_for(pickup_loc.coordinates),
                    estimated_distance=estimate.distance_km,
                    estimated_duration=estimate.duration_min,
                    fare=estimate.breakdown,
                    currency=estimate.currency,
                    requested_at=utc_now(),
                    special_instructions=special_instructions,
                )
                ride = repo.get(ride_id)

        dispatch_rides_booked_total.inc()
        logger.info(
            "Ride %s booked for rider %s (%.2f km, fare %.2f, surge %.1fx)",
            ride_id,
            rider_id,
            estimate.distance_km,
            estimate.total,
            estimate.surge_multiplier,
        )
        self._broadcaster.publish(ride_topic(ride_id), ride_event(ride, EVENT_RIDE_REQUESTED))
        return ride

    def get_ride(self, ride_id: str) -> Ride:
        def run() -> Ride | None:
            with self._session_factory() as session, translate_errors("get_ride"):
                return RideRepository(session).get(ride_id)

        ride = with_retry_sync(run, self._read_retry, "get_ride")
        if ride is None:
            raise RideNotFound(f"Ride {ride_id} not found", {"ride_id": ride_id})
        return ride

    def transition(
        self,
        ride_id: str,
        actor_id: str,
        new_status: RideStatus | str,
        reason: str | None = None,
        *,
        is_admin: bool = False,
        is_system: bool = False,
        actual_distance: float | None = None,
        actual_duration: float | None = None,
    ) -> Ride:
        """Move a ride to new_status on behalf of actor_id.

        Only a caller passing is_system may request MATCHED, which runs the
        matcher for this ride.

        Raises:
            RideNotFound: ride does not exist
            InvalidTransition: new_status is not reachable from the current
                status, or the ride changed concurrently
            Forbidden: actor is not a party, or its role may not request new_status
        """
        new_status = self._parse_status(new_status)
        ride = self.get_ride(ride_id)

        if not can_transition(ride.status, new_status):
            raise InvalidTransition(
                f"Cannot move ride from {ride.status.value} to {new_status.value}",
                {"ride_id": ride_id, "from": ride.status.value, "to": new_status.value},
            )
        role = authorize_transition(ride, actor_id, new_status, is_admin, is_system)

        if new_status == RideStatus.ACCEPTED:
            return self._matcher.accept_ride(ride_id, actor_id)
        if new_status == RideStatus.MATCHED:
            matched = self._matcher.propose_match(ride_id)
            if matched is None:
                raise InvalidTransition(
                    "No available driver near the pickup point", {"ride_id": ride_id}
                )
            return matched

        return self._commit_transition(
            ride, actor_id, role, new_status, reason, actual_distance, actual_duration
        )

    def _commit_transition(
        self,
        ride: Ride,
        actor_id: str,
        role: ActorRole,
        new_status: RideStatus,
        reason: str | None,
        actual_distance: float | None,
        actual_duration: float | None,
    ) -> Ride:
        now = utc_now()
        fields: dict[str, Any] = {TIMELINE_FIELDS[new_status]: now}

        if new_status == RideStatus.CANCELLED:
            fields["cancellation_reason"] = reason[:200] if reason else None
            fields["cancelled_by"] = actor_id
        elif new_status == RideStatus.COMPLETED:
            fields.update(self._completion_fields(ride, actual_distance, actual_duration))

        released_driver = None
        with self._session_factory() as session, translate_errors("transition"):
            with transaction(session):
                rides = RideRepository(session)
                if not rides.compare_and_set(
                    ride.ride_id,
                    {ride.status},
                    new_status,
                    expected_version=ride.version,
                    **fields,
                ):
                    raise InvalidTransition(
                        f"Ride {ride.ride_id} changed concurrently; refresh and retry",
                        {"ride_id": ride.ride_id, "from": ride.status.value},
                    )
                if new_status in TERMINAL_STATUSES and ride.driver_id is not None:
                    drivers = DriverRepository(session)
                    if drivers.release(ride.driver_id, now):
                        released_driver = drivers.get(ride.driver_id)
                    else:
                        logger.warning(
                            "Driver %s was not released after ride %s ended",
                            ride.driver_id,
                            ride.ride_id,
                        )
                updated = rides.get(ride.ride_id)

        dispatch_transitions_total.labels(status=new_status.value).inc()
        logger.info(
            "Ride %s: %s -> %s by %s %s",
            ride.ride_id,
            ride.status.value,
            new_status.value,
            role.value,
            actor_id,
        )
        self._broadcaster.publish(
            ride_topic(ride.ride_id),
            ride_event(updated, EVENT_RIDE_STATUS_CHANGED, ride.status.value, reason),
        )
        if released_driver is not None:
            self._broadcaster.publish(
                driver_topic(released_driver.driver_id),
                driver_event(released_driver, EVENT_DRIVER_AVAILABILITY_CHANGED),
            )
        return updated

    def _completion_fields(
        self,
        ride: Ride,
        actual_distance: float | None,
        actual_duration: float | None,
    ) -> dict[str, Any]:
        """Final fare and actuals. Actuals are kept only when positive."""
        actuals = {"actual_distance": actual_distance, "actual_duration": actual_duration}
        for name, value in actuals.items():
            if value is not None and value < 0:
                raise FareInputError(f"{name} cannot be negative", {name: value})

        distance = actual_distance if actual_distance else None
        duration = actual_duration if actual_duration else None
        fields: dict[str, Any] = {"actual_distance": distance, "actual_duration": duration}

        if distance is None and duration is None:
            fields["fare_final"] = ride.fare.estimated
        else:
            breakdown = self._fare.calculate(
                distance if distance is not None else ride.estimated_distance,
                duration if duration is not None else ride.estimated_duration,
                ride.fare.surge_multiplier,
            )
            fields["fare_final"] = breakdown.total
        return fields

    def record_payment(
        self,
        ride_id: str,
        method: str = "mock",
        status: str = "completed",
        transaction_id: str | None = None,
    ) -> Ride:
        try:
            payment = PaymentInfo(method=method, status=status, transaction_id=transaction_id)
        except PydanticValidationError as exc:
            raise ValidationError(
                "Invalid payment details", {"errors": exc.errors(include_url=False)}
            ) from exc

        processed_at = utc_now() if payment.status == "completed" else None
        with self._session_factory() as session, translate_errors("record_payment"):
            with transaction(session):
                repo = RideRepository(session)
                written = repo.record_payment(
                    ride_id, payment.method, payment.status, payment.transaction_id, processed_at
                )
                ride = repo.get(ride_id)

        if ride is None:
            raise RideNotFound(f"Ride {ride_id} not found", {"ride_id": ride_id})
        if not written:
            raise RideNotCompleted(
                "Payment can only be recorded for completed rides",
                {"ride_id": ride_id, "status": ride.status.value},
            )

        logger.info("Payment %s recorded for ride %s", payment.status, ride_id)
        self._broadcaster.publish(
            ride_topic(ride_id), ride_event(ride, EVENT_RIDE_PAYMENT_RECORDED)
        )
        return ride

    def record_rating(
        self,
        ride_id: str,
        actor_id: str,
        rating: int,
        feedback: str | None = None,
    ) -> Ride:
        """Rider rates the driver, or driver rates the rider, once per ride."""
        if isinstance(rating, bool) or not isinstance(rating, int) or not 1 <= rating <= 5:
            raise ValidationError("Rating must be an integer between 1 and 5", {"rating": rating})
        if feedback is not None and len(feedback) > FEEDBACK_MAX:
            raise ValidationError(f"Feedback cannot exceed {FEEDBACK_MAX} characters")

        ride = self.get_ride(ride_id)
        role = authorize_party(ride, actor_id)
        if ride.status != RideStatus.COMPLETED:
            raise RideNotCompleted(
                "Only completed rides can be rated",
                {"ride_id": ride_id, "status": ride.status.value},
            )

        if role == ActorRole.RIDER:
            rating_field, feedback_field = "driver_rating", "rider_feedback"
        else:
            rating_field, feedback_field = "rider_rating", "driver_feedback"

        with self._session_factory() as session, translate_errors("record_rating"):
            with transaction(session):
                repo = RideRepository(session)
                written = repo.record_rating(
                    ride_id, rating_field, rating, feedback_field, feedback
                )
                updated = repo.get(ride_id)

        if not written:
            raise RatingAlreadyExists(
                f"This ride already has a {rating_field.replace('_', ' ')}",
                {"ride_id": ride_id},
            )
        self._broadcaster.publish(ride_topic(ride_id), ride_event(updated, EVENT_RIDE_RATED))
        return updated

    def ride_history(
        self,
        user_id: str,
        role: str = "rider",
        status: RideStatus | str | None = None,
        page: int = 1,
        limit: int = 10,
    ) -> tuple[list[Ride], int]:
        if role not in ("rider", "driver"):
            raise ValidationError("role must be 'rider' or 'driver'", {"role": role})
        if page < 1 or not 1 <= limit <= 100:
            raise ValidationError("page must be >= 1 and limit between 1 and 100")
        parsed = self._parse_status(status) if status is not None else None
        with self._session_factory() as session, translate_errors("ride_history"):
            return RideRepository(session).list_for_user(user_id, role, parsed, page, limit)

    @staticmethod
    def _parse_status(value: RideStatus | str) -> RideStatus:
        try:
            return RideStatus(value)
        except ValueError as exc:
            raise ValidationError(f"Unknown ride status: {value}", {"status": value}) from exc
