"""Pairing of ride requests with nearby drivers.

Two paths reach the same GeoIndex contract:

* the matcher proposes the nearest available driver for each unproposed
  REQUESTED ride and moves it to MATCHED (a non-binding hint), and
* drivers pull pending rides near them with ``list_pending_nearby``.

Either way a driver binds to a ride only through ``accept_ride``, whose
assignment and driver claim commit in one transaction.
"""

import logging
import time
from typing import Any

from sqlalchemy.orm import sessionmaker

from core.exceptions import (
    AssignmentConflict,
    DriverAlreadyActive,
    DriverNotFound,
    InvalidTransition,
    RideNotFound,
)
from db import transaction, translate_errors
from db.repositories import DriverRepository, RideRepository
from db.utils import utc_now
from metrics.prometheus_exporter import (
    dispatch_accept_total,
    dispatch_match_cycle_seconds,
    dispatch_matches_proposed_total,
    dispatch_transitions_total,
)
from pubsub.broadcaster import EventBroadcaster
from pubsub.channels import (
    EVENT_DRIVER_AVAILABILITY_CHANGED,
    EVENT_RIDE_DRIVER_ASSIGNED,
    EVENT_RIDE_STATUS_CHANGED,
    driver_event,
    driver_topic,
    ride_event,
    ride_topic,
)
from ride import OPEN_STATUSES, Ride, RideStatus
from settings import MatchingSettings

from .geo_index import GeoIndex, NearbyDriver, Point

logger = logging.getLogger(__name__)


class DispatchMatcher:
    def __init__(
        self,
        session_factory: sessionmaker[Any],
        geo_index: GeoIndex,
        broadcaster: EventBroadcaster,
        settings: MatchingSettings,
    ):
        self._session_factory = session_factory
        self._geo_index = geo_index
        self._broadcaster = broadcaster
        self._settings = settings

    def radius_steps_km(self) -> list[float]:
        """Configured expansion steps clipped to the allowed radius range."""
        lo, hi = self._settings.min_radius_km, self._settings.max_radius_km
        return sorted({min(max(step, lo), hi) for step in self._settings.radius_expansion_steps_km})

    def find_candidates(
        self, point: Point, radius_km: float | None = None
    ) -> list[NearbyDriver]:
        """Nearest available drivers, widening the radius step by step until some are found."""
        steps = [radius_km] if radius_km is not None else self.radius_steps_km()
        for step in steps:
            candidates = self._geo_index.find_available(
                point, step * 1000, limit=self._settings.candidate_limit
            )
            if candidates:
                return candidates
        return []

    def propose_matches(self, limit: int | None = None) -> list[Ride]:
        """One matcher cycle over unproposed REQUESTED rides.

        Returns the rides moved to MATCHED. Rides that lost a race or found
        no driver are left for the next cycle.
        """
        start_time = time.perf_counter()
        batch = limit or self._settings.batch_size
        with self._session_factory() as session, translate_errors("propose_matches"):
            pending = RideRepository(session).list_requested_without_proposal(batch)

        matched: list[Ride] = []
        for ride in pending:
            proposal = self._propose(ride, self.find_candidates(ride.pickup.coordinates))
            if proposal is not None:
                matched.append(proposal)

        dispatch_match_cycle_seconds.observe(time.perf_counter() - start_time)
        if pending:
            logger.info("Matcher cycle: %d/%d rides matched", len(matched), len(pending))
        return matched

    def propose_match(self, ride_id: str, radius_km: float | None = None) -> Ride | None:
        """On-demand proposal for one ride. None when no driver is in range."""
        with self._session_factory() as session, translate_errors("propose_match"):
            ride = RideRepository(session).get(ride_id)
        if ride is None:
            raise RideNotFound(f"Ride {ride_id} not found", {"ride_id": ride_id})
        if ride.status != RideStatus.REQUESTED or ride.proposed_driver_id is not None:
            raise InvalidTransition(
                f"Ride {ride_id} is not awaiting a match",
                {"ride_id": ride_id, "status": ride.status.value},
            )
        if radius_km is not None:
            radius_km = self._geo_index.resolve_radius_km(radius_km)
        return self._propose(ride, self.find_candidates(ride.pickup.coordinates, radius_km))

    def _propose(self, ride: Ride, candidates: list[NearbyDriver]) -> Ride | None:
        if not candidates:
            logger.debug("No drivers near ride %s", ride.ride_id)
            return None

        nearest = candidates[0]
        with self._session_factory() as session, translate_errors("propose_match"):
            with transaction(session):
                repo = RideRepository(session)
                updated = repo.compare_and_set(
                    ride.ride_id,
                    {RideStatus.REQUESTED},
                    RideStatus.MATCHED,
                    expected_version=ride.version,
                    proposed_driver_id=nearest.driver_id,
                    matched_at=utc_now(),
                )
                matched = repo.get(ride.ride_id) if updated else None

        if matched is None:
            logger.debug("Ride %s changed before it could be matched", ride.ride_id)
            return None

        dispatch_matches_proposed_total.inc()
        dispatch_transitions_total.labels(status=RideStatus.MATCHED.value).inc()
        logger.info(
            "Proposed driver %s for ride %s (%.2f km)",
            nearest.driver_id,
            ride.ride_id,
            nearest.distance_km,
        )
        self._broadcaster.publish(
            ride_topic(ride.ride_id),
            ride_event(matched, EVENT_RIDE_STATUS_CHANGED, RideStatus.REQUESTED.value),
        )
        return matched

    def list_pending_nearby(self, point: Point, radius_km: float | None = None) -> list[Ride]:
        """REQUESTED and MATCHED rides with pickup inside the radius, nearest first."""
        radius_m = None if radius_km is None else radius_km * 1000
        nearby = self._geo_index.find_pending_rides(
            point, radius_m, limit=self._settings.pending_limit
        )
        return [n.ride for n in nearby]

    def accept_ride(self, ride_id: str, driver_id: str) -> Ride:
        """Bind driver_id to the ride. Exactly one concurrent caller can win.

        Raises:
            RideNotFound: ride does not exist
            DriverNotFound: driver is not registered
            DriverAlreadyActive: driver already has a non-terminal ride
            AssignmentConflict: ride no longer open, or driver no longer available
        """
        with self._session_factory() as session, translate_errors("accept_ride"):
            rides = RideRepository(session)
            drivers = DriverRepository(session)

            # Reads complete before the write transaction takes any lock.
            ride = rides.get(ride_id)
            if ride is None:
                raise RideNotFound(f"Ride {ride_id} not found", {"ride_id": ride_id})
            if drivers.get(driver_id) is None:
                raise DriverNotFound(f"Driver {driver_id} not found", {"driver_id": driver_id})
            if rides.get_active_for_driver(driver_id) is not None:
                dispatch_accept_total.labels(outcome="driver_active").inc()
                raise DriverAlreadyActive(
                    "Driver already has an active ride", {"driver_id": driver_id}
                )
            if ride.status not in OPEN_STATUSES:
                dispatch_accept_total.labels(outcome="conflict").inc()
                raise AssignmentConflict(
                    f"Ride {ride_id} is no longer open",
                    {"ride_id": ride_id, "status": ride.status.value},
                )

            now = utc_now()
            previous = ride.status
            try:
                with transaction(session):
                    assigned = rides.assign_driver(ride_id, driver_id, now, previous)
                    if not assigned:
                        # A proposal may have landed since the read above; retry against it.
                        current = rides.get(ride_id)
                        if (
                            current is not None
                            and current.status in OPEN_STATUSES
                            and current.status != previous
                            and current.driver_id is None
                        ):
                            previous = current.status
                            assigned = rides.assign_driver(ride_id, driver_id, now, previous)
                    if not assigned:
                        raise AssignmentConflict(
                            f"Ride {ride_id} was taken by another driver", {"ride_id": ride_id}
                        )
                    if not drivers.claim(driver_id, now):
                        raise AssignmentConflict(
                            f"Driver {driver_id} is not available", {"driver_id": driver_id}
                        )
                    accepted = rides.get(ride_id)
                    driver = drivers.get(driver_id)
            except AssignmentConflict:
                dispatch_accept_total.labels(outcome="conflict").inc()
                raise
            except DriverAlreadyActive:
                dispatch_accept_total.labels(outcome="driver_active").inc()
                raise

        dispatch_accept_total.labels(outcome="accepted").inc()
        dispatch_transitions_total.labels(status=RideStatus.ACCEPTED.value).inc()
        logger.info("Driver %s accepted ride %s", driver_id, ride_id)

        topic = ride_topic(ride_id)
        self._broadcaster.publish(topic, ride_event(accepted, EVENT_RIDE_DRIVER_ASSIGNED))
        self._broadcaster.publish(
            topic, ride_event(accepted, EVENT_RIDE_STATUS_CHANGED, previous.value)
        )
        self._broadcaster.publish(
            driver_topic(driver_id),
            driver_event(driver, EVENT_DRIVER_AVAILABILITY_CHANGED, ride_id=ride_id),
        )
        return accepted
