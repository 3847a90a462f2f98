"""Tests for booking and the guarded status state machine."""

from unittest.mock import patch

import pytest
from sqlalchemy.exc import OperationalError

from conftest import NYC_DESTINATION, NYC_PICKUP
from core.exceptions import (
    ActiveRideExists,
    FareInputError,
    Forbidden,
    InvalidCoordinates,
    InvalidTransition,
    PersistenceError,
    RideNotFound,
    ValidationError,
)
from db.repositories import RideRepository
from lifecycle.permissions import ActorRole
from ride import Coordinates, Location, RideStatus


@pytest.fixture
def accepted_ride(engine, online_driver):
    online_driver("d1")
    ride = engine.book_ride("u1", NYC_PICKUP, NYC_DESTINATION)
    return engine.accept_ride(ride.ride_id, "d1")


@pytest.fixture
def started_ride(engine, accepted_ride):
    return engine.transition(accepted_ride.ride_id, "d1", RideStatus.IN_PROGRESS)


@pytest.mark.unit
class TestBookRide:
    def test_books_requested_ride(self, engine):
        ride = engine.book_ride("u1", NYC_PICKUP, NYC_DESTINATION)

        assert ride.status == RideStatus.REQUESTED
        assert ride.driver_id is None
        assert ride.rider_id == "u1"
        assert ride.estimated_distance == pytest.approx(5.19, rel=0.05)
        assert ride.estimated_duration == pytest.approx(ride.estimated_distance * 2, abs=0.01)
        assert ride.fare.surge_multiplier == 1.0
        assert ride.fare.final is None
        assert ride.timeline.requested_at is not None
        assert ride.timeline.accepted_at is None

    def test_fare_matches_estimate(self, engine):
        estimate = engine.estimate_fare(NYC_PICKUP, NYC_DESTINATION)
        ride = engine.book_ride("u1", NYC_PICKUP, NYC_DESTINATION)

        assert ride.fare.estimated == estimate.total
        assert ride.fare.breakdown.base == estimate.breakdown.base
        assert ride.fare.currency == "USD"

    def test_accepts_locations_with_addresses(self, engine):
        pickup = Location(address="1 Wall St", coordinates=Coordinates(*NYC_PICKUP))
        destination = {
            "address": "Times Sq",
            "coordinates": {"lon": NYC_DESTINATION[0], "lat": NYC_DESTINATION[1]},
        }

        ride = engine.book_ride("u1", pickup, destination, special_instructions="Gate 3")

        assert ride.pickup.address == "1 Wall St"
        assert ride.destination.address == "Times Sq"
        assert ride.special_instructions == "Gate 3"

    def test_rejects_invalid_coordinates(self, engine):
        with pytest.raises(InvalidCoordinates):
            engine.book_ride("u1", (-74.0, 91.0), NYC_DESTINATION)

    def test_rejects_long_instructions(self, engine):
        with pytest.raises(ValidationError):
            engine.book_ride("u1", NYC_PICKUP, NYC_DESTINATION, special_instructions="x" * 301)

    def test_rejects_empty_rider(self, engine):
        with pytest.raises(ValidationError):
            engine.book_ride("", NYC_PICKUP, NYC_DESTINATION)

    @pytest.mark.critical
    def test_one_active_ride_per_rider(self, engine, started_ride):
        with pytest.raises(ActiveRideExists):
            engine.book_ride("u1", NYC_PICKUP, NYC_DESTINATION)

    def test_can_book_after_cancelling(self, engine):
        ride = engine.book_ride("u1", NYC_PICKUP, NYC_DESTINATION)
        engine.transition(ride.ride_id, "u1", RideStatus.CANCELLED)

        assert engine.book_ride("u1", NYC_PICKUP, NYC_DESTINATION).ride_id != ride.ride_id

    def test_get_unknown_ride(self, engine):
        with pytest.raises(RideNotFound):
            engine.get_ride("missing")


@pytest.mark.unit
@pytest.mark.critical
class TestTransitions:
    def test_full_lifecycle(self, engine, started_ride):
        completed = engine.transition(started_ride.ride_id, "d1", "completed")

        assert completed.status == RideStatus.COMPLETED
        assert completed.fare.final == completed.fare.estimated
        phases = [name for name, _ in completed.timeline.reached()]
        assert phases == ["requested_at", "accepted_at", "started_at", "completed_at"]
        stamps = [value for _, value in completed.timeline.reached()]
        assert stamps == sorted(stamps)

    def test_completion_releases_driver(self, engine, started_ride):
        engine.transition(started_ride.ride_id, "d1", "completed")

        assert engine.get_driver("d1").is_available is True
        assert engine.has_active_ride("d1") is False

    def test_completion_with_actuals_reprices(self, engine, started_ride):
        completed = engine.transition(
            started_ride.ride_id, "d1", "completed", actual_distance=10.0, actual_duration=20.0
        )

        assert completed.actual_distance == 10.0
        assert completed.actual_duration == 20.0
        assert completed.fare.final == 19.50

    def test_zero_actuals_fall_back_to_estimates(self, engine, started_ride):
        completed = engine.transition(
            started_ride.ride_id, "d1", "completed", actual_distance=0.0, actual_duration=0.0
        )

        assert completed.actual_distance is None
        assert completed.fare.final == completed.fare.estimated

    def test_negative_actuals_rejected(self, engine, started_ride):
        with pytest.raises(FareInputError):
            engine.transition(started_ride.ride_id, "d1", "completed", actual_distance=-1.0)

        assert engine.get_ride(started_ride.ride_id).status == RideStatus.IN_PROGRESS

    def test_driver_cannot_complete_requested_ride(self, engine, online_driver):
        online_driver("d1")
        ride = engine.book_ride("u1", NYC_PICKUP, NYC_DESTINATION)

        with pytest.raises(InvalidTransition):
            engine.transition(ride.ride_id, "d1", "completed")

    def test_cannot_skip_in_progress(self, engine, accepted_ride):
        with pytest.raises(InvalidTransition):
            engine.transition(accepted_ride.ride_id, "d1", "completed")

    def test_terminal_ride_is_frozen(self, engine, started_ride):
        engine.transition(started_ride.ride_id, "d1", "completed")

        with pytest.raises(InvalidTransition):
            engine.transition(started_ride.ride_id, "u1", "cancelled")

    def test_rider_cannot_start_ride(self, engine, accepted_ride):
        with pytest.raises(Forbidden):
            engine.transition(accepted_ride.ride_id, "u1", "in_progress")

    def test_stranger_cannot_cancel(self, engine, accepted_ride):
        with pytest.raises(Forbidden):
            engine.transition(accepted_ride.ride_id, "someone", "cancelled")

    def test_rider_cancels_and_driver_is_released(self, engine, accepted_ride):
        cancelled = engine.transition(accepted_ride.ride_id, "u1", "cancelled", "Changed plans")

        assert cancelled.status == RideStatus.CANCELLED
        assert cancelled.cancelled_by == "u1"
        assert cancelled.cancellation_reason == "Changed plans"
        assert cancelled.timeline.cancelled_at is not None
        assert engine.get_driver("d1").is_available is True

    def test_admin_cancel(self, engine, accepted_ride):
        cancelled = engine.transition(accepted_ride.ride_id, "ops", "cancelled", is_admin=True)
        assert cancelled.cancelled_by == "ops"

    def test_cancellation_reason_truncated(self, engine):
        ride = engine.book_ride("u1", NYC_PICKUP, NYC_DESTINATION)
        cancelled = engine.transition(ride.ride_id, "u1", "cancelled", "r" * 250)
        assert len(cancelled.cancellation_reason) == 200

    def test_unknown_status(self, engine):
        ride = engine.book_ride("u1", NYC_PICKUP, NYC_DESTINATION)
        with pytest.raises(ValidationError):
            engine.transition(ride.ride_id, "u1", "teleported")

    def test_accept_through_transition(self, engine, online_driver):
        online_driver("d1")
        ride = engine.book_ride("u1", NYC_PICKUP, NYC_DESTINATION)
        engine.propose_matches()

        accepted = engine.transition(ride.ride_id, "d1", "accepted")

        assert accepted.driver_id == "d1"

    def test_system_match_through_transition(self, engine, online_driver):
        online_driver("d1")
        ride = engine.book_ride("u1", NYC_PICKUP, NYC_DESTINATION)

        matched = engine.transition(ride.ride_id, "matcher", "matched", is_system=True)

        assert matched.status == RideStatus.MATCHED
        assert matched.proposed_driver_id == "d1"

    def test_system_match_without_drivers(self, engine):
        ride = engine.book_ride("u1", NYC_PICKUP, NYC_DESTINATION)

        with pytest.raises(InvalidTransition):
            engine.transition(ride.ride_id, "matcher", "matched", is_system=True)

    def test_system_id_cannot_force_match(self, engine, online_driver):
        online_driver("d1")
        ride = engine.book_ride("u1", NYC_PICKUP, NYC_DESTINATION)

        with pytest.raises(Forbidden):
            engine.transition(ride.ride_id, "system", "matched")

        assert engine.get_ride(ride.ride_id).status == RideStatus.REQUESTED

    def test_stale_read_loses_to_concurrent_change(self, engine, accepted_ride):
        stale = engine.get_ride(accepted_ride.ride_id)
        engine.transition(accepted_ride.ride_id, "u1", "cancelled")

        with pytest.raises(InvalidTransition):
            engine.lifecycle._commit_transition(
                stale, "d1", ActorRole.DRIVER, RideStatus.IN_PROGRESS, None, None, None
            )
        assert engine.get_ride(accepted_ride.ride_id).status == RideStatus.CANCELLED

    def test_version_increases_with_each_change(self, engine, accepted_ride):
        started = engine.transition(accepted_ride.ride_id, "d1", "in_progress")
        completed = engine.transition(accepted_ride.ride_id, "d1", "completed")
        assert accepted_ride.version < started.version < completed.version


@pytest.mark.unit
class TestBroadcasts:
    def test_lifecycle_messages_in_order(self, engine, online_driver, broadcaster):
        online_driver("d1")
        ride = engine.book_ride("u1", NYC_PICKUP, NYC_DESTINATION)
        subscription = engine.subscribe(f"ride:{ride.ride_id}")

        engine.accept_ride(ride.ride_id, "d1")
        engine.transition(ride.ride_id, "d1", "in_progress")
        engine.transition(ride.ride_id, "d1", "completed")

        messages = subscription.drain()
        assert [(m["event"], m["status"]) for m in messages] == [
            ("ride.driver_assigned", "accepted"),
            ("ride.status_changed", "accepted"),
            ("ride.status_changed", "in_progress"),
            ("ride.status_changed", "completed"),
        ]
        assert messages[1]["previous_status"] == "requested"
        versions = [m["version"] for m in messages]
        assert versions == sorted(versions)

    def test_driver_topic_sees_claim_and_release(self, engine, online_driver):
        online_driver("d1")
        ride = engine.book_ride("u1", NYC_PICKUP, NYC_DESTINATION)
        subscription = engine.subscribe("driver:d1")

        engine.accept_ride(ride.ride_id, "d1")
        engine.transition(ride.ride_id, "u1", "cancelled")

        messages = subscription.drain()
        assert [m["is_available"] for m in messages] == [False, True]
        assert messages[0]["ride_id"] == ride.ride_id


@pytest.mark.unit
class TestRideHistory:
    def test_history_for_rider_and_driver(self, engine, online_driver):
        online_driver("d1")
        first = engine.book_ride("u1", NYC_PICKUP, NYC_DESTINATION)
        engine.accept_ride(first.ride_id, "d1")
        engine.transition(first.ride_id, "u1", "cancelled")
        second = engine.book_ride("u1", NYC_PICKUP, NYC_DESTINATION)

        rides, total = engine.ride_history("u1")
        driver_rides, driver_total = engine.ride_history("d1", role="driver")
        cancelled, _ = engine.ride_history("u1", status="cancelled")

        assert total == 2
        assert {r.ride_id for r in rides} == {first.ride_id, second.ride_id}
        assert driver_total == 1
        assert driver_rides[0].ride_id == first.ride_id
        assert [r.ride_id for r in cancelled] == [first.ride_id]

    @pytest.mark.parametrize(
        "kwargs",
        [{"role": "admin"}, {"page": 0}, {"limit": 0}, {"limit": 101}, {"status": "lost"}],
    )
    def test_rejects_bad_queries(self, engine, kwargs):
        with pytest.raises(ValidationError):
            engine.ride_history("u1", **kwargs)


@pytest.mark.unit
class TestGetRide:
    @pytest.fixture
    def flaky_reads(self, monkeypatch):
        """Make the next ``failures`` ride reads fail as if the store were locked."""
        original = RideRepository.get
        state = {"failures": 0, "calls": 0}

        def get(repo, ride_id):
            state["calls"] += 1
            if state["failures"] > 0:
                state["failures"] -= 1
                raise OperationalError("SELECT rides", {}, Exception("database is locked"))
            return original(repo, ride_id)

        monkeypatch.setattr(RideRepository, "get", get)
        return state

    def test_transient_failure_is_retried(self, engine, flaky_reads):
        ride = engine.book_ride("u1", NYC_PICKUP, NYC_DESTINATION)
        flaky_reads.update(failures=1, calls=0)

        with patch("core.retry.time.sleep") as sleep:
            fetched = engine.get_ride(ride.ride_id)

        assert fetched.ride_id == ride.ride_id
        assert flaky_reads["calls"] == 2
        sleep.assert_called_once()

    def test_retries_are_bounded(self, engine, flaky_reads):
        ride = engine.book_ride("u1", NYC_PICKUP, NYC_DESTINATION)
        flaky_reads.update(failures=10, calls=0)

        with patch("core.retry.time.sleep"), pytest.raises(PersistenceError):
            engine.get_ride(ride.ride_id)

        assert flaky_reads["calls"] == engine.settings.matching.read_retry_attempts

    def test_missing_ride_is_not_retried(self, engine, flaky_reads):
        with pytest.raises(RideNotFound):
            engine.get_ride("missing")

        assert flaky_reads["calls"] == 1
