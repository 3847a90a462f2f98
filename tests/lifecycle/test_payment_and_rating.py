import pytest

from conftest import NYC_DESTINATION, NYC_PICKUP
from core.exceptions import (
    Forbidden,
    RatingAlreadyExists,
    RideNotCompleted,
    RideNotFound,
    ValidationError,
)


@pytest.fixture
def completed_ride(engine, online_driver):
    online_driver("d1")
    ride = engine.book_ride("u1", NYC_PICKUP, NYC_DESTINATION)
    engine.accept_ride(ride.ride_id, "d1")
    engine.transition(ride.ride_id, "d1", "in_progress")
    return engine.transition(ride.ride_id, "d1", "completed")


@pytest.mark.unit
class TestRecordPayment:
    def test_records_completed_payment(self, engine, completed_ride):
        ride = engine.record_payment(completed_ride.ride_id, "card", "completed", "txn-1")

        assert ride.payment.method == "card"
        assert ride.payment.status == "completed"
        assert ride.payment.transaction_id == "txn-1"
        assert ride.payment.processed_at is not None

    def test_pending_payment_has_no_processed_time(self, engine, completed_ride):
        ride = engine.record_payment(completed_ride.ride_id, "cash", "pending")
        assert ride.payment.processed_at is None

    def test_requires_completed_ride(self, engine):
        ride = engine.book_ride("u1", NYC_PICKUP, NYC_DESTINATION)
        with pytest.raises(RideNotCompleted):
            engine.record_payment(ride.ride_id)

    def test_unknown_ride(self, engine):
        with pytest.raises(RideNotFound):
            engine.record_payment("missing")

    def test_rejects_unknown_method(self, engine, completed_ride):
        with pytest.raises(ValidationError):
            engine.record_payment(completed_ride.ride_id, "barter")

    def test_payment_is_broadcast(self, engine, completed_ride):
        subscription = engine.subscribe(f"ride:{completed_ride.ride_id}")
        engine.record_payment(completed_ride.ride_id, "wallet", "completed")

        (message,) = subscription.drain()
        assert message["event"] == "ride.payment_recorded"


@pytest.mark.unit
class TestRecordRating:
    def test_rider_rates_driver(self, engine, completed_ride):
        ride = engine.record_rating(completed_ride.ride_id, "u1", 5, "Smooth ride")

        assert ride.rating.driver_rating == 5
        assert ride.rating.rider_feedback == "Smooth ride"
        assert ride.rating.rider_rating is None

    def test_driver_rates_rider(self, engine, completed_ride):
        ride = engine.record_rating(completed_ride.ride_id, "d1", 4)

        assert ride.rating.rider_rating == 4
        assert ride.rating.driver_rating is None

    def test_each_side_rates_once(self, engine, completed_ride):
        engine.record_rating(completed_ride.ride_id, "u1", 5)

        with pytest.raises(RatingAlreadyExists):
            engine.record_rating(completed_ride.ride_id, "u1", 1)

        assert engine.record_rating(completed_ride.ride_id, "d1", 3).rating.rider_rating == 3

    def test_requires_completed_ride(self, engine, online_driver):
        online_driver("d1")
        ride = engine.book_ride("u1", NYC_PICKUP, NYC_DESTINATION)
        engine.accept_ride(ride.ride_id, "d1")

        with pytest.raises(RideNotCompleted):
            engine.record_rating(ride.ride_id, "u1", 5)

    def test_stranger_cannot_rate(self, engine, completed_ride):
        with pytest.raises(Forbidden):
            engine.record_rating(completed_ride.ride_id, "stranger", 5)

    @pytest.mark.parametrize("rating", [0, 6, True, 4.5])
    def test_rating_range(self, engine, completed_ride, rating):
        with pytest.raises(ValidationError):
            engine.record_rating(completed_ride.ride_id, "u1", rating)

    def test_feedback_length(self, engine, completed_ride):
        with pytest.raises(ValidationError):
            engine.record_rating(completed_ride.ride_id, "u1", 5, "x" * 501)
