import pytest

from conftest import NYC_DESTINATION, NYC_PICKUP
from core.exceptions import DriverAlreadyActive, DriverNotFound, Forbidden, InvalidCoordinates


@pytest.mark.unit
class TestDriverRegistry:
    def test_register_starts_unavailable(self, engine):
        driver = engine.register_driver("d1", NYC_PICKUP)

        assert driver.is_available is False
        assert driver.location.as_tuple() == NYC_PICKUP
        assert driver.h3_cell == engine.geo_index.cell_for(NYC_PICKUP)

    def test_register_without_location(self, engine):
        driver = engine.register_driver("d1")
        assert driver.location is None
        assert driver.is_eligible is False

    def test_register_rejects_bad_location(self, engine):
        with pytest.raises(InvalidCoordinates):
            engine.register_driver("d1", (500.0, 0.0))

    def test_go_online_and_offline(self, engine):
        engine.register_driver("d1", NYC_PICKUP)

        assert engine.set_driver_availability("d1", True).is_eligible is True
        assert engine.set_driver_availability("d1", False).is_available is False

    def test_get_unknown_driver(self, engine):
        with pytest.raises(DriverNotFound):
            engine.get_driver("ghost")

    def test_availability_for_unknown_driver(self, engine):
        with pytest.raises(DriverNotFound):
            engine.set_driver_availability("ghost", True)

    def test_location_for_unknown_driver(self, engine):
        with pytest.raises(DriverNotFound):
            engine.update_driver_location("ghost", NYC_PICKUP)

    def test_inactive_driver_cannot_go_online(self, engine):
        engine.register_driver("d1", NYC_PICKUP, is_active=False)

        with pytest.raises(Forbidden):
            engine.set_driver_availability("d1", True)

    def test_bound_driver_cannot_go_online(self, engine, online_driver):
        online_driver("d1")
        ride = engine.book_ride("u1", NYC_PICKUP, NYC_DESTINATION)
        engine.accept_ride(ride.ride_id, "d1")

        with pytest.raises(DriverAlreadyActive):
            engine.set_driver_availability("d1", True)

    def test_is_driver_active_reflects_account_flag(self, engine):
        engine.register_driver("d1", NYC_PICKUP, is_active=True)
        engine.register_driver("d2", NYC_PICKUP, is_active=False)

        assert engine.is_driver_active("d1") is True
        assert engine.is_driver_active("d2") is False

    def test_is_driver_active_ignores_ride_binding(self, engine, online_driver):
        online_driver("d1")
        ride = engine.book_ride("u1", NYC_PICKUP, NYC_DESTINATION)
        engine.accept_ride(ride.ride_id, "d1")

        assert engine.is_driver_active("d1") is True

    def test_is_driver_active_unknown_driver(self, engine):
        with pytest.raises(DriverNotFound):
            engine.is_driver_active("ghost")

    def test_has_active_ride(self, engine, online_driver):
        online_driver("d1")
        assert engine.has_active_ride("d1") is False

        ride = engine.book_ride("u1", NYC_PICKUP, NYC_DESTINATION)
        engine.accept_ride(ride.ride_id, "d1")
        assert engine.has_active_ride("d1") is True

        engine.transition(ride.ride_id, "d1", "cancelled", "Car trouble")
        assert engine.has_active_ride("d1") is False

    def test_list_drivers(self, engine):
        engine.register_driver("b", NYC_PICKUP)
        engine.register_driver("a", NYC_PICKUP)
        assert [d.driver_id for d in engine.drivers.list_drivers()] == ["a", "b"]

    def test_location_update_is_broadcast(self, engine, broadcaster):
        engine.register_driver("d1", NYC_PICKUP)
        subscription = broadcaster.subscribe("driver:d1")

        engine.update_driver_location("d1", (-73.99, 40.75))

        (message,) = subscription.drain()
        assert message["event"] == "driver.location_updated"
        assert message["location"] == [-73.99, 40.75]

    def test_location_update_reaches_rider_during_trip(self, engine, online_driver, broadcaster):
        online_driver("d1")
        ride = engine.book_ride("u1", NYC_PICKUP, NYC_DESTINATION)
        engine.accept_ride(ride.ride_id, "d1")
        started = engine.transition(ride.ride_id, "d1", "in_progress")
        subscription = broadcaster.subscribe(f"ride:{ride.ride_id}")

        engine.update_driver_location("d1", (-73.99, 40.75))

        (message,) = subscription.drain()
        assert message["event"] == "ride.driver_location"
        assert message["status"] == "in_progress"
        assert message["driver_location"] == [-73.99, 40.75]
        assert message["version"] == started.version

    def test_location_update_after_accept_reaches_rider(self, engine, online_driver, broadcaster):
        online_driver("d1")
        ride = engine.book_ride("u1", NYC_PICKUP, NYC_DESTINATION)
        engine.accept_ride(ride.ride_id, "d1")
        subscription = broadcaster.subscribe(f"ride:{ride.ride_id}")

        engine.update_driver_location("d1", (-73.99, 40.75))

        (message,) = subscription.drain()
        assert message["event"] == "ride.driver_location"
        assert message["status"] == "accepted"

    def test_location_update_without_trip_stays_on_driver_topic(
        self, engine, online_driver, broadcaster
    ):
        online_driver("d1")
        ride = engine.book_ride("u1", NYC_PICKUP, NYC_DESTINATION)
        ride_subscription = broadcaster.subscribe(f"ride:{ride.ride_id}")
        driver_subscription = broadcaster.subscribe("driver:d1")

        engine.update_driver_location("d1", (-73.99, 40.75))

        assert ride_subscription.drain() == []
        assert [m["event"] for m in driver_subscription.drain()] == ["driver.location_updated"]
