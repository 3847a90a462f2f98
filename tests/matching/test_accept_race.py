"""Concurrent accepts on one ride: exactly one driver wins."""

import threading
from concurrent.futures import ThreadPoolExecutor

import pytest

from conftest import NYC_DESTINATION, NYC_PICKUP
from core.exceptions import AssignmentConflict
from ride import RideStatus


def race(engine, ride_id: str, driver_ids: list[str]) -> list[object]:
    barrier = threading.Barrier(len(driver_ids))

    def accept(driver_id: str) -> object:
        barrier.wait()
        try:
            return engine.accept_ride(ride_id, driver_id)
        except AssignmentConflict as e:
            return e

    with ThreadPoolExecutor(max_workers=len(driver_ids)) as pool:
        return list(pool.map(accept, driver_ids))


@pytest.mark.critical
@pytest.mark.slow
class TestAcceptRace:
    def test_two_drivers_on_matched_ride(self, engine, online_driver):
        online_driver("d1")
        online_driver("d2")
        ride = engine.book_ride("u1", NYC_PICKUP, NYC_DESTINATION)
        engine.propose_matches()
        assert engine.get_ride(ride.ride_id).status == RideStatus.MATCHED

        results = race(engine, ride.ride_id, ["d1", "d2"])

        winners = [r for r in results if not isinstance(r, AssignmentConflict)]
        losers = [r for r in results if isinstance(r, AssignmentConflict)]
        assert len(winners) == 1
        assert len(losers) == 1

        winner = winners[0]
        assert winner.status == RideStatus.ACCEPTED
        stored = engine.get_ride(ride.ride_id)
        assert stored.driver_id == winner.driver_id

        loser_id = "d2" if winner.driver_id == "d1" else "d1"
        assert engine.get_driver(winner.driver_id).is_available is False
        assert engine.get_driver(loser_id).is_available is True

    def test_many_drivers_one_ride(self, engine, online_driver):
        driver_ids = [f"d{i}" for i in range(8)]
        for driver_id in driver_ids:
            online_driver(driver_id)
        ride = engine.book_ride("u1", NYC_PICKUP, NYC_DESTINATION)

        results = race(engine, ride.ride_id, driver_ids)

        winners = [r for r in results if not isinstance(r, AssignmentConflict)]
        assert len(winners) == 1
        assert sum(1 for d in driver_ids if not engine.get_driver(d).is_available) == 1

    def test_one_driver_two_rides(self, engine, online_driver):
        """A driver racing itself across two rides ends up bound to one."""
        online_driver("d1")
        first = engine.book_ride("u1", NYC_PICKUP, NYC_DESTINATION)
        second = engine.book_ride("u2", NYC_PICKUP, NYC_DESTINATION)
        barrier = threading.Barrier(2)

        def accept(ride_id: str) -> object:
            barrier.wait()
            try:
                return engine.accept_ride(ride_id, "d1")
            except Exception as e:
                return e

        with ThreadPoolExecutor(max_workers=2) as pool:
            results = list(pool.map(accept, [first.ride_id, second.ride_id]))

        assert sum(1 for r in results if not isinstance(r, Exception)) == 1
        statuses = {engine.get_ride(r).status for r in (first.ride_id, second.ride_id)}
        assert statuses == {RideStatus.ACCEPTED, RideStatus.REQUESTED}
