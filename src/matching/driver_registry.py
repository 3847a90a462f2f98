import logging
from typing import Any

from sqlalchemy.orm import sessionmaker

from core.exceptions import DriverAlreadyActive, DriverNotFound, Forbidden
from db import transaction, translate_errors
from db.repositories import DriverRepository, RideRepository
from db.utils import utc_now
from driver import DriverAvailability
from pubsub.broadcaster import EventBroadcaster
from pubsub.channels import (
    EVENT_DRIVER_AVAILABILITY_CHANGED,
    EVENT_DRIVER_LOCATION_UPDATED,
    EVENT_RIDE_DRIVER_LOCATION,
    driver_event,
    driver_topic,
    ride_event,
    ride_topic,
)
from ride import BOUND_STATUSES

from .geo_index import GeoIndex, Point, as_lon_lat

logger = logging.getLogger(__name__)


class DriverRegistry:
    """Driver availability and positions, persisted in the store.

    Thread-safe: every method runs in its own session, and availability
    flags change only through single conditional UPDATEs.
    """

    def __init__(
        self,
        session_factory: sessionmaker[Any],
        geo_index: GeoIndex,
        broadcaster: EventBroadcaster,
    ) -> None:
        self._session_factory = session_factory
        self._geo_index = geo_index
        self._broadcaster = broadcaster

    def register_driver(
        self,
        driver_id: str,
        location: Point | None = None,
        is_active: bool = True,
    ) -> DriverAvailability:
        """Create or refresh a driver. New drivers start unavailable."""
        lon_lat = as_lon_lat(location) if location is not None else None
        cell = self._geo_index.cell_for(lon_lat) if lon_lat is not None else None

        with self._session_factory() as session, translate_errors("register_driver"):
            with transaction(session):
                repo = DriverRepository(session)
                repo.upsert(
                    driver_id, utc_now(), is_active=is_active, location=lon_lat, h3_cell=cell
                )
                driver = repo.get(driver_id)

        logger.info("Driver %s registered (active=%s)", driver_id, is_active)
        return driver

    def get_driver(self, driver_id: str) -> DriverAvailability:
        with self._session_factory() as session, translate_errors("get_driver"):
            driver = DriverRepository(session).get(driver_id)
        if driver is None:
            raise DriverNotFound(f"Driver {driver_id} not found", {"driver_id": driver_id})
        return driver

    def is_driver_active(self, driver_id: str) -> bool:
        """Whether the driver account is active."""
        return self.get_driver(driver_id).is_active

    def has_active_ride(self, driver_id: str) -> bool:
        """True when the driver is bound to a non-terminal ride."""
        with self._session_factory() as session, translate_errors("has_active_ride"):
            return RideRepository(session).get_active_for_driver(driver_id) is not None

    def update_location(self, driver_id: str, location: Point) -> DriverAvailability:
        """Move the driver and tell the rider of any ride it is carrying out."""
        lon_lat = as_lon_lat(location)
        cell = self._geo_index.cell_for(lon_lat)

        with self._session_factory() as session, translate_errors("update_location"):
            with transaction(session):
                repo = DriverRepository(session)
                if not repo.update_location(driver_id, lon_lat, cell, utc_now()):
                    raise DriverNotFound(
                        f"Driver {driver_id} not found", {"driver_id": driver_id}
                    )
                driver = repo.get(driver_id)
                ride = RideRepository(session).get_active_for_driver(driver_id)

        self._broadcaster.publish(
            driver_topic(driver_id), driver_event(driver, EVENT_DRIVER_LOCATION_UPDATED)
        )
        if ride is not None and ride.status in BOUND_STATUSES:
            self._broadcaster.publish(
                ride_topic(ride.ride_id),
                ride_event(ride, EVENT_RIDE_DRIVER_LOCATION, driver_location=lon_lat),
            )
        return driver

    def set_availability(self, driver_id: str, available: bool) -> DriverAvailability:
        with self._session_factory() as session, translate_errors("set_availability"):
            with transaction(session):
                repo = DriverRepository(session)
                changed = repo.set_availability(driver_id, available)
                driver = repo.get(driver_id)

        if driver is None:
            raise DriverNotFound(f"Driver {driver_id} not found", {"driver_id": driver_id})
        if not changed:
            if not driver.is_active:
                raise Forbidden(
                    "Inactive drivers cannot go available", {"driver_id": driver_id}
                )
            raise DriverAlreadyActive(
                "Driver has a ride in progress", {"driver_id": driver_id}
            )

        logger.info("Driver %s availability set to %s", driver_id, available)
        self._broadcaster.publish(
            driver_topic(driver_id), driver_event(driver, EVENT_DRIVER_AVAILABILITY_CHANGED)
        )
        return driver

    def list_drivers(self) -> list[DriverAvailability]:
        with self._session_factory() as session, translate_errors("list_drivers"):
            return DriverRepository(session).list_all()
