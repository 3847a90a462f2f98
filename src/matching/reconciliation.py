"""Sweep that repairs disagreements between driver flags and ride bindings.

Every write in the engine keeps ``is_available`` consistent with the rides
table inside one transaction, so a disagreement only appears after an
external edit or a crash between processes. Each repair is a
conditional write.
"""

import logging
from dataclasses import dataclass, field
from typing import Any

from sqlalchemy.orm import sessionmaker

from db import transaction, translate_errors
from db.repositories import DriverRepository, RideRepository
from db.utils import utc_now
from driver import DriverAvailability
from metrics.prometheus_exporter import dispatch_reconciliation_fixes_total
from pubsub.broadcaster import EventBroadcaster
from pubsub.channels import EVENT_DRIVER_AVAILABILITY_CHANGED, driver_event, driver_topic

logger = logging.getLogger(__name__)


@dataclass
class ReconciliationReport:
    released: list[str] = field(default_factory=list)
    claimed: list[str] = field(default_factory=list)

    @property
    def total_fixes(self) -> int:
        return len(self.released) + len(self.claimed)


def _stuck_after_assignment(driver: DriverAvailability) -> bool:
    """Claimed for a ride and never released since."""
    if driver.last_assigned_at is None:
        return False
    return driver.last_released_at is None or driver.last_released_at < driver.last_assigned_at


class Reconciler:
    def __init__(self, session_factory: sessionmaker[Any], broadcaster: EventBroadcaster):
        self._session_factory = session_factory
        self._broadcaster = broadcaster

    def sweep(self) -> ReconciliationReport:
        with self._session_factory() as session, translate_errors("reconcile"):
            drivers = DriverRepository(session).list_all()
            bound = RideRepository(session).bound_driver_rides()

        report = ReconciliationReport()
        for driver in drivers:
            if not driver.is_active:
                continue
            ride_id = bound.get(driver.driver_id)
            if ride_id is None and not driver.is_available and _stuck_after_assignment(driver):
                if self._fix(driver.driver_id, release=True):
                    report.released.append(driver.driver_id)
            elif ride_id is not None and driver.is_available:
                if self._fix(driver.driver_id, release=False, ride_id=ride_id):
                    report.claimed.append(driver.driver_id)

        if report.total_fixes:
            logger.warning(
                "Reconciliation fixed %d drivers (released=%s claimed=%s)",
                report.total_fixes,
                report.released,
                report.claimed,
            )
        return report

    def _fix(self, driver_id: str, release: bool, ride_id: str | None = None) -> bool:
        kind = "released" if release else "claimed"
        with self._session_factory() as session, translate_errors("reconcile"):
            with transaction(session):
                repo = DriverRepository(session)
                now = utc_now()
                changed = repo.release(driver_id, now) if release else repo.claim(driver_id, now)
                driver = repo.get(driver_id) if changed else None

        if driver is None:
            return False
        dispatch_reconciliation_fixes_total.labels(kind=kind).inc()
        self._broadcaster.publish(
            driver_topic(driver_id),
            driver_event(driver, EVENT_DRIVER_AVAILABILITY_CHANGED, ride_id=ride_id),
        )
        return True
