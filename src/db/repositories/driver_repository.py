"""Driver repository: availability flags and positions over the drivers table."""

from collections.abc import Iterable
from datetime import datetime

from sqlalchemy import exists, select, update
from sqlalchemy.orm import Session

from driver import DriverAvailability
from ride import Coordinates

from ..schema import DriverRecord, RideRecord
from ..utils import as_utc
from .ride_repository import BOUND_VALUES, _chunks


class DriverRepository:
    """Repository for driver availability.

    ``is_available`` only changes through ``claim``, ``release`` and
    ``set_availability``; each is a single conditional UPDATE.
    """

    def __init__(self, session: Session):
        self.session = session

    def upsert(
        self,
        driver_id: str,
        now: datetime,
        is_active: bool = True,
        location: tuple[float, float] | None = None,
        h3_cell: str | None = None,
    ) -> None:
        record = self.session.get(DriverRecord, driver_id)
        if record is None:
            record = DriverRecord(driver_id=driver_id, is_available=False, version=1)
            self.session.add(record)
        else:
            record.version += 1
        record.is_active = is_active
        if not is_active:
            record.is_available = False
        if location is not None:
            record.lon, record.lat = location
            record.h3_cell = h3_cell
            record.last_location_update = now
        self.session.flush()

    def get(self, driver_id: str) -> DriverAvailability | None:
        stmt = (
            select(DriverRecord)
            .where(DriverRecord.driver_id == driver_id)
            .execution_options(populate_existing=True)
        )
        record = self.session.execute(stmt).scalar_one_or_none()
        return None if record is None else self._to_domain(record)

    def update_location(
        self, driver_id: str, location: tuple[float, float], h3_cell: str, now: datetime
    ) -> bool:
        lon, lat = location
        return self._update(
            [DriverRecord.driver_id == driver_id],
            lon=lon,
            lat=lat,
            h3_cell=h3_cell,
            last_location_update=now,
        )

    def set_availability(self, driver_id: str, available: bool) -> bool:
        """Driver-initiated toggle.

        Going available requires an active account and no ride in ACCEPTED
        or IN_PROGRESS bound to the driver; both are checked in the UPDATE.
        """
        conditions = [DriverRecord.driver_id == driver_id]
        if available:
            conditions.append(DriverRecord.is_active.is_(True))
            conditions.append(
                ~exists().where(
                    RideRecord.driver_id == driver_id,
                    RideRecord.status.in_(BOUND_VALUES),
                )
            )
        return self._update(conditions, is_available=available)

    def claim(self, driver_id: str, now: datetime) -> bool:
        """Flip an available, active driver to unavailable. False if not eligible."""
        return self._update(
            [
                DriverRecord.driver_id == driver_id,
                DriverRecord.is_available.is_(True),
                DriverRecord.is_active.is_(True),
            ],
            is_available=False,
            last_assigned_at=now,
        )

    def release(self, driver_id: str, now: datetime) -> bool:
        """Make a bound driver available again once their ride ends."""
        return self._update(
            [
                DriverRecord.driver_id == driver_id,
                DriverRecord.is_available.is_(False),
                DriverRecord.is_active.is_(True),
            ],
            is_available=True,
            last_released_at=now,
        )

    def list_available_in_cells(
        self, cells: Iterable[str], exclude_ids: Iterable[str] = ()
    ) -> list[DriverAvailability]:
        excluded = set(exclude_ids)
        drivers: list[DriverAvailability] = []
        for batch in _chunks(cells):
            stmt = select(DriverRecord).where(
                DriverRecord.h3_cell.in_(batch),
                DriverRecord.is_available.is_(True),
                DriverRecord.is_active.is_(True),
            )
            for record in self.session.execute(stmt).scalars():
                if record.driver_id not in excluded:
                    drivers.append(self._to_domain(record))
        return drivers

    def list_all(self) -> list[DriverAvailability]:
        stmt = select(DriverRecord).order_by(DriverRecord.driver_id)
        return [self._to_domain(r) for r in self.session.execute(stmt).scalars()]

    def _update(self, conditions: list, **values: object) -> bool:
        stmt = (
            update(DriverRecord)
            .where(*conditions)
            .values(version=DriverRecord.version + 1, **values)
            .execution_options(synchronize_session=False)
        )
        return self.session.execute(stmt).rowcount == 1

    def _to_domain(self, record: DriverRecord) -> DriverAvailability:
        location = None
        if record.lon is not None and record.lat is not None:
            location = Coordinates(record.lon, record.lat)
        return DriverAvailability(
            driver_id=record.driver_id,
            is_active=record.is_active,
            is_available=record.is_available,
            location=location,
            h3_cell=record.h3_cell,
            last_location_update=as_utc(record.last_location_update),
            last_assigned_at=as_utc(record.last_assigned_at),
            last_released_at=as_utc(record.last_released_at),
            version=record.version,
        )
