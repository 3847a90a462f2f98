"""Ride repository: conditional writes and cell-scoped reads over the rides table."""

from collections.abc import Collection, Iterable
from datetime import datetime
from typing import Any, Literal

from sqlalchemy import case, func, literal, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from core.exceptions import ActiveRideExists, DriverAlreadyActive
from fare import FareBreakdown
from ride import (
    BOUND_STATUSES,
    OPEN_STATUSES,
    TERMINAL_STATUSES,
    Coordinates,
    Fare,
    FareBreakdownModel,
    Location,
    PaymentInfo,
    Ride,
    RideRating,
    RideStatus,
    Timeline,
)

from ..errors import is_active_driver_violation
from ..schema import RideRecord
from ..utils import as_utc

TERMINAL_VALUES = {s.value for s in TERMINAL_STATUSES}
OPEN_VALUES = {s.value for s in OPEN_STATUSES}
BOUND_VALUES = {s.value for s in BOUND_STATUSES}

# Keeps IN (...) lists under the bound-parameter limit of older SQLite builds.
_CELL_CHUNK = 500


def _chunks(cells: Iterable[str]) -> Iterable[list[str]]:
    batch: list[str] = []
    for cell in cells:
        batch.append(cell)
        if len(batch) == _CELL_CHUNK:
            yield batch
            batch = []
    if batch:
        yield batch


class RideRepository:
    """Repository for ride reads and guarded status writes."""

    def __init__(self, session: Session):
        self.session = session

    def create(
        self,
        ride_id: str,
        rider_id: str,
        pickup: Location,
        destination: Location,
        pickup_cell: str,
        estimated_distance: float,
        estimated_duration: float,
        fare: FareBreakdown,
        currency: str,
        requested_at: datetime,
        special_instructions: str | None = None,
    ) -> None:
        """Insert a ride in REQUESTED state.

        Raises ActiveRideExists when the rider already holds a non-terminal
        ride; the partial unique index makes this hold under concurrent bookings.
        """
        record = RideRecord(
            ride_id=ride_id,
            rider_id=rider_id,
            status=RideStatus.REQUESTED.value,
            pickup_address=pickup.address,
            pickup_lon=pickup.coordinates.lon,
            pickup_lat=pickup.coordinates.lat,
            pickup_cell=pickup_cell,
            destination_address=destination.address,
            destination_lon=destination.coordinates.lon,
            destination_lat=destination.coordinates.lat,
            estimated_distance=estimated_distance,
            estimated_duration=estimated_duration,
            fare_estimated=fare.total,
            surge_multiplier=fare.surge_multiplier,
            currency=currency,
            fare_base=fare.base,
            fare_distance=fare.distance,
            fare_time=fare.time,
            fare_surge=fare.surge,
            requested_at=requested_at,
            special_instructions=special_instructions,
            version=1,
        )
        self.session.add(record)
        try:
            self.session.flush()
        except IntegrityError as exc:
            raise ActiveRideExists(
                "Rider already has an active ride", {"rider_id": rider_id}
            ) from exc

    def get(self, ride_id: str) -> Ride | None:
        stmt = (
            select(RideRecord)
            .where(RideRecord.ride_id == ride_id)
            .execution_options(populate_existing=True)
        )
        record = self.session.execute(stmt).scalar_one_or_none()
        return None if record is None else self._to_domain(record)

    def get_active_for_rider(self, rider_id: str) -> Ride | None:
        stmt = select(RideRecord).where(
            RideRecord.rider_id == rider_id,
            RideRecord.status.notin_(TERMINAL_VALUES),
        )
        record = self.session.execute(stmt).scalars().first()
        return None if record is None else self._to_domain(record)

    def get_active_for_driver(self, driver_id: str) -> Ride | None:
        stmt = select(RideRecord).where(
            RideRecord.driver_id == driver_id,
            RideRecord.status.notin_(TERMINAL_VALUES),
        )
        record = self.session.execute(stmt).scalars().first()
        return None if record is None else self._to_domain(record)

    def compare_and_set(
        self,
        ride_id: str,
        expected_statuses: Collection[RideStatus],
        new_status: RideStatus,
        expected_version: int | None = None,
        **fields: Any,
    ) -> bool:
        """Move the ride to new_status only if it is still in expected_statuses.

        Extra keyword arguments are written to the same row in the same
        statement. Returns False when no row matched (lost race or stale
        version); the caller decides what that means.
        """
        conditions = [
            RideRecord.ride_id == ride_id,
            RideRecord.status.in_([s.value for s in expected_statuses]),
        ]
        if expected_version is not None:
            conditions.append(RideRecord.version == expected_version)

        stmt = (
            update(RideRecord)
            .where(*conditions)
            .values(status=new_status.value, version=RideRecord.version + 1, **fields)
            .execution_options(synchronize_session=False)
        )
        result = self.session.execute(stmt)
        return result.rowcount == 1

    def assign_driver(
        self,
        ride_id: str,
        driver_id: str,
        accepted_at: datetime,
        expected_status: RideStatus | None = None,
    ) -> bool:
        """Bind driver_id to a ride that is still open and unassigned.

        With expected_status the ride must also still be in that status, so
        the caller knows exactly which status the write replaced.
        """
        if expected_status is not None:
            status_clause = RideRecord.status == expected_status.value
        else:
            status_clause = RideRecord.status.in_(OPEN_VALUES)
        # A proposal committed after accepted_at was taken must not end up later than it.
        accepted_at_value = case(
            (RideRecord.matched_at > accepted_at, RideRecord.matched_at),
            else_=literal(accepted_at, RideRecord.accepted_at.type),
        )
        stmt = (
            update(RideRecord)
            .where(
                RideRecord.ride_id == ride_id,
                status_clause,
                RideRecord.driver_id.is_(None),
            )
            .values(
                status=RideStatus.ACCEPTED.value,
                driver_id=driver_id,
                accepted_at=accepted_at_value,
                version=RideRecord.version + 1,
            )
            .execution_options(synchronize_session=False)
        )
        try:
            result = self.session.execute(stmt)
        except IntegrityError as exc:
            if is_active_driver_violation(exc):
                raise DriverAlreadyActive(
                    "Driver already has an active ride", {"driver_id": driver_id}
                ) from exc
            raise
        return result.rowcount == 1

    def list_pending_in_cells(self, cells: Iterable[str]) -> list[Ride]:
        """Rides awaiting a driver whose pickup lies in any of the cells."""
        rides: list[Ride] = []
        for batch in _chunks(cells):
            stmt = select(RideRecord).where(
                RideRecord.pickup_cell.in_(batch),
                RideRecord.status.in_(OPEN_VALUES),
            )
            rides.extend(self._to_domain(r) for r in self.session.execute(stmt).scalars())
        return rides

    def count_in_cells(self, cells: Iterable[str], statuses: Collection[RideStatus]) -> int:
        values = [s.value for s in statuses]
        total = 0
        for batch in _chunks(cells):
            stmt = (
                select(func.count())
                .select_from(RideRecord)
                .where(RideRecord.pickup_cell.in_(batch), RideRecord.status.in_(values))
            )
            total += self.session.execute(stmt).scalar() or 0
        return total

    def list_requested_without_proposal(self, limit: int) -> list[Ride]:
        """Oldest REQUESTED rides the matcher has not proposed a driver for."""
        stmt = (
            select(RideRecord)
            .where(
                RideRecord.status == RideStatus.REQUESTED.value,
                RideRecord.proposed_driver_id.is_(None),
            )
            .order_by(RideRecord.requested_at)
            .limit(limit)
        )
        return [self._to_domain(r) for r in self.session.execute(stmt).scalars()]

    def bound_driver_rides(self) -> dict[str, str]:
        """Map of driver_id to ride_id for rides in ACCEPTED or IN_PROGRESS."""
        stmt = select(RideRecord.driver_id, RideRecord.ride_id).where(
            RideRecord.status.in_(BOUND_VALUES),
            RideRecord.driver_id.is_not(None),
        )
        return {driver_id: ride_id for driver_id, ride_id in self.session.execute(stmt)}

    def list_for_user(
        self,
        user_id: str,
        role: Literal["rider", "driver"],
        status: RideStatus | None = None,
        page: int = 1,
        limit: int = 10,
    ) -> tuple[list[Ride], int]:
        """Page through a user's rides, newest first. Returns (rides, total)."""
        column = RideRecord.rider_id if role == "rider" else RideRecord.driver_id
        conditions = [column == user_id]
        if status is not None:
            conditions.append(RideRecord.status == status.value)

        total = (
            self.session.execute(
                select(func.count()).select_from(RideRecord).where(*conditions)
            ).scalar()
            or 0
        )
        stmt = (
            select(RideRecord)
            .where(*conditions)
            .order_by(RideRecord.requested_at.desc())
            .offset((page - 1) * limit)
            .limit(limit)
        )
        return [self._to_domain(r) for r in self.session.execute(stmt).scalars()], total

    def record_payment(
        self,
        ride_id: str,
        method: str,
        status: str,
        transaction_id: str | None,
        processed_at: datetime | None,
    ) -> bool:
        return self._update_completed(
            ride_id,
            None,
            payment_method=method,
            payment_status=status,
            transaction_id=transaction_id,
            payment_processed_at=processed_at,
        )

    def record_rating(
        self,
        ride_id: str,
        rating_field: Literal["rider_rating", "driver_rating"],
        rating: int,
        feedback_field: Literal["rider_feedback", "driver_feedback"],
        feedback: str | None,
    ) -> bool:
        """Write a rating once. False if not completed or already rated."""
        return self._update_completed(
            ride_id,
            [getattr(RideRecord, rating_field).is_(None)],
            **{rating_field: rating, feedback_field: feedback},
        )

    def _update_completed(
        self, ride_id: str, extra_conditions: list | None, **fields: Any
    ) -> bool:
        stmt = (
            update(RideRecord)
            .where(
                RideRecord.ride_id == ride_id,
                RideRecord.status == RideStatus.COMPLETED.value,
                *(extra_conditions or []),
            )
            .values(version=RideRecord.version + 1, **fields)
            .execution_options(synchronize_session=False)
        )
        return self.session.execute(stmt).rowcount == 1

    def _to_domain(self, record: RideRecord) -> Ride:
        """Convert ORM model to domain model."""
        return Ride(
            ride_id=record.ride_id,
            rider_id=record.rider_id,
            driver_id=record.driver_id,
            proposed_driver_id=record.proposed_driver_id,
            status=RideStatus(record.status),
            pickup=Location(
                address=record.pickup_address,
                coordinates=Coordinates(record.pickup_lon, record.pickup_lat),
            ),
            destination=Location(
                address=record.destination_address,
                coordinates=Coordinates(record.destination_lon, record.destination_lat),
            ),
            estimated_distance=record.estimated_distance,
            estimated_duration=record.estimated_duration,
            actual_distance=record.actual_distance,
            actual_duration=record.actual_duration,
            fare=Fare(
                estimated=record.fare_estimated,
                final=record.fare_final,
                surge_multiplier=record.surge_multiplier,
                currency=record.currency,
                breakdown=FareBreakdownModel(
                    base=record.fare_base,
                    distance=record.fare_distance,
                    time=record.fare_time,
                    surge=record.fare_surge,
                ),
            ),
            timeline=Timeline(
                requested_at=as_utc(record.requested_at),
                matched_at=as_utc(record.matched_at),
                accepted_at=as_utc(record.accepted_at),
                started_at=as_utc(record.started_at),
                completed_at=as_utc(record.completed_at),
                cancelled_at=as_utc(record.cancelled_at),
            ),
            payment=PaymentInfo(
                method=record.payment_method,
                status=record.payment_status,
                transaction_id=record.transaction_id,
                processed_at=as_utc(record.payment_processed_at),
            ),
            rating=RideRating(
                rider_rating=record.rider_rating,
                driver_rating=record.driver_rating,
                rider_feedback=record.rider_feedback,
                driver_feedback=record.driver_feedback,
            ),
            cancellation_reason=record.cancellation_reason,
            cancelled_by=record.cancelled_by,
            special_instructions=record.special_instructions,
            version=record.version,
        )
