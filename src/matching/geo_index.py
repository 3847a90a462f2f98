"""Radius queries over driver positions and ride pickups.

Positions live in the store, each row tagged with its H3 cell. A query
selects rows from a disk of cells around the point, growing the disk only
while it still might hide a closer result, and then filters candidates by
exact haversine distance. Answers therefore always reflect the latest
committed location and availability writes.
"""

import logging
from collections.abc import Callable, Iterable, Sequence
from dataclasses import dataclass
from typing import Any, TypeVar

from sqlalchemy.orm import Session, sessionmaker

from core.exceptions import InvalidRadius
from core.retry import RetryConfig, with_retry_sync
from db.errors import translate_errors
from db.repositories import DriverRepository, RideRepository
from geo.cells import cell_for, covered_radius_km, covering_cells, expanding_disks
from geo.distance import point_distance_km
from ride import Coordinates, Ride, RideStatus
from settings import MatchingSettings

logger = logging.getLogger(__name__)

T = TypeVar("T")

Point = Coordinates | tuple[float, float]


@dataclass(frozen=True)
class NearbyDriver:
    driver_id: str
    distance_km: float
    location: Coordinates


@dataclass(frozen=True)
class NearbyRide:
    ride: Ride
    distance_km: float


def as_lon_lat(point: Point) -> tuple[float, float]:
    if isinstance(point, Coordinates):
        return point.as_tuple()
    return Coordinates.from_pair(point).as_tuple()


class GeoIndex:
    """Store-backed spatial index for available drivers and pending rides."""

    def __init__(self, session_factory: sessionmaker[Any], settings: MatchingSettings):
        self._session_factory = session_factory
        self._settings = settings
        self._resolution = settings.h3_resolution
        self._retry = RetryConfig(max_attempts=settings.read_retry_attempts)

    @property
    def resolution(self) -> int:
        return self._resolution

    def cell_for(self, point: Point) -> str:
        lon, lat = as_lon_lat(point)
        return cell_for(lon, lat, self._resolution)

    def resolve_radius_km(self, radius_km: float | None = None) -> float:
        """Apply the default radius and enforce the configured bounds."""
        if radius_km is None:
            return self._settings.default_radius_km
        if not self._settings.min_radius_km <= radius_km <= self._settings.max_radius_km:
            raise InvalidRadius(
                f"Radius must be between {self._settings.min_radius_km} and "
                f"{self._settings.max_radius_km} km",
                {"radius_km": radius_km},
            )
        return float(radius_km)

    def find_available(
        self,
        point: Point,
        radius_m: float | None = None,
        exclude_ids: Iterable[str] = (),
        limit: int | None = None,
    ) -> list[NearbyDriver]:
        """Available, active drivers within the radius, nearest first."""
        lon, lat = as_lon_lat(point)
        radius_km = self.resolve_radius_km(None if radius_m is None else radius_m / 1000.0)
        excluded = tuple(exclude_ids)

        found = self._search(
            lon,
            lat,
            radius_km,
            fetch=lambda session, cells: DriverRepository(session).list_available_in_cells(
                cells, excluded
            ),
            locate=lambda d: d.location.as_tuple(),
            limit=limit,
            operation_name="find_available",
        )
        found.sort(key=lambda pair: (pair[1], pair[0].driver_id))
        if limit is not None:
            found = found[:limit]
        return [
            NearbyDriver(driver_id=d.driver_id, distance_km=distance, location=d.location)
            for d, distance in found
        ]

    def find_pending_rides(
        self,
        point: Point,
        radius_m: float | None = None,
        limit: int | None = None,
    ) -> list[NearbyRide]:
        """Rides awaiting a driver with pickup inside the radius.

        Ordered by distance, then by request time.
        """
        lon, lat = as_lon_lat(point)
        radius_km = self.resolve_radius_km(None if radius_m is None else radius_m / 1000.0)

        found = self._search(
            lon,
            lat,
            radius_km,
            fetch=lambda session, cells: RideRepository(session).list_pending_in_cells(cells),
            locate=lambda r: r.pickup.coordinates.as_tuple(),
            limit=limit,
            operation_name="find_pending_rides",
        )
        found.sort(key=lambda pair: (pair[1], pair[0].timeline.requested_at))
        if limit is not None:
            found = found[:limit]
        return [NearbyRide(ride=ride, distance_km=distance) for ride, distance in found]

    def count_available(self, point: Point, radius_m: float | None = None) -> int:
        return len(self.find_available(point, radius_m))

    def count_rides(
        self, point: Point, radius_km: float, statuses: Sequence[RideStatus]
    ) -> int:
        """Rides in the given statuses whose pickup cell lies in the covering disk."""
        lon, lat = as_lon_lat(point)
        cells = covering_cells(lon, lat, radius_km, self._resolution)

        def run() -> int:
            with self._session_factory() as session, translate_errors("count_rides"):
                return RideRepository(session).count_in_cells(cells, statuses)

        return with_retry_sync(run, self._retry, "count_rides")

    def _search(
        self,
        lon: float,
        lat: float,
        radius_km: float,
        fetch: Callable[[Session, set[str]], list[T]],
        locate: Callable[[T], tuple[float, float]],
        limit: int | None,
        operation_name: str,
    ) -> list[tuple[T, float]]:
        def run() -> list[tuple[T, float]]:
            found: list[tuple[T, float]] = []
            with self._session_factory() as session, translate_errors(operation_name):
                for cells, k, is_final in expanding_disks(
                    lon, lat, radius_km, self._resolution
                ):
                    for item in fetch(session, cells):
                        distance = point_distance_km((lon, lat), locate(item))
                        if distance <= radius_km:
                            found.append((item, distance))
                    if is_final:
                        break
                    # Stop early once the disk already guarantees the nearest `limit`.
                    if limit is not None:
                        covered = covered_radius_km(k, self._resolution)
                        if sum(1 for _, d in found if d <= covered) >= limit:
                            break
            return found

        return with_retry_sync(run, self._retry, operation_name)
