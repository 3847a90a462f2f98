"""Facade that wires the dispatch components and guards every public call."""

import logging
from collections.abc import Callable
from datetime import datetime
from typing import Any, TypeVar

from pydantic import ValidationError as PydanticValidationError
from sqlalchemy.orm import sessionmaker

from core.correlation import with_correlation
from core.exceptions import DispatchError, InternalError, ValidationError
from core.retry import RetryConfig
from db import init_database
from db.utils import utc_now
from dispatch_logging.context import log_ride_context
from driver import DriverAvailability
from fare import FareCalculator, FareEstimate, FareRange
from lifecycle.ride_lifecycle import LocationInput, RideLifecycle, to_location
from matching.dispatch_matcher import DispatchMatcher
from matching.driver_registry import DriverRegistry
from matching.geo_index import GeoIndex, NearbyDriver, Point
from matching.matching_loop import MatchingLoop
from matching.reconciliation import ReconciliationReport, Reconciler
from matching.surge_pricing import SurgePricingCalculator
from metrics.prometheus_exporter import record_error
from pubsub.broadcaster import EventBroadcaster, InMemoryBroadcaster, Subscription
from redis_client.publisher import RedisPublisher
from ride import Ride, RideStatus
from settings import Settings

logger = logging.getLogger(__name__)

T = TypeVar("T")


class DispatchEngine:
    """Entry point for ride booking, matching and lifecycle operations.

    Every call runs under a correlation ID and ride/driver log context.
    Engine errors propagate with their stable codes; anything unexpected
    is logged and raised as InternalError so it fails only that call.
    """

    def __init__(
        self,
        settings: Settings,
        session_factory: sessionmaker[Any],
        broadcaster: EventBroadcaster,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.settings = settings
        self.broadcaster = broadcaster
        self._session_factory = session_factory

        self.geo_index = GeoIndex(session_factory, settings.matching)
        self.fare_calculator = FareCalculator(settings.fare)
        self.surge_calculator = SurgePricingCalculator(
            self.geo_index, settings.fare, settings.matching, clock=clock
        )
        self.drivers = DriverRegistry(session_factory, self.geo_index, broadcaster)
        self.matcher = DispatchMatcher(
            session_factory, self.geo_index, broadcaster, settings.matching
        )
        self.lifecycle = RideLifecycle(
            session_factory,
            self.fare_calculator,
            self.surge_calculator,
            self.geo_index,
            self.matcher,
            broadcaster,
            read_retry=RetryConfig(max_attempts=settings.matching.read_retry_attempts),
        )
        self.reconciler = Reconciler(session_factory, broadcaster)
        self.matching_loop = MatchingLoop(self.matcher, settings.matching.interval_seconds)

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        broadcaster: EventBroadcaster | None = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> "DispatchEngine":
        session_factory = init_database(
            settings.database.url,
            settings.database.lock_timeout_seconds,
            settings.database.echo,
        )
        if broadcaster is None:
            if settings.redis.enabled:
                broadcaster = RedisPublisher.from_settings(settings.redis)
            else:
                broadcaster = InMemoryBroadcaster()
        logger.info(
            "Dispatch engine configured (store=%s, broadcaster=%s, background matching=%s)",
            session_factory.kw["bind"].url.get_backend_name(),
            broadcaster.backend,
            settings.matching.background_enabled,
        )
        return cls(settings, session_factory, broadcaster, clock)

    # --- lifecycle of the engine itself ---

    def start(self) -> None:
        """Start the background matcher unless running in pull-only mode."""
        if not self.settings.matching.background_enabled:
            logger.info("Background matching disabled; drivers pull pending rides")
            return
        self.matching_loop.start()

    def stop(self) -> None:
        self.matching_loop.stop()

    def close(self) -> None:
        self.stop()
        self.broadcaster.close()
        self._session_factory.kw["bind"].dispose()

    def __enter__(self) -> "DispatchEngine":
        self.start()
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    # --- rider operations ---

    def estimate_fare(self, pickup: LocationInput, destination: LocationInput) -> FareEstimate:
        return self._call(
            "estimate_fare", lambda: self.lifecycle.estimate_fare(pickup, destination)
        )

    def estimate_fare_range(
        self, pickup: LocationInput, destination: LocationInput
    ) -> FareRange:
        def run() -> FareRange:
            return self.fare_calculator.estimate_range(
                to_location(pickup).coordinates.as_tuple(),
                to_location(destination).coordinates.as_tuple(),
            )

        return self._call("estimate_fare_range", run)

    def book_ride(
        self,
        rider_id: str,
        pickup: LocationInput,
        destination: LocationInput,
        special_instructions: str | None = None,
    ) -> Ride:
        return self._call(
            "book_ride",
            lambda: self.lifecycle.book_ride(rider_id, pickup, destination, special_instructions),
            rider_id=rider_id,
        )

    def get_ride(self, ride_id: str) -> Ride:
        return self._call("get_ride", lambda: self.lifecycle.get_ride(ride_id), ride_id=ride_id)

    def ride_history(
        self,
        user_id: str,
        role: str = "rider",
        status: RideStatus | str | None = None,
        page: int = 1,
        limit: int = 10,
    ) -> tuple[list[Ride], int]:
        return self._call(
            "ride_history",
            lambda: self.lifecycle.ride_history(user_id, role, status, page, limit),
            actor_id=user_id,
        )

    # --- matching ---

    def list_pending_nearby(self, point: Point, radius_km: float | None = None) -> list[Ride]:
        return self._call(
            "list_pending_nearby", lambda: self.matcher.list_pending_nearby(point, radius_km)
        )

    def accept_ride(self, ride_id: str, driver_id: str) -> Ride:
        return self._call(
            "accept_ride",
            lambda: self.matcher.accept_ride(ride_id, driver_id),
            ride_id=ride_id,
            driver_id=driver_id,
        )

    def propose_matches(self, limit: int | None = None) -> list[Ride]:
        return self._call("propose_matches", lambda: self.matcher.propose_matches(limit))

    def find_driver(self, ride_id: str, radius_km: float | None = None) -> Ride | None:
        return self._call(
            "find_driver",
            lambda: self.matcher.propose_match(ride_id, radius_km),
            ride_id=ride_id,
        )

    def find_nearby_drivers(
        self, point: Point, radius_km: float | None = None
    ) -> list[NearbyDriver]:
        return self._call(
            "find_nearby_drivers", lambda: self.matcher.find_candidates(point, radius_km)
        )

    def count_available_drivers(self, point: Point, radius_km: float | None = None) -> int:
        radius_m = None if radius_km is None else radius_km * 1000
        return self._call(
            "count_available_drivers", lambda: self.geo_index.count_available(point, radius_m)
        )

    # --- lifecycle ---

    def transition(
        self,
        ride_id: str,
        actor_id: str,
        new_status: RideStatus | str,
        reason: str | None = None,
        *,
        is_admin: bool = False,
        is_system: bool = False,
        actual_distance: float | None = None,
        actual_duration: float | None = None,
    ) -> Ride:
        return self._call(
            "transition",
            lambda: self.lifecycle.transition(
                ride_id,
                actor_id,
                new_status,
                reason,
                is_admin=is_admin,
                is_system=is_system,
                actual_distance=actual_distance,
                actual_duration=actual_duration,
            ),
            ride_id=ride_id,
            actor_id=actor_id,
        )

    def record_payment(
        self,
        ride_id: str,
        method: str = "mock",
        status: str = "completed",
        transaction_id: str | None = None,
    ) -> Ride:
        return self._call(
            "record_payment",
            lambda: self.lifecycle.record_payment(ride_id, method, status, transaction_id),
            ride_id=ride_id,
        )

    def record_rating(
        self, ride_id: str, actor_id: str, rating: int, feedback: str | None = None
    ) -> Ride:
        return self._call(
            "record_rating",
            lambda: self.lifecycle.record_rating(ride_id, actor_id, rating, feedback),
            ride_id=ride_id,
            actor_id=actor_id,
        )

    # --- drivers ---

    def register_driver(
        self, driver_id: str, location: Point | None = None, is_active: bool = True
    ) -> DriverAvailability:
        return self._call(
            "register_driver",
            lambda: self.drivers.register_driver(driver_id, location, is_active),
            driver_id=driver_id,
        )

    def get_driver(self, driver_id: str) -> DriverAvailability:
        return self._call(
            "get_driver", lambda: self.drivers.get_driver(driver_id), driver_id=driver_id
        )

    def is_driver_active(self, driver_id: str) -> bool:
        return self._call(
            "is_driver_active",
            lambda: self.drivers.is_driver_active(driver_id),
            driver_id=driver_id,
        )

    def has_active_ride(self, driver_id: str) -> bool:
        return self._call(
            "has_active_ride",
            lambda: self.drivers.has_active_ride(driver_id),
            driver_id=driver_id,
        )

    def update_driver_location(self, driver_id: str, location: Point) -> DriverAvailability:
        return self._call(
            "update_driver_location",
            lambda: self.drivers.update_location(driver_id, location),
            driver_id=driver_id,
        )

    def set_driver_availability(self, driver_id: str, available: bool) -> DriverAvailability:
        return self._call(
            "set_driver_availability",
            lambda: self.drivers.set_availability(driver_id, available),
            driver_id=driver_id,
        )

    def reconcile(self) -> ReconciliationReport:
        return self._call("reconcile", self.reconciler.sweep)

    # --- events ---

    def subscribe(self, topic: str) -> Subscription:
        """Subscribe to ``ride:<id>`` or ``driver:<id>``. Raises ValueError otherwise."""
        return self.broadcaster.subscribe(topic)

    def _call(self, operation: str, func: Callable[[], T], **context: Any) -> T:
        ride_id = context.pop("ride_id", None)
        with with_correlation(), log_ride_context(ride_id, **context):
            try:
                return func()
            except DispatchError as e:
                record_error(e.code)
                logger.info("%s failed: %s %s", operation, e.code, e.message)
                raise
            except PydanticValidationError as e:
                record_error(ValidationError.code)
                raise ValidationError(
                    f"Invalid input to {operation}", {"errors": e.errors(include_url=False)}
                ) from e
            except Exception as e:
                record_error(InternalError.code)
                logger.exception("Unexpected error in %s", operation)
                raise InternalError(f"{operation} failed", {"operation": operation}) from e
