import logging
from collections.abc import Callable
from datetime import datetime

from db.utils import utc_now
from ride import BOUND_STATUSES, OPEN_STATUSES
from settings import FareSettings, MatchingSettings

from .geo_index import GeoIndex, Point

logger = logging.getLogger(__name__)

SURGE_MEDIUM = 1.5
SURGE_HIGH = 2.0
SURGE_PEAK = 2.5


def calculate_surge_multiplier(
    pending_requests: int,
    active_rides: int,
    available_drivers: int,
    is_peak_hour: bool = False,
) -> float:
    """Map local demand/supply to a multiplier.

    Demand is active plus pending rides; supply is available drivers
    (at least one, so an empty area never divides by zero).
    """
    ratio = (active_rides + pending_requests) / max(available_drivers, 1)

    if ratio > 3.0:
        multiplier = SURGE_PEAK
    elif ratio > 2.0:
        multiplier = SURGE_HIGH
    elif ratio > 1.5:
        multiplier = SURGE_MEDIUM
    else:
        multiplier = 1.0

    if is_peak_hour:
        multiplier = max(multiplier, SURGE_MEDIUM)
    return multiplier


class SurgePricingCalculator:
    """Derives the surge multiplier for a pickup from the store."""

    def __init__(
        self,
        geo_index: GeoIndex,
        fare_settings: FareSettings,
        matching_settings: MatchingSettings,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.geo_index = geo_index
        self.fare_settings = fare_settings
        self.matching_settings = matching_settings
        self._clock = clock

    def is_peak_hour(self) -> bool:
        return self._clock().hour in self.fare_settings.peak_hours

    def current_multiplier(self, point: Point) -> float:
        if not self.fare_settings.surge_enabled:
            return 1.0

        radius_km = self.matching_settings.default_radius_km
        pending = self.geo_index.count_rides(point, radius_km, tuple(OPEN_STATUSES))
        active = self.geo_index.count_rides(point, radius_km, tuple(BOUND_STATUSES))
        available = self.geo_index.count_available(point)

        multiplier = calculate_surge_multiplier(
            pending_requests=pending,
            active_rides=active,
            available_drivers=available,
            is_peak_hour=self.is_peak_hour(),
        )
        multiplier = min(multiplier, self.fare_settings.max_surge_multiplier)
        if multiplier > 1.0:
            logger.debug(
                "Surge %.1fx (pending=%d active=%d available=%d)",
                multiplier,
                pending,
                active,
                available,
            )
        return multiplier
