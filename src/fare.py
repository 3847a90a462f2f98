"""Fare estimation.

Prices are computed from straight-line distance and an average city speed.
All arithmetic is deterministic: the same inputs always produce the same
breakdown, which lets the booking path and tests agree to the cent.
"""

from dataclasses import dataclass

from core.exceptions import FareInputError
from geo.distance import point_distance_km, validate_coordinates
from settings import FareSettings


@dataclass(frozen=True)
class FareBreakdown:
    base: float
    distance: float
    time: float
    surge: float
    surge_multiplier: float

    @property
    def subtotal(self) -> float:
        return round(self.base + self.distance + self.time, 2)

    @property
    def total(self) -> float:
        return round(self.base + self.distance + self.time + self.surge, 2)

    def as_dict(self) -> dict[str, float]:
        return {
            "base": self.base,
            "distance": self.distance,
            "time": self.time,
            "surge": self.surge,
        }


@dataclass(frozen=True)
class FareEstimate:
    distance_km: float
    duration_min: float
    breakdown: FareBreakdown
    currency: str

    @property
    def total(self) -> float:
        return self.breakdown.total

    @property
    def surge_multiplier(self) -> float:
        return self.breakdown.surge_multiplier


@dataclass(frozen=True)
class FareRange:
    """Fare without surge and at the configured peak multiplier."""

    distance_km: float
    duration_min: float
    min_fare: float
    max_fare: float
    currency: str


# Multiplier applied at peak demand when quoting a range.
PEAK_SURGE_MULTIPLIER = 2.5


class FareCalculator:
    def __init__(self, settings: FareSettings | None = None):
        self._settings = settings or FareSettings()

    @property
    def settings(self) -> FareSettings:
        return self._settings

    def calculate(
        self,
        distance_km: float,
        duration_min: float,
        surge_multiplier: float = 1.0,
    ) -> FareBreakdown:
        if distance_km < 0:
            raise FareInputError("Distance cannot be negative", {"distance_km": distance_km})
        if duration_min < 0:
            raise FareInputError("Duration cannot be negative", {"duration_min": duration_min})
        if not 1.0 <= surge_multiplier <= self._settings.max_surge_multiplier:
            raise FareInputError(
                f"Surge multiplier must be between 1.0 and {self._settings.max_surge_multiplier}",
                {"surge_multiplier": surge_multiplier},
            )

        base = round(self._settings.base_fare, 2)
        distance = round(distance_km * self._settings.per_km_rate, 2)
        time = round(duration_min * self._settings.per_minute_rate, 2)
        subtotal = base + distance + time
        surge = round(subtotal * (surge_multiplier - 1), 2) if surge_multiplier > 1 else 0.0

        return FareBreakdown(
            base=base,
            distance=distance,
            time=time,
            surge=surge,
            surge_multiplier=surge_multiplier,
        )

    def trip_metrics(
        self, pickup: tuple[float, float], destination: tuple[float, float]
    ) -> tuple[float, float]:
        """Return (distance_km, duration_min) between two (lon, lat) points."""
        validate_coordinates(*pickup)
        validate_coordinates(*destination)
        distance_km = round(
            point_distance_km(pickup, destination), self._settings.distance_precision
        )
        duration_min = round(distance_km * 60 / self._settings.average_speed_kmh, 2)
        return distance_km, duration_min

    def estimate(
        self,
        pickup: tuple[float, float],
        destination: tuple[float, float],
        surge_multiplier: float = 1.0,
    ) -> FareEstimate:
        distance_km, duration_min = self.trip_metrics(pickup, destination)
        return FareEstimate(
            distance_km=distance_km,
            duration_min=duration_min,
            breakdown=self.calculate(distance_km, duration_min, surge_multiplier),
            currency=self._settings.currency,
        )

    def estimate_range(
        self, pickup: tuple[float, float], destination: tuple[float, float]
    ) -> FareRange:
        distance_km, duration_min = self.trip_metrics(pickup, destination)
        peak = min(PEAK_SURGE_MULTIPLIER, self._settings.max_surge_multiplier)
        return FareRange(
            distance_km=distance_km,
            duration_min=duration_min,
            min_fare=self.calculate(distance_km, duration_min).total,
            max_fare=self.calculate(distance_km, duration_min, peak).total,
            currency=self._settings.currency,
        )
