"""Driver search, matching and availability."""

from .dispatch_matcher import DispatchMatcher
from .driver_registry import DriverRegistry
from .geo_index import GeoIndex, NearbyDriver, NearbyRide
from .matching_loop import MatchingLoop
from .reconciliation import ReconciliationReport, Reconciler
from .surge_pricing import SurgePricingCalculator, calculate_surge_multiplier

__all__ = [
    "DispatchMatcher",
    "DriverRegistry",
    "GeoIndex",
    "MatchingLoop",
    "NearbyDriver",
    "NearbyRide",
    "ReconciliationReport",
    "Reconciler",
    "SurgePricingCalculator",
    "calculate_surge_multiplier",
]
