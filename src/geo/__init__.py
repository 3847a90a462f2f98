"""Geographic primitives: distances, coordinate validation and H3 cells."""

from .cells import (
    cell_for,
    covered_radius_km,
    covering_cells,
    expanding_disks,
    max_rings_for_radius,
)
from .distance import (
    haversine_distance_km,
    haversine_distance_m,
    point_distance_km,
    validate_coordinates,
)

__all__ = [
    "cell_for",
    "covered_radius_km",
    "covering_cells",
    "expanding_disks",
    "haversine_distance_km",
    "haversine_distance_m",
    "max_rings_for_radius",
    "point_distance_km",
    "validate_coordinates",
]
