"""Centralized geographic distance calculations.

This module provides Haversine distance calculations for determining
proximity between geographic coordinates. Used by fare estimation, the
driver search and the pending-ride pull query.
"""

import math
from math import atan2, cos, radians, sin, sqrt

from core.exceptions import InvalidCoordinates

EARTH_RADIUS_M = 6_371_000  # Earth radius in meters


def validate_coordinates(lon: float, lat: float) -> None:
    """Raise InvalidCoordinates unless (lon, lat) is a finite WGS84 position."""
    if isinstance(lon, bool) or isinstance(lat, bool):
        raise InvalidCoordinates("Coordinates must be numeric", {"lon": lon, "lat": lat})
    try:
        lon_f = float(lon)
        lat_f = float(lat)
    except (TypeError, ValueError) as exc:
        raise InvalidCoordinates(
            "Coordinates must be numeric", {"lon": lon, "lat": lat}
        ) from exc

    if not (math.isfinite(lon_f) and math.isfinite(lat_f)):
        raise InvalidCoordinates("Coordinates must be finite", {"lon": lon, "lat": lat})
    if not -180.0 <= lon_f <= 180.0:
        raise InvalidCoordinates("Longitude must be within [-180, 180]", {"lon": lon})
    if not -90.0 <= lat_f <= 90.0:
        raise InvalidCoordinates("Latitude must be within [-90, 90]", {"lat": lat})


def haversine_distance_m(
    lat1: float,
    lon1: float,
    lat2: float,
    lon2: float,
) -> float:
    """Calculate the great-circle distance between two points in meters.

    Uses the Haversine formula to calculate the shortest distance over
    the Earth's surface between two points specified by latitude/longitude.

    Args:
        lat1: Latitude of first point in degrees
        lon1: Longitude of first point in degrees
        lat2: Latitude of second point in degrees
        lon2: Longitude of second point in degrees

    Returns:
        Distance between the two points in meters
    """
    lat1, lon1, lat2, lon2 = map(radians, [lat1, lon1, lat2, lon2])
    dlat = lat2 - lat1
    dlon = lon2 - lon1

    a = sin(dlat / 2) ** 2 + cos(lat1) * cos(lat2) * sin(dlon / 2) ** 2
    c = 2 * atan2(sqrt(a), sqrt(1 - a))

    return EARTH_RADIUS_M * c


def haversine_distance_km(
    lat1: float,
    lon1: float,
    lat2: float,
    lon2: float,
) -> float:
    """Calculate the great-circle distance between two points in kilometers.

    Convenience wrapper around haversine_distance_m for use cases that
    need kilometer units (e.g., fares and search radius).
    """
    return haversine_distance_m(lat1, lon1, lat2, lon2) / 1000.0


def point_distance_km(a: tuple[float, float], b: tuple[float, float]) -> float:
    """Distance in km between two (lon, lat) points."""
    return haversine_distance_km(a[1], a[0], b[1], b[0])
