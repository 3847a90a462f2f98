"""H3 cell helpers shared by the driver search and the pending-ride query.

Rows in the store carry the H3 cell of their position. A radius query is
answered by selecting rows whose cell lies in a disk of rings around the
query point and then filtering by exact haversine distance.
"""

import math
from collections.abc import Iterator

import h3

# Margin in rings so the disk always covers the full radius despite the
# variation of hexagon size across the globe.
_RING_MARGIN = 2


def cell_for(lon: float, lat: float, resolution: int) -> str:
    return h3.latlng_to_cell(lat, lon, resolution)


def covered_radius_km(k: int, resolution: int) -> float:
    """Radius around the query point that a disk of k rings is guaranteed to contain."""
    edge_km = h3.average_hexagon_edge_length(resolution, unit="km")
    return max(0, k - _RING_MARGIN) * edge_km


def max_rings_for_radius(radius_km: float, resolution: int) -> int:
    """Smallest ring count whose disk fully covers radius_km at this resolution."""
    edge_km = h3.average_hexagon_edge_length(resolution, unit="km")
    return max(1, math.ceil(radius_km / edge_km) + _RING_MARGIN)


def expanding_disks(
    lon: float,
    lat: float,
    radius_km: float,
    resolution: int,
    start_k: int = 2,
) -> Iterator[tuple[set[str], int, bool]]:
    """Yield (new_cells, k, is_final) for progressively larger disks.

    The disk starts at start_k rings and doubles until it covers the
    radius. Only cells not yielded before are returned on each step, so a
    caller can stop as soon as it has enough candidates.
    """
    center = cell_for(lon, lat, resolution)
    max_k = max_rings_for_radius(radius_km, resolution)
    checked: set[str] = set()

    k = min(start_k, max_k)
    while True:
        ring_cells = set(h3.grid_disk(center, k))
        new_cells = ring_cells - checked
        checked |= ring_cells
        is_final = k >= max_k
        yield new_cells, k, is_final
        if is_final:
            return
        k = min(k * 2, max_k)


def covering_cells(lon: float, lat: float, radius_km: float, resolution: int) -> set[str]:
    """All cells of the disk that covers radius_km around (lon, lat)."""
    center = cell_for(lon, lat, resolution)
    return set(h3.grid_disk(center, max_rings_for_radius(radius_km, resolution)))
