"""
Nearby-Driver Candidate Search
==============================

1. **Spatial Binning**  -- every driver record carries the H3 cell
   (resolution 7 by default, ~5.16 km²) of its last known location.
2. **Grid Disk**        -- the pickup cell plus enough rings of
   neighbours to cover the search radius gives the set of cells worth
   querying; the store filters by cell membership (indexed column).
3. **Ranking**          -- survivors are filtered by exact great-circle
   distance and the exclusion set, then sorted nearest first (higher
   rating breaks ties).

Complexity
----------
Let D = drivers inside the disk cells.

* Disk:     O(k^2) cells where k = ceil(radius / hex spacing) + 1
* Ranking:  O(D log D)
"""

from __future__ import annotations

import math
from collections.abc import Iterable

import h3

from .distance import distance_m
from .entities import Candidate, DriverRecord, Location
from .enums import VehicleClass


def location_h3_cell(location: Location, resolution: int = 7) -> str:
    """Map a geo-point to an H3 hexagonal cell index.  O(1)."""
    return h3.latlng_to_cell(location.latitude, location.longitude, resolution)


def cells_within_radius(
    center: Location, radius_m: float, resolution: int = 7
) -> set[str]:
    """Return every H3 cell that may contain a point within *radius_m*."""
    origin = location_h3_cell(center, resolution)
    # centre-to-centre spacing of neighbouring hexagons is sqrt(3) x edge
    spacing = math.sqrt(3) * h3.average_hexagon_edge_length(resolution, unit="m")
    rings = math.ceil(radius_m / spacing) + 1
    return set(h3.grid_disk(origin, rings))


def rank_candidates(
    drivers: Iterable[DriverRecord],
    pickup: Location,
    vehicle_class: VehicleClass,
    radius_m: float,
    excluding: Iterable[str] = (),
) -> list[Candidate]:
    """Filter eligible drivers inside the radius and order them nearest first."""
    excluded = set(excluding)
    ranked: list[Candidate] = []
    for driver in drivers:
        if driver.driver_id in excluded or driver.location is None:
            continue
        if not driver.is_eligible_for(vehicle_class):
            continue
        meters = distance_m(pickup, driver.location)
        if meters > radius_m:
            continue
        ranked.append(
            Candidate(
                driver_id=driver.driver_id,
                location=driver.location,
                distance_m=round(meters, 1),
                rating=driver.rating_average,
            )
        )
    ranked.sort(key=lambda c: (c.distance_m, -c.rating))
    return ranked
