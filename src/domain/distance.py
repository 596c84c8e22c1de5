"""
Distance and travel-time estimates.

Assumption
----------
Great-circle (Haversine) distance stands in for road distance, and a
flat average speed stands in for a traffic-aware routing engine.  Both
feed pricing and the ETA sent to customers; a routing-service client can
replace this module without touching the dispatch engine.

Complexity: O(1) per call.
"""

import math

from .entities import Location

EARTH_RADIUS_KM = 6_371.0


def haversine_km(
    lat1: float, lng1: float, lat2: float, lng2: float
) -> float:
    """Return the great-circle distance in **km** between two points."""
    lat1_r, lat2_r = math.radians(lat1), math.radians(lat2)
    dlat = math.radians(lat2 - lat1)
    dlng = math.radians(lng2 - lng1)

    a = (
        math.sin(dlat / 2) ** 2
        + math.cos(lat1_r) * math.cos(lat2_r) * math.sin(dlng / 2) ** 2
    )
    return 2 * EARTH_RADIUS_KM * math.asin(math.sqrt(a))


def distance_m(a: Location, b: Location) -> float:
    """Great-circle distance in **metres** between two locations."""
    return haversine_km(a.latitude, a.longitude, b.latitude, b.longitude) * 1000


def travel_seconds(meters: float, speed_kmh: float) -> float:
    if speed_kmh <= 0:
        raise ValueError("speed_kmh must be positive")
    return meters / (speed_kmh / 3.6)
