"""
Great-circle distance helpers.

Straight-line ("as the crow flies") distance; road distance is typically longer.
"""
from __future__ import annotations

import math
from typing import Dict, Optional

EARTH_RADIUS_KM = 6371.0


def _lon_lat(point) -> Optional[tuple[float, float]]:
    if point is None:
        return None
    if hasattr(point, "longitude") and hasattr(point, "latitude"):
        lon, lat = point.longitude, point.latitude
    else:
        try:
            lon, lat = point[0], point[1]
        except (TypeError, IndexError, KeyError):
            return None
    try:
        lon, lat = float(lon), float(lat)
    except (TypeError, ValueError):
        return None
    if not (math.isfinite(lon) and math.isfinite(lat)):
        return None
    if not (-180.0 <= lon <= 180.0 and -90.0 <= lat <= 90.0):
        return None
    return lon, lat


def haversine_distance(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    lat1, lon1, lat2, lon2 = map(math.radians, [lat1, lon1, lat2, lon2])

    dlat = lat2 - lat1
    dlon = lon2 - lon1

    a = math.sin(dlat / 2) ** 2 + math.cos(lat1) * math.cos(lat2) * math.sin(dlon / 2) ** 2
    c = 2 * math.asin(min(1.0, math.sqrt(a)))

    return c * EARTH_RADIUS_KM


def distance_km(a, b) -> float:
    """
    Distance in kilometres between two ``(longitude, latitude)`` points.

    Accepts ``Coordinate`` models or ``[lon, lat]`` sequences. Returns ``math.inf`` when
    either point is missing or invalid, so radius comparisons exclude it.
    """
    first, second = _lon_lat(a), _lon_lat(b)
    if first is None or second is None:
        return math.inf
    return haversine_distance(first[1], first[0], second[1], second[0])


def is_within_radius(a, b, radius_km: float) -> bool:
    return distance_km(a, b) <= radius_km


def bounding_box(center, radius_km: float) -> Optional[Dict[str, float]]:
    """Coarse lat/lon box around ``center`` for pre-filtering before exact distances."""
    point = _lon_lat(center)
    if point is None:
        return None
    lon, lat = point
    angular = math.degrees(radius_km / EARTH_RADIUS_KM)
    lon_spread = angular / max(math.cos(math.radians(lat)), 1e-12)
    return {
        "min_lat": max(-90.0, lat - angular),
        "max_lat": min(90.0, lat + angular),
        "min_lon": max(-180.0, lon - lon_spread),
        "max_lon": min(180.0, lon + lon_spread),
    }


def format_distance(km: float) -> str:
    if km < 1:
        return f"{round(km * 1000)} meters"
    if km < 10:
        return f"{km:.1f} km"
    return f"{round(km)} km"
