"""
Geospatial helpers

Great-circle distance on a spherical earth plus a single proximity scan used by
every "who is near this point" query in the service.
"""

import math
from dataclasses import dataclass
from typing import Callable, Iterable, List, Optional, Tuple, TypeVar

EARTH_RADIUS_KM = 6371.0
_KM_PER_DEGREE_LAT = math.pi * EARTH_RADIUS_KM / 180.0

T = TypeVar("T")


@dataclass(frozen=True)
class GeoPoint:
    longitude: float
    latitude: float


def is_valid_latitude(value) -> bool:
    return value is not None and -90 <= value <= 90


def is_valid_longitude(value) -> bool:
    return value is not None and -180 <= value <= 180


def haversine_km(origin: GeoPoint, target: GeoPoint) -> float:
    d_lat = math.radians(target.latitude - origin.latitude)
    d_lon = math.radians(target.longitude - origin.longitude)
    a = (
        math.sin(d_lat / 2) ** 2
        + math.cos(math.radians(origin.latitude))
        * math.cos(math.radians(target.latitude))
        * math.sin(d_lon / 2) ** 2
    )
    c = 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))
    return EARTH_RADIUS_KM * c


def travel_minutes(distance_km: float, speed_kmh: float) -> int:
    """Minutes to cover distance_km at speed_kmh, rounded to the nearest minute"""
    return int(round(distance_km / speed_kmh * 60))


def bounding_box(origin: GeoPoint, radius_meters: float) -> Tuple[float, float, float, float]:
    """
    (min_lat, max_lat, min_lon, max_lon) enclosing the circle around origin.

    Used as a cheap SQL prefilter before the exact haversine check. Near the
    poles or across the antimeridian the longitude window widens to the full range.
    """
    radius_km = radius_meters / 1000.0
    d_lat = radius_km / _KM_PER_DEGREE_LAT
    min_lat = max(-90.0, origin.latitude - d_lat)
    max_lat = min(90.0, origin.latitude + d_lat)

    cos_lat = math.cos(math.radians(origin.latitude))
    if cos_lat < 1e-6 or min_lat <= -90.0 or max_lat >= 90.0:
        return min_lat, max_lat, -180.0, 180.0

    d_lon = radius_km / (_KM_PER_DEGREE_LAT * cos_lat)
    min_lon = origin.longitude - d_lon
    max_lon = origin.longitude + d_lon
    if min_lon < -180.0 or max_lon > 180.0:
        return min_lat, max_lat, -180.0, 180.0
    return min_lat, max_lat, min_lon, max_lon


def within(
    origin: GeoPoint,
    radius_meters: float,
    items: Iterable[T],
    locate: Callable[[T], Optional[GeoPoint]],
    filter: Optional[Callable[[T], bool]] = None,
    tiebreak: Optional[Callable[[T], float]] = None,
    limit: Optional[int] = None,
) -> List[Tuple[T, float]]:
    """
    Items within radius_meters of origin as (item, distance_km) pairs.

    Sorted by ascending distance; equal distances are ordered by descending
    tiebreak (e.g. rating). limit=None returns every match.
    """
    matches = []
    for item in items:
        if filter is not None and not filter(item):
            continue
        point = locate(item)
        if point is None:
            continue
        distance_km = haversine_km(origin, point)
        if distance_km * 1000.0 <= radius_meters:
            matches.append((item, distance_km))

    matches.sort(key=lambda pair: (pair[1], -(tiebreak(pair[0]) if tiebreak else 0.0)))
    if limit is not None:
        matches = matches[:limit]
    return matches
