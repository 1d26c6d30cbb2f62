from __future__ import annotations

import math
from typing import Callable, Iterable, List, Tuple, TypeVar

from emergency_dispatch.errors import InvalidInput
from emergency_dispatch.models import Coordinates

EARTH_RADIUS_KM = 6371.0

T = TypeVar("T")


def validate_coordinates(point: Coordinates) -> Coordinates:
    lat, lon = point.latitude, point.longitude
    if not all(isinstance(v, (int, float)) and math.isfinite(v) for v in (lat, lon)):
        raise InvalidInput(f"Coordinates must be finite numbers, got ({lat}, {lon})")
    if not -90 <= lat <= 90:
        raise InvalidInput(f"Latitude {lat} outside [-90, 90]")
    if not -180 <= lon <= 180:
        raise InvalidInput(f"Longitude {lon} outside [-180, 180]")
    return point


def haversine_km(origin: Coordinates, target: Coordinates) -> float:
    validate_coordinates(origin)
    validate_coordinates(target)

    lat1, lon1 = math.radians(origin.latitude), math.radians(origin.longitude)
    lat2, lon2 = math.radians(target.latitude), math.radians(target.longitude)
    dlat = lat2 - lat1
    dlon = lon2 - lon1

    a = math.sin(dlat / 2) ** 2 + math.cos(lat1) * math.cos(lat2) * math.sin(dlon / 2) ** 2
    # rounding can push near-antipodal pairs just outside [0, 1]
    a = min(1.0, max(0.0, a))
    c = 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))
    return EARTH_RADIUS_KM * c


def nearest(
    origin: Coordinates,
    items: Iterable[T],
    location_of: Callable[[T], Coordinates],
    max_distance_km: float,
    limit: int = 10,
) -> List[Tuple[T, float]]:
    """Items within ``max_distance_km`` of ``origin``, closest first, at most ``limit``."""
    validate_coordinates(origin)
    if max_distance_km < 0 or limit < 0:
        raise InvalidInput("max_distance_km and limit must not be negative")
    found = [(item, haversine_km(origin, location_of(item))) for item in items]
    found = [(item, d) for item, d in found if d <= max_distance_km]
    found.sort(key=lambda pair: pair[1])
    return found[:limit]
