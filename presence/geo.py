import math
from numbers import Real
from typing import Any, Tuple

from presence.errors import InvalidCoordinates

EARTH_RADIUS_M = 6_371_000


def _coords(point: Any) -> Tuple[float, float]:
    """Accept a Location model, a {lat, lng} mapping or a (lat, lng) pair."""
    if isinstance(point, dict):
        lat, lng = point.get("lat"), point.get("lng")
    elif isinstance(point, (tuple, list)) and len(point) == 2:
        lat, lng = point
    else:
        lat, lng = getattr(point, "lat", None), getattr(point, "lng", None)
    return validate_coordinates(lat, lng)


def validate_coordinates(lat: Any, lng: Any) -> Tuple[float, float]:
    for value in (lat, lng):
        if isinstance(value, bool) or not isinstance(value, Real) or math.isnan(value):
            raise InvalidCoordinates(lat=lat, lng=lng)
    if not (-90 <= lat <= 90 and -180 <= lng <= 180):
        raise InvalidCoordinates(lat=lat, lng=lng)
    return float(lat), float(lng)


def distance(a: Any, b: Any) -> float:
    """Great-circle distance in meters between two coordinates (haversine)."""
    lat1, lng1 = _coords(a)
    lat2, lng2 = _coords(b)

    phi1 = math.radians(lat1)
    phi2 = math.radians(lat2)
    d_phi = math.radians(lat2 - lat1)
    d_lambda = math.radians(lng2 - lng1)

    h = (
        math.sin(d_phi / 2) ** 2
        + math.cos(phi1) * math.cos(phi2) * math.sin(d_lambda / 2) ** 2
    )
    # Clamp: rounding can push h a hair past 1 for antipodal points
    h = min(1.0, h)
    return EARTH_RADIUS_M * 2 * math.atan2(math.sqrt(h), math.sqrt(1 - h))
