"""
Geo helpers: great-circle distance and the radius bounding box
"""
import math
from typing import Optional

from .models import BoundingBox, Coordinates

EARTH_RADIUS_KM = 6371.0
KM_PER_DEGREE = 111.0


def distance_km(lat1: float, lng1: float, lat2: float, lng2: float) -> float:
    """Haversine distance in kilometres; callers reject NaN / out-of-range input"""
    d_lat = math.radians(lat2 - lat1)
    d_lng = math.radians(lng2 - lng1)
    a = (
        math.sin(d_lat / 2) ** 2
        + math.cos(math.radians(lat1)) * math.cos(math.radians(lat2)) * math.sin(d_lng / 2) ** 2
    )
    c = 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))
    return EARTH_RADIUS_KM * c


def distance_between(a: Coordinates, b: Coordinates) -> float:
    return distance_km(a.lat, a.lng, b.lat, b.lng)


def bounding_box(center: Coordinates, radius_km: float) -> BoundingBox:
    """
    Bounding box around a radius, always a superset of the true circle.

    Uses the fixed 111 km/degree approximation. Longitude is widened to the
    spherical extent where that is larger (high latitudes, large radii), and
    to the whole range when the circle touches a pole or wraps the
    antimeridian. The box never decides inclusion on its own; the exact
    distance cutoff is applied after fetching.
    """
    lat_delta = radius_km / KM_PER_DEGREE
    min_lat = max(-90.0, center.lat - lat_delta)
    max_lat = min(90.0, center.lat + lat_delta)

    cos_lat = math.cos(math.radians(center.lat))
    angular = radius_km / EARTH_RADIUS_KM
    if max_lat >= 90.0 or min_lat <= -90.0 or cos_lat <= math.sin(angular):
        return BoundingBox(min_lat, max_lat, -180.0, 180.0)

    approx = radius_km / (KM_PER_DEGREE * cos_lat)
    spherical = math.degrees(math.asin(math.sin(angular) / cos_lat))
    lng_delta = max(approx, spherical)
    min_lng = center.lng - lng_delta
    max_lng = center.lng + lng_delta
    if min_lng < -180.0 or max_lng > 180.0:
        return BoundingBox(min_lat, max_lat, -180.0, 180.0)
    return BoundingBox(min_lat, max_lat, min_lng, max_lng)


def is_valid_coordinate(lat: float, lng: float) -> bool:
    if math.isnan(lat) or math.isnan(lng):
        return False
    return -90.0 <= lat <= 90.0 and -180.0 <= lng <= 180.0


def parse_location(value: Optional[str]) -> Optional[Coordinates]:
    """Parse a "lat,lng" string; anything else is a text location"""
    if not value:
        return None
    parts = [part.strip() for part in value.split(",")]
    if len(parts) != 2:
        return None
    try:
        lat, lng = float(parts[0]), float(parts[1])
    except ValueError:
        return None
    if not is_valid_coordinate(lat, lng):
        return None
    return Coordinates(lat=lat, lng=lng)
