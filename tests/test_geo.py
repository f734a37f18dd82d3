import math

import pytest

from discovery_service.domain.geo import (
    EARTH_RADIUS_KM,
    bounding_box,
    distance_between,
    distance_km,
    parse_location,
)
from discovery_service.domain.models import Coordinates

from factories import MONTREAL, TORONTO


def destination(origin: Coordinates, bearing_deg: float, km: float) -> Coordinates:
    """Point reached from origin along a great circle"""
    lat1 = math.radians(origin.lat)
    lng1 = math.radians(origin.lng)
    bearing = math.radians(bearing_deg)
    angular = km / EARTH_RADIUS_KM
    lat2 = math.asin(
        math.sin(lat1) * math.cos(angular)
        + math.cos(lat1) * math.sin(angular) * math.cos(bearing)
    )
    lng2 = lng1 + math.atan2(
        math.sin(bearing) * math.sin(angular) * math.cos(lat1),
        math.cos(angular) - math.sin(lat1) * math.sin(lat2),
    )
    lng = (math.degrees(lng2) + 540) % 360 - 180
    return Coordinates(lat=math.degrees(lat2), lng=lng)


def test_distance_is_zero_for_same_point():
    assert distance_km(43.65, -79.38, 43.65, -79.38) == 0


def test_distance_toronto_montreal():
    assert distance_between(TORONTO, MONTREAL) == pytest.approx(504, abs=5)
    assert distance_between(TORONTO, MONTREAL) == pytest.approx(distance_between(MONTREAL, TORONTO))


@pytest.mark.parametrize("lat", [0.0, 45.0, 70.0, 84.0, -60.0])
@pytest.mark.parametrize("radius", [1.0, 50.0, 500.0])
def test_bounding_box_never_under_selects(lat, radius):
    center = Coordinates(lat=lat, lng=10.0)
    box = bounding_box(center, radius)
    for bearing in range(0, 360, 15):
        point = destination(center, bearing, radius * 0.999)
        assert distance_between(center, point) <= radius
        assert box.contains(point), (lat, radius, bearing, point)


def test_bounding_box_near_pole_spans_all_longitudes():
    box = bounding_box(Coordinates(lat=89.9, lng=0.0), 50)
    assert box.min_lng == -180.0
    assert box.max_lng == 180.0
    assert box.max_lat == 90.0


def test_bounding_box_across_antimeridian_spans_all_longitudes():
    box = bounding_box(Coordinates(lat=10.0, lng=179.9), 50)
    assert (box.min_lng, box.max_lng) == (-180.0, 180.0)


def test_bounding_box_latitude_uses_111_km_per_degree():
    box = bounding_box(Coordinates(lat=0.0, lng=0.0), 111)
    assert box.min_lat == pytest.approx(-1.0)
    assert box.max_lat == pytest.approx(1.0)


def test_parse_location_coordinates():
    assert parse_location("43.6532, -79.3832") == Coordinates(lat=43.6532, lng=-79.3832)


@pytest.mark.parametrize("value", [None, "", "Toronto", "91,0", "10,200", "a,b", "1,2,3"])
def test_parse_location_rejects_non_coordinates(value):
    assert parse_location(value) is None
