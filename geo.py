"""
Geometry helpers for catchment analysis.

Spherical-Earth approximations only. At the scale of a charging-site
catchment (a few km) the haversine distance and an equirectangular
projection anchored at the first vertex are accurate to well under 1%,
which is far below the noise in the OSM-derived proxies they feed.

Coordinate order matters and differs by caller:
  - points are (lat, lon), matching Overpass element fields
  - rings are (lon, lat), matching GeoJSON polygon coordinates
"""

import math
from typing import Sequence, Tuple

EARTH_RADIUS_M = 6_371_000.0

LatLon = Tuple[float, float]
LonLat = Tuple[float, float]


def distance_meters(a: LatLon, b: LatLon) -> float:
    """Great-circle (haversine) distance between two (lat, lon) points."""
    lat1, lon1 = a
    lat2, lon2 = b
    d_lat = math.radians(lat2 - lat1)
    d_lon = math.radians(lon2 - lon1)

    sin_lat = math.sin(d_lat / 2)
    sin_lon = math.sin(d_lon / 2)
    h = (sin_lat * sin_lat
         + sin_lon * sin_lon * math.cos(math.radians(lat1)) * math.cos(math.radians(lat2)))
    # max() guards against h drifting a hair above 1.0 for antipodal points
    c = 2 * math.atan2(math.sqrt(h), math.sqrt(max(0.0, 1 - h)))
    return EARTH_RADIUS_M * c


def project_to_meters(coord: LonLat, origin: LonLat) -> Tuple[float, float]:
    """Equirectangular projection of *coord* to planar metres around *origin*."""
    lon, lat = coord
    origin_lon, origin_lat = origin
    x = math.radians(lon - origin_lon) * EARTH_RADIUS_M * math.cos(math.radians(origin_lat))
    y = math.radians(lat - origin_lat) * EARTH_RADIUS_M
    return x, y


def polygon_area_sq_m(ring: Sequence[LonLat]) -> float:
    """Area of a (lon, lat) ring in square metres.

    Projects every vertex relative to the first one, then applies the
    shoelace formula.  Works for closed and open rings alike (a repeated
    closing vertex contributes a zero-length edge).

    Returns 0 for fewer than 3 vertices.  Callers that know a search
    radius should substitute circle_area_sq_m() when this returns 0.
    """
    if len(ring) < 3:
        return 0.0

    origin = ring[0]
    meters = [project_to_meters(coord, origin) for coord in ring]

    total = 0.0
    n = len(meters)
    for i in range(n):
        x1, y1 = meters[i]
        x2, y2 = meters[(i + 1) % n]
        total += x1 * y2 - x2 * y1

    return abs(total) / 2.0


def circle_area_sq_m(radius_m: float) -> float:
    return math.pi * radius_m * radius_m


def point_in_polygon(point: LatLon, ring: Sequence[LonLat]) -> bool:
    """Even-odd ray casting test for a (lat, lon) point against a (lon, lat) ring."""
    lat, lon = point
    inside = False
    n = len(ring)
    if n < 3:
        return False

    j = n - 1
    for i in range(n):
        xi, yi = ring[i]
        xj, yj = ring[j]
        if (yi > lat) != (yj > lat):
            x_cross = (xj - xi) * (lat - yi) / (yj - yi) + xi
            if lon < x_cross:
                inside = not inside
        j = i

    return inside
