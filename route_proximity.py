"""
route_proximity.py — Select the water points that lie within a radius of a route.

Distances are measured on a spherical Web-Mercator plane, not along the
ellipsoid.  That is accurate enough at route scale (tens of km) and keeps
point-to-segment distance a plain 2-D projection.
"""

import math
from typing import Iterable, List, Sequence, Tuple

import config

# Web-Mercator is undefined at the poles; clamp like tile servers do.
MAX_MERCATOR_LAT = 85.0511287798

LonLat = Tuple[float, float]


def project(lon: float, lat: float) -> Tuple[float, float]:
    """Project lon/lat degrees to Web-Mercator metres (x, y)."""
    lat = max(-MAX_MERCATOR_LAT, min(MAX_MERCATOR_LAT, lat))
    x = config.EARTH_RADIUS_M * math.radians(lon)
    y = config.EARTH_RADIUS_M * math.log(math.tan(math.pi / 4 + math.radians(lat) / 2))
    return x, y


def point_segment_distance(
    px: float, py: float,
    ax: float, ay: float,
    bx: float, by: float,
) -> float:
    """Distance from P to the nearest point of segment AB (planar)."""
    dx, dy = bx - ax, by - ay
    seg_len_sq = dx * dx + dy * dy
    if seg_len_sq == 0:
        return math.hypot(px - ax, py - ay)
    t = ((px - ax) * dx + (py - ay) * dy) / seg_len_sq
    t = max(0.0, min(1.0, t))
    return math.hypot(px - (ax + t * dx), py - (ay + t * dy))


def project_route(route: Iterable[Sequence[LonLat]]) -> List[List[Tuple[float, float]]]:
    """Project every (lon, lat) vertex of every polyline; empty lines are dropped."""
    return [[project(lon, lat) for lon, lat in line] for line in route if line]


def _segments(line):
    if len(line) == 1:
        # A lone vertex still counts as a (degenerate) segment.
        yield line[0], line[0]
    for i in range(len(line) - 1):
        yield line[i], line[i + 1]


def distance_to_route(lon: float, lat: float, route: Iterable[Sequence[LonLat]]) -> float:
    """Minimum projected distance in metres from (lon, lat) to any route segment."""
    px, py = project(lon, lat)
    best = math.inf
    for line in project_route(route):
        for (ax, ay), (bx, by) in _segments(line):
            best = min(best, point_segment_distance(px, py, ax, ay, bx, by))
    return best


def is_near(px: float, py: float, projected_route, radius_m: float) -> bool:
    """True as soon as any segment is within radius_m of the projected point."""
    for line in projected_route:
        for (ax, ay), (bx, by) in _segments(line):
            if point_segment_distance(px, py, ax, ay, bx, by) <= radius_m:
                return True
    return False


def filter_near(route: Iterable[Sequence[LonLat]], features, radius_m: float) -> list:
    """Return the features within radius_m metres of the route, in input order.

    route is one or more polylines of (lon, lat) vertices.  Features need a
    ``position`` of (lat, lon); those without a finite one are left out.
    """
    if not radius_m >= 0:
        raise ValueError(f"radius_m must be >= 0, got {radius_m}")

    projected = project_route(route)
    near = []
    for feature in features:
        position = feature.position
        if position is None:
            continue
        lat, lon = position
        if not (math.isfinite(lat) and math.isfinite(lon)):
            continue
        px, py = project(lon, lat)
        if is_near(px, py, projected, radius_m):
            near.append(feature)
    return near
