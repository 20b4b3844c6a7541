from __future__ import annotations
from dataclasses import dataclass
from math import asin, ceil, cos, isfinite, radians, sin, sqrt

"""
Geospatial helpers.

We keep a tiny geometry layer here so the matching code can do distance and
projection math without pulling in heavier GIS dependencies.

All functions are pure. The projection helpers use a local equirectangular
approximation, which is accurate enough at sub-100km scale (a single route
segment or a corridor around it).
"""

EARTH_RADIUS_M = 6_371_000
METERS_PER_LAT = 111_000.0


@dataclass(frozen=True)
class GeoPoint:
    """A latitude/longitude pair in decimal degrees."""

    lat: float
    lon: float


@dataclass(frozen=True)
class BoundingBox:
    """Inclusive lat/lon rectangle."""

    min_lat: float
    min_lon: float
    max_lat: float
    max_lon: float

    def contains(self, lat: float, lon: float) -> bool:
        return self.min_lat <= lat <= self.max_lat and self.min_lon <= lon <= self.max_lon


def haversine_m(a: GeoPoint, b: GeoPoint) -> float:
    """Compute great-circle distance in meters between two points."""
    lat1 = radians(a.lat)
    lat2 = radians(b.lat)

    dlat = lat2 - lat1
    dlon = radians(b.lon - a.lon)

    h = sin(dlat / 2) ** 2 + cos(lat1) * cos(lat2) * sin(dlon / 2) ** 2
    return 2 * EARTH_RADIUS_M * asin(min(1.0, sqrt(h)))


def is_valid_coordinate(lat: float, lon: float) -> bool:
    """Finite and inside the lat/lon value ranges."""
    try:
        lat_f = float(lat)
        lon_f = float(lon)
    except (TypeError, ValueError):
        return False
    return isfinite(lat_f) and isfinite(lon_f) and abs(lat_f) <= 90 and abs(lon_f) <= 180


def is_unknown_fix(lat: float, lon: float, *, radius_m: float = 1.0) -> bool:
    """True for the (0, 0) sensor placeholder some telemetry sources report without a fix."""
    return haversine_m(GeoPoint(lat=float(lat), lon=float(lon)), GeoPoint(lat=0.0, lon=0.0)) <= radius_m


def project_onto_segment_m(point: GeoPoint, seg_start: GeoPoint, seg_end: GeoPoint) -> float:
    """Distance in meters from `point` to the closest point of a segment.

    The segment parameter `t` is clamped to [0, 1], so points beyond either end
    measure to that endpoint.
    """
    lat0 = radians((seg_start.lat + seg_end.lat + point.lat) / 3.0)
    kx = METERS_PER_LAT * cos(lat0)
    ky = METERS_PER_LAT

    ax, ay = seg_start.lon * kx, seg_start.lat * ky
    bx, by = seg_end.lon * kx, seg_end.lat * ky
    px, py = point.lon * kx, point.lat * ky

    dx = bx - ax
    dy = by - ay
    seg_len_sq = dx * dx + dy * dy
    if seg_len_sq <= 0:
        t = 0.0
    else:
        t = ((px - ax) * dx + (py - ay) * dy) / seg_len_sq
        t = max(0.0, min(1.0, t))

    cx = ax + t * dx
    cy = ay + t * dy
    return sqrt((px - cx) ** 2 + (py - cy) ** 2)


def bounding_box(points: list[GeoPoint], *, margin_m: float) -> BoundingBox | None:
    """Return the min/max box around `points` expanded by `margin_m`, or None when empty."""
    if not points:
        return None

    min_lat = min(p.lat for p in points)
    max_lat = max(p.lat for p in points)
    min_lon = min(p.lon for p in points)
    max_lon = max(p.lon for p in points)

    center_lat = (min_lat + max_lat) / 2.0
    meters_per_lon = max(1e-6, METERS_PER_LAT * cos(radians(center_lat)))
    dlat = float(margin_m) / METERS_PER_LAT
    dlon = float(margin_m) / meters_per_lon

    return BoundingBox(
        min_lat=min_lat - dlat,
        min_lon=min_lon - dlon,
        max_lat=max_lat + dlat,
        max_lon=max_lon + dlon,
    )


def simplify_vertexes(vertexes: list[float], *, max_points: int) -> list[GeoPoint]:
    """Down-sample a flat `[x0, y0, x1, y1, ...]` vertex list to at most ~`max_points` points.

    Keeps every `ceil(n / max_points)`-th vertex and always the final one.
    """
    total = len(vertexes) // 2
    if total < 2:
        return []

    cap = max(2, int(max_points))
    step = max(1, ceil(total / cap))

    out: list[GeoPoint] = []
    for i in range(0, total, step):
        out.append(GeoPoint(lat=float(vertexes[i * 2 + 1]), lon=float(vertexes[i * 2])))

    last = GeoPoint(lat=float(vertexes[(total - 1) * 2 + 1]), lon=float(vertexes[(total - 1) * 2]))
    if abs(out[-1].lat - last.lat) > 1e-9 or abs(out[-1].lon - last.lon) > 1e-9:
        out.append(last)
    return out
