"""
Projection of points onto a route polyline.

The nearest vertex index doubles as a coarse route-progress measure: a point
matched to vertex 120 is further along the route than one matched to vertex 80.
"""

from __future__ import annotations

from typing import Sequence

from routeguard.core.geo import BoundingBox, GeoPoint, bounding_box, haversine_m, project_onto_segment_m
from routeguard.domain.errors import GeometryUndefined


def nearest_vertex_index(point: GeoPoint, polyline: Sequence[GeoPoint]) -> int:
    """Index of the vertex closest to `point` (smallest index on ties).

    Raises:
        GeometryUndefined: If `polyline` is empty.
    """
    if not polyline:
        raise GeometryUndefined("nearest_vertex_index requires a non-empty polyline")

    best_i = 0
    best_d = haversine_m(point, polyline[0])
    for i in range(1, len(polyline)):
        d = haversine_m(point, polyline[i])
        if d < best_d:
            best_i = i
            best_d = d
    return best_i


def min_distance_to_segments_m(point: GeoPoint, polyline: Sequence[GeoPoint]) -> float | None:
    """Smallest perpendicular distance from `point` to any segment, or None for < 2 vertices."""
    if len(polyline) < 2:
        return None
    return min(
        project_onto_segment_m(point, polyline[i], polyline[i + 1]) for i in range(len(polyline) - 1)
    )


def polyline_bounding_box(polyline: Sequence[GeoPoint], *, margin_m: float) -> BoundingBox | None:
    return bounding_box(list(polyline), margin_m=margin_m)
