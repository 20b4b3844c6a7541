"""
Pure fusion and matching steps used by the guidance engine.

Nothing here touches engine state; the engine decides when results are still
current and publishes them.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Sequence

from routeguard.core.geo import GeoPoint as CoreGeoPoint
from routeguard.core.geo import haversine_m
from routeguard.domain.models import (
    POI_GUIDE_PREFIX,
    PUBLIC_GUIDE_PREFIX,
    Guide,
    HazardRecord,
    PlaceCandidate,
    guide_precedence,
)
from routeguard.routing.polyline import min_distance_to_segments_m, nearest_vertex_index


@dataclass(frozen=True)
class IndexedGuide:
    """A hazard guide with its route-progress (nearest vertex) index."""

    guide: Guide
    vertex_index: int


def _pt(guide: Guide) -> CoreGeoPoint:
    return CoreGeoPoint(lat=guide.coordinate.lat, lon=guide.coordinate.lon)


def record_to_guide(record: HazardRecord) -> Guide:
    if record.speed_limit_kph:
        narrative = f"Speed camera ahead, limit {record.speed_limit_kph} km/h"
    else:
        narrative = "Speed camera ahead"
    return Guide(
        id=f"{PUBLIC_GUIDE_PREFIX}{record.id}",
        label="Speed camera",
        narrative=narrative,
        coordinate=record.coordinate,
    )


def place_to_guide(place: PlaceCandidate) -> Guide:
    return Guide(
        id=f"{POI_GUIDE_PREFIX}{place.id}",
        label=place.name or "Speed camera",
        narrative=place.address or "",
        coordinate=place.coordinate,
    )


def merge_hazard_guides(
    route_native: Sequence[Guide],
    public: Sequence[Guide],
    poi: Sequence[Guide],
    *,
    within_m: float,
) -> list[Guide]:
    """Concatenate the three sources and collapse guides closer than `within_m`.

    When two guides collide, the one with higher precedence takes the slot of the
    first-accepted one; on equal precedence the first-accepted guide stays.
    """
    accepted: list[Guide] = []
    for guide in [*route_native, *public, *poi]:
        p = _pt(guide)
        clash = None
        for i, kept in enumerate(accepted):
            if haversine_m(p, _pt(kept)) <= within_m:
                clash = i
                break
        if clash is None:
            accepted.append(guide)
        elif guide_precedence(guide) < guide_precedence(accepted[clash]):
            accepted[clash] = guide
    return accepted


def match_records_to_route(
    records: Sequence[HazardRecord],
    polyline: Sequence[CoreGeoPoint],
    *,
    corridor_m: float,
    dedupe_m: float,
) -> list[IndexedGuide]:
    """Corridor-filter, index, sort and de-duplicate dataset records against a route.

    Steps: keep records within `corridor_m` of any segment; attach the nearest
    vertex index; sort by (index, id); drop a record when it lies within
    `dedupe_m` of the previously kept one.
    """
    survivors: list[tuple[int, HazardRecord]] = []
    for record in records:
        p = record.coordinate.to_core()
        d = min_distance_to_segments_m(p, polyline)
        if d is None or d > corridor_m:
            continue
        survivors.append((nearest_vertex_index(p, polyline), record))

    survivors.sort(key=lambda s: (s[0], s[1].id))

    out: list[IndexedGuide] = []
    last: CoreGeoPoint | None = None
    for vertex_index, record in survivors:
        p = record.coordinate.to_core()
        if last is not None and haversine_m(p, last) <= dedupe_m:
            continue
        out.append(IndexedGuide(guide=record_to_guide(record), vertex_index=vertex_index))
        last = p
    return out


def nearest_ahead(guides: Sequence[Guide], vehicle: CoreGeoPoint, *, passed_m: float) -> Guide | None:
    """Closest guide farther than `passed_m`; else the closest overall."""
    best_any: Guide | None = None
    best_any_d = float("inf")
    best_ahead: Guide | None = None
    best_ahead_d = float("inf")
    for g in guides:
        d = haversine_m(vehicle, _pt(g))
        if d < best_any_d:
            best_any = g
            best_any_d = d
        if d > passed_m and d < best_ahead_d:
            best_ahead = g
            best_ahead_d = d
    return best_ahead or best_any
