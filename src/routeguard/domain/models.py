"""
Domain models (Pydantic).

These types represent the stable "contract" between layers:
- routing collaborator output (`RoutePlan`, `Guide`)
- bulk hazard dataset entries (`HazardRecord`, `DatasetEnvelope`)
- place-search output (`PlaceCandidate`)
- engine state and query output (`VehicleState`, `GuidanceSnapshot`)

Route plans and guides are frozen: a new route replaces the old one wholesale.
"""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from routeguard.core.geo import GeoPoint as CoreGeoPoint

PUBLIC_GUIDE_PREFIX = "public:"
POI_GUIDE_PREFIX = "poi:"


class GeoPoint(BaseModel):
    """A geographic point in decimal degrees."""

    model_config = ConfigDict(frozen=True)

    lat: float = Field(..., ge=-90, le=90, allow_inf_nan=False)
    lon: float = Field(..., ge=-180, le=180, allow_inf_nan=False)

    def to_core(self) -> CoreGeoPoint:
        return CoreGeoPoint(lat=self.lat, lon=self.lon)


class Guide(BaseModel):
    """One annotation along a route: a turn instruction or a hazard.

    Provenance is encoded in the `id` prefix (see `guide_precedence`).
    """

    model_config = ConfigDict(frozen=True)

    id: str
    label: str
    narrative: str = ""
    coordinate: GeoPoint
    distance_meters: int | None = None
    duration_seconds: int | None = None
    maneuver_type: int | None = None


class RoutePlan(BaseModel):
    """A fetched route: polyline plus maneuver guides."""

    model_config = ConfigDict(frozen=True)

    polyline: tuple[GeoPoint, ...] = ()
    guides: tuple[Guide, ...] = ()
    total_distance_meters: int | None = None
    total_duration_seconds: int | None = None


class HazardRecord(BaseModel):
    """One entry of the bulk hazard (speed camera) dataset."""

    model_config = ConfigDict(frozen=True)

    id: str
    coordinate: GeoPoint
    speed_limit_kph: int | None = None


class PlaceCandidate(BaseModel):
    """A place-search result; only its name and coordinate are used for hazard matching."""

    id: str
    name: str
    coordinate: GeoPoint
    address: str | None = None
    category_name: str | None = None


class DatasetEnvelope(BaseModel):
    """Schema-versioned wrapper persisted to disk and served by the dataset endpoint."""

    schema_version: int = 1
    source: str = ""
    updated_at: str | None = None
    count: int = 0
    records: list[HazardRecord] = Field(default_factory=list)


class VehicleState(BaseModel):
    """Last accepted vehicle position and speed."""

    coordinate: GeoPoint | None = None
    speed_kph: float = 0.0


class GuidanceSnapshot(BaseModel):
    """Consistent read of engine state for UI binding."""

    route_revision: int
    hazard_revision: int
    is_indexing: bool
    has_route: bool
    hazard_count: int
    vehicle: VehicleState
    next_guide: Guide | None = None
    next_hazard: Guide | None = None
    distance_to_next_guide_m: int | None = None
    distance_to_next_hazard_m: int | None = None
    next_hazard_speed_limit_kph: int | None = None
    error_message: str | None = None
    meta: dict[str, Any] = Field(default_factory=dict)


def guide_precedence(guide: Guide) -> int:
    """Lower is stronger: route-native (0) > public dataset (1) > POI search (2)."""
    if guide.id.startswith(POI_GUIDE_PREFIX):
        return 2
    if guide.id.startswith(PUBLIC_GUIDE_PREFIX):
        return 1
    return 0
