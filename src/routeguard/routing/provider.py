"""
Contracts for the external collaborators the engine consumes.

The routing provider's network client is a black box returning a `RoutePlan`;
implementations are expected to hand over an already down-sampled polyline
(see `routeguard.core.geo.simplify_vertexes`) and to raise `RouteProviderFailed`
on network/server errors.
"""

from __future__ import annotations

from typing import Protocol

from routeguard.domain.models import GeoPoint, PlaceCandidate, RoutePlan


class RouteProvider(Protocol):
    async def fetch_route(self, origin: GeoPoint, destination: GeoPoint) -> RoutePlan: ...


class PlaceSearch(Protocol):
    async def search_places(self, query: str, near: GeoPoint | None = None) -> list[PlaceCandidate]: ...
