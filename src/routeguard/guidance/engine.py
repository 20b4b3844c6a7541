from __future__ import annotations

# Guide fusion engine: the orchestrator between a fetched route and the
# "what should the driver see next" queries.
#
# Concurrency model:
# - All state lives on one asyncio event loop (single writer). Public methods are
#   plain synchronous calls made from that loop; background work runs as tasks on
#   the same loop, so their completions are already serialized with everything else.
# - Every route change bumps `route_revision`. Background work captures the revision
#   at launch and publishes only if it is still the live one, so the last
#   set_route/clear_route always wins. Cancellation is used only to avoid wasted work.
# - Publication is all-or-nothing per run: a result replaces a guide set wholesale.

import asyncio
import logging
import time
from typing import Any, Coroutine

import httpx

from routeguard.config.settings import Settings
from routeguard.core.geo import GeoPoint as CoreGeoPoint
from routeguard.core.geo import haversine_m, is_unknown_fix
from routeguard.domain.errors import GeometryUndefined, RemoteFetchFailed, RouteProviderFailed
from routeguard.domain.models import GeoPoint, Guide, GuidanceSnapshot, RoutePlan, VehicleState
from routeguard.guidance.classify import HazardClassifier
from routeguard.guidance.fusion import (
    IndexedGuide,
    match_records_to_route,
    merge_hazard_guides,
    nearest_ahead,
    place_to_guide,
)
from routeguard.hazards.dataset_cache import DatasetCache
from routeguard.routing.polyline import (
    min_distance_to_segments_m,
    nearest_vertex_index,
    polyline_bounding_box,
)
from routeguard.routing.provider import PlaceSearch, RouteProvider

logger = logging.getLogger(__name__)


def _pt(guide: Guide) -> CoreGeoPoint:
    return CoreGeoPoint(lat=guide.coordinate.lat, lon=guide.coordinate.lon)


class GuideFusionEngine:
    """Route/vehicle state, guide-source fusion and next-guide selection."""

    def __init__(
        self,
        settings: Settings,
        dataset: DatasetCache,
        *,
        place_search: PlaceSearch | None = None,
        classifier: HazardClassifier | None = None,
    ):
        self._settings = settings
        self._dataset = dataset
        self._place_search = place_search
        self._classifier = classifier or HazardClassifier.from_settings(settings.classification)

        self._plan: RoutePlan | None = None
        self._polyline: tuple[CoreGeoPoint, ...] = ()
        self._route_hazards: list[Guide] = []
        self._public_hazards: list[Guide] = []
        self._poi_hazards: list[Guide] = []
        self._guide_route_index: dict[str, int] = {}
        self._vehicle = VehicleState()

        self._revision = 0
        self._hazard_revision = 0
        self._indexing = False

        self._next_hazard_id: str | None = None
        self._next_hazard_limit_kph: int | None = None
        self._limit_task: asyncio.Task | None = None

        self._poi_task: asyncio.Task | None = None
        self._poi_refreshed_at: float | None = None
        self._poi_anchor: CoreGeoPoint | None = None

        self._tasks: set[asyncio.Task] = set()
        self.recompute_count = 0
        self.error_message: str | None = None

    # -- observable state -------------------------------------------------

    @property
    def route(self) -> RoutePlan | None:
        return self._plan

    @property
    def route_revision(self) -> int:
        return self._revision

    @property
    def hazard_revision(self) -> int:
        """Bumped every time any hazard guide set is replaced."""
        return self._hazard_revision

    @property
    def is_indexing(self) -> bool:
        return self._indexing

    @property
    def vehicle(self) -> VehicleState:
        return self._vehicle

    @property
    def route_hazard_guides(self) -> list[Guide]:
        return list(self._route_hazards)

    @property
    def public_hazard_guides(self) -> list[Guide]:
        return list(self._public_hazards)

    @property
    def poi_hazard_guides(self) -> list[Guide]:
        return list(self._poi_hazards)

    @property
    def guide_route_index(self) -> dict[str, int]:
        return dict(self._guide_route_index)

    # -- task plumbing ----------------------------------------------------

    def _spawn(self, coro: Coroutine[Any, Any, Any]) -> asyncio.Task:
        task = asyncio.get_running_loop().create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._on_task_done)
        return task

    def _on_task_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error("Guidance background task failed", exc_info=exc)

    def _cancel_limit_lookup(self) -> None:
        if self._limit_task is not None and not self._limit_task.done():
            self._limit_task.cancel()
        self._limit_task = None

    async def aclose(self) -> None:
        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    # -- route lifecycle --------------------------------------------------

    def set_route(self, plan: RoutePlan) -> int:
        """Adopt `plan`, derive route-native hazards now and index the public dataset in the background.

        Returns the new route revision.
        """
        self._plan = plan
        self._polyline = tuple(p.to_core() for p in plan.polyline)
        self._guide_route_index = {}
        self._public_hazards = []
        self._poi_hazards = []
        self._poi_refreshed_at = None
        self._poi_anchor = None
        self._revision += 1
        revision = self._revision
        self.error_message = None

        self._route_hazards = self._classifier.hazard_guides(plan.guides)
        self._hazard_revision += 1
        logger.info(
            "Route set (revision %s): %s vertices, %s guides, %s route-native hazards",
            revision,
            len(plan.polyline),
            len(plan.guides),
            len(self._route_hazards),
        )

        self._indexing = True
        self._spawn(self._index_public_hazards(revision, self._polyline))
        if self._poi_enabled():
            self._launch_poi_refresh(force=True)

        self._next_hazard_id = None
        self._next_hazard_limit_kph = None
        self._cancel_limit_lookup()
        self._recompute_next_hazard()
        return revision

    def clear_route(self) -> None:
        self._plan = None
        self._polyline = ()
        self._route_hazards = []
        self._public_hazards = []
        self._poi_hazards = []
        self._guide_route_index = {}
        self._revision += 1
        self._hazard_revision += 1
        self._indexing = False
        self._poi_refreshed_at = None
        self._poi_anchor = None
        self._next_hazard_id = None
        self._next_hazard_limit_kph = None
        self._cancel_limit_lookup()
        logger.info("Route cleared (revision %s)", self._revision)

    async def start_route(self, provider: RouteProvider, origin: GeoPoint, destination: GeoPoint) -> RoutePlan:
        """Fetch a route from `provider` and adopt it.

        Raises:
            RouteProviderFailed: After clearing route state and recording `error_message`.
        """
        try:
            plan = await provider.fetch_route(origin, destination)
        except RouteProviderFailed as exc:
            self.clear_route()
            self.error_message = str(exc)
            logger.warning("Route request failed: %s", exc)
            raise
        self.set_route(plan)
        return plan

    # -- vehicle updates --------------------------------------------------

    def _coordinate_changed(self, current: GeoPoint | None, nxt: GeoPoint | None) -> bool:
        if current is None and nxt is None:
            return False
        if current is None or nxt is None:
            return True
        delta = abs(current.lat - nxt.lat) + abs(current.lon - nxt.lon)
        return delta >= self._settings.vehicle.min_coordinate_delta_deg

    def update_vehicle(self, coordinate: GeoPoint | None, speed_kph: float) -> bool:
        """Apply a telemetry sample; returns False when it was below the significance thresholds."""
        cfg = self._settings.vehicle
        nxt = coordinate
        if nxt is not None and is_unknown_fix(nxt.lat, nxt.lon, radius_m=cfg.unknown_radius_m):
            nxt = None

        coordinate_changed = self._coordinate_changed(self._vehicle.coordinate, nxt)
        speed_changed = abs(self._vehicle.speed_kph - float(speed_kph)) >= cfg.min_speed_delta_kph
        if not coordinate_changed and not speed_changed:
            return False

        self._vehicle = VehicleState(coordinate=nxt, speed_kph=float(speed_kph))
        self._recompute_next_hazard()
        if coordinate_changed and self._plan is not None and self._poi_enabled():
            self._launch_poi_refresh(force=False)
        return True

    # -- queries ----------------------------------------------------------

    def merged_hazard_guides(self) -> list[Guide]:
        return merge_hazard_guides(
            self._route_hazards,
            self._public_hazards,
            self._poi_hazards,
            within_m=self._settings.matching.fusion_m,
        )

    def next_guide(self) -> Guide | None:
        if self._plan is None or not self._plan.guides:
            return None
        guides = self._plan.guides
        vehicle = self._vehicle.coordinate
        if vehicle is None:
            return guides[0]
        return nearest_ahead(guides, vehicle.to_core(), passed_m=self._settings.matching.turn_passed_m)

    def _route_index_of(self, guide: Guide) -> int:
        idx = self._guide_route_index.get(guide.id)
        if idx is None:
            idx = nearest_vertex_index(_pt(guide), self._polyline)
            self._guide_route_index[guide.id] = idx
        return idx

    def _next_hazard_on_route(self, hazards: list[Guide], vehicle: CoreGeoPoint) -> Guide | None:
        try:
            vehicle_idx = nearest_vertex_index(vehicle, self._polyline)
        except GeometryUndefined:
            return None

        slack = self._settings.matching.vertex_slack
        best: Guide | None = None
        best_key: tuple[int, float] | None = None
        for guide in hazards:
            idx = self._route_index_of(guide)
            if idx + slack < vehicle_idx:
                continue
            key = (idx, haversine_m(vehicle, _pt(guide)))
            if best_key is None or key < best_key:
                best = guide
                best_key = key
        return best

    def next_hazard_guide(self) -> Guide | None:
        hazards = self.merged_hazard_guides()
        if not hazards:
            return None
        vehicle = self._vehicle.coordinate
        if vehicle is None:
            return hazards[0]

        vp = vehicle.to_core()
        if self._polyline:
            picked = self._next_hazard_on_route(hazards, vp)
            if picked is not None:
                return picked
        return nearest_ahead(hazards, vp, passed_m=self._settings.matching.hazard_passed_m)

    def _distance_to(self, guide: Guide | None) -> int | None:
        vehicle = self._vehicle.coordinate
        if vehicle is None or guide is None:
            return None
        return int(round(haversine_m(vehicle.to_core(), _pt(guide))))

    def distance_to_next_guide_m(self) -> int | None:
        return self._distance_to(self.next_guide())

    def distance_to_next_hazard_m(self) -> int | None:
        return self._distance_to(self.next_hazard_guide())

    def next_hazard_speed_limit_kph(self) -> int | None:
        """Eventually consistent: None while the lookup for the current next hazard is in flight."""
        return self._next_hazard_limit_kph

    def snapshot(self) -> GuidanceSnapshot:
        next_hazard = self.next_hazard_guide()
        next_guide = self.next_guide()
        return GuidanceSnapshot(
            route_revision=self._revision,
            hazard_revision=self._hazard_revision,
            is_indexing=self._indexing,
            has_route=self._plan is not None,
            hazard_count=len(self.merged_hazard_guides()),
            vehicle=self._vehicle,
            next_guide=next_guide,
            next_hazard=next_hazard,
            distance_to_next_guide_m=self._distance_to(next_guide),
            distance_to_next_hazard_m=self._distance_to(next_hazard),
            next_hazard_speed_limit_kph=self._next_hazard_limit_kph,
            error_message=self.error_message,
            meta={
                "dataset_records": self._dataset.record_count,
                "dataset_error": self._dataset.last_error,
                "route_hazards": len(self._route_hazards),
                "public_hazards": len(self._public_hazards),
                "poi_hazards": len(self._poi_hazards),
            },
        )

    # -- next hazard + speed limit ----------------------------------------

    def _recompute_next_hazard(self) -> None:
        self.recompute_count += 1
        guide = self.next_hazard_guide()
        guide_id = guide.id if guide is not None else None
        if guide_id == self._next_hazard_id:
            return

        self._next_hazard_id = guide_id
        self._next_hazard_limit_kph = None
        self._cancel_limit_lookup()
        if guide is not None:
            self._limit_task = self._spawn(self._lookup_next_hazard_limit(guide))

    async def _lookup_next_hazard_limit(self, guide: Guide) -> None:
        limit = await self._dataset.lookup_limit(lat=guide.coordinate.lat, lon=guide.coordinate.lon)
        if self._next_hazard_id != guide.id:
            logger.debug("Dropping speed limit for %s; next hazard moved on", guide.id)
            return
        self._next_hazard_limit_kph = limit

    # -- public dataset indexing pipeline ---------------------------------

    async def _index_public_hazards(self, revision: int, polyline: tuple[CoreGeoPoint, ...]) -> None:
        cfg = self._settings.matching
        try:
            self._dataset.ensure_loaded()
            # An empty cache gets one forced refresh in place of the background one.
            if self._dataset.record_count != 0 or not self._dataset.remote_configured:
                self._dataset.prewarm()
            else:
                try:
                    await self._dataset.refresh_from_backend_if_needed(force=True)
                except RemoteFetchFailed as exc:
                    logger.warning("Hazard dataset refresh failed; indexing with local data: %s", exc)

            bounds = polyline_bounding_box(polyline, margin_m=cfg.bbox_margin_m)
            if bounds is None:
                self._publish_public_hazards(revision, [])
                return

            candidates = await self._dataset.cameras(bounds)
            matched = match_records_to_route(
                candidates, polyline, corridor_m=cfg.corridor_m, dedupe_m=cfg.dedupe_m
            )
            self._publish_public_hazards(revision, matched)
        finally:
            if revision == self._revision:
                self._indexing = False

    def _publish_public_hazards(self, revision: int, matched: list[IndexedGuide]) -> None:
        if revision != self._revision:
            logger.debug("Discarding hazard index for stale revision %s (live %s)", revision, self._revision)
            return
        self._public_hazards = [m.guide for m in matched]
        self._guide_route_index.update({m.guide.id: m.vertex_index for m in matched})
        self._hazard_revision += 1
        logger.info("Indexed %s public hazards on route (revision %s)", len(matched), revision)
        self._recompute_next_hazard()

    # -- POI search source ------------------------------------------------

    def _poi_enabled(self) -> bool:
        return self._place_search is not None and bool((self._settings.place_search.api_key or "").strip())

    def _poi_refresh_due(self, anchor: CoreGeoPoint) -> bool:
        cfg = self._settings.place_search
        if self._poi_refreshed_at is None or self._poi_anchor is None:
            return True
        if time.monotonic() - self._poi_refreshed_at < cfg.min_interval_seconds:
            return False
        return haversine_m(anchor, self._poi_anchor) >= cfg.min_move_m

    def _poi_search_anchor(self) -> GeoPoint | None:
        if self._vehicle.coordinate is not None:
            return self._vehicle.coordinate
        if self._plan is not None and self._plan.polyline:
            return self._plan.polyline[0]
        return None

    def _launch_poi_refresh(self, *, force: bool) -> None:
        if self._poi_task is not None and not self._poi_task.done():
            if not force:
                return
            self._poi_task.cancel()
        near = self._poi_search_anchor()
        if near is None:
            return
        if not force and not self._poi_refresh_due(near.to_core()):
            return
        self._poi_refreshed_at = time.monotonic()
        self._poi_anchor = near.to_core()
        self._poi_task = self._spawn(self._refresh_poi_hazards(self._revision, near, self._polyline))

    def refresh_poi_hazards(self, force: bool = False) -> None:
        """Schedule a place-search refresh of POI hazards (throttled unless forced)."""
        if self._plan is None or not self._poi_enabled():
            return
        self._launch_poi_refresh(force=force)

    async def _refresh_poi_hazards(
        self, revision: int, near: GeoPoint, polyline: tuple[CoreGeoPoint, ...]
    ) -> None:
        if self._place_search is None:
            return
        try:
            places = await self._place_search.search_places(self._settings.place_search.query, near)
        except (httpx.HTTPError, ValueError) as exc:
            logger.warning("POI hazard search failed: %s", exc)
            return

        corridor_m = self._settings.matching.corridor_m
        guides: list[Guide] = []
        for place in places:
            if not self._classifier.matches_text(place.name):
                continue
            d = min_distance_to_segments_m(place.coordinate.to_core(), polyline)
            if d is None or d > corridor_m:
                continue
            guides.append(place_to_guide(place))

        if revision != self._revision:
            logger.debug("Discarding POI hazards for stale revision %s (live %s)", revision, self._revision)
            return
        self._poi_hazards = guides
        self._hazard_revision += 1
        logger.info("POI search contributed %s hazards (revision %s)", len(guides), revision)
        self._recompute_next_hazard()
