"""
API routes.

Endpoints:
- GET    `/api/data/hazards`: the local hazard envelope with ETag / 304 support.
- PUT    `/api/route`, DELETE `/api/route`: adopt or clear a route plan.
- POST   `/api/route/fetch`: fetch a route from the configured provider and adopt it.
- POST   `/api/vehicle`: telemetry sample; advances the approach alert.
- GET    `/api/guidance`: engine snapshot plus the latest approach alert (read-only).
- POST   `/api/dataset/refresh`: conditional refresh of the hazard dataset.

Handlers are `async` so engine calls run on the event loop that owns the engine.
"""

from __future__ import annotations

import logging
from dataclasses import asdict

from fastapi import APIRouter, HTTPException, Request, Response
from pydantic import BaseModel

from routeguard.domain.errors import RemoteFetchFailed, RouteProviderFailed
from routeguard.domain.models import GeoPoint, RoutePlan
from routeguard.guidance.engine import GuideFusionEngine

logger = logging.getLogger(__name__)

router = APIRouter()


class RouteFetchRequest(BaseModel):
    origin: GeoPoint
    destination: GeoPoint


class VehicleUpdate(BaseModel):
    coordinate: GeoPoint | None = None
    speed_kph: float = 0.0


def _engine(request: Request) -> GuideFusionEngine:
    engine: GuideFusionEngine | None = getattr(request.app.state, "engine", None)
    if engine is None:
        raise HTTPException(status_code=503, detail="Guidance engine not initialised")
    return engine


@router.get("/health")
def health() -> dict:
    return {"status": "ok"}


@router.get("/api/data/hazards")
def get_hazard_dataset(request: Request) -> Response:
    """Serve the persisted hazard envelope; answers 304 when `If-None-Match` matches."""
    path = request.app.state.dataset.path
    try:
        stat = path.stat()
    except OSError:
        raise HTTPException(
            status_code=404,
            detail="Hazard dataset not found on this server. Run `routeguard dataset-build` and retry.",
        )

    etag = f'"{stat.st_size}-{int(stat.st_mtime * 1000)}"'
    if request.headers.get("if-none-match") == etag:
        return Response(status_code=304, headers={"ETag": etag})

    try:
        body = path.read_bytes()
    except OSError:
        raise HTTPException(status_code=404, detail="Hazard dataset could not be read.")
    return Response(
        content=body,
        media_type="application/json; charset=utf-8",
        headers={"ETag": etag, "Cache-Control": "public, max-age=86400"},
    )


@router.put("/api/route")
async def put_route(plan: RoutePlan, request: Request) -> dict:
    engine = _engine(request)
    revision = engine.set_route(plan)
    request.app.state.alerts.reset()
    return {"route_revision": revision, "route_hazards": len(engine.route_hazard_guides)}


@router.delete("/api/route")
async def delete_route(request: Request) -> dict:
    engine = _engine(request)
    engine.clear_route()
    request.app.state.alerts.reset()
    return {"route_revision": engine.route_revision}


@router.post("/api/route/fetch")
async def fetch_route(body: RouteFetchRequest, request: Request) -> RoutePlan:
    engine = _engine(request)
    provider = getattr(request.app.state, "route_provider", None)
    if provider is None:
        raise HTTPException(status_code=503, detail="No route provider configured")
    try:
        plan = await engine.start_route(provider, body.origin, body.destination)
    except RouteProviderFailed as exc:
        raise HTTPException(status_code=502, detail=str(exc)) from exc
    request.app.state.alerts.reset()
    return plan


@router.post("/api/vehicle")
async def post_vehicle(body: VehicleUpdate, request: Request) -> dict:
    """Apply a telemetry sample and advance the approach alert by one step.

    Every sample advances the alert, including ones the engine ignores as too small, so
    stage announcements and overspeed beeps follow the telemetry rate. The returned
    alert carries this sample's one-shot events (`announcement`, `overspeed_beep`).
    """
    engine = _engine(request)
    accepted = engine.update_vehicle(body.coordinate, body.speed_kph)
    alert = request.app.state.alerts.update(
        engine.next_hazard_guide(),
        engine.distance_to_next_hazard_m(),
        engine.vehicle.speed_kph,
        engine.next_hazard_speed_limit_kph(),
    )
    return {"accepted": accepted, "alert": asdict(alert)}


@router.get("/api/guidance")
async def get_guidance(request: Request) -> dict:
    """Engine snapshot plus the alert from the latest telemetry sample.

    Read-only: polling never advances alert state.
    """
    snap = _engine(request).snapshot()
    return {**snap.model_dump(mode="json"), "alert": asdict(request.app.state.alerts.latest)}


@router.post("/api/dataset/refresh")
async def refresh_dataset(request: Request, force: bool = False) -> dict:
    dataset = request.app.state.dataset
    try:
        outcome = await dataset.refresh_from_backend_if_needed(force=force)
    except RemoteFetchFailed as exc:
        logger.warning("Dataset refresh request failed: %s", exc)
        raise HTTPException(status_code=502, detail=str(exc)) from exc
    return {"outcome": outcome, "record_count": dataset.record_count, "etag": dataset.etag}
