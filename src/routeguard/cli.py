"""
RouteGuard CLI entrypoint.

This CLI is intended for maintaining the hazard dataset and for debugging route
matching without the HTTP API.
"""

from __future__ import annotations

import argparse
import asyncio
import json
from pathlib import Path
from typing import Any

from routeguard.config.settings import Settings, get_settings
from routeguard.core.env import resolve_project_path
from routeguard.core.geo import simplify_vertexes
from routeguard.core.logging import configure_logging
from routeguard.domain.errors import RemoteFetchFailed
from routeguard.domain.models import GeoPoint, RoutePlan
from routeguard.guidance.engine import GuideFusionEngine
from routeguard.hazards.dataset_cache import DatasetCache
from routeguard.hazards.public_api import build_public_dataset


def load_route_plan(path: Path, *, max_points: int) -> RoutePlan:
    """Read a `RoutePlan` JSON file.

    A flat `vertexes` list (`[x0, y0, x1, y1, ...]`, as routing providers return it) is
    accepted in place of `polyline` and down-sampled to about `max_points` points.
    """
    payload: Any = json.loads(path.read_text(encoding="utf-8"))
    if isinstance(payload, dict) and "polyline" not in payload and isinstance(payload.get("vertexes"), list):
        points = simplify_vertexes([float(v) for v in payload["vertexes"]], max_points=max_points)
        payload = {k: v for k, v in payload.items() if k != "vertexes"}
        payload["polyline"] = [{"lat": p.lat, "lon": p.lon} for p in points]
    return RoutePlan.model_validate(payload)


def _cmd_dataset_build(args: argparse.Namespace) -> int:
    settings = get_settings()
    if args.rows is not None:
        settings = settings.model_copy(
            update={"public_api": settings.public_api.model_copy(update={"rows_per_page": int(args.rows)})}
        )
    out_path = resolve_project_path(args.out or settings.dataset.cache_path)
    result = build_public_dataset(settings, out_path=out_path)
    print(
        f"pages={result.pages_fetched} total={result.total_count} records={result.record_count} "
        f"seconds={result.seconds:.1f}"
    )
    print(f"  data: {result.out_path}")
    return 0


async def _refresh(settings: Settings, *, force: bool) -> tuple[str, int]:
    dataset = DatasetCache(settings)
    try:
        outcome = await dataset.refresh_from_backend_if_needed(force=force)
        return outcome, dataset.record_count
    finally:
        await dataset.aclose()


def _cmd_dataset_refresh(args: argparse.Namespace) -> int:
    settings = get_settings()
    try:
        outcome, count = asyncio.run(_refresh(settings, force=bool(args.force)))
    except RemoteFetchFailed as exc:
        print(f"refresh failed: {exc}")
        return 1
    print(f"{outcome}: records={count}")
    return 0


def _cmd_lookup_limit(args: argparse.Namespace) -> int:
    settings = get_settings()
    dataset = DatasetCache(settings)
    limit = asyncio.run(dataset.lookup_limit(lat=float(args.lat), lon=float(args.lon), within_m=args.radius))
    print(json.dumps({"lat": args.lat, "lon": args.lon, "limit_kph": limit}))
    return 0


async def _match(settings: Settings, plan: RoutePlan, args: argparse.Namespace) -> dict:
    dataset = DatasetCache(settings)
    engine = GuideFusionEngine(settings, dataset)
    try:
        engine.set_route(plan)
        # Let the indexing pipeline run to completion.
        while engine.is_indexing:
            await asyncio.sleep(0.01)
        if args.lat is not None and args.lon is not None:
            engine.update_vehicle(GeoPoint(lat=float(args.lat), lon=float(args.lon)), float(args.speed))
        await asyncio.sleep(0)
        return engine.snapshot().model_dump(mode="json")
    finally:
        await engine.aclose()
        await dataset.aclose()


def _cmd_match(args: argparse.Namespace) -> int:
    settings = get_settings()
    plan = load_route_plan(Path(args.route), max_points=int(args.max_points))
    snapshot = asyncio.run(_match(settings, plan, args))
    print(json.dumps(snapshot, ensure_ascii=False, indent=2))
    return 0


def build_parser() -> argparse.ArgumentParser:
    """Build the argparse parser for the RouteGuard CLI."""
    parser = argparse.ArgumentParser(prog="routeguard")
    sub = parser.add_subparsers(dest="command", required=True)

    build = sub.add_parser("dataset-build", help="Download the public camera dataset into an envelope file.")
    build.add_argument("--out", type=str, default=None, help="Output path (default: dataset.cache_path).")
    build.add_argument("--rows", type=int, default=None, help="Rows per page (100..1000).")
    build.set_defaults(func=_cmd_dataset_build)

    refresh = sub.add_parser("dataset-refresh", help="Conditionally refresh the local hazard dataset.")
    refresh.add_argument("--force", action="store_true", help="Ignore the refresh interval.")
    refresh.set_defaults(func=_cmd_dataset_refresh)

    lookup = sub.add_parser("lookup-limit", help="Speed limit of the nearest hazard in the local dataset.")
    lookup.add_argument("--lat", required=True, type=float)
    lookup.add_argument("--lon", required=True, type=float)
    lookup.add_argument("--radius", type=float, default=None, help="Search radius in meters.")
    lookup.set_defaults(func=_cmd_lookup_limit)

    match = sub.add_parser("match", help="Match hazards to a route plan JSON and print the guidance snapshot.")
    match.add_argument("--route", required=True, help="RoutePlan JSON file")
    match.add_argument("--lat", type=float, default=None, help="Vehicle latitude")
    match.add_argument("--lon", type=float, default=None, help="Vehicle longitude")
    match.add_argument("--speed", type=float, default=0.0, help="Vehicle speed (km/h)")
    match.add_argument("--max-points", type=int, default=400, help="Down-sampling cap for `vertexes` input")
    match.set_defaults(func=_cmd_match)
    return parser


def main(argv: list[str] | None = None) -> int:
    """CLI entrypoint callable used by `python -m routeguard.cli`."""
    configure_logging()
    parser = build_parser()
    args = parser.parse_args(argv)
    func: Any = getattr(args, "func")
    return int(func(args))


if __name__ == "__main__":
    raise SystemExit(main())
