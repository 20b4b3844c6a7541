# src/routeguard/api/app.py
"""
FastAPI application wiring.

This file creates the `FastAPI` instance and owns the process-wide components:
one `DatasetCache`, an optional place-search client and one `GuideFusionEngine`,
all living on `app.state`. The event loop serving requests is the engine's
single-writer context.
Endpoint logic lives in `routeguard.api.routes`.
"""

from __future__ import annotations

import logging
import os
from contextlib import asynccontextmanager

from fastapi import FastAPI
from starlette.middleware.cors import CORSMiddleware

from routeguard.config.settings import Settings, get_settings
from routeguard.core.cache import FileCache
from routeguard.core.env import resolve_project_path
from routeguard.core.logging import configure_logging
from routeguard.guidance.alerts import HazardAlertTracker
from routeguard.guidance.engine import GuideFusionEngine
from routeguard.hazards.dataset_cache import DatasetCache
from routeguard.routing.place_search import KeywordPlaceSearchClient

from .routes import router

logger = logging.getLogger(__name__)


def create_app(settings: Settings | None = None) -> FastAPI:
    """Build the app; `settings` defaults to the cached process settings."""
    resolved = settings or get_settings()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        dataset = DatasetCache(resolved)
        place_search = None
        if (resolved.place_search.api_key or "").strip():
            cache = FileCache(
                resolve_project_path(resolved.cache.dir),
                enabled=resolved.cache.enabled,
                default_ttl_seconds=resolved.cache.default_ttl_seconds,
            )
            place_search = KeywordPlaceSearchClient(resolved, cache)

        app.state.settings = resolved
        app.state.dataset = dataset
        app.state.engine = GuideFusionEngine(resolved, dataset, place_search=place_search)
        app.state.alerts = HazardAlertTracker(resolved.alerts)
        # Set by the host process; `POST /api/route/fetch` answers 503 while unset.
        if not hasattr(app.state, "route_provider"):
            app.state.route_provider = None

        dataset.prewarm()
        logger.info(
            "RouteGuard started: %s hazard records, place search %s",
            dataset.record_count,
            "enabled" if place_search is not None else "disabled",
        )
        yield
        await app.state.engine.aclose()
        await dataset.aclose()

    app = FastAPI(title="RouteGuard API", version="0.1.0", lifespan=lifespan)

    # CORS (dev-friendly): allow local frontends to call this API.
    # Configure via env:
    # - ROUTEGUARD_CORS_ORIGINS="http://localhost:5173,http://127.0.0.1:5173"
    # - ROUTEGUARD_CORS_ALLOW_LOCAL=0 to disable the default localhost allowance
    cors_origins = [s.strip() for s in os.getenv("ROUTEGUARD_CORS_ORIGINS", "").split(",") if s.strip()]
    cors_allow_local = os.getenv("ROUTEGUARD_CORS_ALLOW_LOCAL", "1").strip().lower() in {"1", "true", "yes", "y"}
    cors_origin_regex = r"^https?://(localhost|127\.0\.0\.1)(:\d+)?$" if cors_allow_local and not cors_origins else ""
    if cors_origins or cors_origin_regex:
        app.add_middleware(
            CORSMiddleware,
            allow_origins=cors_origins,
            allow_origin_regex=cors_origin_regex or None,
            allow_credentials=False,
            allow_methods=["*"],
            allow_headers=["*"],
        )

    app.include_router(router)
    return app


configure_logging()

app = create_app()
