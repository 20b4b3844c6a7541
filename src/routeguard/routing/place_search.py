"""
Keyword place-search client (Kakao Local style API).

This module is responsible only for:
- calling the keyword search endpoint near a coordinate, page by page,
- parsing documents into `PlaceCandidate`s (de-duplicated by id),
- caching results on disk and serving stale results when the provider errors.

Deciding which candidates are hazards happens in `routeguard.guidance`.
"""

from __future__ import annotations

import logging
from typing import Any

import httpx

from routeguard.config.settings import Settings
from routeguard.core.cache import FileCache
from routeguard.core.http import aget_json
from routeguard.domain.models import GeoPoint, PlaceCandidate

logger = logging.getLogger(__name__)

_CACHE_NAMESPACE = "place_search"


def _parse_document(doc: dict[str, Any]) -> PlaceCandidate | None:
    try:
        lon = float(doc.get("x"))
        lat = float(doc.get("y"))
    except (TypeError, ValueError):
        return None
    if not (-90 <= lat <= 90 and -180 <= lon <= 180):
        return None

    name = str(doc.get("place_name") or "")
    pid = str(doc.get("id") or "") or f"{lon},{lat},{name}"
    address = str(doc.get("road_address_name") or "") or str(doc.get("address_name") or "") or None
    return PlaceCandidate(
        id=pid,
        name=name,
        coordinate=GeoPoint(lat=lat, lon=lon),
        address=address,
        category_name=doc.get("category_name") or None,
    )


class KeywordPlaceSearchClient:
    """Keyword search with paging, de-duplication and a stale-if-error file cache."""

    def __init__(self, settings: Settings, cache: FileCache):
        self._settings = settings
        self._cache = cache

    def _require_api_key(self) -> str:
        key = (self._settings.place_search.api_key or "").strip()
        if not key:
            raise RuntimeError("Place search API key is not configured. Set PLACE_SEARCH_API_KEY.")
        return key

    async def _fetch_pages(self, query: str, near: GeoPoint | None) -> list[PlaceCandidate]:
        cfg = self._settings.place_search
        headers = {"Authorization": f"KakaoAK {self._require_api_key()}"}
        radius = min(max(int(cfg.radius_m), 1_000), 20_000)
        page_limit = min(max(int(cfg.page_limit), 1), 5)

        seen: set[str] = set()
        merged: list[PlaceCandidate] = []
        for page in range(1, page_limit + 1):
            params: dict[str, Any] = {"query": query, "size": cfg.page_size, "page": page}
            if near is not None:
                params.update({"x": near.lon, "y": near.lat, "radius": radius, "sort": "distance"})

            payload = await aget_json(
                cfg.base_url,
                params=params,
                headers=headers,
                timeout_seconds=self._settings.app.http_timeout_seconds,
                total_timeout_seconds=self._settings.app.http_total_timeout_seconds,
            )
            docs = payload.get("documents") if isinstance(payload, dict) else None
            if not docs:
                break

            for doc in docs:
                if not isinstance(doc, dict):
                    continue
                place = _parse_document(doc)
                if place is None or place.id in seen:
                    continue
                seen.add(place.id)
                merged.append(place)

            meta = payload.get("meta") or {}
            if isinstance(meta, dict) and meta.get("is_end") is True:
                break
        return merged

    async def search_places(self, query: str, near: GeoPoint | None = None) -> list[PlaceCandidate]:
        """Return candidates for `query`, biased to `near` when given.

        Raises:
            RuntimeError: If no API key is configured.
            httpx.HTTPError: If the provider fails and no cached result exists.
        """
        q = query.strip()
        if not q:
            return []

        anchor = f"{near.lat:.3f},{near.lon:.3f}" if near is not None else "-"
        cache_key = f"{q}:{anchor}"
        ttl_seconds = int(self._settings.place_search.cache_ttl_seconds)

        cached = self._cache.get(_CACHE_NAMESPACE, cache_key, ttl_seconds=ttl_seconds)
        if isinstance(cached, list):
            return [PlaceCandidate.model_validate(c) for c in cached]

        try:
            places = await self._fetch_pages(q, near)
        except httpx.HTTPError as exc:
            stale = self._cache.get_stale(_CACHE_NAMESPACE, cache_key)
            if isinstance(stale, list):
                logger.warning("Place search failed (%s); serving stale results.", exc)
                return [PlaceCandidate.model_validate(c) for c in stale]
            raise

        self._cache.set(
            _CACHE_NAMESPACE,
            cache_key,
            [p.model_dump(mode="json") for p in places],
            ttl_seconds=ttl_seconds,
        )
        return places
