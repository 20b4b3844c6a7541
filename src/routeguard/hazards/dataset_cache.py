"""
Process-wide owner of the bulk hazard dataset.

State machine: Unloaded -> Loaded (stale or fresh).

- `ensure_loaded()` reads the local envelope file once; a missing or corrupt file
  degrades to an empty dataset instead of failing, so first use never blocks.
- `refresh_from_backend_if_needed()` issues a conditional GET (If-None-Match) at most
  once per refresh interval unless forced.
- Records and their spatial index live in one immutable snapshot that is fully built
  before it is swapped in; readers never observe a half-rebuilt index.

All mutation happens on the event loop that owns the cache.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Literal

import httpx

from routeguard.config.settings import Settings
from routeguard.core.cache import read_json, write_json_atomic, write_text_atomic
from routeguard.core.env import resolve_project_path
from routeguard.core.geo import BoundingBox
from routeguard.core.http import get_conditional
from routeguard.core.spatial_index import SpatialIndex
from routeguard.domain.errors import DatasetUnavailable, RemoteFetchFailed
from routeguard.domain.models import DatasetEnvelope, HazardRecord
from routeguard.hazards.dataset import parse_envelope_text

logger = logging.getLogger(__name__)

RefreshOutcome = Literal["changed", "unchanged"]


def _record_latlon(record: HazardRecord) -> tuple[float, float]:
    return record.coordinate.lat, record.coordinate.lon


@dataclass(frozen=True)
class DatasetSnapshot:
    records: tuple[HazardRecord, ...] = ()
    index: SpatialIndex[HazardRecord] = field(default_factory=SpatialIndex.empty)
    source: str = ""
    updated_at: str | None = None


def build_snapshot(envelope: DatasetEnvelope, *, cell_size_deg: float) -> DatasetSnapshot:
    records = tuple(envelope.records)
    return DatasetSnapshot(
        records=records,
        index=SpatialIndex(list(records), get_latlon=_record_latlon, cell_size_deg=cell_size_deg),
        source=envelope.source,
        updated_at=envelope.updated_at,
    )


def truncate_body(text: str, limit: int) -> str:
    text = (text or "").strip()
    if len(text) > limit:
        return text[:limit] + "..."
    return text


class DatasetCache:
    """Local cache + conditional remote refresh + spatial index for hazard records."""

    def __init__(self, settings: Settings, *, cache_path: Path | None = None):
        self._settings = settings
        self._path = cache_path or resolve_project_path(settings.dataset.cache_path)
        self._meta_path = self._path.with_name(self._path.name + ".meta.json")
        self._loaded = False
        self._snapshot = DatasetSnapshot()
        self._etag: str | None = None
        self._last_fetch_at: float | None = None
        self._refresh_lock = asyncio.Lock()
        self._refresh_task: asyncio.Task | None = None
        self.last_error: str | None = None

    @property
    def path(self) -> Path:
        return self._path

    @property
    def remote_configured(self) -> bool:
        return bool(self._settings.dataset.url)

    @property
    def loaded(self) -> bool:
        return self._loaded

    @property
    def records(self) -> tuple[HazardRecord, ...]:
        return self._snapshot.records

    @property
    def record_count(self) -> int:
        return len(self._snapshot.records)

    @property
    def etag(self) -> str | None:
        return self._etag

    @property
    def last_fetch_at(self) -> float | None:
        return self._last_fetch_at

    def ensure_loaded(self) -> None:
        """Load the local envelope once; fall back to an empty dataset on any failure."""
        if self._loaded:
            return
        try:
            text = self._path.read_text(encoding="utf-8")
            snapshot = build_snapshot(
                parse_envelope_text(text), cell_size_deg=self._settings.dataset.cell_size_deg
            )
        except FileNotFoundError:
            logger.info("No local hazard dataset at %s; starting empty.", self._path)
            snapshot = DatasetSnapshot()
        except (OSError, DatasetUnavailable) as exc:
            logger.warning("Local hazard dataset unusable (%s); starting empty.", exc)
            snapshot = DatasetSnapshot()
        else:
            meta = read_json(self._meta_path, default={})
            if isinstance(meta, dict):
                etag = meta.get("etag")
                fetched_at = meta.get("fetched_at_unix")
                self._etag = str(etag) if etag else None
                self._last_fetch_at = float(fetched_at) if isinstance(fetched_at, (int, float)) else None

        self._snapshot = snapshot
        self._loaded = True
        logger.debug("Hazard dataset loaded: %s records", len(snapshot.records))

    async def refresh_from_backend_if_needed(self, force: bool = False) -> RefreshOutcome:
        """Conditionally re-download the dataset.

        Returns "unchanged" when skipped (fetched within the refresh interval) or on HTTP 304,
        "changed" when a new envelope replaced the in-memory dataset.

        Raises:
            RemoteFetchFailed: On transport errors, timeouts, unexpected statuses or a bad payload.
                The in-memory dataset is left untouched and `last_error` records the failure.
        """
        async with self._refresh_lock:
            try:
                outcome = await self._refresh_locked(force)
            except RemoteFetchFailed as exc:
                self.last_error = str(exc)
                raise
            self.last_error = None
            return outcome

    async def _refresh_locked(self, force: bool) -> RefreshOutcome:
        cfg = self._settings.dataset
        self.ensure_loaded()
        if (
            not force
            and self._last_fetch_at is not None
            and time.time() - self._last_fetch_at < cfg.refresh_interval_seconds
        ):
            return "unchanged"

        if not cfg.url:
            raise RemoteFetchFailed("Hazard dataset URL is not configured.")

        try:
            resp = await get_conditional(
                cfg.url,
                etag=self._etag,
                timeout_seconds=self._settings.app.http_timeout_seconds,
                total_timeout_seconds=self._settings.app.http_total_timeout_seconds,
            )
        except httpx.HTTPError as exc:
            raise RemoteFetchFailed(f"Hazard dataset request failed: {exc}") from exc

        if resp.status_code == 304:
            self._last_fetch_at = time.time()
            self._persist_meta()
            logger.info("Hazard dataset not modified (etag=%s).", self._etag)
            return "unchanged"

        if not 200 <= resp.status_code < 300:
            raise RemoteFetchFailed(
                truncate_body(resp.text, cfg.error_body_limit) or f"HTTP {resp.status_code}",
                status=resp.status_code,
            )

        try:
            envelope = parse_envelope_text(resp.text)
        except DatasetUnavailable as exc:
            raise RemoteFetchFailed(str(exc), status=resp.status_code) from exc

        self._snapshot = build_snapshot(envelope, cell_size_deg=cfg.cell_size_deg)
        self._loaded = True
        self._etag = resp.etag
        self._last_fetch_at = time.time()
        logger.info("Hazard dataset refreshed: %s records (etag=%s).", len(envelope.records), self._etag)
        try:
            write_text_atomic(self._path, resp.text)
        except OSError as exc:
            # The sidecar must keep describing the file that is actually on disk.
            logger.warning("Could not persist hazard dataset to %s: %s", self._path, exc)
        else:
            self._persist_meta()
        return "changed"

    def _persist_meta(self) -> None:
        try:
            write_json_atomic(
                self._meta_path,
                {"etag": self._etag, "fetched_at_unix": self._last_fetch_at},
            )
        except OSError as exc:
            logger.warning("Could not persist hazard dataset metadata: %s", exc)

    async def _background_refresh(self) -> None:
        try:
            await self.refresh_from_backend_if_needed(force=False)
        except RemoteFetchFailed as exc:
            logger.warning("Background hazard dataset refresh failed: %s", exc)

    def prewarm(self) -> asyncio.Task | None:
        """Load synchronously, then schedule a non-forced refresh without waiting for it.

        Must be called from a running event loop. Returns the refresh task (None when
        no dataset URL is configured).
        """
        self.ensure_loaded()
        if not self._settings.dataset.url:
            return None
        if self._refresh_task is not None and not self._refresh_task.done():
            return self._refresh_task
        self._refresh_task = asyncio.get_running_loop().create_task(self._background_refresh())
        return self._refresh_task

    async def lookup_limit(self, *, lat: float, lon: float, within_m: float | None = None) -> int | None:
        """Speed limit of the nearest record within `within_m` (default from settings), if known."""
        self.ensure_loaded()
        radius = within_m if within_m is not None else self._settings.dataset.lookup_radius_m
        record = self._snapshot.index.nearest(lat=lat, lon=lon, within_m=radius)
        if record is None:
            return None
        return record.speed_limit_kph

    async def cameras(self, bounds: BoundingBox) -> list[HazardRecord]:
        """Every record inside `bounds`."""
        self.ensure_loaded()
        return self._snapshot.index.range_query(bounds)

    async def aclose(self) -> None:
        task = self._refresh_task
        if task is not None and not task.done():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
