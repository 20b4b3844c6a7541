from __future__ import annotations

import logging
import re
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from urllib.parse import quote

import httpx

from routeguard.config.settings import Settings
from routeguard.core.cache import write_json_atomic
from routeguard.core.http import get_json
from routeguard.domain.models import DatasetEnvelope, HazardRecord
from routeguard.hazards.dataset import (
    SCHEMA_VERSION,
    envelope_to_payload,
    extract_items_and_total_count,
    normalize_public_item,
)

logger = logging.getLogger(__name__)

_PERCENT_ESCAPE = re.compile(r"%[0-9A-Fa-f]{2}")


@dataclass(frozen=True)
class BuildResult:
    pages_fetched: int
    total_count: int
    record_count: int
    out_path: Path
    seconds: float


def service_key_for_query(raw: str) -> str:
    """Portal keys come either URL-encoded or raw; encode only the raw form."""
    key = (raw or "").strip()
    if not key or _PERCENT_ESCAPE.search(key):
        return key
    return quote(key, safe="")


def _page_url(base_url: str, service_key: str, page_no: int, rows: int) -> str:
    # The service key goes in pre-encoded; letting httpx encode it again breaks encoded keys.
    return f"{base_url}?serviceKey={service_key}&pageNo={page_no}&numOfRows={rows}&type=json"


def fetch_public_records(settings: Settings) -> tuple[list[HazardRecord], int, int]:
    """Download every page of the public camera API.

    Returns (records sorted by id, pages fetched, reported total count).

    Raises:
        RuntimeError: Missing service key, non-2xx page, or the safety page limit was hit.
        ValueError: A page had an unexpected shape.
    """
    cfg = settings.public_api
    key = service_key_for_query(cfg.service_key or "")
    if not key:
        raise RuntimeError("Public dataset service key is not configured. Set DATA_GO_KR_SERVICE_KEY.")

    rows = int(cfg.rows_per_page)
    seen: set[str] = set()
    records: list[HazardRecord] = []
    total_count: int | None = None
    page_no = 1

    while True:
        url = _page_url(cfg.base_url, key, page_no, rows)
        try:
            payload = get_json(url, timeout_seconds=settings.app.http_total_timeout_seconds)
        except httpx.HTTPStatusError as exc:
            body = (exc.response.text or "")[:240]
            raise RuntimeError(
                f"HTTP {exc.response.status_code} fetching page={page_no}: {body}"
            ) from exc

        items, page_total = extract_items_and_total_count(payload)
        if total_count is None:
            total_count = page_total
            logger.info("totalCount=%s numOfRows=%s", total_count, rows)

        for item in items:
            record = normalize_public_item(item)
            if record is None or record.id in seen:
                continue
            seen.add(record.id)
            records.append(record)

        logger.info("page=%s items=%s records=%s", page_no, len(items), len(records))

        if not items:
            break
        if total_count is not None and page_no * rows >= total_count:
            break
        page_no += 1
        if page_no > cfg.max_pages:
            raise RuntimeError("Safety stop: too many pages. Check API parameters.")

    records.sort(key=lambda r: r.id)
    return records, page_no, int(total_count or 0)


def build_public_dataset(settings: Settings, *, out_path: Path) -> BuildResult:
    """Fetch the public dataset and write it as a schema-versioned envelope."""
    start = time.monotonic()
    records, pages, total = fetch_public_records(settings)
    envelope = DatasetEnvelope(
        schema_version=SCHEMA_VERSION,
        source=settings.public_api.source_label,
        updated_at=datetime.now(timezone.utc).isoformat(),
        count=len(records),
        records=records,
    )
    write_json_atomic(out_path, envelope_to_payload(envelope))
    return BuildResult(
        pages_fetched=pages,
        total_count=total,
        record_count=len(records),
        out_path=out_path,
        seconds=time.monotonic() - start,
    )
