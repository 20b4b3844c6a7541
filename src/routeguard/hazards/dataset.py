"""
Hazard dataset envelope (wire/disk format) and raw-row normalization.

Envelope shape (JSON):

    {"schemaVersion": 1, "source": "...", "updatedAt": "...", "count": N,
     "records": [{"id": "...", "lat": 37.5, "lon": 127.0, "limitKph": 60}, ...]}

Older files carry the record list under `cameras`; both keys are accepted on read.
Rows without usable coordinates are skipped rather than failing the whole file.
"""

from __future__ import annotations

import json
import math
from typing import Any

from routeguard.core.geo import is_valid_coordinate
from routeguard.domain.errors import DatasetUnavailable
from routeguard.domain.models import DatasetEnvelope, GeoPoint, HazardRecord

SCHEMA_VERSION = 1


def as_number(value: Any) -> float | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return float(value) if math.isfinite(value) else None
    s = str(value if value is not None else "").strip()
    if not s:
        return None
    try:
        n = float(s)
    except ValueError:
        return None
    return n if math.isfinite(n) else None


def as_int(value: Any) -> int | None:
    n = as_number(value)
    return int(n) if n is not None else None


def _positive_limit(value: Any) -> int | None:
    limit = as_int(value)
    return limit if limit is not None and limit > 0 else None


def record_from_row(row: Any) -> HazardRecord | None:
    """Build a record from one envelope row, or None when its coordinate is unusable."""
    if not isinstance(row, dict):
        return None
    lat = as_number(row.get("lat"))
    lon = as_number(row.get("lon"))
    if lat is None or lon is None or not is_valid_coordinate(lat, lon):
        return None
    rid = str(row.get("id") or "").strip() or f"{lat:.6f},{lon:.6f}"
    return HazardRecord(
        id=rid,
        coordinate=GeoPoint(lat=lat, lon=lon),
        speed_limit_kph=_positive_limit(row.get("limitKph")),
    )


def parse_envelope(payload: Any) -> DatasetEnvelope:
    """Validate a decoded envelope.

    Raises:
        DatasetUnavailable: If the payload is not an envelope or its schema is unsupported.
    """
    if not isinstance(payload, dict):
        raise DatasetUnavailable("Hazard dataset payload is not a JSON object.")

    version = as_int(payload.get("schemaVersion", SCHEMA_VERSION))
    if version != SCHEMA_VERSION:
        raise DatasetUnavailable(f"Unsupported hazard dataset schemaVersion: {payload.get('schemaVersion')!r}")

    rows = payload.get("records")
    if rows is None:
        rows = payload.get("cameras")
    if not isinstance(rows, list):
        raise DatasetUnavailable("Hazard dataset payload has no record list.")

    records = [r for r in (record_from_row(row) for row in rows) if r is not None]
    return DatasetEnvelope(
        schema_version=SCHEMA_VERSION,
        source=str(payload.get("source") or ""),
        updated_at=str(payload["updatedAt"]) if payload.get("updatedAt") else None,
        count=len(records),
        records=records,
    )


def parse_envelope_text(text: str) -> DatasetEnvelope:
    try:
        payload = json.loads(text)
    except ValueError as exc:
        raise DatasetUnavailable(f"Hazard dataset payload is not valid JSON: {exc}") from exc
    return parse_envelope(payload)


def envelope_to_payload(envelope: DatasetEnvelope) -> dict[str, Any]:
    return {
        "schemaVersion": envelope.schema_version,
        "source": envelope.source,
        "updatedAt": envelope.updated_at,
        "count": len(envelope.records),
        "records": [
            {
                "id": r.id,
                "lat": r.coordinate.lat,
                "lon": r.coordinate.lon,
                "limitKph": r.speed_limit_kph,
            }
            for r in envelope.records
        ],
    }


def extract_items_and_total_count(payload: Any) -> tuple[list[dict[str, Any]], int]:
    """Pull the row list + total count out of a public OpenAPI page.

    Supports the `{response: {body: {items: {item: [...]}, totalCount}}}` envelope
    and the `{data: [...], totalCount}` shape.
    """
    response = payload.get("response") if isinstance(payload, dict) else None
    body = response.get("body") if isinstance(response, dict) else None
    if isinstance(body, dict):
        items_node = body.get("items")
        if isinstance(items_node, dict):
            items_node = items_node.get("item")
        if items_node is None or items_node == "":
            items: list[Any] = []
        elif isinstance(items_node, list):
            items = items_node
        else:
            items = [items_node]
        total = as_int(body.get("totalCount"))
        if total is None:
            total = as_int(body.get("matchCount"))
        if total is None:
            total = as_int(body.get("total_count"))
        return [i for i in items if isinstance(i, dict)], total if total is not None else len(items)

    if isinstance(payload, dict) and isinstance(payload.get("data"), list):
        data = payload["data"]
        total = as_int(payload.get("totalCount"))
        return [i for i in data if isinstance(i, dict)], total if total is not None else len(data)

    raise ValueError("Unexpected API response shape.")


def normalize_public_item(item: dict[str, Any]) -> HazardRecord | None:
    """Map one raw OpenAPI camera row to a `HazardRecord` (None when it has no coordinate)."""
    lat = as_number(item.get("latitude"))
    lon = as_number(item.get("longitude"))
    if lat is None or lon is None or not is_valid_coordinate(lat, lon):
        return None

    rid = str(item.get("mnlssRegltCameraManageNo") or "").strip() or f"{lat:.6f},{lon:.6f}"
    return HazardRecord(
        id=rid,
        coordinate=GeoPoint(lat=lat, lon=lon),
        speed_limit_kph=_positive_limit(item.get("lmttVe")),
    )
