import json

import httpx
import pytest

from routeguard.config.settings import get_settings
from routeguard.hazards.public_api import build_public_dataset, fetch_public_records, service_key_for_query


def _settings(service_key: str | None = "raw+key/=="):
    settings = get_settings()
    public_api = settings.public_api.model_copy(
        update={"service_key": service_key, "rows_per_page": 100, "max_pages": 5}
    )
    return settings.model_copy(update={"public_api": public_api})


def _row(i: int, **extra) -> dict:
    return {
        "mnlssRegltCameraManageNo": f"C{i:04d}",
        "latitude": str(37.5 + i * 0.001),
        "longitude": "127.0",
        "lmttVe": "60",
        **extra,
    }


def _page(rows: list[dict], total: int) -> dict:
    return {"response": {"header": {"resultCode": "00"}, "body": {"items": {"item": rows}, "totalCount": total}}}


def test_service_key_encoding():
    assert service_key_for_query("abc+def/==") == "abc%2Bdef%2F%3D%3D"
    # Already-encoded keys pass through untouched.
    assert service_key_for_query("abc%2Bdef") == "abc%2Bdef"
    assert service_key_for_query("  ") == ""


def test_fetch_public_records_pages_until_total(monkeypatch):
    urls: list[str] = []
    pages = {
        1: _page([_row(i) for i in range(100)], total=150),
        # Page 2 repeats one id from page 1; it must be de-duplicated.
        2: _page([_row(i) for i in range(99, 150)], total=150),
    }

    def fake_get_json(url, *, params=None, headers=None, timeout_seconds=15):  # noqa: ARG001
        urls.append(url)
        page_no = int(url.split("pageNo=")[1].split("&")[0])
        return pages[page_no]

    monkeypatch.setattr("routeguard.hazards.public_api.get_json", fake_get_json)

    records, fetched, total = fetch_public_records(_settings())

    assert fetched == 2
    assert total == 150
    assert len(records) == 150
    assert [r.id for r in records] == sorted(r.id for r in records)
    assert "serviceKey=raw%2Bkey%2F%3D%3D" in urls[0]
    assert "numOfRows=100" in urls[0] and "type=json" in urls[0]


def test_fetch_public_records_stops_on_empty_page(monkeypatch):
    calls = []

    def fake_get_json(url, **_kwargs):
        calls.append(url)
        if len(calls) == 1:
            return {"data": [_row(1)], "totalCount": 10_000}
        return {"data": [], "totalCount": 10_000}

    monkeypatch.setattr("routeguard.hazards.public_api.get_json", fake_get_json)

    records, fetched, _total = fetch_public_records(_settings())
    assert [r.id for r in records] == ["C0001"]
    assert fetched == 2


def test_fetch_public_records_safety_stop(monkeypatch):
    monkeypatch.setattr(
        "routeguard.hazards.public_api.get_json",
        lambda url, **_kwargs: _page([_row(int(url.split("pageNo=")[1].split("&")[0]))], total=10_000),
    )
    with pytest.raises(RuntimeError, match="Safety stop"):
        fetch_public_records(_settings())


def test_fetch_public_records_reports_http_errors(monkeypatch):
    def fake_get_json(url, **_kwargs):
        request = httpx.Request("GET", url)
        response = httpx.Response(401, request=request, text="SERVICE_KEY_IS_NOT_REGISTERED_ERROR " + "y" * 500)
        raise httpx.HTTPStatusError("401", request=request, response=response)

    monkeypatch.setattr("routeguard.hazards.public_api.get_json", fake_get_json)

    with pytest.raises(RuntimeError) as excinfo:
        fetch_public_records(_settings())
    message = str(excinfo.value)
    assert message.startswith("HTTP 401 fetching page=1: SERVICE_KEY_IS_NOT_REGISTERED_ERROR")
    assert len(message) <= len("HTTP 401 fetching page=1: ") + 240


def test_fetch_public_records_requires_service_key():
    with pytest.raises(RuntimeError, match="DATA_GO_KR_SERVICE_KEY"):
        fetch_public_records(_settings(service_key=None))


def test_build_public_dataset_writes_envelope(monkeypatch, tmp_path):
    monkeypatch.setattr(
        "routeguard.hazards.public_api.get_json",
        lambda url, **_kwargs: _page([_row(2), _row(1, lmttVe="0")], total=2),
    )
    out = tmp_path / "nested" / "hazards.json"

    result = build_public_dataset(_settings(), out_path=out)

    assert result.record_count == 2
    payload = json.loads(out.read_text(encoding="utf-8"))
    assert payload["schemaVersion"] == 1
    assert payload["count"] == 2
    assert [r["id"] for r in payload["records"]] == ["C0001", "C0002"]
    assert payload["records"][0]["limitKph"] is None
    assert payload["updatedAt"]
