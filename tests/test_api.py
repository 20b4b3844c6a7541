import json
import time

from starlette.testclient import TestClient

from routeguard.api.app import create_app
from routeguard.config.settings import get_settings
from routeguard.domain.errors import RouteProviderFailed
from routeguard.domain.models import RoutePlan


def _settings(dataset_path):
    settings = get_settings()
    return settings.model_copy(
        update={
            "dataset": settings.dataset.model_copy(update={"url": None, "cache_path": str(dataset_path)}),
            "place_search": settings.place_search.model_copy(update={"api_key": None}),
        }
    )


def _write_dataset(path) -> None:
    records = [
        {"id": "h1", "lat": 37.501, "lon": 127.0, "limitKph": 30},
        {"id": "h5", "lat": 37.505, "lon": 127.0, "limitKph": 80},
    ]
    path.write_text(
        json.dumps({"schemaVersion": 1, "source": "test", "count": 2, "records": records}), encoding="utf-8"
    )


ROUTE = {
    "polyline": [{"lat": round(37.5 + i * 0.001, 6), "lon": 127.0} for i in range(7)],
    "guides": [{"id": "arrive", "label": "Arrive", "coordinate": {"lat": 37.506, "lon": 127.0}}],
}


def _wait_until_indexed(client: TestClient) -> dict:
    body = client.get("/api/guidance").json()
    for _ in range(200):
        if not body["is_indexing"]:
            break
        time.sleep(0.01)
        body = client.get("/api/guidance").json()
    return body


def test_health(tmp_path):
    with TestClient(create_app(_settings(tmp_path / "h.json"))) as c:
        assert c.get("/health").json() == {"status": "ok"}


def test_hazard_dataset_endpoint_supports_etag(tmp_path):
    path = tmp_path / "h.json"
    _write_dataset(path)

    with TestClient(create_app(_settings(path))) as c:
        resp = c.get("/api/data/hazards")
        assert resp.status_code == 200
        etag = resp.headers["etag"]
        assert etag.startswith('"') and etag.endswith('"')
        assert etag.strip('"').split("-")[0] == str(path.stat().st_size)
        assert resp.headers["cache-control"] == "public, max-age=86400"
        assert resp.json()["count"] == 2

        cached = c.get("/api/data/hazards", headers={"If-None-Match": etag})
        assert cached.status_code == 304
        assert cached.headers["etag"] == etag


def test_hazard_dataset_endpoint_404_when_missing(tmp_path):
    with TestClient(create_app(_settings(tmp_path / "missing.json"))) as c:
        resp = c.get("/api/data/hazards")
    assert resp.status_code == 404
    assert "dataset-build" in resp.json()["detail"]


def test_route_vehicle_and_guidance_flow(tmp_path):
    path = tmp_path / "h.json"
    _write_dataset(path)

    with TestClient(create_app(_settings(path))) as c:
        put = c.put("/api/route", json=ROUTE)
        assert put.status_code == 200
        assert put.json()["route_revision"] == 1

        body = _wait_until_indexed(c)
        assert body["has_route"]
        assert body["hazard_count"] == 2

        sample = {"coordinate": {"lat": 37.504, "lon": 127.0}, "speed_kph": 95}
        moved = c.post("/api/vehicle", json=sample).json()
        assert moved["accepted"] is True
        assert moved["alert"]["stage_m"] == 150
        assert moved["alert"]["announcement"] == "Speed camera in 150 meters. Slow down"

        body = c.get("/api/guidance").json()
        for _ in range(200):
            if body["next_hazard_speed_limit_kph"] is not None:
                break
            time.sleep(0.01)
            body = c.get("/api/guidance").json()

        assert body["next_hazard"]["id"] == "public:h5"
        assert body["distance_to_next_hazard_m"] == 111
        assert body["next_hazard_speed_limit_kph"] == 80
        # Polling only reads the alert of the last sample.
        assert body["alert"] == moved["alert"]
        assert c.get("/api/guidance").json()["alert"] == moved["alert"]

        same = c.post("/api/vehicle", json=sample).json()
        assert same["accepted"] is False
        assert same["alert"]["overspeed"] is True
        assert same["alert"]["overspeed_beep"] is True
        assert same["alert"]["announcement"] is None
        assert same["alert"]["text"] == "Overspeed! limit 80 · 111 m"
        assert c.get("/api/guidance").json()["alert"] == same["alert"]

        cleared = c.delete("/api/route")
        assert cleared.json() == {"route_revision": 2}
        body = c.get("/api/guidance").json()
        assert not body["has_route"]
        assert body["next_hazard"] is None
        assert body["alert"]["text"] is None


class _Provider:
    def __init__(self, plan=None, error=None):
        self.plan = plan
        self.error = error

    async def fetch_route(self, origin, destination):
        if self.error is not None:
            raise self.error
        return self.plan


def test_route_fetch_requires_provider(tmp_path):
    payload = {"origin": {"lat": 37.5, "lon": 127.0}, "destination": {"lat": 37.506, "lon": 127.0}}

    with TestClient(create_app(_settings(tmp_path / "h.json"))) as c:
        assert c.post("/api/route/fetch", json=payload).status_code == 503

        c.app.state.route_provider = _Provider(plan=RoutePlan.model_validate(ROUTE))
        ok = c.post("/api/route/fetch", json=payload)
        assert ok.status_code == 200
        assert len(ok.json()["polyline"]) == 7

        c.app.state.route_provider = _Provider(error=RouteProviderFailed("route server returned 500"))
        failed = c.post("/api/route/fetch", json=payload)
        assert failed.status_code == 502
        assert failed.json()["detail"] == "route server returned 500"

        body = c.get("/api/guidance").json()
        assert not body["has_route"]
        assert body["error_message"] == "route server returned 500"


def test_dataset_refresh_without_remote_is_bad_gateway(tmp_path):
    with TestClient(create_app(_settings(tmp_path / "h.json"))) as c:
        resp = c.post("/api/dataset/refresh", params={"force": "true"})
    assert resp.status_code == 502
