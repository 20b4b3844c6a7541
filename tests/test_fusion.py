from routeguard.core.geo import GeoPoint as CoreGeoPoint
from routeguard.domain.models import GeoPoint, Guide, HazardRecord, PlaceCandidate
from routeguard.guidance.fusion import (
    match_records_to_route,
    merge_hazard_guides,
    nearest_ahead,
    place_to_guide,
    record_to_guide,
)

ROUTE = [
    CoreGeoPoint(lat=37.50, lon=127.00),
    CoreGeoPoint(lat=37.501, lon=127.001),
    CoreGeoPoint(lat=37.502, lon=127.002),
]


def _guide(gid: str, lat: float, lon: float, label: str = "Speed camera") -> Guide:
    return Guide(id=gid, label=label, coordinate=GeoPoint(lat=lat, lon=lon))


def _record(rid: str, lat: float, lon: float, limit: int | None = None) -> HazardRecord:
    return HazardRecord(id=rid, coordinate=GeoPoint(lat=lat, lon=lon), speed_limit_kph=limit)


def test_route_native_guide_wins_over_nearby_poi_guide():
    native = _guide("g1", 37.5000, 127.0000)
    poi = _guide("poi:p1", 37.5002, 127.0000)  # ~22 m away

    merged = merge_hazard_guides([native], [], [poi], within_m=35)

    assert merged == [native]


def test_poi_guide_loses_to_clashing_public_guide():
    native = _guide("g1", 37.5100, 127.0000)
    public = _guide("public:a", 37.5000, 127.0000)
    poi = _guide("poi:p1", 37.5001, 127.0000)

    merged = merge_hazard_guides([native], [public], [poi], within_m=35)
    assert [g.id for g in merged] == ["g1", "public:a"]


def test_equal_precedence_keeps_first_accepted():
    a = _guide("public:a", 37.5000, 127.0000)
    b = _guide("public:b", 37.5001, 127.0000)
    assert merge_hazard_guides([], [a, b], [], within_m=35) == [a]


def test_far_apart_guides_are_all_kept_in_order():
    guides = [_guide("g1", 37.50, 127.0), _guide("g2", 37.51, 127.0)]
    pub = [_guide("public:a", 37.52, 127.0)]
    assert [g.id for g in merge_hazard_guides(guides, pub, [], within_m=35)] == ["g1", "g2", "public:a"]


def test_match_records_dedupes_clustered_hazards_keeping_first_in_sort_order():
    records = [
        _record("b", 37.50002, 127.00002),
        _record("a", 37.50000, 127.00000),
    ]

    matched = match_records_to_route(records, ROUTE, corridor_m=180, dedupe_m=28)

    assert [m.guide.id for m in matched] == ["public:a"]
    assert matched[0].vertex_index == 0


def test_match_records_filters_corridor_and_sorts_by_route_progress():
    records = [
        _record("late", 37.5019, 127.0020, limit=80),
        _record("early", 37.5001, 127.0001, limit=60),
        _record("offroute", 37.5100, 127.0000),
    ]

    matched = match_records_to_route(records, ROUTE, corridor_m=180, dedupe_m=28)

    assert [(m.guide.id, m.vertex_index) for m in matched] == [("public:early", 0), ("public:late", 2)]


def test_match_records_needs_a_segment():
    assert match_records_to_route([_record("a", 37.5, 127.0)], ROUTE[:1], corridor_m=180, dedupe_m=28) == []


def test_record_and_place_guides_carry_source_prefix():
    g = record_to_guide(_record("x", 37.5, 127.0, limit=60))
    assert g.id == "public:x"
    assert "60" in g.narrative

    p = place_to_guide(
        PlaceCandidate(id="123", name="Speed camera", coordinate=GeoPoint(lat=37.5, lon=127.0), address="Road 1")
    )
    assert p.id == "poi:123"
    assert p.narrative == "Road 1"


def test_nearest_ahead_skips_just_passed_guides():
    vehicle = CoreGeoPoint(lat=37.5, lon=127.0)
    passed = _guide("passed", 37.50005, 127.0)  # ~5.5 m
    ahead = _guide("ahead", 37.5010, 127.0)  # ~111 m

    assert nearest_ahead([passed, ahead], vehicle, passed_m=25).id == "ahead"
    # Nothing beyond the threshold: fall back to the closest.
    assert nearest_ahead([passed], vehicle, passed_m=25).id == "passed"
    assert nearest_ahead([], vehicle, passed_m=25) is None
