import math

from routeguard.core.geo import (
    GeoPoint,
    bounding_box,
    haversine_m,
    is_unknown_fix,
    is_valid_coordinate,
    project_onto_segment_m,
    simplify_vertexes,
)


def test_haversine_is_symmetric_and_zero_for_same_point():
    a = GeoPoint(lat=37.5, lon=127.0)
    b = GeoPoint(lat=37.51, lon=127.02)

    assert haversine_m(a, a) == 0.0
    assert math.isclose(haversine_m(a, b), haversine_m(b, a))
    # ~0.01 deg of latitude is ~1.1 km.
    assert 1100 < haversine_m(a, GeoPoint(lat=37.51, lon=127.0)) < 1120


def test_projection_is_never_farther_than_segment_endpoints():
    start = GeoPoint(lat=37.50, lon=127.00)
    end = GeoPoint(lat=37.50, lon=127.01)
    points = [
        GeoPoint(lat=37.501, lon=127.005),
        GeoPoint(lat=37.499, lon=126.999),
        GeoPoint(lat=37.502, lon=127.02),
        GeoPoint(lat=37.50, lon=127.003),
    ]
    for p in points:
        d = project_onto_segment_m(p, start, end)
        # Small tolerance: the projection uses a local flat-earth scale.
        assert d <= haversine_m(p, start) + 1.0
        assert d <= haversine_m(p, end) + 1.0


def test_projection_of_point_on_segment_is_zero_and_clamps_beyond_ends():
    start = GeoPoint(lat=37.50, lon=127.00)
    end = GeoPoint(lat=37.51, lon=127.00)

    assert project_onto_segment_m(GeoPoint(lat=37.505, lon=127.00), start, end) < 1e-6

    beyond = GeoPoint(lat=37.52, lon=127.00)
    # Clamped to `end`: ~0.01 deg of latitude at 111 km per degree.
    assert math.isclose(project_onto_segment_m(beyond, start, end), 1110.0, rel_tol=1e-3)


def test_projection_handles_degenerate_segment():
    p = GeoPoint(lat=37.501, lon=127.0)
    s = GeoPoint(lat=37.5, lon=127.0)
    assert math.isclose(project_onto_segment_m(p, s, s), 111.0, rel_tol=1e-3)


def test_bounding_box_is_none_for_empty_input():
    assert bounding_box([], margin_m=320) is None


def test_bounding_box_expands_by_margin():
    pts = [GeoPoint(lat=37.50, lon=127.00), GeoPoint(lat=37.52, lon=127.03)]
    box = bounding_box(pts, margin_m=111)

    assert math.isclose(box.min_lat, 37.499, abs_tol=1e-9)
    assert math.isclose(box.max_lat, 37.521, abs_tol=1e-9)
    # Longitude margin is wider than latitude margin away from the equator.
    assert 127.00 - box.min_lon > 0.001
    assert box.contains(37.51, 127.015)
    assert not box.contains(37.53, 127.015)


def test_coordinate_validity_and_unknown_fix():
    assert is_valid_coordinate(37.5, 127.0)
    assert not is_valid_coordinate(91.0, 0.0)
    assert not is_valid_coordinate(float("nan"), 0.0)
    assert not is_valid_coordinate("x", 1.0)  # type: ignore[arg-type]

    assert is_unknown_fix(0.0, 0.0)
    assert is_unknown_fix(0.000001, 0.000001)
    assert not is_unknown_fix(37.5, 127.0)


def test_simplify_vertexes_keeps_last_point():
    # Flat x/y list: 10 points along a line of longitude.
    flat: list[float] = []
    for i in range(10):
        flat.extend([127.0 + i * 0.001, 37.5])

    out = simplify_vertexes(flat, max_points=4)

    assert out[0] == GeoPoint(lat=37.5, lon=127.0)
    assert out[-1].lat == 37.5
    assert math.isclose(out[-1].lon, 127.009)
    # step = ceil(10 / 4) = 3 -> indexes 0, 3, 6, 9
    assert len(out) == 4


def test_simplify_vertexes_needs_two_points():
    assert simplify_vertexes([127.0, 37.5], max_points=10) == []
    assert simplify_vertexes([], max_points=10) == []
