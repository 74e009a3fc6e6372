import copy
import math
import random

import pytest

from width_match import (
    GridIndex,
    IndexedPoint,
    MatchOptions,
    attach_nearest_attribute,
    attach_width_to_roadnet,
    cell_key,
    haversine_m,
    line_midpoint,
    normalize_number,
)

# ---------- Helpers


def line(coords, **props):
    return {
        "type": "Feature",
        "properties": dict(props),
        "geometry": {"type": "LineString", "coordinates": [list(c) for c in coords]},
    }


def around(lon, lat, step=0.001):
    """Three-point line whose midpoint is exactly (lon, lat)."""
    return [(lon - step, lat), (lon, lat), (lon + step, lat)]


@pytest.fixture
def oslo_pair():
    target = [line(around(10.70, 59.91), typeVeg="Enkel bilveg")]
    reference = [line(around(10.7003, 59.9103, step=0.0005), widthValue="4,2")]
    return target, reference


# ---------- Primitives


def test_haversine_known_distance_and_symmetry():
    a, b = (10.70, 59.91), (10.7003, 59.9103)
    d = haversine_m(a, b)
    assert 35.0 <= d <= 40.0
    assert d == pytest.approx(haversine_m(b, a))
    assert haversine_m(a, a) == 0.0


def test_haversine_one_degree_latitude():
    assert haversine_m((0.0, 0.0), (0.0, 1.0)) == pytest.approx(111194.9, abs=1.0)


@pytest.mark.parametrize(
    "a,b",
    [
        ((float("nan"), 59.9), (10.7, 59.9)),
        ((10.7, 59.9), (10.7, float("inf"))),
        ((float("-inf"), 0.0), (0.0, 0.0)),
    ],
)
def test_haversine_non_finite_is_infinite(a, b):
    assert haversine_m(a, b) == math.inf


def test_haversine_antipodal_is_clamped():
    d = haversine_m((0.0, 0.0), (180.0, 0.0))
    assert d == pytest.approx(math.pi * 6371000.0)


def test_line_midpoint_uses_middle_index():
    assert line_midpoint([[1, 1], [2, 2], [3, 3], [4, 4]]) == (3.0, 3.0)
    assert line_midpoint([[1, 1], [2, 2], [3, 3]]) == (2.0, 2.0)
    assert line_midpoint([[5, 6]]) == (5.0, 6.0)


@pytest.mark.parametrize("coords", [None, [], [[1.0]], [[1, 1], [float("nan"), 2.0], [3, 3]], "LINESTRING", [["a", "b"]]])
def test_line_midpoint_unusable_geometry(coords):
    assert line_midpoint(coords) is None


@pytest.mark.parametrize(
    "raw,expected",
    [
        ("4,2", 4.2),
        (" 12 000 ", 12000.0),
        ("6.5", 6.5),
        (3, 3.0),
        (2.75, 2.75),
        ("-1,5", -1.5),
    ],
)
def test_normalize_number_parses(raw, expected):
    assert normalize_number(raw) == pytest.approx(expected)


@pytest.mark.parametrize(
    "raw",
    [None, "", "   ", "abc", "4,2,1", float("nan"), float("inf"), "inf", True, 10**400, "1_000", "\u0664,\u0662", "\uff14"],
)
def test_normalize_number_rejects(raw):
    assert normalize_number(raw) is None


def test_cell_key_floors_negative_coordinates():
    assert cell_key(-0.005, -0.005, 0.01) == (-1, -1)
    assert cell_key(0.005, 0.015, 0.01) == (0, 1)


# ---------- Grid index


def test_grid_buckets_respect_floor_invariant():
    rng = random.Random(3)
    pts = [IndexedPoint((rng.uniform(10.6, 10.8), rng.uniform(59.8, 60.0)), float(i)) for i in range(200)]
    idx = GridIndex(pts, cell_size_deg=0.01)
    assert len(idx) == 200
    for p in pts:
        key = cell_key(p.mid[0], p.mid[1], 0.01)
        assert key == (math.floor(p.mid[0] / 0.01), math.floor(p.mid[1] / 0.01))
        assert p in idx.bucket(key)


def test_grid_nearest_across_cell_boundary():
    ref = IndexedPoint((10.0099, 59.9), 3.0)
    idx = GridIndex([ref], cell_size_deg=0.01)
    query = (10.0101, 59.9)
    assert cell_key(*query, 0.01) != cell_key(*ref.mid, 0.01)
    hit = idx.nearest(query, 75.0)
    assert hit is not None
    assert hit[0] is ref
    assert hit[1] < 20.0


def test_grid_nearest_ignores_cells_beyond_neighbourhood():
    idx = GridIndex([IndexedPoint((10.03, 59.9), 1.0)], cell_size_deg=0.01)
    assert idx.nearest((10.0, 59.9), 1e9) is None


def test_grid_tie_keeps_first_inserted():
    a = IndexedPoint((10.7, 59.9), 1.0)
    b = IndexedPoint((10.7, 59.9), 2.0)
    hit = GridIndex([a, b]).nearest((10.7001, 59.9), 75.0)
    assert hit[0] is a


# ---------- attach_nearest_attribute


def test_scenario_attaches_width(oslo_pair):
    target, reference = oslo_pair
    n = attach_nearest_attribute(target, reference, MatchOptions(cell_size_deg=0.01, max_match_m=75))
    assert n == 1
    props = target[0]["properties"]
    assert props["widthM"] == pytest.approx(4.2)
    assert props["widthText"] == "4.2 m"
    assert props["typeVeg"] == "Enkel bilveg"


def test_scenario_with_tight_cutoff_attaches_nothing(oslo_pair):
    target, reference = oslo_pair
    before = copy.deepcopy(target)
    n = attach_nearest_attribute(target, reference, MatchOptions(cell_size_deg=0.01, max_match_m=10))
    assert n == 0
    assert target == before


def test_default_options_match_scenario(oslo_pair):
    target, reference = oslo_pair
    assert attach_nearest_attribute(target, reference) == 1


@pytest.mark.parametrize("which", ["target", "reference", "both"])
def test_empty_inputs_are_noops(oslo_pair, which):
    target, reference = oslo_pair
    if which in ("target", "both"):
        target = []
    if which in ("reference", "both"):
        reference = []
    before = copy.deepcopy(target)
    assert attach_nearest_attribute(target, reference) == 0
    assert target == before


def test_reference_without_usable_values_is_noop():
    target = [line(around(10.70, 59.91))]
    reference = [
        line(around(10.70, 59.91), widthValue="ukjent"),
        line([], widthValue="5"),
        line(around(10.70, 59.91), widthValue=None),
        {"type": "Feature", "properties": {"widthValue": "5"}, "geometry": None},
    ]
    before = copy.deepcopy(target)
    assert attach_nearest_attribute(target, reference) == 0
    assert target == before


def test_nearest_wins_regardless_of_order():
    target = [line(around(10.70, 59.91))]
    far = line(around(10.7008, 59.91), widthValue=7.0)  # ~45 m
    near = line(around(10.7002, 59.91), widthValue=5.0)  # ~11 m
    for reference in ([far, near], [near, far]):
        t = copy.deepcopy(target)
        attach_nearest_attribute(t, reference)
        assert t[0]["properties"]["widthM"] == 5.0


def test_exact_tie_keeps_first_reference():
    target = [line(around(10.70, 59.91))]
    reference = [line(around(10.7002, 59.91), widthValue="3,0"), line(around(10.7002, 59.91), widthValue="9,0")]
    attach_nearest_attribute(target, reference)
    assert target[0]["properties"]["widthM"] == 3.0


def test_matching_across_cell_boundary():
    target = [line(around(10.0101, 59.9, step=0.0001))]
    reference = [line(around(10.0099, 59.9, step=0.0001), widthValue="5,5")]
    attach_nearest_attribute(target, reference, MatchOptions(cell_size_deg=0.01, max_match_m=75))
    assert target[0]["properties"]["widthText"] == "5.5 m"


def test_unusable_targets_are_left_alone():
    reference = [line(around(10.70, 59.91), widthValue=4)]
    target = [
        line([]),
        line([[float("nan"), 59.91]]),
        line([[10**400, 59.91]]),
        {"type": "Feature", "properties": {"id": 1}},
        line(around(10.70, 59.91)),
    ]
    assert attach_nearest_attribute(target, reference) == 1
    assert "widthM" not in target[0]["properties"]
    assert "widthM" not in target[1]["properties"]
    assert "widthM" not in target[2]["properties"]
    assert target[3]["properties"] == {"id": 1}
    assert target[4]["properties"]["widthM"] == 4.0


def test_target_without_properties_gets_a_mapping():
    target = [{"type": "Feature", "geometry": {"type": "LineString", "coordinates": around(10.7, 59.9)}}]
    attach_nearest_attribute(target, [line(around(10.7, 59.9), widthValue=6)])
    assert target[0]["properties"] == {"widthM": 6.0, "widthText": "6.0 m"}


def test_identity_and_order_preserved(oslo_pair):
    target, reference = oslo_pair
    target.append(line(around(5.32, 60.39)))
    ids = [id(f) for f in target]
    attach_nearest_attribute(target, reference)
    assert [id(f) for f in target] == ids
    assert "widthM" not in target[1]["properties"]


def test_deterministic_output():
    rng = random.Random(11)
    reference = [line(around(rng.uniform(10.69, 10.71), rng.uniform(59.90, 59.92)), widthValue=rng.uniform(3, 9)) for _ in range(150)]
    target = [line(around(rng.uniform(10.69, 10.71), rng.uniform(59.90, 59.92))) for _ in range(150)]
    t1, t2 = copy.deepcopy(target), copy.deepcopy(target)
    attach_nearest_attribute(t1, copy.deepcopy(reference))
    attach_nearest_attribute(t2, copy.deepcopy(reference))
    assert t1 == t2


def test_agrees_with_brute_force_and_respects_bound():
    rng = random.Random(42)
    max_m = 75.0
    reference = [
        line(around(rng.uniform(10.69, 10.71), rng.uniform(59.905, 59.915), step=0.0002), widthValue=float(i))
        for i in range(300)
    ]
    target = [line(around(rng.uniform(10.69, 10.71), rng.uniform(59.905, 59.915), step=0.0002)) for _ in range(300)]
    attach_nearest_attribute(target, reference, MatchOptions(max_match_m=max_m))

    ref_mids = [(line_midpoint(r["geometry"]["coordinates"]), r["properties"]["widthValue"]) for r in reference]
    matched = 0
    for t in target:
        mid = line_midpoint(t["geometry"]["coordinates"])
        in_range = [(haversine_m(mid, m), v) for m, v in ref_mids if haversine_m(mid, m) <= max_m]
        if not in_range:
            assert "widthM" not in t["properties"]
            continue
        matched += 1
        best_d, best_v = min(in_range)
        assert t["properties"]["widthM"] == best_v
        assert best_d <= max_m
    assert matched > 0


def test_no_spurious_matches_when_everything_is_far():
    target = [line(around(10.70, 59.91)), line(around(10.75, 59.95))]
    reference = [line(around(5.32, 60.39), widthValue=5), line(around(10.70, 59.92), widthValue=5)]  # ~1.1 km
    before = copy.deepcopy(target)
    assert attach_nearest_attribute(target, reference) == 0
    assert target == before


def test_pluggable_representative_point():
    first_point = lambda coords: tuple(coords[0]) if coords else None  # noqa: E731
    target = [line([(10.70, 59.91), (10.71, 59.91), (10.72, 59.91)])]
    reference = [line([(10.7001, 59.91), (10.80, 59.91), (10.81, 59.91)], widthValue=4)]

    default_run = copy.deepcopy(target)
    assert attach_nearest_attribute(default_run, reference) == 0

    assert attach_nearest_attribute(target, reference, MatchOptions(representative_point=first_point)) == 1
    assert target[0]["properties"]["widthM"] == 4.0


def test_custom_keys():
    target = [line(around(10.70, 59.91))]
    reference = [line(around(10.70, 59.91), height="3,9")]
    opts = MatchOptions(source_key="height", value_key="heightM", text_key="heightText")
    attach_nearest_attribute(target, reference, opts)
    assert target[0]["properties"] == {"heightM": 3.9, "heightText": "3.9 m"}


@pytest.mark.parametrize(
    "kwargs",
    [{"cell_size_deg": 0}, {"cell_size_deg": -0.01}, {"cell_size_deg": float("nan")}, {"max_match_m": -1}, {"max_match_m": float("nan")}],
)
def test_invalid_options_raise(kwargs):
    with pytest.raises(ValueError):
        MatchOptions(**kwargs)


def test_feature_collection_wrapper(oslo_pair):
    target, reference = oslo_pair
    roadnet = {"type": "FeatureCollection", "features": target}
    width = {"type": "FeatureCollection", "features": reference}
    assert attach_width_to_roadnet(roadnet, width) == 1
    assert roadnet["features"][0]["properties"]["widthText"] == "4.2 m"
    assert attach_width_to_roadnet(None, width) == 0
    assert attach_width_to_roadnet(roadnet, {"type": "FeatureCollection"}) == 0


def test_oversized_reference_values_are_skipped():
    target = [line(around(10.70, 59.91))]
    reference = [
        line(around(10.70, 59.91), widthValue=10**400),
        line([[10**400, 59.91], [10**400, 59.91]], widthValue=9),
    ]
    assert attach_nearest_attribute(target, reference) == 0
    assert "widthM" not in target[0]["properties"]
