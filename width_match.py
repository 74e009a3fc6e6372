"""width_match.py

Attach NVDB road widths to road-network segments by proximity.

Each width feature is reduced to a representative point (the coordinate at the
middle index of its line) and bucketed into a uniform lon/lat grid. Every road
segment then looks up its own midpoint in the home cell and the 8 neighbouring
cells and takes the nearest width within a Haversine distance cutoff.

Features are GeoJSON-shaped dicts:

    {"type": "Feature",
     "properties": {...},
     "geometry": {"type": "LineString", "coordinates": [[lon, lat], ...]}}

Matching mutates the target features in place: matched segments gain
``widthM`` (float, metres) and ``widthText`` (e.g. "4.2 m").
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from typing import Any, Callable, Dict, Iterator, List, Optional, Sequence, Tuple

logger = logging.getLogger(__name__)

LonLat = Tuple[float, float]
CellKey = Tuple[int, int]

EARTH_RADIUS_M = 6371000.0
DEFAULT_CELL_SIZE_DEG = 0.01
DEFAULT_MAX_MATCH_M = 75.0


# ----------------------------
# Geometry / distance helpers
# ----------------------------

def haversine_m(a: LonLat, b: LonLat) -> float:
    """Great-circle distance in metres between two (lon, lat) pairs.

    Non-finite input gives ``inf`` so the pair never passes a distance cutoff.
    """
    lon1, lat1 = a
    lon2, lat2 = b
    if not all(math.isfinite(v) for v in (lon1, lat1, lon2, lat2)):
        return math.inf

    p1 = math.radians(lat1)
    p2 = math.radians(lat2)
    dp = math.radians(lat2 - lat1)
    dl = math.radians(lon2 - lon1)
    h = math.sin(dp / 2.0) ** 2 + math.cos(p1) * math.cos(p2) * math.sin(dl / 2.0) ** 2
    return 2.0 * EARTH_RADIUS_M * math.asin(min(1.0, math.sqrt(h)))


def _as_lonlat(pt: Any) -> Optional[LonLat]:
    if not isinstance(pt, (list, tuple)) or len(pt) < 2:
        return None
    try:
        lon = float(pt[0])
        lat = float(pt[1])
    except (TypeError, ValueError, OverflowError):
        return None
    if not (math.isfinite(lon) and math.isfinite(lat)):
        return None
    return lon, lat


def line_midpoint(coords: Optional[Sequence[Any]]) -> Optional[LonLat]:
    """Coordinate at index n // 2 of a line.

    This is the middle vertex, not the geometric centroid; long curved lines
    can have a midpoint some way off their visual centre.
    """
    if not isinstance(coords, (list, tuple)) or not coords:
        return None
    return _as_lonlat(coords[len(coords) // 2])


def normalize_number(value: Any) -> Optional[float]:
    """Parse NVDB-style numeric values ("4,2", " 12 000 ", 3.5) to float.

    Returns None for missing, empty, non-finite or unparseable values.
    """
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        try:
            v = float(value)
        except OverflowError:
            return None
        return v if math.isfinite(v) else None

    text = str(value).strip()
    if not text:
        return None
    text = "".join(text.split()).replace(",", ".", 1)
    # float() also takes digit separators and non-ASCII digits
    if "_" in text or not text.isascii():
        return None
    try:
        v = float(text)
    except ValueError:
        return None
    return v if math.isfinite(v) else None


def feature_coords(feature: Any) -> Optional[Sequence[Any]]:
    if not isinstance(feature, dict):
        return None
    geom = feature.get("geometry")
    if not isinstance(geom, dict):
        return None
    return geom.get("coordinates")


# ----------------------------
# Grid index
# ----------------------------

@dataclass(frozen=True)
class IndexedPoint:
    mid: LonLat
    value: float


def cell_key(lon: float, lat: float, cell_size_deg: float) -> CellKey:
    return int(math.floor(lon / cell_size_deg)), int(math.floor(lat / cell_size_deg))


class GridIndex:
    """Uniform lon/lat bucket grid over reference points.

    Built once from a full point list and only read afterwards. Buckets keep
    insertion order, which fixes the tie-break order of ``nearest``.
    """

    def __init__(self, points: Sequence[IndexedPoint], cell_size_deg: float = DEFAULT_CELL_SIZE_DEG):
        self.cell_size_deg = float(cell_size_deg)
        self._cells: Dict[CellKey, List[IndexedPoint]] = {}
        for p in points:
            key = cell_key(p.mid[0], p.mid[1], self.cell_size_deg)
            self._cells.setdefault(key, []).append(p)
        self._size = len(points)

    def __len__(self) -> int:
        return self._size

    def bucket(self, key: CellKey) -> List[IndexedPoint]:
        return list(self._cells.get(key, []))

    def candidates(self, lon: float, lat: float) -> Iterator[IndexedPoint]:
        """Yield points in the 3x3 cells around (lon, lat), dx then dy ascending."""
        bx, by = cell_key(lon, lat, self.cell_size_deg)
        for dx in (-1, 0, 1):
            for dy in (-1, 0, 1):
                yield from self._cells.get((bx + dx, by + dy), ())

    def nearest(self, mid: LonLat, max_m: float) -> Optional[Tuple[IndexedPoint, float]]:
        """Closest point within max_m metres, or None.

        Exact distance ties keep the first candidate in scan order.
        """
        best: Optional[IndexedPoint] = None
        best_d = math.inf
        for cand in self.candidates(mid[0], mid[1]):
            d = haversine_m(mid, cand.mid)
            if d > max_m:
                continue
            if best is None or d < best_d:
                best = cand
                best_d = d
        if best is None:
            return None
        return best, best_d


# ----------------------------
# Matching
# ----------------------------

@dataclass(frozen=True)
class MatchOptions:
    """Knobs for ``attach_nearest_attribute``.

    cell_size_deg: grid cell size. The 3x3 scan only covers max_match_m if one
        cell is at least that wide in metres at the working latitude. 0.01 deg
        is ~1.1 km north-south and ~560 m east-west at 60N.
    max_match_m: candidates further than this are never attached.
    representative_point: reduces a coordinate list to the point used for
        indexing and lookup.
    """

    cell_size_deg: float = DEFAULT_CELL_SIZE_DEG
    max_match_m: float = DEFAULT_MAX_MATCH_M
    source_key: str = "widthValue"
    value_key: str = "widthM"
    text_key: str = "widthText"
    representative_point: Callable[[Optional[Sequence[Any]]], Optional[LonLat]] = line_midpoint

    def __post_init__(self) -> None:
        if not math.isfinite(self.cell_size_deg) or self.cell_size_deg <= 0:
            raise ValueError(f"cell_size_deg must be a positive number, got {self.cell_size_deg!r}")
        if math.isnan(self.max_match_m) or self.max_match_m < 0:
            raise ValueError(f"max_match_m must be >= 0, got {self.max_match_m!r}")


def format_width(value: float) -> str:
    return f"{value:.1f} m"


def build_index(reference: Sequence[Any], options: MatchOptions) -> GridIndex:
    """Index every reference feature with a usable point and numeric value."""
    points: List[IndexedPoint] = []
    for feature in reference:
        mid = options.representative_point(feature_coords(feature))
        if mid is None:
            continue
        props = feature.get("properties") or {}
        value = normalize_number(props.get(options.source_key))
        if value is None:
            continue
        points.append(IndexedPoint(mid=mid, value=value))
    return GridIndex(points, cell_size_deg=options.cell_size_deg)


def attach_nearest_attribute(
    target: Sequence[Dict[str, Any]],
    reference: Sequence[Dict[str, Any]],
    options: Optional[MatchOptions] = None,
) -> int:
    """Copy the nearest reference value onto each target feature, in place.

    Targets without a match within ``options.max_match_m`` are left exactly as
    they were. Returns the number of targets that received a value.
    """
    opts = options or MatchOptions()
    if not target or not reference:
        return 0

    index = build_index(reference, opts)
    if len(index) == 0:
        logger.debug("No usable reference points among %d features", len(reference))
        return 0

    matched = 0
    for feature in target:
        mid = opts.representative_point(feature_coords(feature))
        if mid is None:
            continue
        hit = index.nearest(mid, opts.max_match_m)
        if hit is None:
            continue
        best, _ = hit
        props = feature.get("properties")
        if not isinstance(props, dict):
            props = {}
            feature["properties"] = props
        props[opts.value_key] = best.value
        props[opts.text_key] = format_width(best.value)
        matched += 1

    logger.debug(
        "Matched %d/%d target features against %d indexed points (cell=%s deg, max=%s m)",
        matched,
        len(target),
        len(index),
        opts.cell_size_deg,
        opts.max_match_m,
    )
    return matched


def attach_width_to_roadnet(
    roadnet: Optional[Dict[str, Any]],
    width_layer: Optional[Dict[str, Any]],
    options: Optional[MatchOptions] = None,
) -> int:
    """FeatureCollection wrapper around ``attach_nearest_attribute``."""
    if not roadnet or not width_layer:
        return 0
    return attach_nearest_attribute(
        roadnet.get("features") or [],
        width_layer.get("features") or [],
        options,
    )
