"""nvdb.py

Small client for the NVDB read API (Statens vegvesen, api v3).

Fetches, for one map extent:
- the road network (veglenkesekvenser),
- height restrictions (vegobjekt type 591),
- road width (type 838),
- weight / bearing class (type 904),

and converts each response to a GeoJSON FeatureCollection of LineStrings in
lon/lat order. Road widths are attached to the road network with
``width_match.attach_width_to_roadnet``.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Tuple

import requests
from shapely import wkt
from shapely.errors import ShapelyError

from width_match import LonLat, MatchOptions, attach_width_to_roadnet

logger = logging.getLogger(__name__)

LAYER_KINDS = ("roadnet", "height", "width", "weight")


@dataclass(frozen=True)
class NvdbConfig:
    base_url: str = "https://nvdbapiles-v3.atlas.vegvesen.no"
    roadnet_path: str = "/vegnett/veglenkesekvenser"
    height_path: str = "/vegobjekter/591"
    width_path: str = "/vegobjekter/838"
    weight_path: str = "/vegobjekter/904"
    max_features: int = 300
    min_zoom: int = 10
    timeout_s: float = 30.0
    user_agent: str = "Mozilla/5.0"

    def path_for(self, kind: str) -> str:
        paths = {
            "roadnet": self.roadnet_path,
            "height": self.height_path,
            "width": self.width_path,
            "weight": self.weight_path,
        }
        if kind not in paths:
            raise ValueError(f"Unknown NVDB layer {kind!r}; expected one of {LAYER_KINDS}")
        return paths[kind]


@dataclass(frozen=True)
class BBox:
    min_lon: float
    min_lat: float
    max_lon: float
    max_lat: float

    def contains_lonlat(self, lon: float, lat: float) -> bool:
        return (self.min_lon <= lon <= self.max_lon) and (self.min_lat <= lat <= self.max_lat)

    @property
    def centre(self) -> Tuple[float, float]:
        """(lat, lon), the order folium expects."""
        return (self.min_lat + self.max_lat) / 2.0, (self.min_lon + self.max_lon) / 2.0


def parse_bbox(vals: Optional[List[float]]) -> Optional[BBox]:
    """BBox from ``min_lon min_lat max_lon [max_lat]``.

    With three values the box is square in degrees.
    """
    if not vals:
        return None
    if len(vals) not in (3, 4):
        raise ValueError(f"bbox needs 3 or 4 numbers (min_lon min_lat max_lon [max_lat]), got {len(vals)}")
    min_lon, min_lat, max_lon = (float(v) for v in vals[:3])
    max_lat = float(vals[3]) if len(vals) == 4 else min_lat + (max_lon - min_lon)
    if min_lon > max_lon or min_lat > max_lat:
        raise ValueError(f"bbox corners are swapped: {min_lon}, {min_lat}, {max_lon}, {max_lat}")
    return BBox(min_lon, min_lat, max_lon, max_lat)


def bbox_param(bbox: BBox) -> str:
    """NVDB ``kartutsnitt`` value: west,south,east,north."""
    return ",".join(f"{v:.4f}" for v in (bbox.min_lon, bbox.min_lat, bbox.max_lon, bbox.max_lat))


def empty_collection() -> Dict[str, Any]:
    return {"type": "FeatureCollection", "features": []}


def line_feature(coords: List[LonLat], properties: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "type": "Feature",
        "properties": properties,
        "geometry": {"type": "LineString", "coordinates": [[lon, lat] for lon, lat in coords]},
    }


# ----------------------------
# Response parsing
# ----------------------------

def parse_linestring(text: Optional[str]) -> Optional[List[LonLat]]:
    """Parse an NVDB LINESTRING WKT into (lon, lat) pairs.

    NVDB returns srid=4326 WKT as LAT LON, so the axes are swapped. Z values
    are dropped. A one-vertex line is kept as a single pair. Anything other
    than a non-empty LineString gives None.
    """
    if not isinstance(text, str) or not text.strip().upper().startswith("LINESTRING"):
        return None
    try:
        geom = wkt.loads(text)
    except ShapelyError:
        # shapely needs two vertices for a LineString; read a lone vertex as a point
        try:
            geom = wkt.loads(text.strip().replace("LINESTRING", "POINT", 1))
        except ShapelyError:
            return None
    if geom.geom_type not in ("LineString", "Point") or geom.is_empty:
        return None
    return [(float(c[1]), float(c[0])) for c in geom.coords]


def find_property(egenskaper: Any, predicate: Callable[[str], bool]) -> Optional[Dict[str, Any]]:
    for item in egenskaper or []:
        if not isinstance(item, dict):
            continue
        name = item.get("navn")
        if isinstance(name, str) and predicate(name):
            return item
    return None


def _name_contains(fragment: str) -> Callable[[str], bool]:
    return lambda name: fragment in name.lower()


def _prop_value(egenskaper: Any, predicate: Callable[[str], bool]) -> Any:
    prop = find_property(egenskaper, predicate)
    return prop.get("verdi") if prop else None


def _objects(data: Any) -> List[Dict[str, Any]]:
    if not isinstance(data, dict):
        return []
    return [o for o in (data.get("objekter") or []) if isinstance(o, dict)]


def _geometry_wkt(obj: Dict[str, Any]) -> Optional[str]:
    geom = obj.get("geometri") or {}
    return geom.get("wkt") if isinstance(geom, dict) else None


def roadnet_collection(data: Any) -> Dict[str, Any]:
    """One feature per veglenke with usable geometry."""
    features = []
    for obj in _objects(data):
        sequence_id = obj.get("veglenkesekvensid")
        for link in obj.get("veglenker") or []:
            if not isinstance(link, dict):
                continue
            coords = parse_linestring(_geometry_wkt(link))
            if not coords:
                continue
            features.append(
                line_feature(coords, {"typeVeg": link.get("typeVeg") or "Ukjent", "veglenkesekvensid": sequence_id})
            )
    return {"type": "FeatureCollection", "features": features}


def _object_collection(data: Any, props_for: Callable[[Any], Dict[str, Any]]) -> Dict[str, Any]:
    features = []
    for obj in _objects(data):
        coords = parse_linestring(_geometry_wkt(obj))
        if not coords:
            continue
        features.append(line_feature(coords, props_for(obj.get("egenskaper") or [])))
    return {"type": "FeatureCollection", "features": features}


def height_collection(data: Any) -> Dict[str, Any]:
    return _object_collection(
        data,
        lambda props: {
            "height": _prop_value(props, _name_contains("høyde")),
            "obstacleType": _prop_value(props, lambda name: name == "Type hinder"),
        },
    )


def width_collection(data: Any) -> Dict[str, Any]:
    return _object_collection(data, lambda props: {"widthValue": _prop_value(props, _name_contains("bredde"))})


def weight_collection(data: Any) -> Dict[str, Any]:
    return _object_collection(data, lambda props: {"className": _prop_value(props, _name_contains("bruksklasse"))})


CONVERTERS: Dict[str, Callable[[Any], Dict[str, Any]]] = {
    "roadnet": roadnet_collection,
    "height": height_collection,
    "width": width_collection,
    "weight": weight_collection,
}


# ----------------------------
# HTTP client
# ----------------------------

@dataclass
class NvdbLayers:
    request_id: int
    roadnet: Optional[Dict[str, Any]] = None
    height: Optional[Dict[str, Any]] = None
    width: Optional[Dict[str, Any]] = None
    weight: Optional[Dict[str, Any]] = None
    widths_matched: int = 0


class NvdbClient:
    """Fetches NVDB layers for a bbox.

    Every ``refresh`` takes a new request id. A layer response that arrives
    for an older id is dropped, so a caller sharing one client across
    overlapping refreshes only ever sees data for the latest extent.
    """

    def __init__(
        self,
        config: Optional[NvdbConfig] = None,
        session: Optional[requests.Session] = None,
        match_options: Optional[MatchOptions] = None,
    ):
        self.config = config or NvdbConfig()
        self.session = session or requests.Session()
        self.match_options = match_options or MatchOptions()
        self.request_id = 0

    def layer_url(self, kind: str) -> str:
        return self.config.base_url.rstrip("/") + self.config.path_for(kind)

    def layer_params(self, kind: str, bbox: BBox) -> Dict[str, Any]:
        params: Dict[str, Any] = {
            "srid": 4326,
            "kartutsnitt": bbox_param(bbox),
            "antall": self.config.max_features,
        }
        if kind != "roadnet":
            params["inkluder"] = "egenskaper,geometri"
        return params

    def fetch_layer(self, kind: str, bbox: BBox, request_id: int) -> Optional[Dict[str, Any]]:
        """GET one layer; None on HTTP error or when superseded.

        Transport errors (requests.exceptions.RequestException) propagate.
        """
        response = self.session.get(
            self.layer_url(kind),
            params=self.layer_params(kind, bbox),
            headers={"User-Agent": self.config.user_agent, "Accept": "application/json"},
            timeout=self.config.timeout_s,
        )
        if not response.ok:
            logger.error("NVDB %s error %s %s", kind, response.status_code, response.reason)
            return None
        data = response.json()
        if request_id != self.request_id:
            logger.debug("Dropping stale NVDB %s response (request %d, current %d)", kind, request_id, self.request_id)
            return None
        return CONVERTERS[kind](data)

    def refresh(self, bbox: BBox, zoom: float) -> Optional[NvdbLayers]:
        """Fetch all four layers and attach widths to the road network.

        Below ``min_zoom`` nothing is requested and every layer is empty.
        Returns None when the transport fails.
        """
        if zoom < self.config.min_zoom:
            return NvdbLayers(
                request_id=self.request_id,
                roadnet=empty_collection(),
                height=empty_collection(),
                width=empty_collection(),
                weight=empty_collection(),
            )

        self.request_id += 1
        request_id = self.request_id

        try:
            width = self.fetch_layer("width", bbox, request_id)
            roadnet = self.fetch_layer("roadnet", bbox, request_id)
            height = self.fetch_layer("height", bbox, request_id)
            weight = self.fetch_layer("weight", bbox, request_id)
        except requests.exceptions.RequestException as e:
            logger.error("NVDB fetch failed: %s", e)
            return None

        matched = 0
        if roadnet and width:
            matched = attach_width_to_roadnet(roadnet, width, self.match_options)

        logger.info(
            "NVDB request %d: %s road links, %s width objects, %d widths attached",
            request_id,
            len(roadnet["features"]) if roadnet else "-",
            len(width["features"]) if width else "-",
            matched,
        )
        return NvdbLayers(
            request_id=request_id,
            roadnet=roadnet,
            height=height,
            width=width,
            weight=weight,
            widths_matched=matched,
        )
