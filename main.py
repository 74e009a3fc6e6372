#!/usr/bin/env python3
"""main.py

Build a standalone HTML map of road restrictions for special vehicles:
- Elveg road network (Geonorge WMS) as a raster overlay
- NVDB road network (data), with road widths attached from NVDB type 838
- NVDB height restrictions (591), road width (838) and bearing class (904)

Road widths are measured on separate NVDB objects, so each road link gets the
width whose midpoint is nearest to its own midpoint (within --max-match-m).

Vehicle width filter:
- --vehicle-width draws roads narrower than the vehicle in red on top of the
  road network, and the road network only shows links with a known width.
- --hide-too-narrow also removes the too-narrow links from the road network.

Dependencies:
  pip install folium pandas shapely pyproj requests

Usage example:
  python3 main.py --bbox 7.96 58.13 8.03 58.16 --vehicle-width 2,6 --out roads.html

Offline (GeoJSON FeatureCollections of LineStrings, lon/lat):
  python3 main.py --roadnet-geojson roadnet.geojson --width-geojson width.geojson

Notes:
- NVDB only answers with up to 300 objects per layer, so keep the bbox small.
- Nothing is fetched below --zoom 10, matching the interactive map behaviour.
"""

from __future__ import annotations

import argparse
import json
import logging
import math
import os
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

import folium
import pandas as pd
from folium import Element
from shapely.geometry import shape

from nvdb import BBox, NvdbClient, NvdbConfig, NvdbLayers, empty_collection, parse_bbox
from width_match import (
    DEFAULT_CELL_SIZE_DEG,
    DEFAULT_MAX_MATCH_M,
    MatchOptions,
    attach_width_to_roadnet,
    normalize_number,
)

logger = logging.getLogger(__name__)

ELVEG_WMS_URL = "https://wms.geonorge.no/skwms1/wms.vegnett2"
ELVEG_WMS_LAYER = "vegnett2"

ROADNET_COLOR = "#2563eb"
TOO_NARROW_COLOR = "#dc2626"
HEIGHT_COLOR = "#ef4444"
WIDTH_COLOR = "#8b5cf6"
WEIGHT_COLOR = "#f59e0b"

# Kristiansand, zoom 11
DEFAULT_BBOX = [7.9656, 58.1317, 8.0256, 58.1617]
DEFAULT_ZOOM = 11


# ----------------------------
# Vehicle width filter
# ----------------------------

def passability(width_m: Optional[float], vehicle_width_m: Optional[float]) -> Optional[bool]:
    """True/False when both widths are known, otherwise None."""
    if width_m is None or vehicle_width_m is None:
        return None
    if not (math.isfinite(width_m) and math.isfinite(vehicle_width_m)):
        return None
    return width_m >= vehicle_width_m


def roadnet_layer_for(
    props: Dict[str, Any],
    vehicle_width_m: Optional[float],
    hide_too_narrow: bool,
) -> Tuple[bool, bool]:
    """(on road network layer, on too-narrow layer) for one road link.

    Without a vehicle width every link is on the road network and none is
    flagged. With one, only links with a known width stay on the road network,
    and links narrower than the vehicle are also drawn on the too-narrow layer.
    """
    width_m = normalize_number(props.get("widthM"))
    if vehicle_width_m is None:
        return True, width_m is not None and width_m < 0

    too_narrow = width_m is not None and width_m < vehicle_width_m
    if width_m is None:
        return False, False
    if hide_too_narrow:
        return width_m >= vehicle_width_m, too_narrow
    return True, too_narrow


def road_line_weight(type_veg: Optional[str], too_narrow: bool = False) -> float:
    if type_veg == "Motorveg":
        w = 5.0
    elif type_veg == "Enkel bilveg":
        w = 3.0
    else:
        w = 2.0
    return w + 1.0 if too_narrow else w


# ----------------------------
# Input loading
# ----------------------------

def load_line_collection(path: Optional[str]) -> Optional[Dict[str, Any]]:
    """Read a GeoJSON file into a FeatureCollection of LineStrings.

    MultiLineStrings are split into one feature per part; other geometry
    types are dropped. A missing file gives None.
    """
    if not path:
        return None
    if not os.path.exists(path):
        logger.warning("GeoJSON file not found, layer left empty: %s", path)
        return None

    with open(path, "r", encoding="utf-8") as f:
        data = json.load(f)

    out: List[Dict[str, Any]] = []
    for feat in data.get("features", []) if isinstance(data, dict) else []:
        if not isinstance(feat, dict):
            continue
        geom = feat.get("geometry")
        if not geom:
            continue
        props = feat.get("properties") or {}

        raw = geom.get("coordinates") if isinstance(geom, dict) else None
        if isinstance(geom, dict) and geom.get("type") == "LineString" and isinstance(raw, list) and len(raw) == 1:
            # shapely rejects one-point lines; the vertex still works as a midpoint
            parts = [raw]
        else:
            try:
                sh = shape(geom)
            except Exception:
                logger.debug("Skipping unreadable geometry in %s", path)
                continue
            if sh.geom_type == "LineString":
                parts = [sh.coords]
            elif sh.geom_type == "MultiLineString":
                parts = [ls.coords for ls in sh.geoms]
            else:
                continue

        for part in parts:
            try:
                coords = [[float(c[0]), float(c[1])] for c in part]
            except (TypeError, ValueError, IndexError, OverflowError):
                continue
            if not coords:
                continue
            out.append({
                "type": "Feature",
                "properties": dict(props),
                "geometry": {"type": "LineString", "coordinates": coords},
            })

    return {"type": "FeatureCollection", "features": out}


def load_offline_layers(
    roadnet_path: Optional[str],
    width_path: Optional[str],
    height_path: Optional[str],
    weight_path: Optional[str],
    match_options: MatchOptions,
) -> NvdbLayers:
    roadnet = load_line_collection(roadnet_path) or empty_collection()
    width = load_line_collection(width_path) or empty_collection()
    matched = attach_width_to_roadnet(roadnet, width, match_options)
    return NvdbLayers(
        request_id=0,
        roadnet=roadnet,
        height=load_line_collection(height_path) or empty_collection(),
        width=width,
        weight=load_line_collection(weight_path) or empty_collection(),
        widths_matched=matched,
    )


# ----------------------------
# Map state + layers
# ----------------------------

@dataclass
class MapState:
    """Layer registry for one map build.

    Owned by ``build_map``; ``teardown`` drops every registered layer once the
    map has been written.
    """

    m: folium.Map
    vehicle_width_m: Optional[float] = None
    hide_too_narrow: bool = False
    layers: Dict[str, folium.FeatureGroup] = field(default_factory=dict)

    def add_layer(self, layer_id: str, name: str, show: bool = True) -> folium.FeatureGroup:
        if layer_id in self.layers:
            raise ValueError(f"Layer {layer_id!r} already registered")
        fg = folium.FeatureGroup(name=name, show=show)
        self.layers[layer_id] = fg
        return fg

    def layer(self, layer_id: str) -> folium.FeatureGroup:
        return self.layers[layer_id]

    def finish(self) -> None:
        for fg in self.layers.values():
            fg.add_to(self.m)
        folium.LayerControl(collapsed=False).add_to(self.m)

    def teardown(self) -> None:
        self.layers.clear()


def add_elveg_layer(state: MapState, show: bool = True) -> None:
    folium.raster_layers.WmsTileLayer(
        url=ELVEG_WMS_URL,
        layers=ELVEG_WMS_LAYER,
        styles="",
        fmt="image/png",
        transparent=True,
        version="1.3.0",
        name="Elveg road network (WMS)",
        attr="© Statens vegvesen / Geonorge",
        overlay=True,
        control=True,
        show=show,
        opacity=0.85,
    ).add_to(state.m)


def _latlon(coords: List[List[float]]) -> List[Tuple[float, float]]:
    return [(float(lat), float(lon)) for lon, lat in (c[:2] for c in coords)]


def road_popup_html(props: Dict[str, Any], vehicle_width_m: Optional[float]) -> str:
    type_veg = props.get("typeVeg") or "Unknown"
    seq_id = props.get("veglenkesekvensid")
    seq_txt = seq_id if seq_id not in (None, "") else "?"
    width_txt = props.get("widthText") or "Unknown"

    html = (
        f"<strong>Road network</strong><br/>Type: {type_veg}<br/>Link sequence: {seq_txt}"
        f"<br/>Road width (NVDB): {width_txt}"
    )
    if vehicle_width_m is not None and math.isfinite(vehicle_width_m):
        ok = passability(normalize_number(props.get("widthM")), vehicle_width_m)
        verdict = "unknown" if ok is None else "OK" if ok else "TOO NARROW"
        html += f"<br/>Vehicle: {vehicle_width_m:.1f} m → {verdict}"
    return html


def add_roadnet_layers(state: MapState, roadnet: Dict[str, Any], show: bool) -> None:
    fg_roads = state.add_layer("roadnet", "NVDB road network (data)", show=show)
    fg_narrow = state.add_layer("roadnet-too-narrow", "NVDB road network: too narrow", show=show)

    for feat in roadnet.get("features", []):
        coords = (feat.get("geometry") or {}).get("coordinates") or []
        if len(coords) < 2:
            continue
        props = feat.get("properties") or {}
        on_roads, on_narrow = roadnet_layer_for(props, state.vehicle_width_m, state.hide_too_narrow)
        popup_html = road_popup_html(props, state.vehicle_width_m)
        type_veg = props.get("typeVeg")

        if on_roads:
            folium.PolyLine(
                locations=_latlon(coords),
                color=ROADNET_COLOR,
                weight=road_line_weight(type_veg),
                opacity=0.7,
                popup=folium.Popup(popup_html, max_width=300),
            ).add_to(fg_roads)
        if on_narrow:
            folium.PolyLine(
                locations=_latlon(coords),
                color=TOO_NARROW_COLOR,
                weight=road_line_weight(type_veg, too_narrow=True),
                opacity=0.9,
                popup=folium.Popup(popup_html, max_width=300),
            ).add_to(fg_narrow)


def add_object_layer(
    state: MapState,
    layer_id: str,
    name: str,
    collection: Dict[str, Any],
    color: str,
    weight: float,
    opacity: float,
    popup_for,
) -> None:
    fg = state.add_layer(layer_id, name, show=True)
    for feat in collection.get("features", []):
        coords = (feat.get("geometry") or {}).get("coordinates") or []
        if len(coords) < 2:
            continue
        props = feat.get("properties") or {}
        folium.PolyLine(
            locations=_latlon(coords),
            color=color,
            weight=weight,
            opacity=opacity,
            popup=folium.Popup(popup_for(props), max_width=300),
        ).add_to(fg)


def height_popup_html(props: Dict[str, Any]) -> str:
    return (
        f"<strong>Height restriction</strong><br/>Type: {props.get('obstacleType') or 'Unknown'}"
        f"<br/>Signed height: {props.get('height') or '?'} m"
    )


def width_popup_html(props: Dict[str, Any]) -> str:
    return f"<strong>Road width</strong><br/>Total: {props.get('widthValue') or '?'} m"


def weight_popup_html(props: Dict[str, Any]) -> str:
    return f"<strong>Bearing class</strong><br/>Class: {props.get('className') or '?'}"


def add_legend(state: MapState, note: str) -> None:
    rows = [
        ("#6b7280", "Road network (Elveg WMS)"),
        (ROADNET_COLOR, "Road network (NVDB)"),
        (TOO_NARROW_COLOR, "Too narrow for vehicle"),
        (HEIGHT_COLOR, "Height restriction"),
        (WIDTH_COLOR, "Road width (NVDB)"),
        (WEIGHT_COLOR, "Bearing class (weight)"),
    ]
    row_html = "".join(
        f'<div><span style="display:inline-block;width:18px;height:4px;margin-right:6px;'
        f'vertical-align:middle;background:{color};"></span>{label}</div>'
        for color, label in rows
    )
    panel_html = f"""
    <div id="legend" style="
      position: fixed; bottom: 24px; left: 12px; z-index: 9999;
      background: white; border: 1px solid #999; border-radius: 6px;
      padding: 10px; width: 260px; font: 13px/1.35 sans-serif;
      box-shadow: 0 1px 8px rgba(0,0,0,0.25);">
      <b>Emergency routes for special vehicles</b>
      <hr style="margin:8px 0;"/>
      {row_html}
      <div style="margin-top:6px;font-size:12px;color:#555;">{note}</div>
    </div>
    """
    state.m.get_root().html.add_child(Element(panel_html))


# ----------------------------
# Summaries
# ----------------------------

def roadnet_table(roadnet: Dict[str, Any], vehicle_width_m: Optional[float] = None) -> pd.DataFrame:
    rows = []
    for feat in roadnet.get("features", []):
        props = feat.get("properties") or {}
        width_m = normalize_number(props.get("widthM"))
        rows.append({
            "typeVeg": props.get("typeVeg"),
            "veglenkesekvensid": props.get("veglenkesekvensid"),
            "widthM": width_m,
            "widthText": props.get("widthText"),
            "passable": passability(width_m, vehicle_width_m),
        })
    return pd.DataFrame(rows, columns=["typeVeg", "veglenkesekvensid", "widthM", "widthText", "passable"])


def build_map(
    layers: NvdbLayers,
    bbox: BBox,
    zoom: int = DEFAULT_ZOOM,
    vehicle_width_m: Optional[float] = None,
    hide_too_narrow: bool = False,
    show_elveg: bool = True,
    show_roadnet: bool = False,
) -> folium.Map:
    m = folium.Map(location=list(bbox.centre), zoom_start=zoom, control_scale=True, tiles="CartoDB positron")
    state = MapState(m=m, vehicle_width_m=vehicle_width_m, hide_too_narrow=hide_too_narrow)

    add_elveg_layer(state, show=show_elveg)
    add_roadnet_layers(state, layers.roadnet or empty_collection(), show=show_roadnet)
    add_object_layer(state, "height", "NVDB height restriction", layers.height or empty_collection(),
                     HEIGHT_COLOR, 4.0, 0.9, height_popup_html)
    add_object_layer(state, "width", "NVDB road width", layers.width or empty_collection(),
                     WIDTH_COLOR, 3.0, 0.8, width_popup_html)
    add_object_layer(state, "weight", "NVDB bearing class (weight)", layers.weight or empty_collection(),
                     WEIGHT_COLOR, 3.0, 0.85, weight_popup_html)

    add_legend(
        state,
        "Road network, height restrictions, road width and bearing class from NVDB. "
        "Unknown road widths are hidden from the road network while a vehicle width is set.",
    )
    state.finish()
    state.teardown()
    return m


def main() -> None:
    ap = argparse.ArgumentParser(description="NVDB road restriction map for special vehicles.")
    ap.add_argument("--bbox", nargs="+", type=float, default=DEFAULT_BBOX, help="min_lon min_lat max_lon [max_lat]")
    ap.add_argument("--zoom", type=int, default=DEFAULT_ZOOM, help="Map zoom; NVDB is not queried below --min-zoom")
    ap.add_argument("--min-zoom", type=int, default=NvdbConfig.min_zoom)
    ap.add_argument("--nvdb-url", default=NvdbConfig.base_url, help="NVDB read API base URL")
    ap.add_argument("--max-features", type=int, default=NvdbConfig.max_features, help="antall= per NVDB request")
    ap.add_argument("--out", default="roads.html", help="Output HTML filename")
    ap.add_argument("--csv-out", default=None, help="Optional CSV of road links with attached widths")

    ap.add_argument("--roadnet-geojson", default=None, help="Offline road network (skips NVDB)")
    ap.add_argument("--width-geojson", default=None, help="Offline road widths (property widthValue)")
    ap.add_argument("--height-geojson", default=None, help="Offline height restrictions")
    ap.add_argument("--weight-geojson", default=None, help="Offline bearing classes")

    ap.add_argument("--cell-size-deg", type=float, default=DEFAULT_CELL_SIZE_DEG, help="Width match grid cell size")
    ap.add_argument("--max-match-m", type=float, default=DEFAULT_MAX_MATCH_M, help="Max midpoint distance for width match")

    ap.add_argument("--vehicle-width", default=None, help="Vehicle width in metres (e.g. 2.6 or 2,6)")
    ap.add_argument("--hide-too-narrow", action="store_true", help="Hide roads narrower than the vehicle")
    ap.add_argument("--show-roadnet", action="store_true", help="Show the NVDB road network layer on load")
    ap.add_argument("--no-elveg", action="store_true", help="Hide the Elveg WMS layer on load")
    ap.add_argument("--log-level", default="INFO", help="Logging level (DEBUG, INFO, WARNING, ...)")

    args = ap.parse_args()
    logging.basicConfig(level=getattr(logging, str(args.log_level).upper(), logging.INFO),
                        format="%(levelname)s %(name)s: %(message)s")

    try:
        bbox = parse_bbox(args.bbox)
        match_options = MatchOptions(cell_size_deg=args.cell_size_deg, max_match_m=args.max_match_m)
    except ValueError as e:
        raise SystemExit(f"Invalid arguments: {e}")
    vehicle_width_m = normalize_number(args.vehicle_width)
    if args.vehicle_width is not None and vehicle_width_m is None:
        raise SystemExit(f"--vehicle-width is not a number: {args.vehicle_width!r}")

    offline = any([args.roadnet_geojson, args.width_geojson, args.height_geojson, args.weight_geojson])
    if offline:
        layers = load_offline_layers(
            args.roadnet_geojson,
            args.width_geojson,
            args.height_geojson,
            args.weight_geojson,
            match_options,
        )
    else:
        config = NvdbConfig(base_url=args.nvdb_url, max_features=args.max_features, min_zoom=args.min_zoom)
        client = NvdbClient(config=config, match_options=match_options)
        fetched = client.refresh(bbox, zoom=args.zoom)
        if fetched is None:
            raise SystemExit("NVDB fetch failed; no map written.")
        layers = fetched
        if args.zoom < config.min_zoom:
            print(f"Zoom {args.zoom} is below {config.min_zoom}: NVDB layers left empty.")

    m = build_map(
        layers,
        bbox=bbox,
        zoom=args.zoom,
        vehicle_width_m=vehicle_width_m,
        hide_too_narrow=args.hide_too_narrow,
        show_elveg=not args.no_elveg,
        show_roadnet=args.show_roadnet,
    )
    m.save(args.out)

    table = roadnet_table(layers.roadnet or empty_collection(), vehicle_width_m)
    if args.csv_out:
        table.to_csv(args.csv_out, index=False)
        print(f"Wrote: {args.csv_out}")

    n_height = len((layers.height or empty_collection())["features"])
    n_width = len((layers.width or empty_collection())["features"])
    n_weight = len((layers.weight or empty_collection())["features"])
    print(f"Wrote: {args.out}")
    print(
        f"Road links: {len(table):,} | with width: {int(table['widthM'].notna().sum()):,} "
        f"| height: {n_height:,} width: {n_width:,} weight: {n_weight:,}"
    )
    if vehicle_width_m is not None:
        too_narrow = int(table["passable"].eq(False).sum())
        print(f"Vehicle width: {vehicle_width_m:.1f} m | too narrow: {too_narrow:,}")
    print(f"BBox: {bbox}")


if __name__ == "__main__":
    main()
