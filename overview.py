#!/usr/bin/env python3
"""Generate an overview map of Norway from static GeoJSON layers.

This script mirrors the map-style workflow of ``main.py`` for static data:
- cities (points) sized and coloured by population,
- national parks (polygons),
- hiking routes (lines) coloured by difficulty,
- sample points of interest and OGC API weather stations,
- an optional radius search around a point, listing the cities and points of
  interest inside it, with the search point also given in UTM zone 33N.
"""

from __future__ import annotations

import argparse
import json
import logging
import math
import os
from typing import Any, Dict, List, Optional, Tuple

import folium
import numpy as np
import pandas as pd
from folium import Element
from pyproj import Transformer

logger = logging.getLogger(__name__)

EARTH_RADIUS_KM = 6371.0

SAMPLE_POI: Dict[str, Any] = {
    "type": "FeatureCollection",
    "features": [
        {
            "type": "Feature",
            "properties": {"name": "Oslo Rådhus", "category": "Landmark", "description": "Oslo city hall"},
            "geometry": {"type": "Point", "coordinates": [10.7342, 59.9117]},
        },
        {
            "type": "Feature",
            "properties": {"name": "Bergen Bryggen", "category": "Landmark", "description": "Historic wharf in Bergen"},
            "geometry": {"type": "Point", "coordinates": [5.3244, 60.3975]},
        },
        {
            "type": "Feature",
            "properties": {"name": "Nidarosdomen", "category": "Landmark", "description": "Cathedral in Trondheim"},
            "geometry": {"type": "Point", "coordinates": [10.3951, 63.4269]},
        },
        {
            "type": "Feature",
            "properties": {"name": "Vigelandsparken", "category": "Park", "description": "Sculpture park in Oslo"},
            "geometry": {"type": "Point", "coordinates": [10.7003, 59.9274]},
        },
    ],
}

SAMPLE_OGC: Dict[str, Any] = {
    "type": "FeatureCollection",
    "features": [
        {
            "type": "Feature",
            "properties": {
                "name": "Meteorological Station Oslo",
                "type": "Weather Station",
                "temperature": "12°C",
                "source": "OGC API Features",
            },
            "geometry": {"type": "Point", "coordinates": [10.72, 59.91]},
        },
        {
            "type": "Feature",
            "properties": {
                "name": "Meteorological Station Bergen",
                "type": "Weather Station",
                "temperature": "10°C",
                "source": "OGC API Features",
            },
            "geometry": {"type": "Point", "coordinates": [5.33, 60.39]},
        },
    ],
}


def haversine_km(lat1: float, lon1: float, lat2, lon2):
    """Great-circle distance in km; lat2/lon2 may be numpy arrays."""
    p1 = np.radians(lat1)
    p2 = np.radians(lat2)
    dp = np.radians(np.asarray(lat2) - lat1)
    dl = np.radians(np.asarray(lon2) - lon1)
    a = np.sin(dp / 2.0) ** 2 + np.cos(p1) * np.cos(p2) * np.sin(dl / 2.0) ** 2
    return 2.0 * EARTH_RADIUS_KM * np.arctan2(np.sqrt(a), np.sqrt(1.0 - a))


def to_utm33(lon: float, lat: float) -> Tuple[float, float]:
    """WGS84 lon/lat -> UTM zone 33N (EPSG:32633) easting/northing."""
    tf = Transformer.from_crs("EPSG:4326", "EPSG:32633", always_xy=True)
    e, n = tf.transform(lon, lat)
    return float(e), float(n)


def as_float(value: Any) -> Optional[float]:
    try:
        v = float(value)
    except (TypeError, ValueError):
        return None
    return v if math.isfinite(v) else None


def city_style(population: Any, size_by_population: bool = True, colour_by_population: bool = True) -> Dict[str, Any]:
    pop = as_float(population) or 0.0

    radius = 8.0
    if size_by_population:
        radius = math.sqrt(max(pop, 0.0) / 10000.0) + 5.0

    fill = "#3182ce"
    if colour_by_population:
        if pop > 500000:
            fill = "#c53030"
        elif pop > 200000:
            fill = "#dd6b20"
        elif pop > 100000:
            fill = "#d69e2e"

    return {
        "radius": radius,
        "fill_color": fill,
        "color": "#2c5282",
        "weight": 2,
        "opacity": 1.0,
        "fill_opacity": 0.7,
    }


def route_colour(difficulty: Optional[str]) -> str:
    if difficulty == "Lett":
        return "#48bb78"
    if difficulty == "Krevende":
        return "#e53e3e"
    return "#ed8936"


def popup_fields(collection: Dict[str, Any], wanted: List[str]) -> List[str]:
    """Fields folium can show: GeoJsonPopup checks them against the first feature."""
    features = collection.get("features") or []
    first = (features[0].get("properties") or {}) if features else {}
    return [f for f in wanted if f in first]


def load_geojson(path: str) -> Dict[str, Any]:
    if not os.path.exists(path):
        logger.warning("GeoJSON file not found, layer left empty: %s", path)
        return {"type": "FeatureCollection", "features": []}
    with open(path, "r", encoding="utf-8") as f:
        return json.load(f)


def points_frame(collection: Dict[str, Any]) -> pd.DataFrame:
    """Point features -> DataFrame with lon/lat columns plus all properties."""
    rows = []
    for feat in collection.get("features", []):
        geom = feat.get("geometry") or {}
        if geom.get("type") != "Point":
            continue
        coords = geom.get("coordinates") or []
        if len(coords) < 2:
            continue
        row = dict(feat.get("properties") or {})
        row["lon"] = float(coords[0])
        row["lat"] = float(coords[1])
        rows.append(row)
    df = pd.DataFrame(rows)
    if df.empty:
        df = pd.DataFrame(columns=["name", "lon", "lat"])
    return df


def within_radius(df: pd.DataFrame, centre_lon: float, centre_lat: float, radius_km: float) -> pd.DataFrame:
    if df.empty:
        return df.assign(distance_km=pd.Series(dtype=float))
    d = haversine_km(centre_lat, centre_lon, df["lat"].to_numpy(dtype=float), df["lon"].to_numpy(dtype=float))
    out = df.assign(distance_km=np.round(d, 2))
    return out[d <= radius_km]


def find_features_within_radius(
    centre: Tuple[float, float],
    radius_km: float,
    cities: pd.DataFrame,
    poi: pd.DataFrame,
) -> Dict[str, List[Dict[str, Any]]]:
    """Cities and POIs within radius_km of centre (lon, lat)."""
    lon, lat = centre
    results: Dict[str, List[Dict[str, Any]]] = {"cities": [], "poi": []}
    for _, r in within_radius(cities, lon, lat, radius_km).iterrows():
        results["cities"].append({"name": r.get("name"), "distance_km": float(r["distance_km"])})
    for _, r in within_radius(poi, lon, lat, radius_km).iterrows():
        results["poi"].append({
            "name": r.get("name"),
            "category": r.get("category"),
            "distance_km": float(r["distance_km"]),
        })
    return results


def results_html(results: Dict[str, List[Dict[str, Any]]], radius_km: float) -> str:
    html = f"<h4>Search results (within {radius_km:g} km):</h4>"
    if results["cities"]:
        html += "<h5>Cities:</h5><ul>" + "".join(
            f"<li>{c['name']} ({c['distance_km']:.2f} km)</li>" for c in results["cities"]
        ) + "</ul>"
    if results["poi"]:
        html += "<h5>Points of interest:</h5><ul>" + "".join(
            f"<li>{p['name']} - {p['category']} ({p['distance_km']:.2f} km)</li>" for p in results["poi"]
        ) + "</ul>"
    if not results["cities"] and not results["poi"]:
        html += "<p><em>No features found within the search radius.</em></p>"
    return html


def build_map(
    cities: Dict[str, Any],
    parks: Dict[str, Any],
    routes: Dict[str, Any],
    size_by_population: bool = True,
    colour_by_population: bool = True,
    search: Optional[Tuple[float, float]] = None,
    radius_km: float = 50.0,
) -> folium.Map:
    m = folium.Map(location=[61.0, 9.0], zoom_start=5, control_scale=True, tiles="OpenStreetMap")
    folium.TileLayer(
        tiles="https://server.arcgisonline.com/ArcGIS/rest/services/World_Imagery/MapServer/tile/{z}/{y}/{x}",
        attr="© Esri",
        name="Satellite",
        max_zoom=19,
    ).add_to(m)

    city_fg = folium.FeatureGroup(name="Cities", show=True)
    for _, c in points_frame(cities).iterrows():
        style = city_style(c.get("population"), size_by_population, colour_by_population)
        pop = as_float(c.get("population"))
        pop_txt = f"{int(pop):,}".replace(",", " ") if pop is not None else "?"
        folium.CircleMarker(
            location=[float(c["lat"]), float(c["lon"])],
            fill=True,
            popup=folium.Popup(
                f"<h3>{c.get('name')}</h3><p><b>Type:</b> {c.get('type')}</p>"
                f"<p><b>Population:</b> {pop_txt}</p><p><b>Description:</b> {c.get('description')}</p>",
                max_width=300,
            ),
            **style,
        ).add_to(city_fg)
    city_fg.add_to(m)

    parks_fg = folium.FeatureGroup(name="National parks", show=True)
    park_fields = popup_fields(parks, ["name", "area_km2", "established", "description"])
    if parks.get("features"):
        folium.GeoJson(
            parks,
            style_function=lambda _: {"fillColor": "#48bb78", "color": "#2f855a", "weight": 2, "fillOpacity": 0.4},
            popup=folium.GeoJsonPopup(fields=park_fields) if park_fields else None,
        ).add_to(parks_fg)
    parks_fg.add_to(m)

    routes_fg = folium.FeatureGroup(name="Hiking routes", show=True)
    route_fields = popup_fields(routes, ["name", "difficulty", "length_km", "duration_hours", "description"])
    if routes.get("features"):
        folium.GeoJson(
            routes,
            style_function=lambda f: {
                "color": route_colour((f.get("properties") or {}).get("difficulty")),
                "weight": 4,
                "opacity": 0.8,
            },
            popup=folium.GeoJsonPopup(fields=route_fields) if route_fields else None,
        ).add_to(routes_fg)
    routes_fg.add_to(m)

    poi_fg = folium.FeatureGroup(name="Points of interest (PostGIS)", show=True)
    for _, p in points_frame(SAMPLE_POI).iterrows():
        folium.CircleMarker(
            location=[float(p["lat"]), float(p["lon"])],
            radius=6,
            color="#c53030",
            weight=2,
            fill=True,
            fill_color="#e53e3e",
            fill_opacity=0.8,
            popup=folium.Popup(
                f"<h3>{p['name']}</h3><p><b>Category:</b> {p['category']}</p>"
                f"<p><b>Description:</b> {p['description']}</p><p><em>Source: PostGIS database</em></p>",
                max_width=300,
            ),
        ).add_to(poi_fg)
    poi_fg.add_to(m)

    ogc_fg = folium.FeatureGroup(name="OGC API data", show=False)
    for _, s in points_frame(SAMPLE_OGC).iterrows():
        folium.Marker(
            location=[float(s["lat"]), float(s["lon"])],
            icon=folium.DivIcon(html="🌡️", icon_size=(25, 25)),
            popup=folium.Popup(
                f"<h3>{s['name']}</h3><p><b>Type:</b> {s['type']}</p>"
                f"<p><b>Temperature:</b> {s['temperature']}</p><p><em>Source: {s['source']}</em></p>",
                max_width=300,
            ),
        ).add_to(ogc_fg)
    ogc_fg.add_to(m)

    if search is not None:
        lon, lat = search
        e, n = to_utm33(lon, lat)
        results = find_features_within_radius(search, radius_km, points_frame(cities), points_frame(SAMPLE_POI))
        folium.Marker(
            location=[lat, lon],
            icon=folium.DivIcon(html="📍", icon_size=(30, 30)),
            tooltip=f"WGS84: {lat:.5f}°N, {lon:.5f}°E | UTM 33N: {e:.0f}E, {n:.0f}N",
        ).add_to(m)
        folium.Circle(
            location=[lat, lon],
            radius=radius_km * 1000.0,
            color="#667eea",
            fill=True,
            fill_color="#667eea",
            fill_opacity=0.2,
            weight=2,
        ).add_to(m)
        panel_html = f"""
        <div id="query-results" style="
          position: fixed; top: 12px; right: 12px; z-index: 9999;
          background: white; border: 1px solid #999; border-radius: 6px;
          padding: 10px; width: 300px; font: 13px/1.35 sans-serif;
          box-shadow: 0 1px 8px rgba(0,0,0,0.25);">
          {results_html(results, radius_km)}
        </div>
        """
        m.get_root().html.add_child(Element(panel_html))

    folium.LayerControl(collapsed=False).add_to(m)
    return m


def main() -> None:
    ap = argparse.ArgumentParser(description="Overview map of Norway with cities, parks and hiking routes.")
    ap.add_argument("--data-dir", default="data")
    ap.add_argument("--out", default="overview.html")
    ap.add_argument("--search", nargs=2, type=float, default=None, metavar=("LON", "LAT"))
    ap.add_argument("--radius-km", type=float, default=50.0)
    ap.add_argument("--no-population-size", action="store_true", help="Draw all cities with the same radius")
    ap.add_argument("--no-population-colours", action="store_true", help="Draw all cities in the same colour")
    args = ap.parse_args()
    logging.basicConfig(level=logging.INFO, format="%(levelname)s %(name)s: %(message)s")

    if args.radius_km <= 0:
        raise ValueError("--radius-km must be positive")

    cities = load_geojson(os.path.join(args.data_dir, "cities.geojson"))
    parks = load_geojson(os.path.join(args.data_dir, "national-parks.geojson"))
    routes = load_geojson(os.path.join(args.data_dir, "hiking-routes.geojson"))
    search = (float(args.search[0]), float(args.search[1])) if args.search else None

    m = build_map(
        cities,
        parks,
        routes,
        size_by_population=not args.no_population_size,
        colour_by_population=not args.no_population_colours,
        search=search,
        radius_km=args.radius_km,
    )
    m.save(args.out)

    print(f"Wrote {args.out}")
    print(f"Cities: {len(cities.get('features', []))} | Parks: {len(parks.get('features', []))} "
          f"| Hiking routes: {len(routes.get('features', []))}")
    if search is not None:
        results = find_features_within_radius(search, args.radius_km, points_frame(cities), points_frame(SAMPLE_POI))
        print(f"Within {args.radius_km:g} km of {search}: {len(results['cities'])} cities, {len(results['poi'])} POIs")


if __name__ == "__main__":
    main()
