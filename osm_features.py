"""
OpenStreetMap raw feature aggregation for the fallback (baseline) provider.

Issues one Overpass query for everything within the search radius of the
target point and folds the returned elements, each exactly once, into a
RawFeatureSnapshot of site proxies:

  - POI counts and dwell score     (shop/office/amenity/leisure tags)
  - free parking flag              (amenity=parking, fee=no or customers-only)
  - competition gravity            (amenity=charging_station, power / d**1.2)
  - weighted road density          (highway ways, length x class weight)
  - distance to major roads        (primary/secondary and motorway/trunk)
  - demography proxy               (residential/commercial landuse, place=*)
  - grid signal                    (power=substation/transformer/line)

Overpass needs no API key, so this provider is treated as authoritative:
if it fails after retries the scoring request fails with
ProviderFailureError.  Google Places enrichment (places_enrichment.py)
only ever refines the POI counts.

Limitations:
  - Distances to roads and stations use a single representative position
    (node position, way center, or first geometry vertex), not the
    nearest point on the way.
  - Landuse areas use the same equirectangular approximation as the
    catchment polygon and ignore multipolygon relations.
"""

import logging
import math
import re
import threading
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple

from geo import circle_area_sq_m, distance_meters, polygon_area_sq_m
from models import Polygon, RawFeatureSnapshot, TargetPoint
from overpass_http import OverpassQueryError, overpass_query
from scoring_config import (
    DEFAULT_STATION_KW,
    GRAVITY_DISTANCE_OFFSET_M,
    GRAVITY_EXPONENT,
    KW_PER_PLUG,
    MOTORWAY_ROAD_CLASSES,
    POI_RULES,
    PRIMARY_ROAD_CLASSES,
    RESIDENTIAL_DENSITY_SCALE,
    RESIDENTIAL_LANDUSE,
    SCORING_MODEL,
    grid_signal,
    poi_category_weight,
    road_class_weight,
    settlement_signal,
)

logger = logging.getLogger(__name__)


class ProviderFailureError(Exception):
    """The baseline spatial data provider could not produce a snapshot."""

    pass


# Tag keys whose elements feed at least one proxy.
QUERY_TAG_KEYS = ("amenity", "shop", "office", "highway", "landuse", "place", "power")


# =============================================================================
# QUERY
# =============================================================================

def build_query(lat: float, lon: float, radius_m: int) -> str:
    """Overpass QL for every node/way carrying a relevant key around the point.

    A single ``out body geom`` statement returns node coordinates and way
    geometries in one listing, so no element appears twice.
    """
    around = f"(around:{int(radius_m)},{lat!r},{lon!r})"
    lines = ["[out:json][timeout:25];", "("]
    for key in QUERY_TAG_KEYS:
        lines.append(f"  node{around}[{key}];")
        lines.append(f"  way{around}[{key}];")
    lines.append(");")
    lines.append("out body geom qt;")
    return "\n".join(lines) + "\n"


# =============================================================================
# ELEMENT HELPERS
# =============================================================================

def _parse_tags(element: Dict[str, Any]) -> Dict[str, str]:
    """Lower-cased tag keys and values; OSM tagging is not case-consistent."""
    raw = element.get("tags") or {}
    return {str(k).lower(): str(v if v is not None else "").lower() for k, v in raw.items()}


def _geometry_latlon(element: Dict[str, Any]) -> List[Tuple[float, float]]:
    coords = []
    for node in element.get("geometry") or []:
        if isinstance(node, dict) and "lat" in node and "lon" in node:
            coords.append((float(node["lat"]), float(node["lon"])))
    return coords


def read_position(element: Dict[str, Any]) -> Optional[Tuple[float, float]]:
    """Representative (lat, lon): node position, way center, or first vertex."""
    if "lat" in element and "lon" in element:
        return float(element["lat"]), float(element["lon"])

    center = element.get("center")
    if isinstance(center, dict) and "lat" in center and "lon" in center:
        return float(center["lat"]), float(center["lon"])

    geometry = _geometry_latlon(element)
    if geometry:
        return geometry[0]
    return None


def way_length_meters(element: Dict[str, Any]) -> float:
    coords = _geometry_latlon(element)
    if len(coords) < 2:
        return 0.0
    return sum(distance_meters(coords[i], coords[i + 1]) for i in range(len(coords) - 1))


def element_area_sq_m(element: Dict[str, Any]) -> float:
    coords = _geometry_latlon(element)
    if len(coords) < 3:
        return 0.0
    return polygon_area_sq_m([(lon, lat) for lat, lon in coords])


_KW_SUFFIX = re.compile(r"kw", re.IGNORECASE)


def _parse_kw(value: Optional[str]) -> Optional[float]:
    if value is None:
        return None
    try:
        return float(_KW_SUFFIX.sub("", value).strip())
    except ValueError:
        return None


def estimate_station_power_kw(tags: Dict[str, str]) -> float:
    """Estimated charging power of a station from its tags.

    Priority: plug capacity x 22 kW, then socket:output, then max_power,
    then a 50 kW default.  Unparseable values fall through to the next source.
    """
    capacity = tags.get("capacity")
    if capacity is not None:
        try:
            return float(capacity) * KW_PER_PLUG
        except ValueError:
            pass

    for key in ("socket:output", "max_power"):
        kw = _parse_kw(tags.get(key))
        if kw is not None:
            return kw

    return DEFAULT_STATION_KW


def _is_free_parking(tags: Dict[str, str]) -> bool:
    if tags.get("amenity") != "parking":
        return False
    if "fee" in tags:
        return tags["fee"] == "no"
    return tags.get("access") == "customers"


# =============================================================================
# AGGREGATION
# =============================================================================

@dataclass
class _ScanState:
    """Running totals for one pass over the element list."""
    poi_counts: Dict[str, int] = field(default_factory=dict)
    poi_dwell_score: float = 0.0
    free_parking: bool = False
    road_weighted_length_m: float = 0.0
    min_primary_distance_m: float = math.inf
    min_motorway_distance_m: float = math.inf
    competition_gravity: float = 0.0
    high_competition_stations: int = 0
    residential_area_sq_m: float = 0.0
    settlement_signal: float = 0.0
    grid_signal: float = 0.0
    element_count: int = 0


def _scan_element(state: _ScanState, element: Dict[str, Any], target: Tuple[float, float]) -> None:
    state.element_count += 1
    if not element.get("tags"):
        return
    tags = _parse_tags(element)

    for rule in POI_RULES:
        if rule.value == "*":
            matched = rule.key in tags
        else:
            matched = tags.get(rule.key) == rule.value
        if matched:
            state.poi_counts[rule.category] = state.poi_counts.get(rule.category, 0) + 1
            state.poi_dwell_score += poi_category_weight(rule.category)

    if not state.free_parking and _is_free_parking(tags):
        state.free_parking = True

    if tags.get("amenity") == "charging_station":
        position = read_position(element)
        if position is not None:
            distance = distance_meters(target, position)
            power_kw = estimate_station_power_kw(tags)
            state.competition_gravity += power_kw / math.pow(
                distance + GRAVITY_DISTANCE_OFFSET_M, GRAVITY_EXPONENT
            )
            if power_kw >= SCORING_MODEL.high_power_station_kw:
                state.high_competition_stations += 1

    highway = tags.get("highway")
    if highway is not None:
        length = way_length_meters(element)
        if length > 0:
            state.road_weighted_length_m += length * road_class_weight(highway)

        if highway in PRIMARY_ROAD_CLASSES or highway in MOTORWAY_ROAD_CLASSES:
            position = read_position(element)
            if position is not None:
                distance = distance_meters(target, position)
                if highway in PRIMARY_ROAD_CLASSES:
                    state.min_primary_distance_m = min(state.min_primary_distance_m, distance)
                else:
                    state.min_motorway_distance_m = min(state.min_motorway_distance_m, distance)

    if tags.get("landuse") in RESIDENTIAL_LANDUSE:
        state.residential_area_sq_m += element_area_sq_m(element)

    place = tags.get("place")
    if place is not None:
        state.settlement_signal += settlement_signal(place)

    power = tags.get("power")
    if power is not None:
        state.grid_signal += grid_signal(power)


def catchment_area_sq_m(ring: Sequence[Tuple[float, float]], radius_m: float) -> float:
    """Polygon area, or the search circle's area when the polygon is degenerate."""
    area = polygon_area_sq_m(ring)
    if area <= 0:
        area = circle_area_sq_m(radius_m)
    return area


def aggregate_elements(
    elements: Iterable[Dict[str, Any]],
    polygon: Polygon,
    target: TargetPoint,
    radius_m: float,
) -> RawFeatureSnapshot:
    """Fold Overpass elements into an immutable RawFeatureSnapshot."""
    state = _ScanState()
    origin = target.as_tuple()
    for element in elements:
        _scan_element(state, element, origin)

    area = catchment_area_sq_m(polygon.ring, radius_m)

    # Weighted road metres per km2 of catchment.
    road_density = state.road_weighted_length_m / (area / 1_000_000.0)
    if not math.isfinite(road_density):
        road_density = 0.0

    residential_density = state.residential_area_sq_m / area
    demography_proxy = state.settlement_signal + residential_density * RESIDENTIAL_DENSITY_SCALE

    accessibility = min(state.min_primary_distance_m, state.min_motorway_distance_m)
    if math.isinf(accessibility):
        accessibility = math.nan

    return RawFeatureSnapshot(
        poi_counts=MappingProxyType(dict(state.poi_counts)),
        poi_dwell_score=state.poi_dwell_score,
        road_density=road_density,
        competition_gravity=state.competition_gravity,
        demography_proxy=demography_proxy,
        grid_proxy=state.grid_signal,
        accessibility_meters=accessibility,
        residential_density=residential_density,
        free_parking_bonus=1 if state.free_parking else 0,
        high_competition_stations=state.high_competition_stations,
        element_count=state.element_count,
    )


# =============================================================================
# MAIN ENTRY POINT
# =============================================================================

def fetch_snapshot(
    polygon: Polygon,
    target: TargetPoint,
    radius_m: int,
    cancel_event: Optional[threading.Event] = None,
) -> RawFeatureSnapshot:
    """Query Overpass around *target* and aggregate the result.

    Raises:
        ProviderFailureError: Overpass failed (after retries, for transient errors).
        retry.RequestCancelled: The request was cancelled.
    """
    query = build_query(target.lat, target.lon, radius_m)
    logger.debug("Querying Overpass fallback for (%.5f, %.5f) r=%dm", target.lat, target.lon, radius_m)

    try:
        data = overpass_query(query, caller="site_features", cancel_event=cancel_event)
    except OverpassQueryError as e:
        logger.warning("Overpass fallback failed: %s", e)
        raise ProviderFailureError(
            "Spatial data provider unavailable, please retry shortly."
        ) from e

    elements = data.get("elements", []) if isinstance(data, dict) else []
    snapshot = aggregate_elements(elements, polygon, target, radius_m)
    logger.info(
        "Overpass snapshot: %d elements, %d POIs, road_density=%.2f, competition=%.4f",
        snapshot.element_count,
        sum(snapshot.poi_counts.values()),
        snapshot.road_density,
        snapshot.competition_gravity,
    )
    return snapshot
