"""
Feature extraction: provider orchestration and normalization.

Turns a validated catchment polygon + target point into six bounded
0-100 component scores for the scoring engine:

    demography     settlement signal + residential share     (higher = better)
    traffic        class-weighted road density               (higher = better)
    poi            sum of dwell weight x sqrt(count)         (higher = better)
    competition    charging-station gravity                  (higher = MORE competition)
    grid_proxy     substations / lines nearby                (higher = better)
    accessibility  100 - normalize(distance to major road)   (closer = better)

Both providers run concurrently and are joined before normalization.
Overpass is the authoritative baseline and must succeed; Google Places
is best-effort and only refines POI counts (see PoiMergePolicy).
"""

import logging
import math
import threading
from concurrent.futures import ThreadPoolExecutor, wait
from dataclasses import dataclass
from types import MappingProxyType
from typing import Dict, List, Mapping, Optional

from models import (
    ComponentScores,
    FeatureExtraction,
    Polygon,
    RawFeatureSnapshot,
    TargetPoint,
    ValidationError,
)
from osm_features import fetch_snapshot
from places_enrichment import try_fetch_poi_counts
from request_trace import get_trace, run_stage_in_thread
from retry import RequestCancelled
from scoring_config import (
    IDENTITY_RANGE,
    SCORING_MODEL,
    ScoringModel,
    poi_category_weight,
)
from settings import PUBLIC_SETTINGS

logger = logging.getLogger(__name__)

# Normalization range keys
DEMOGRAPHY = "Demography"
TRAFFIC = "Traffic"
POI = "POI"
COMPETITION = "Competition"
GRID_PROXY = "GridProxy"
ACCESSIBILITY = "Accessibility"

WARNING_FALLBACK_USED = "Overpass fallback used"
WARNING_NO_MAJOR_ROAD = "No major road detected within radius"
WARNING_HIGH_COMPETITION = "High density of fast charging competition"
WARNING_FREE_PARKING = "Nearby free parking detected"


# =============================================================================
# POI merge policy
# =============================================================================

@dataclass(frozen=True)
class PoiMergeOutcome:
    counts: Mapping[str, int]
    used_fallback: bool


@dataclass(frozen=True)
class PoiMergePolicy:
    """How enrichment counts combine with the Overpass baseline.

    Enrichment is all-or-nothing upstream: the provider returns either a
    complete category map or None.  With override_per_category (the
    default) enrichment replaces only the categories it returned and
    Overpass counts survive for the rest; without it the enrichment map
    replaces the baseline wholesale.
    """
    override_per_category: bool = True

    def merge(
        self,
        fallback_counts: Mapping[str, int],
        enrichment_counts: Optional[Mapping[str, int]],
    ) -> PoiMergeOutcome:
        if enrichment_counts is None:
            return PoiMergeOutcome(MappingProxyType(dict(fallback_counts)), used_fallback=True)

        if self.override_per_category:
            merged: Dict[str, int] = dict(fallback_counts)
            merged.update(enrichment_counts)
        else:
            merged = dict(enrichment_counts)
        return PoiMergeOutcome(MappingProxyType(merged), used_fallback=False)


DEFAULT_MERGE_POLICY = PoiMergePolicy()


# =============================================================================
# Pure scoring helpers
# =============================================================================

def calculate_poi_score(poi_counts: Mapping[str, int]) -> float:
    """Sum of dwell weight x sqrt(count).

    The square root gives diminishing returns: the tenth supermarket adds
    far less charging demand than the first.
    """
    return sum(poi_category_weight(category) * math.sqrt(count)
               for category, count in poi_counts.items() if count > 0)


def normalize(value: float, key: str, model: ScoringModel = SCORING_MODEL) -> float:
    """Min-max scale *value* into 0-100 using the configured range for *key*.

    Values outside the range clamp to 0 or 100.  A missing or zero-width
    range falls back to identity (0, 100) with a logged warning.
    """
    rng = model.range_for(key)
    if rng is None or abs(rng.high - rng.low) < 1e-12:
        logger.warning(
            "Missing or invalid normalization range for %s. Using default 0-100 scaling.", key,
        )
        rng = IDENTITY_RANGE

    if math.isnan(value):
        logger.warning("Non-numeric raw value for %s; scoring as 0", key)
        return 0.0

    scaled = (value - rng.low) / (rng.high - rng.low)
    clamped = min(max(scaled, 0.0), 1.0)
    return round(clamped * 100, 2)


def normalize_inverse(value: float, key: str, model: ScoringModel = SCORING_MODEL) -> float:
    """100 - normalize(value); NaN for non-finite input so callers can substitute."""
    if not math.isfinite(value):
        return math.nan
    return round(100 - normalize(value, key, model), 2)


# =============================================================================
# Validation
# =============================================================================

def validate_inputs(polygon: Optional[Polygon], target: Optional[TargetPoint]) -> None:
    """Raise ValidationError naming the first bad field."""
    if polygon is None:
        raise ValidationError(
            "polygon",
            "Polygon is invalid. Draw a closed polygon with at least four coordinates.",
        )
    polygon.validate()
    if target is None:
        raise ValidationError(
            "target_point",
            "Target point is invalid. Place the marker within the polygon bounds.",
        )
    target.validate()


# =============================================================================
# Extraction
# =============================================================================

_CANCEL_POLL_SECONDS = 0.05


def _fetch_concurrently(
    polygon: Polygon,
    target: TargetPoint,
    radius_m: int,
    cancel_event: Optional[threading.Event],
):
    """Run both providers in parallel and join.

    A fallback failure stops the enrichment worker before propagating.
    Request cancellation is forwarded to the enrichment worker while the
    fallback is still running.
    """
    parent_trace = get_trace()
    stop_enrichment = threading.Event()

    with ThreadPoolExecutor(max_workers=2) as pool:
        fallback_future = pool.submit(
            run_stage_in_thread, parent_trace,
            "fallback_snapshot", fetch_snapshot, polygon, target, radius_m, cancel_event,
        )
        enrichment_future = pool.submit(
            run_stage_in_thread, parent_trace,
            "poi_enrichment", try_fetch_poi_counts, target, radius_m,
            cancel_event=stop_enrichment,
        )
        while not fallback_future.done():
            if cancel_event is not None and cancel_event.is_set():
                stop_enrichment.set()
            wait([fallback_future], timeout=_CANCEL_POLL_SECONDS)

        try:
            snapshot = fallback_future.result()
        except Exception:
            stop_enrichment.set()
            raise

        if cancel_event is not None and cancel_event.is_set():
            stop_enrichment.set()
        try:
            enrichment = enrichment_future.result()
        except RequestCancelled:
            enrichment = None

    if cancel_event is not None and cancel_event.is_set():
        raise RequestCancelled("Request cancelled while fetching provider data")

    return snapshot, enrichment


def build_extraction(
    snapshot: RawFeatureSnapshot,
    enrichment_counts: Optional[Mapping[str, int]],
    model: ScoringModel = SCORING_MODEL,
    merge_policy: PoiMergePolicy = DEFAULT_MERGE_POLICY,
) -> FeatureExtraction:
    """Merge, normalize and package one snapshot.  Pure; no I/O."""
    warnings: List[str] = []

    merged = merge_policy.merge(snapshot.poi_counts, enrichment_counts)
    if merged.used_fallback:
        warnings.append(WARNING_FALLBACK_USED)
    poi_raw = calculate_poi_score(merged.counts)

    demography = normalize(snapshot.demography_proxy, DEMOGRAPHY, model)
    traffic = normalize(snapshot.road_density, TRAFFIC, model)
    poi = normalize(poi_raw, POI, model)
    competition = normalize(snapshot.competition_gravity, COMPETITION, model)
    grid = normalize(snapshot.grid_proxy, GRID_PROXY, model)
    accessibility = normalize_inverse(snapshot.accessibility_meters, ACCESSIBILITY, model)

    if math.isnan(accessibility):
        accessibility = model.no_major_road_accessibility
        warnings.append(WARNING_NO_MAJOR_ROAD)

    if snapshot.high_competition_stations >= model.high_competition_station_warning:
        warnings.append(WARNING_HIGH_COMPETITION)

    if snapshot.free_parking_bonus > 0:
        warnings.append(WARNING_FREE_PARKING)

    components = ComponentScores(
        demography=demography,
        traffic=traffic,
        poi=poi,
        competition=competition,
        grid_proxy=grid,
        accessibility=accessibility,
    )

    raw_features = MappingProxyType({
        "demography_proxy": snapshot.demography_proxy,
        "road_density_weighted_km_per_km2": snapshot.road_density,
        "poi_weighted_score": poi_raw,
        "competition_gravity": snapshot.competition_gravity,
        "grid_signal": snapshot.grid_proxy,
        "accessibility_meters": snapshot.accessibility_meters,
        "residential_density_ratio": snapshot.residential_density,
    })

    return FeatureExtraction(
        components=components,
        raw_features=raw_features,
        warnings=tuple(warnings),
        used_fallback=merged.used_fallback,
        free_parking=snapshot.free_parking_bonus > 0,
        competition_raw=snapshot.competition_gravity,
        competition_normalized=competition,
        poi_score=poi,
    )


def extract(
    polygon: Optional[Polygon],
    target: Optional[TargetPoint],
    radius_m: Optional[int] = None,
    cancel_event: Optional[threading.Event] = None,
    model: ScoringModel = SCORING_MODEL,
    merge_policy: PoiMergePolicy = DEFAULT_MERGE_POLICY,
) -> FeatureExtraction:
    """Validate input, query both providers, and return normalized components.

    Raises:
        models.ValidationError: Bad polygon or target point.
        osm_features.ProviderFailureError: Overpass failed after retries.
        retry.RequestCancelled: *cancel_event* fired.
    """
    validate_inputs(polygon, target)
    radius = radius_m if radius_m is not None else PUBLIC_SETTINGS.default_radius_meters

    snapshot, enrichment = _fetch_concurrently(polygon, target, radius, cancel_event)
    if enrichment is None:
        logger.info("POI enrichment unavailable; scoring on Overpass counts only")

    return build_extraction(snapshot, enrichment, model=model, merge_policy=merge_policy)
