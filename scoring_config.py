"""
Scoring model configuration for EV site scoring.

Owns every numeric constant that affects the feasibility score:
default weights, normalization bounds, penalties, bonuses, demand
prediction coefficients and the OSM lookup tables used during raw
feature aggregation.  Deployment settings (endpoints, keys, radius,
timeouts) live in settings.py.

Frozen dataclasses provide type checking and IDE support without
the indirection of YAML/JSON config files.  Lookup tables are wrapped
in MappingProxyType so nothing can mutate them at runtime; every table
documents its default-on-miss value next to its accessor.
"""

from dataclasses import dataclass
from types import MappingProxyType
from typing import Dict, Mapping, Optional, Tuple


# =============================================================================
# Dataclasses
# =============================================================================

@dataclass(frozen=True)
class WeightVector:
    """Relative importance of the six components.

    The scoring engine re-normalizes whatever vector it ends up with so
    the weights sum to 1; the defaults below already do.
    """
    demography: float = 0.2
    traffic: float = 0.2
    poi: float = 0.15
    competition: float = 0.2
    grid: float = 0.15
    accessibility: float = 0.1

    def total(self) -> float:
        return (self.demography + self.traffic + self.poi
                + self.competition + self.grid + self.accessibility)

    def scaled(self, divisor: float) -> "WeightVector":
        return WeightVector(
            demography=self.demography / divisor,
            traffic=self.traffic / divisor,
            poi=self.poi / divisor,
            competition=self.competition / divisor,
            grid=self.grid / divisor,
            accessibility=self.accessibility / divisor,
        )

    def as_dict(self) -> Dict[str, float]:
        # Keys match the request's weight override fields.
        return {
            "demography": self.demography,
            "traffic": self.traffic,
            "poi": self.poi,
            "competition": self.competition,
            "grid": self.grid,
            "access": self.accessibility,
        }


@dataclass(frozen=True)
class NormalizationRange:
    """(low, high) bounds for linear min-max scaling of one raw feature."""
    low: float
    high: float


IDENTITY_RANGE = NormalizationRange(low=0.0, high=100.0)


@dataclass(frozen=True)
class Penalties:
    high_competition: float = 10.0
    fallback_data: float = 3.0
    # Normalized competition component above which the penalty applies.
    high_competition_threshold: float = 75.0


@dataclass(frozen=True)
class Bonuses:
    free_parking_poi: float = 6.0


@dataclass(frozen=True)
class PredictionModel:
    """Linear sessions/day model driven by normalized components."""
    base_sessions: float = 12.0
    traffic_multiplier: float = 0.3
    poi_multiplier: float = 0.25
    competition_multiplier: float = 0.35
    demography_multiplier: float = 0.28
    min_sessions: float = 1.5


@dataclass(frozen=True)
class ScoringModel:
    """Top-level container for all scoring parameters.

    A single module-level instance (SCORING_MODEL) is the source of truth.
    Bump `version` on every change that alters score outputs.
    """
    version: str
    weights: WeightVector
    normalization: Mapping[str, NormalizationRange]
    penalties: Penalties
    bonuses: Bonuses
    prediction: PredictionModel
    # Fallback accessibility score when no major road is found.
    no_major_road_accessibility: float = 40.0
    # Stations at or above this estimated power count as fast competition.
    high_power_station_kw: float = 150.0
    high_competition_station_warning: int = 4

    def range_for(self, key: str) -> Optional[NormalizationRange]:
        return self.normalization.get(key)


# =============================================================================
# Lookup tables for raw feature aggregation
# =============================================================================

@dataclass(frozen=True)
class PoiRule:
    """Tag rule mapping an OSM element to a POI category.

    value "*" matches on key presence only.
    """
    category: str
    key: str
    value: str


POI_RULES: Tuple[PoiRule, ...] = (
    PoiRule("mall", "shop", "mall"),
    PoiRule("supermarket", "shop", "supermarket"),
    PoiRule("office", "office", "*"),
    PoiRule("school", "amenity", "school"),
    PoiRule("school", "amenity", "university"),
    PoiRule("hospital", "amenity", "hospital"),
    PoiRule("hospital", "healthcare", "hospital"),
    PoiRule("entertainment", "amenity", "cinema"),
    PoiRule("entertainment", "amenity", "theatre"),
    PoiRule("entertainment", "amenity", "arts_centre"),
    PoiRule("entertainment", "leisure", "stadium"),
    PoiRule("entertainment", "leisure", "fitness_centre"),
)

# Distinct categories in rule order.
POI_CATEGORIES: Tuple[str, ...] = tuple(dict.fromkeys(r.category for r in POI_RULES))

# Dwell-time heuristic: how long a visitor typically stays, i.e. how much
# charging time the POI can absorb.
POI_CATEGORY_WEIGHTS: Mapping[str, float] = MappingProxyType({
    "mall": 6.0,
    "supermarket": 4.5,
    "office": 3.0,
    "school": 3.5,
    "hospital": 5.0,
    "entertainment": 4.0,
})
DEFAULT_POI_CATEGORY_WEIGHT = 2.0

ROAD_CLASS_WEIGHTS: Mapping[str, float] = MappingProxyType({
    "motorway": 1.0,
    "trunk": 0.95,
    "primary": 0.85,
    "secondary": 0.7,
    "tertiary": 0.55,
    "unclassified": 0.35,
    "residential": 0.25,
    "service": 0.2,
})

PRIMARY_ROAD_CLASSES = frozenset({"primary", "secondary"})
MOTORWAY_ROAD_CLASSES = frozenset({"motorway", "trunk"})

SETTLEMENT_SIGNALS: Mapping[str, float] = MappingProxyType({
    "city": 6.0,
    "town": 4.0,
    "village": 2.0,
    "hamlet": 1.0,
})

GRID_SIGNALS: Mapping[str, float] = MappingProxyType({
    "substation": 3.0,
    "transformer": 3.0,
    "line": 1.0,
    "minor_line": 0.5,
})

RESIDENTIAL_LANDUSE = frozenset({"residential", "commercial"})

# Competition gravity: power / (distance_m + offset) ** exponent
GRAVITY_DISTANCE_OFFSET_M = 75.0
GRAVITY_EXPONENT = 1.2
KW_PER_PLUG = 22.0
DEFAULT_STATION_KW = 50.0  # conservative default for DC fast chargers

# demography_proxy = settlement_signal + residential_density * this
RESIDENTIAL_DENSITY_SCALE = 80.0


def poi_category_weight(category: str) -> float:
    """Dwell weight for *category*; unknown categories get DEFAULT_POI_CATEGORY_WEIGHT."""
    return POI_CATEGORY_WEIGHTS.get(category.lower(), DEFAULT_POI_CATEGORY_WEIGHT)


def road_class_weight(highway: str) -> float:
    """Length weight for an OSM highway class; unknown classes contribute 0."""
    return ROAD_CLASS_WEIGHTS.get(highway.lower(), 0.0)


def settlement_signal(place: str) -> float:
    """Settlement increment for an OSM place type; others contribute 0."""
    return SETTLEMENT_SIGNALS.get(place.lower(), 0.0)


def grid_signal(power: str) -> float:
    """Grid increment for an OSM power value; others contribute 0."""
    return GRID_SIGNALS.get(power.lower(), 0.0)


# =============================================================================
# SCORING_MODEL: current production values
# =============================================================================

# Bounds are in the raw units of each proxy.  Calibrated against suburban
# and urban European catchments at the default 1500 m radius.
#   Demography    settlement signal + residential share * 80
#   Traffic       class-weighted road metres per km2
#   POI           sum of weight * sqrt(count)
#   Competition   gravity sum, kW / m**1.2
#   GridProxy     substation/line increments
#   Accessibility metres to nearest major road (smaller is better; the
#                 feature engine inverts the normalized value)
_NORMALIZATION = MappingProxyType({
    "Demography": NormalizationRange(low=0.0, high=50.0),
    "Traffic": NormalizationRange(low=0.0, high=6000.0),
    "POI": NormalizationRange(low=0.0, high=80.0),
    "Competition": NormalizationRange(low=0.0, high=0.25),
    "GridProxy": NormalizationRange(low=0.0, high=30.0),
    "Accessibility": NormalizationRange(low=0.0, high=2000.0),
})


SCORING_MODEL = ScoringModel(
    version="1.0.0",
    weights=WeightVector(),
    normalization=_NORMALIZATION,
    penalties=Penalties(),
    bonuses=Bonuses(),
    prediction=PredictionModel(),
)


# Validate at import time (ValueError, not assert, so validation is never
# stripped by python -O).
for _name, _w in SCORING_MODEL.weights.as_dict().items():
    if _w < 0:
        raise ValueError(f"Default weight {_name!r} is negative: {_w}")
for _category in POI_CATEGORIES:
    if _category not in POI_CATEGORY_WEIGHTS:
        raise ValueError(f"POI category {_category!r} has no dwell weight")
if abs(SCORING_MODEL.weights.total() - 1.0) >= 1e-9:
    raise ValueError(
        f"Default weights sum to {SCORING_MODEL.weights.total()}, expected 1.0"
    )
for _key, _r in SCORING_MODEL.normalization.items():
    if _r.high <= _r.low:
        raise ValueError(f"Normalization range {_key!r} has high <= low")
