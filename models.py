"""
Domain records for site scoring requests and results.

Everything here is immutable once built: a request is parsed into
Polygon / TargetPoint / WeightOverrides, the fallback provider folds its
elements into one RawFeatureSnapshot, and the engines produce
FeatureExtraction and ScoreResult records that are serialized straight
into the JSON response via to_dict().

JSON field names follow the public API (target_point, grid_proxy,
sessions_per_day, ...), not the Python attribute names.
"""

import math
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any, Dict, List, Mapping, Optional, Tuple


class ValidationError(ValueError):
    """Raised for malformed or out-of-range request input.

    *field* names the offending request field so the HTTP layer (and the
    UI) can point at it.
    """

    def __init__(self, field_name: str, message: str):
        super().__init__(message)
        self.field = field_name
        self.message = message


def _is_number(value: Any) -> bool:
    # bool is an int subclass; "true" is never a coordinate
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def _to_float(value: Any, field_name: str, message: str) -> float:
    # JSON integers are unbounded; float(10**400) overflows
    try:
        return float(value)
    except OverflowError:
        raise ValidationError(field_name, message) from None


# =============================================================================
# Request input
# =============================================================================

@dataclass(frozen=True)
class Polygon:
    """Exterior ring of (lon, lat) pairs, closed (first == last)."""
    ring: Tuple[Tuple[float, float], ...]

    MIN_RING_POINTS = 4

    @classmethod
    def from_geojson(cls, obj: Any) -> "Polygon":
        """Build from a GeoJSON Polygon dict.  Open rings are closed."""
        if not isinstance(obj, dict):
            raise ValidationError("polygon", "Polygon is missing or not an object.")
        if str(obj.get("type", "Polygon")).lower() != "polygon":
            raise ValidationError("polygon", "Polygon type must be 'Polygon'.")

        coordinates = obj.get("coordinates")
        if not isinstance(coordinates, list) or not coordinates or not isinstance(coordinates[0], list):
            raise ValidationError("polygon", "Polygon has no exterior ring.")

        ring: List[Tuple[float, float]] = []
        for coord in coordinates[0]:
            if not isinstance(coord, (list, tuple)) or len(coord) < 2:
                raise ValidationError("polygon", "Polygon coordinates must be [lon, lat] pairs.")
            lon, lat = coord[0], coord[1]
            if not (_is_number(lon) and _is_number(lat)):
                raise ValidationError("polygon", "Polygon coordinates must be numeric.")
            too_large = "Polygon coordinates are out of range."
            ring.append((
                _to_float(lon, "polygon", too_large),
                _to_float(lat, "polygon", too_large),
            ))

        if ring and ring[0] != ring[-1]:
            ring.append(ring[0])
        return cls(ring=tuple(ring))

    def validate(self) -> None:
        if len(self.ring) < self.MIN_RING_POINTS:
            raise ValidationError(
                "polygon",
                "Polygon is invalid. Draw a closed polygon with at least four coordinates.",
            )
        if self.ring[0] != self.ring[-1]:
            raise ValidationError("polygon", "Polygon ring is not closed.")
        for lon, lat in self.ring:
            if not (math.isfinite(lon) and math.isfinite(lat)):
                raise ValidationError("polygon", "Polygon coordinates must be finite.")
            if not (-180 <= lon <= 180 and -90 <= lat <= 90):
                raise ValidationError(
                    "polygon",
                    f"Polygon coordinate ({lon}, {lat}) is outside valid lon/lat range.",
                )


@dataclass(frozen=True)
class TargetPoint:
    lat: float
    lon: float

    @classmethod
    def from_json(cls, obj: Any) -> "TargetPoint":
        if not isinstance(obj, dict):
            raise ValidationError("target_point", "Target point is missing or not an object.")
        lat, lon = obj.get("lat"), obj.get("lon")
        if not (_is_number(lat) and _is_number(lon)):
            raise ValidationError("target_point", "Target point needs numeric lat and lon.")
        too_large = "Target point is out of range."
        return cls(
            lat=_to_float(lat, "target_point", too_large),
            lon=_to_float(lon, "target_point", too_large),
        )

    def validate(self) -> None:
        if not (math.isfinite(self.lat) and -90 <= self.lat <= 90
                and math.isfinite(self.lon) and -180 <= self.lon <= 180):
            raise ValidationError(
                "target_point",
                "Target point is invalid. Place the marker within the polygon bounds.",
            )

    def as_tuple(self) -> Tuple[float, float]:
        return (self.lat, self.lon)


@dataclass(frozen=True)
class WeightOverrides:
    """Caller-supplied partial weight vector; None means "use the default"."""
    demography: Optional[float] = None
    traffic: Optional[float] = None
    poi: Optional[float] = None
    competition: Optional[float] = None
    grid: Optional[float] = None
    access: Optional[float] = None

    FIELDS = ("demography", "traffic", "poi", "competition", "grid", "access")

    @classmethod
    def from_json(cls, obj: Any) -> "WeightOverrides":
        if obj is None:
            return cls()
        if not isinstance(obj, dict):
            raise ValidationError("weights", "Weights must be an object.")

        values: Dict[str, Optional[float]] = {}
        for name in cls.FIELDS:
            raw = obj.get(name)
            if raw is None:
                continue
            not_finite = f"Weight {name!r} must be a finite number."
            if not _is_number(raw):
                raise ValidationError(f"weights.{name}", not_finite)
            value = _to_float(raw, f"weights.{name}", not_finite)
            if not math.isfinite(value):
                raise ValidationError(f"weights.{name}", not_finite)
            if value < 0:
                raise ValidationError(f"weights.{name}", f"Weight {name!r} must not be negative.")
            values[name] = value
        return cls(**values)


@dataclass(frozen=True)
class ScoreRequest:
    polygon: Polygon
    target_point: TargetPoint
    weights: WeightOverrides = field(default_factory=WeightOverrides)


def parse_score_request(payload: Any) -> ScoreRequest:
    """Parse the JSON body of /score and /features.

    Structural problems raise ValidationError; range checks happen in
    the feature engine so direct callers get the same guarantees.
    """
    if not isinstance(payload, dict):
        raise ValidationError("body", "Request body must be a JSON object.")
    return ScoreRequest(
        polygon=Polygon.from_geojson(payload.get("polygon")),
        target_point=TargetPoint.from_json(payload.get("target_point")),
        weights=WeightOverrides.from_json(payload.get("weights")),
    )


# =============================================================================
# Pipeline records
# =============================================================================

@dataclass(frozen=True)
class RawFeatureSnapshot:
    """Unnormalized proxies from one pass over the fallback provider's elements."""
    poi_counts: Mapping[str, int] = field(default_factory=lambda: MappingProxyType({}))
    poi_dwell_score: float = 0.0
    road_density: float = 0.0          # weighted road metres per km2
    competition_gravity: float = 0.0
    demography_proxy: float = 0.0
    grid_proxy: float = 0.0
    accessibility_meters: float = math.nan  # NaN when no major road was found
    residential_density: float = 0.0   # 0-1 share of catchment area
    free_parking_bonus: int = 0
    high_competition_stations: int = 0
    element_count: int = 0


@dataclass(frozen=True)
class ComponentScores:
    demography: float
    traffic: float
    poi: float
    competition: float
    grid_proxy: float
    accessibility: float

    def to_dict(self) -> Dict[str, float]:
        return {
            "demography": self.demography,
            "traffic": self.traffic,
            "poi": self.poi,
            "competition": self.competition,
            "grid_proxy": self.grid_proxy,
            "accessibility": self.accessibility,
        }


@dataclass(frozen=True)
class FeatureExtraction:
    components: ComponentScores
    raw_features: Mapping[str, float]
    warnings: Tuple[str, ...]
    used_fallback: bool
    free_parking: bool
    competition_raw: float
    competition_normalized: float
    poi_score: float

    def to_dict(self) -> Dict[str, Any]:
        return {
            "components": self.components.to_dict(),
            # NaN is not valid JSON; accessibility_meters is NaN when no road was found
            "rawFeatures": {
                k: (v if math.isfinite(v) else None) for k, v in self.raw_features.items()
            },
            "warnings": list(self.warnings),
        }


@dataclass(frozen=True)
class Contribution:
    feature: str
    contribution: float

    def to_dict(self) -> Dict[str, Any]:
        return {"feature": self.feature, "contribution": self.contribution}


@dataclass(frozen=True)
class Prediction:
    sessions_per_day: float
    kwh_per_day: float
    peak_kw: float

    def to_dict(self) -> Dict[str, float]:
        return {
            "sessions_per_day": self.sessions_per_day,
            "kwh_per_day": self.kwh_per_day,
            "peak_kw": self.peak_kw,
        }


@dataclass(frozen=True)
class ScoreResult:
    score: float
    prediction: Prediction
    explain: Tuple[Contribution, ...]
    components: ComponentScores
    warnings: Tuple[str, ...]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "score": self.score,
            "prediction": self.prediction.to_dict(),
            "explain": [c.to_dict() for c in self.explain],
            "components": self.components.to_dict(),
            "warnings": list(self.warnings),
        }
