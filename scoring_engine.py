"""
Composite feasibility score, explanation and demand prediction.

score = clamp( sum of weighted components + penalties + bonuses, 0, 100 )

Weights are re-normalized to sum to 1, so the weighted part alone is
always within 0-100.  Every term is rounded to 2 decimals before it is
added, and the same rounded terms are returned in `explain`, so the
explanation sums (before clamping) to exactly what produced the score.
"""

import logging
import math
from typing import List, Optional

from models import (
    ComponentScores,
    Contribution,
    FeatureExtraction,
    Prediction,
    ScoreResult,
    WeightOverrides,
)
from scoring_config import SCORING_MODEL, ScoringModel, WeightVector
from settings import PUBLIC_SETTINGS, PublicSettings

logger = logging.getLogger(__name__)


def _override(name: str, value: Optional[float], default: float) -> float:
    if value is None:
        return default
    if not math.isfinite(value) or value < 0:
        logger.warning("Ignoring invalid %s weight %r; using default %s.", name, value, default)
        return default
    return value


def resolve_weights(
    overrides: Optional[WeightOverrides],
    defaults: WeightVector = SCORING_MODEL.weights,
) -> WeightVector:
    """Apply per-component overrides to *defaults* and re-normalize to sum 1.

    Non-finite or negative overrides are ignored.  Weights are divided by
    the largest one before summing so huge overrides cannot overflow.  An
    all-zero (or otherwise non-positive) result discards the overrides
    and falls back to the normalized defaults.
    """
    o = overrides or WeightOverrides()
    weights = WeightVector(
        demography=_override("demography", o.demography, defaults.demography),
        traffic=_override("traffic", o.traffic, defaults.traffic),
        poi=_override("poi", o.poi, defaults.poi),
        competition=_override("competition", o.competition, defaults.competition),
        grid=_override("grid", o.grid, defaults.grid),
        accessibility=_override("access", o.access, defaults.accessibility),
    )

    largest = max(weights.as_dict().values())
    if not (math.isfinite(largest) and largest > 0):
        logger.warning("Received zero weights; reverting to defaults.")
        weights = defaults
        largest = max(weights.as_dict().values())

    weights = weights.scaled(largest)
    return weights.scaled(weights.total())


def predict_demand(
    components: ComponentScores,
    model: ScoringModel = SCORING_MODEL,
    public: PublicSettings = PUBLIC_SETTINGS,
) -> Prediction:
    """Linear sessions/day model; independent of the clamped score."""
    p = model.prediction
    sessions = (
        p.base_sessions
        + p.traffic_multiplier * (components.traffic / 100)
        + p.poi_multiplier * (components.poi / 100)
        - p.competition_multiplier * (components.competition / 100)
        + p.demography_multiplier * (components.demography / 100)
    )
    sessions = max(sessions, p.min_sessions)
    kwh = sessions * public.avg_kwh_per_session
    peak_kw = public.peak_kw_factor * kwh / 10.0

    return Prediction(
        sessions_per_day=round(sessions, 2),
        kwh_per_day=round(kwh, 2),
        peak_kw=round(peak_kw, 2),
    )


def score(
    extraction: FeatureExtraction,
    overrides: Optional[WeightOverrides] = None,
    model: ScoringModel = SCORING_MODEL,
    public: PublicSettings = PUBLIC_SETTINGS,
) -> ScoreResult:
    """Combine normalized components into the final score and explanation."""
    weights = resolve_weights(overrides, model.weights)
    c = extraction.components

    contributions: List[Contribution] = []
    total = 0.0

    def _add(feature: str, value: float):
        nonlocal total
        rounded = round(value, 2)
        contributions.append(Contribution(feature, rounded))
        total += rounded

    _add("demography", weights.demography * c.demography)
    _add("traffic_road_density", weights.traffic * c.traffic)
    _add("poi_dwell_match", weights.poi * c.poi)
    # Competition is inverted: less nearby charging supply leaves more demand.
    _add("competition_relief", weights.competition * (100 - c.competition))
    _add("grid_proxy", weights.grid * c.grid_proxy)
    _add("accessibility", weights.accessibility * c.accessibility)

    if extraction.competition_normalized > model.penalties.high_competition_threshold:
        _add("penalty_high_competition", -model.penalties.high_competition)

    if extraction.used_fallback:
        _add("penalty_fallback_uncertainty", -model.penalties.fallback_data)

    if extraction.free_parking:
        _add("bonus_free_parking", model.bonuses.free_parking_poi)

    final_score = round(min(max(total, 0.0), 100.0), 2)

    logger.info(
        "Scored site: %.2f (raw %.2f, fallback=%s, weights=%s)",
        final_score, total, extraction.used_fallback, weights.as_dict(),
    )

    return ScoreResult(
        score=final_score,
        prediction=predict_demand(c, model, public),
        explain=tuple(contributions),
        components=c,
        warnings=tuple(extraction.warnings),
    )
