"""Unit tests for scoring_engine.py: weights, contributions, clamping, prediction."""

import dataclasses
from types import MappingProxyType

import pytest

from models import ComponentScores, FeatureExtraction, WeightOverrides
from scoring_config import SCORING_MODEL, PredictionModel, WeightVector
from scoring_engine import predict_demand, resolve_weights, score
from settings import PublicSettings

PUBLIC = PublicSettings()


def _extraction(
    demography=50.0,
    traffic=50.0,
    poi=40.0,
    competition=20.0,
    grid_proxy=20.0,
    accessibility=80.0,
    used_fallback=False,
    free_parking=False,
    warnings=(),
):
    return FeatureExtraction(
        components=ComponentScores(
            demography=demography,
            traffic=traffic,
            poi=poi,
            competition=competition,
            grid_proxy=grid_proxy,
            accessibility=accessibility,
        ),
        raw_features=MappingProxyType({}),
        warnings=tuple(warnings),
        used_fallback=used_fallback,
        free_parking=free_parking,
        competition_raw=0.0,
        competition_normalized=competition,
        poi_score=poi,
    )


def _contributions(result):
    return {c.feature: c.contribution for c in result.explain}


# =========================================================================
# Weight resolution
# =========================================================================

class TestResolveWeights:
    def test_defaults_sum_to_one(self):
        w = resolve_weights(None)
        assert w.total() == pytest.approx(1.0)
        assert w.demography == pytest.approx(0.2)

    def test_partial_override_is_renormalized(self):
        w = resolve_weights(WeightOverrides(demography=1.0))
        assert w.total() == pytest.approx(1.0)
        assert w.demography == pytest.approx(1.0 / 1.8)
        assert w.traffic == pytest.approx(0.2 / 1.8)

    def test_all_zero_reverts_to_defaults(self, caplog):
        zeros = WeightOverrides(**{name: 0.0 for name in WeightOverrides.FIELDS})
        with caplog.at_level("WARNING"):
            w = resolve_weights(zeros)
        assert w.as_dict() == pytest.approx(SCORING_MODEL.weights.as_dict())
        assert "zero weights" in caplog.text

    def test_access_override_maps_to_accessibility(self):
        w = resolve_weights(WeightOverrides(access=0.9))
        assert w.accessibility == pytest.approx(0.9 / 1.8)

    def test_unnormalized_defaults_are_scaled(self):
        w = resolve_weights(None, WeightVector(1, 1, 1, 1, 1, 1))
        assert w.poi == pytest.approx(1 / 6)

    def test_huge_overrides_do_not_overflow(self):
        w = resolve_weights(WeightOverrides(demography=1e308, traffic=1e308))
        assert w.total() == pytest.approx(1.0)
        assert w.demography == pytest.approx(0.5)
        assert w.traffic == pytest.approx(0.5)
        assert w.poi == pytest.approx(0.0)

    @pytest.mark.parametrize("bad", [float("nan"), float("inf"), float("-inf"), -1.0])
    def test_invalid_override_is_ignored(self, bad, caplog):
        with caplog.at_level("WARNING"):
            w = resolve_weights(WeightOverrides(demography=bad))
        assert w.as_dict() == pytest.approx(SCORING_MODEL.weights.as_dict())
        assert "Ignoring invalid demography weight" in caplog.text

    def test_invalid_override_keeps_valid_ones(self):
        w = resolve_weights(WeightOverrides(demography=float("nan"), traffic=1.0))
        assert w.traffic == pytest.approx(1.0 / 1.8)
        assert w.demography == pytest.approx(0.2 / 1.8)

    def test_all_invalid_or_zero_reverts_to_defaults(self):
        overrides = WeightOverrides(**{name: 0.0 for name in WeightOverrides.FIELDS})
        overrides = dataclasses.replace(overrides, demography=float("nan"), traffic=-3.0)
        w = resolve_weights(overrides, WeightVector(0, 0, 0, 0, 0, 1))
        assert w.accessibility == pytest.approx(1.0)


# =========================================================================
# Score and explanation
# =========================================================================

class TestScore:
    def test_weighted_sum(self):
        result = score(_extraction())
        assert result.score == pytest.approx(53.0)
        contrib = _contributions(result)
        assert contrib["demography"] == pytest.approx(10.0)
        assert contrib["traffic_road_density"] == pytest.approx(10.0)
        assert contrib["poi_dwell_match"] == pytest.approx(6.0)
        assert contrib["competition_relief"] == pytest.approx(16.0)
        assert contrib["grid_proxy"] == pytest.approx(3.0)
        assert contrib["accessibility"] == pytest.approx(8.0)

    def test_explain_order(self):
        result = score(_extraction(competition=80.0, used_fallback=True, free_parking=True))
        assert [c.feature for c in result.explain] == [
            "demography",
            "traffic_road_density",
            "poi_dwell_match",
            "competition_relief",
            "grid_proxy",
            "accessibility",
            "penalty_high_competition",
            "penalty_fallback_uncertainty",
            "bonus_free_parking",
        ]

    def test_contributions_sum_to_score(self):
        result = score(_extraction(demography=33.33, traffic=71.9, poi=12.4, used_fallback=True))
        total = sum(c.contribution for c in result.explain)
        assert result.score == pytest.approx(round(total, 2))

    def test_high_competition_penalty(self):
        contrib = _contributions(score(_extraction(competition=80.0)))
        assert contrib["penalty_high_competition"] == -10.0

    def test_threshold_is_exclusive(self):
        contrib = _contributions(score(_extraction(competition=75.0)))
        assert "penalty_high_competition" not in contrib

    def test_fallback_penalty(self):
        base = score(_extraction())
        degraded = score(_extraction(used_fallback=True))
        assert _contributions(degraded)["penalty_fallback_uncertainty"] == -3.0
        assert degraded.score == pytest.approx(base.score - 3.0)

    def test_free_parking_bonus(self):
        contrib = _contributions(score(_extraction(free_parking=True)))
        assert contrib["bonus_free_parking"] == 6.0

    def test_clamped_at_100(self):
        ideal = _extraction(
            demography=100, traffic=100, poi=100, competition=0,
            grid_proxy=100, accessibility=100, free_parking=True,
        )
        result = score(ideal)
        assert result.score == 100.0
        assert sum(c.contribution for c in result.explain) > 100.0

    def test_clamped_at_0(self):
        worst = _extraction(
            demography=0, traffic=0, poi=0, competition=100,
            grid_proxy=0, accessibility=0, used_fallback=True,
        )
        assert score(worst).score == 0.0

    def test_zero_weight_override_scores_like_defaults(self):
        zeros = WeightOverrides(**{name: 0.0 for name in WeightOverrides.FIELDS})
        assert score(_extraction(), zeros) == score(_extraction())

    def test_nan_override_scores_like_defaults(self):
        result = score(_extraction(), WeightOverrides(demography=float("nan")))
        assert result.score == score(_extraction()).score

    def test_huge_overrides_keep_score_finite(self):
        result = score(_extraction(), WeightOverrides(demography=1e308, traffic=1e308))
        # Half demography (50) and half traffic (50)
        assert result.score == pytest.approx(50.0)
        assert _contributions(result)["demography"] == pytest.approx(25.0)

    def test_override_changes_score(self):
        only_traffic = WeightOverrides(demography=0, traffic=1, poi=0, competition=0, grid=0, access=0)
        result = score(_extraction(traffic=72.5), only_traffic)
        assert result.score == pytest.approx(72.5)

    def test_warnings_and_components_pass_through(self):
        ext = _extraction(warnings=("Overpass fallback used",))
        result = score(ext)
        assert result.warnings == ("Overpass fallback used",)
        assert result.components == ext.components

    def test_idempotent(self):
        ext = _extraction(used_fallback=True, competition=90.0)
        assert score(ext) == score(ext)

    def test_to_dict_shape(self):
        d = score(_extraction()).to_dict()
        assert set(d) == {"score", "prediction", "explain", "components", "warnings"}
        assert set(d["prediction"]) == {"sessions_per_day", "kwh_per_day", "peak_kw"}
        assert d["explain"][0] == {"feature": "demography", "contribution": 10.0}
        assert "grid_proxy" in d["components"]


# =========================================================================
# Demand prediction
# =========================================================================

class TestPrediction:
    def test_linear_model(self):
        p = predict_demand(_extraction().components, public=PUBLIC)
        # 12 + 0.3*0.5 + 0.25*0.4 - 0.35*0.2 + 0.28*0.5
        assert p.sessions_per_day == pytest.approx(12.32)
        assert p.kwh_per_day == pytest.approx(221.76)
        assert p.peak_kw == pytest.approx(13.31)

    def test_floor(self):
        model = dataclasses.replace(SCORING_MODEL, prediction=PredictionModel(base_sessions=0.0))
        components = _extraction(
            demography=0, traffic=0, poi=0, competition=100, grid_proxy=0, accessibility=0,
        ).components
        p = predict_demand(components, model, PUBLIC)
        assert p.sessions_per_day == 1.5
        assert p.kwh_per_day == 27.0
        assert p.peak_kw == pytest.approx(1.62)

    def test_settings_drive_energy(self):
        public = PublicSettings(avg_kwh_per_session=10.0, peak_kw_factor=1.0)
        p = predict_demand(_extraction().components, public=public)
        assert p.kwh_per_day == pytest.approx(123.2)
        assert p.peak_kw == pytest.approx(12.32)

    def test_prediction_ignores_clamping(self):
        ideal = _extraction(demography=100, traffic=100, poi=100, competition=0, free_parking=True)
        result = score(ideal)
        assert result.prediction.sessions_per_day == pytest.approx(12 + 0.3 + 0.25 + 0.28)
