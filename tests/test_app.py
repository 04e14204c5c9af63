"""Tests for the Flask HTTP surface in app.py.

The pipeline functions are patched at the app import site; these tests
check routing, the response envelope and error-to-status mapping.
"""

import math
from unittest.mock import patch

import pytest

from feature_engine import build_extraction
from osm_features import ProviderFailureError
from retry import RequestCancelled


class TestHealthAndConfig:
    @pytest.mark.parametrize("path", ["/healthz", "/health"])
    def test_healthz(self, client, path):
        resp = client.get(path)
        assert resp.status_code == 200
        assert resp.get_json()["status"] == "ok"

    def test_request_id_header(self, client):
        resp = client.get("/healthz")
        assert len(resp.headers["X-Request-ID"]) == 10

    def test_config(self, client):
        resp = client.get("/config")
        body = resp.get_json()
        assert resp.status_code == 200
        assert body["status"] == "success"
        item = body["responseItem"]
        assert item["useGoogleMaps"] is False
        assert item["googleMapsApiKey"] == ""
        assert item["defaultRadiusMeters"] == 1500
        assert set(item["weights"]) == {"demography", "traffic", "poi", "competition", "grid", "access"}
        assert math.isclose(sum(item["weights"].values()), 1.0)


class TestScoreEndpoint:
    @patch("app.extract")
    def test_success_envelope(self, mock_extract, client, request_body, snapshot):
        mock_extract.return_value = build_extraction(snapshot, None)

        resp = client.post("/score", json=request_body)

        assert resp.status_code == 200
        body = resp.get_json()
        assert body["status"] == "success"
        item = body["responseItem"]
        assert 0 <= item["score"] <= 100
        assert set(item["prediction"]) == {"sessions_per_day", "kwh_per_day", "peak_kw"}
        assert item["explain"][0]["feature"] == "demography"
        assert "Overpass fallback used" in item["warnings"]
        assert any(e["feature"] == "penalty_fallback_uncertainty" for e in item["explain"])

    @patch("app.extract")
    def test_weights_are_forwarded(self, mock_extract, client, request_body, snapshot):
        mock_extract.return_value = build_extraction(snapshot, {})
        request_body["weights"] = {"demography": 0, "traffic": 1, "poi": 0,
                                   "competition": 0, "grid": 0, "access": 0}

        item = client.post("/score", json=request_body).get_json()["responseItem"]

        assert item["score"] == item["components"]["traffic"]

    def test_invalid_polygon_is_400(self, client, request_body):
        request_body["polygon"]["coordinates"] = [[[0, 0], [1, 1], [0, 0]]]
        resp = client.post("/score", json=request_body)
        body = resp.get_json()
        assert resp.status_code == 400
        assert body["status"] == "error"
        assert body["field"] == "polygon"
        assert body["responseItem"] is None

    def test_missing_body_is_400(self, client):
        resp = client.post("/score", data="not json", content_type="text/plain")
        assert resp.status_code == 400

    def test_negative_weight_is_400(self, client, request_body):
        request_body["weights"] = {"traffic": -1}
        resp = client.post("/score", json=request_body)
        assert resp.status_code == 400
        assert resp.get_json()["field"] == "weights.traffic"

    def test_huge_integer_weight_is_400(self, client, request_body):
        request_body["weights"] = {"poi": 10 ** 400}
        resp = client.post("/score", json=request_body)
        assert resp.status_code == 400
        assert resp.get_json()["field"] == "weights.poi"

    def test_huge_integer_target_is_400(self, client, request_body):
        request_body["target_point"]["lat"] = 10 ** 400
        resp = client.post("/score", json=request_body)
        assert resp.status_code == 400
        assert resp.get_json()["field"] == "target_point"

    def test_huge_integer_polygon_is_400(self, client, request_body):
        request_body["polygon"]["coordinates"][0][1][0] = 10 ** 400
        resp = client.post("/score", json=request_body)
        assert resp.status_code == 400
        assert resp.get_json()["field"] == "polygon"

    @patch("app.extract", side_effect=ProviderFailureError("Spatial data provider unavailable, please retry shortly."))
    def test_provider_failure_is_502(self, mock_extract, client, request_body):
        resp = client.post("/score", json=request_body)
        assert resp.status_code == 502
        assert "provider unavailable" in resp.get_json()["message"]

    @patch("app.extract", side_effect=RequestCancelled("cancelled"))
    def test_cancelled_is_503(self, mock_extract, client, request_body):
        resp = client.post("/score", json=request_body)
        assert resp.status_code == 503

    @patch("app.extract", side_effect=KeyError("boom"))
    def test_unexpected_error_is_500(self, mock_extract, client, request_body):
        resp = client.post("/score", json=request_body)
        body = resp.get_json()
        assert resp.status_code == 500
        assert body["status"] == "error"
        assert "boom" not in body["message"]

    def test_get_not_allowed(self, client):
        resp = client.get("/score")
        assert resp.status_code == 405
        assert resp.get_json()["status"] == "error"


class TestFeaturesEndpoint:
    @patch("app.extract")
    def test_features_payload(self, mock_extract, client, request_body, snapshot):
        mock_extract.return_value = build_extraction(snapshot, {})

        resp = client.post("/features", json=request_body)

        assert resp.status_code == 200
        item = resp.get_json()["responseItem"]
        assert set(item) == {"components", "rawFeatures", "warnings"}
        assert item["components"]["accessibility"] == 80.0
        assert item["rawFeatures"]["road_density_weighted_km_per_km2"] == 3000.0

    @patch("app.extract")
    def test_cancel_event_passed_and_set_afterwards(self, mock_extract, client, request_body, snapshot):
        mock_extract.return_value = build_extraction(snapshot, {})
        client.post("/features", json=request_body)
        event = mock_extract.call_args.kwargs["cancel_event"]
        assert event.is_set()


class TestRateLimit:
    def test_score_is_rate_limited(self, request_body):
        from app import app, limiter

        app.config["TESTING"] = True
        limiter.enabled = True
        limiter.reset()
        with patch("app.extract", side_effect=ProviderFailureError("down")):
            with app.test_client() as c:
                statuses = [c.post("/score", json=request_body).status_code for _ in range(25)]
        limiter.reset()
        assert 429 in statuses
