"""Unit tests for settings.py: environment parsing."""

from unittest.mock import patch

from settings import (
    MIN_PROVIDER_TIMEOUT_SECONDS,
    ProviderSettings,
    PublicSettings,
    load_provider_settings,
    load_public_settings,
)


class TestProviderSettings:
    def test_defaults(self):
        with patch.dict("os.environ", {}, clear=True):
            s = load_provider_settings()
        assert s.overpass_endpoint == "https://overpass-api.de/api/interpreter"
        assert s.enable_google_places is False
        assert s.request_timeout_seconds == 25.0

    def test_env_overrides(self):
        env = {
            "OVERPASS_BASE_URL": "http://localhost:12345/api/interpreter",
            "ENABLE_GOOGLE_PLACES": "True",
            "GOOGLE_PLACES_API_KEY": "abc",
            "PROVIDER_TIMEOUT_SECONDS": "12",
        }
        with patch.dict("os.environ", env, clear=True):
            s = load_provider_settings()
        assert s.overpass_endpoint == "http://localhost:12345/api/interpreter"
        assert s.google_places_configured is True
        assert s.effective_timeout == 12.0

    def test_timeout_floor(self):
        s = ProviderSettings(request_timeout_seconds=1)
        assert s.effective_timeout == MIN_PROVIDER_TIMEOUT_SECONDS

    def test_non_numeric_timeout_uses_default(self):
        with patch.dict("os.environ", {"PROVIDER_TIMEOUT_SECONDS": "soon"}, clear=True):
            assert load_provider_settings().request_timeout_seconds == 25.0


class TestPublicSettings:
    def test_defaults(self):
        with patch.dict("os.environ", {}, clear=True):
            s = load_public_settings()
        assert s.default_radius_meters == 1500
        assert s.avg_kwh_per_session == 18.0
        assert s.peak_kw_factor == 0.6
        assert s.use_google_maps is False

    def test_frontend_key_enables_google_maps(self):
        assert PublicSettings(google_maps_frontend_api_key="key").use_google_maps is True
        assert PublicSettings(google_maps_frontend_api_key="  ").use_google_maps is False
