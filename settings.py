"""
Deployment settings, read once from the environment at import time.

For local development copy .env.example to .env; load_dotenv() picks it
up.  Scoring constants do not belong here; see scoring_config.py.
"""

import logging
import os
from dataclasses import dataclass

from dotenv import load_dotenv

load_dotenv()

logger = logging.getLogger(__name__)

# Floor for per-call provider timeouts.  Overpass routinely needs a few
# seconds even for small queries.
MIN_PROVIDER_TIMEOUT_SECONDS = 5


def _env_float(name: str, default: float) -> float:
    raw = os.environ.get(name)
    if raw is None or not raw.strip():
        return default
    try:
        return float(raw)
    except ValueError:
        logger.warning("Ignoring non-numeric %s=%r, using %s", name, raw, default)
        return default


def _env_bool(name: str, default: bool = False) -> bool:
    raw = os.environ.get(name)
    if raw is None:
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


@dataclass(frozen=True)
class ProviderSettings:
    overpass_endpoint: str = "https://overpass-api.de/api/interpreter"
    enable_google_places: bool = False
    google_places_api_key: str = ""
    request_timeout_seconds: float = 25.0
    user_agent: str = "EVSiteScoring/1.0"

    @property
    def effective_timeout(self) -> float:
        return max(MIN_PROVIDER_TIMEOUT_SECONDS, self.request_timeout_seconds)

    @property
    def google_places_configured(self) -> bool:
        return self.enable_google_places and bool(self.google_places_api_key.strip())


@dataclass(frozen=True)
class PublicSettings:
    default_radius_meters: int = 1500
    avg_kwh_per_session: float = 18.0
    peak_kw_factor: float = 0.6
    google_maps_frontend_api_key: str = ""

    @property
    def use_google_maps(self) -> bool:
        return bool(self.google_maps_frontend_api_key.strip())


def load_provider_settings() -> ProviderSettings:
    return ProviderSettings(
        overpass_endpoint=os.environ.get(
            "OVERPASS_BASE_URL",
            "https://overpass-api.de/api/interpreter",
        ),
        enable_google_places=_env_bool("ENABLE_GOOGLE_PLACES"),
        google_places_api_key=os.environ.get("GOOGLE_PLACES_API_KEY", ""),
        request_timeout_seconds=_env_float("PROVIDER_TIMEOUT_SECONDS", 25.0),
    )


def load_public_settings() -> PublicSettings:
    return PublicSettings(
        default_radius_meters=int(_env_float("DEFAULT_RADIUS_METERS", 1500)),
        avg_kwh_per_session=_env_float("AVG_KWH_PER_SESSION", 18.0),
        peak_kw_factor=_env_float("PEAK_KW_FACTOR", 0.6),
        google_maps_frontend_api_key=os.environ.get("GOOGLE_MAPS_FRONTEND_API_KEY", ""),
    )


# Module-level singletons, treated as immutable for the process lifetime.
PROVIDER_SETTINGS = load_provider_settings()
PUBLIC_SETTINGS = load_public_settings()
