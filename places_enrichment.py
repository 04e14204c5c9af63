"""
Google Places POI enrichment (optional).

When ENABLE_GOOGLE_PLACES=true and GOOGLE_PLACES_API_KEY is set, issues
one Nearby Search per POI category and returns a category -> count map
that overrides the Overpass counts for those categories.

All-or-nothing: if the provider is unconfigured or ANY category call
fails (HTTP error, timeout, quota status, malformed body), the whole
attempt is reported as unavailable (None).  Mixing Google counts for
some categories with Overpass counts for others would bias the POI
score toward whichever source happens to count more.

Nearby Search returns at most 20 results per page and we do not follow
next_page_token, so counts saturate at 20 per category.
"""

import logging
import threading
import time
from typing import Dict, List, Optional, Tuple

import requests

from models import TargetPoint
from request_trace import get_trace
from retry import RequestCancelled
from scoring_config import POI_CATEGORIES
from settings import PROVIDER_SETTINGS, ProviderSettings

logger = logging.getLogger(__name__)

# category -> (Places type, optional keyword)
POI_REQUESTS: Tuple[Tuple[str, str, Optional[str]], ...] = (
    ("mall", "shopping_mall", None),
    ("supermarket", "supermarket", None),
    ("office", "point_of_interest", "office"),
    ("school", "school", None),
    ("hospital", "hospital", None),
    ("entertainment", "movie_theater", None),
)

# Enrichment replaces Overpass counts, so it must cover the same categories.
if tuple(c for c, _, _ in POI_REQUESTS) != POI_CATEGORIES:
    raise ValueError("POI_REQUESTS categories do not match the OSM POI rules")


class PlacesAPIError(Exception):
    """Google Places returned an error status or an unusable response."""

    pass


class GooglePlacesClient:
    """Client for the Places Nearby Search endpoint."""

    def __init__(self, api_key: str, timeout: float):
        self.api_key = api_key
        self.timeout = timeout
        self.base_url = "https://maps.googleapis.com/maps/api"
        self.session = requests.Session()
        self.session.trust_env = False

    def _traced_get(self, endpoint_name: str, url: str, params: dict) -> dict:
        """GET request with automatic trace recording."""
        t0 = time.time()
        response = self.session.get(url, params=params, timeout=self.timeout)
        elapsed_ms = int((time.time() - t0) * 1000)
        try:
            data = response.json()
        except ValueError:
            data = {}
        provider_status = data.get("status", "") if isinstance(data, dict) else ""
        trace = get_trace()
        if trace:
            trace.record_api_call(
                service="google_places",
                endpoint=endpoint_name,
                elapsed_ms=elapsed_ms,
                status_code=response.status_code,
                provider_status=provider_status,
            )
        response.raise_for_status()
        if not isinstance(data, dict):
            raise PlacesAPIError(f"Places API returned non-object body for {endpoint_name}")
        return data

    def places_nearby(
        self,
        lat: float,
        lng: float,
        place_type: str,
        radius_meters: int,
        keyword: Optional[str] = None,
    ) -> List[Dict]:
        """Search for places near a location"""
        url = f"{self.base_url}/place/nearbysearch/json"
        params = {
            "location": f"{lat},{lng}",
            "radius": radius_meters,
            "type": place_type,
            "key": self.api_key,
        }
        if keyword:
            params["keyword"] = keyword

        data = self._traced_get(f"places_nearby:{place_type}", url, params)

        if data.get("status") not in ("OK", "ZERO_RESULTS"):
            raise PlacesAPIError(f"Places API failed: {data.get('status')}")

        return data.get("results", [])

    def close(self):
        self.session.close()


def try_fetch_poi_counts(
    target: TargetPoint,
    radius_m: int,
    settings: ProviderSettings = PROVIDER_SETTINGS,
    cancel_event: Optional[threading.Event] = None,
) -> Optional[Dict[str, int]]:
    """Per-category POI counts from Google Places, or None when unavailable.

    Never raises for provider problems; only RequestCancelled propagates.
    """
    if not settings.google_places_configured:
        logger.debug("Google Places not configured; skipping enrichment")
        return None

    client = GooglePlacesClient(settings.google_places_api_key, settings.effective_timeout)
    counts: Dict[str, int] = {}
    try:
        for category, place_type, keyword in POI_REQUESTS:
            if cancel_event is not None and cancel_event.is_set():
                raise RequestCancelled("Request cancelled during Places enrichment")
            try:
                results = client.places_nearby(
                    target.lat, target.lon, place_type, radius_m, keyword=keyword,
                )
            except Exception as e:
                logger.warning(
                    "Google Places query failed for category %s (%s); using Overpass counts only",
                    category, e,
                )
                return None
            counts[category] = len(results)
    finally:
        client.close()

    return counts
