"""Shared fixtures for the site scoring test suite.

Pins provider settings before anything imports settings.py (it reads the
environment once, at import time) and provides a Flask test client.
"""

import os

import pytest

# Settings are loaded at import time; keep tests off the real providers.
os.environ["ENABLE_GOOGLE_PLACES"] = "false"
os.environ["GOOGLE_PLACES_API_KEY"] = ""
os.environ["GOOGLE_MAPS_FRONTEND_API_KEY"] = ""
os.environ.pop("SENTRY_DSN", None)

from app import app, limiter  # noqa: E402
from models import Polygon, RawFeatureSnapshot, TargetPoint  # noqa: E402
from request_trace import clear_trace  # noqa: E402


@pytest.fixture(autouse=True)
def _no_leaked_trace():
    clear_trace()
    yield
    clear_trace()


@pytest.fixture()
def client():
    """Flask test client with rate limiting disabled."""
    app.config["TESTING"] = True
    limiter.enabled = False
    with app.test_client() as c:
        yield c
    limiter.enabled = True


# Roughly 1.1 km x 1.1 km square in central Amsterdam.
SQUARE_RING = (
    (4.890, 52.370),
    (4.906, 52.370),
    (4.906, 52.380),
    (4.890, 52.380),
    (4.890, 52.370),
)


@pytest.fixture()
def polygon():
    return Polygon(ring=SQUARE_RING)


@pytest.fixture()
def target():
    return TargetPoint(lat=52.375, lon=4.898)


@pytest.fixture()
def request_body():
    return {
        "polygon": {
            "type": "Polygon",
            "coordinates": [[list(c) for c in SQUARE_RING]],
        },
        "target_point": {"lat": 52.375, "lon": 4.898},
    }


@pytest.fixture()
def snapshot():
    """A mid-range suburban snapshot with one major road 400 m away."""
    return RawFeatureSnapshot(
        poi_counts={"supermarket": 4, "office": 9},
        poi_dwell_score=36.0,
        road_density=3000.0,
        competition_gravity=0.05,
        demography_proxy=25.0,
        grid_proxy=6.0,
        accessibility_meters=400.0,
        residential_density=0.2,
        free_parking_bonus=0,
        high_competition_stations=0,
        element_count=120,
    )
