import os
import logging
import threading
import uuid

from flask import Flask, request, jsonify, g
from flask_limiter import Limiter
from flask_limiter.util import get_remote_address
from werkzeug.middleware.proxy_fix import ProxyFix
from dotenv import load_dotenv

from request_trace import TraceContext, set_trace, clear_trace
from feature_engine import extract
from geo import point_in_polygon
from models import ValidationError, parse_score_request
from osm_features import ProviderFailureError
from retry import RequestCancelled
from scoring_config import SCORING_MODEL
from scoring_engine import score
from settings import PUBLIC_SETTINGS

load_dotenv()

# ---------------------------------------------------------------------------
# Sentry error tracking: gated on SENTRY_DSN; silent when unset (local dev)
# ---------------------------------------------------------------------------
_sentry_dsn = os.environ.get("SENTRY_DSN")
if _sentry_dsn:
    import sentry_sdk
    from sentry_sdk.integrations.flask import FlaskIntegration
    import requests.exceptions

    def _sentry_before_send(event, hint):
        """Demote expected failures to breadcrumbs; only unexpected errors become Sentry events."""
        exc_info = hint.get("exc_info")
        if exc_info:
            exc_type, exc_value, _ = exc_info
            msg = str(exc_value) if exc_value else ""
            # Overpass exhausted its retries
            if exc_type is not None and issubclass(exc_type, ProviderFailureError):
                sentry_sdk.add_breadcrumb(
                    category="overpass",
                    message=msg,
                    level="warning",
                )
                return None
            # Provider timeouts / request failures
            if exc_type is not None and issubclass(exc_type, requests.exceptions.RequestException):
                sentry_sdk.add_breadcrumb(
                    category="provider",
                    message=msg,
                    level="warning",
                )
                return None
            if exc_type is not None and issubclass(exc_type, (ValidationError, RequestCancelled)):
                return None
        return event

    sentry_sdk.init(
        dsn=_sentry_dsn,
        integrations=[FlaskIntegration()],
        traces_sample_rate=0.0,
        release=os.environ.get("RAILWAY_GIT_COMMIT_SHA"),
        environment=os.environ.get("RAILWAY_ENVIRONMENT", "production"),
        before_send=_sentry_before_send,
    )

app = Flask(__name__)

# Proxy fix: the service runs behind a reverse proxy that sets
# X-Forwarded-For; Flask-Limiter keys on the real client IP.
app.wsgi_app = ProxyFix(app.wsgi_app, x_for=1)

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Rate limiting: every /score and /features call costs an Overpass query
# (and up to six Places calls).  In-memory storage is per-process.
# ---------------------------------------------------------------------------
RATE_LIMIT_DEFAULT = os.environ.get("RATE_LIMIT_DEFAULT", "60/minute")
RATE_LIMIT_SCORE = os.environ.get("RATE_LIMIT_SCORE", "20/minute")

limiter = Limiter(
    get_remote_address,
    app=app,
    default_limits=[RATE_LIMIT_DEFAULT],
    storage_uri="memory://",
)
logging.getLogger("flask-limiter").setLevel(logging.WARNING)


# ---------------------------------------------------------------------------
# Request ID middleware: every request gets a unique ID for tracing
# ---------------------------------------------------------------------------
def _generate_request_id():
    return uuid.uuid4().hex[:10]


@app.before_request
def _set_request_context():
    g.request_id = _generate_request_id()


@app.after_request
def _after_request(response):
    response.headers["X-Request-ID"] = getattr(g, "request_id", "unknown")
    return response


# ---------------------------------------------------------------------------
# Response envelope
# ---------------------------------------------------------------------------

def _success(item, message=""):
    return jsonify({"status": "success", "responseItem": item, "message": message})


def _error(message, status_code, field=None):
    body = {
        "status": "error",
        "responseItem": None,
        "message": message,
        "request_id": getattr(g, "request_id", "unknown"),
    }
    if field:
        body["field"] = field
    return jsonify(body), status_code


def _run_pipeline(stage_fn):
    """Parse the body, run *stage_fn(parsed, cancel_event)* under a trace, map errors."""
    request_id = getattr(g, "request_id", "unknown")
    payload = request.get_json(silent=True)

    trace_ctx = TraceContext(trace_id=request_id)
    set_trace(trace_ctx)
    cancel_event = threading.Event()
    try:
        parsed = parse_score_request(payload)
        if not point_in_polygon(parsed.target_point.as_tuple(), parsed.polygon.ring):
            logger.warning("[%s] Target point lies outside the polygon", request_id)
        item = stage_fn(parsed, cancel_event)
        trace_ctx.log_summary()
        return _success(item)
    except ValidationError as e:
        logger.info("[%s] Rejected request: %s (%s)", request_id, e.message, e.field)
        return _error(e.message, 400, field=e.field)
    except ProviderFailureError as e:
        trace_ctx.log_summary()
        logger.error("[%s] Provider failure: %s", request_id, e)
        return _error(str(e), 502)
    except RequestCancelled:
        trace_ctx.log_summary()
        logger.warning("[%s] Request cancelled", request_id)
        return _error("Request was cancelled before scoring completed.", 503)
    except Exception:
        trace_ctx.log_summary()
        logger.exception("[%s] Unexpected error while scoring site", request_id)
        return _error("Internal error while scoring site.", 500)
    finally:
        cancel_event.set()
        clear_trace()


# ---------------------------------------------------------------------------
# Routes
# ---------------------------------------------------------------------------

@app.route("/health")
@app.route("/healthz")
@limiter.exempt
def healthz():
    """Lightweight health-check endpoint for monitoring."""
    return jsonify({"status": "ok", "model_version": SCORING_MODEL.version})


@app.route("/config")
def public_config():
    """Client-side settings for the map UI."""
    return _success({
        "useGoogleMaps": PUBLIC_SETTINGS.use_google_maps,
        "googleMapsApiKey": PUBLIC_SETTINGS.google_maps_frontend_api_key if PUBLIC_SETTINGS.use_google_maps else "",
        "defaultRadiusMeters": PUBLIC_SETTINGS.default_radius_meters,
        "weights": SCORING_MODEL.weights.as_dict(),
    })


@app.route("/features", methods=["POST"])
@limiter.limit(RATE_LIMIT_SCORE)
def features():
    """Normalized components, raw proxies and warnings for a site."""
    def _stage(parsed, cancel_event):
        extraction = extract(parsed.polygon, parsed.target_point, cancel_event=cancel_event)
        return extraction.to_dict()

    return _run_pipeline(_stage)


@app.route("/score", methods=["POST"])
@limiter.limit(RATE_LIMIT_SCORE)
def score_site():
    """Composite score, explanation and demand prediction for a site."""
    def _stage(parsed, cancel_event):
        extraction = extract(parsed.polygon, parsed.target_point, cancel_event=cancel_event)
        result = score(extraction, parsed.weights)
        logger.info(
            "[%s] Site scored %.2f (%.2f sessions/day)",
            g.request_id, result.score, result.prediction.sessions_per_day,
        )
        return result.to_dict()

    return _run_pipeline(_stage)


# ---------------------------------------------------------------------------
# Error handlers
# ---------------------------------------------------------------------------

@app.errorhandler(429)
def rate_limit_exceeded(e):
    return _error("Too many requests. Please wait and try again.", 429)


@app.errorhandler(404)
def not_found(e):
    return _error("Not found.", 404)


@app.errorhandler(405)
def method_not_allowed(e):
    return _error("Method not allowed.", 405)


if __name__ == "__main__":
    port = int(os.environ.get("PORT", 5001))
    debug = os.environ.get("FLASK_DEBUG", "0") == "1"
    app.run(host="0.0.0.0", port=port, debug=debug)
