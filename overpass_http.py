"""
Coordinated Overpass API HTTP layer.

All Overpass HTTP requests in the application go through this module.
It provides:
- Process-local rate limiting: 1 request/second minimum spacing
- Thread-safe request execution (no shared requests.Session)
- Error classification: 429, 5xx, timeouts and server-side body errors
  are transient; other 4xx, unparseable bodies and connection failures
  are not
- Retry with exponential backoff on transient errors via retry.py
  (3 attempts, 0.5s/1s), abandoned promptly on cancellation
- request_trace integration for observability

Rate limiting is per-process.  When self-hosting Overpass, set the
OVERPASS_BASE_URL env var and lower MIN_SPACING.
"""

import logging
import threading
import time
from typing import Any, Callable, Dict, Optional

import requests

from request_trace import get_trace
from retry import DEFAULT_POLICY, RetryPolicy, call_with_retry
from settings import PROVIDER_SETTINGS, ProviderSettings

logger = logging.getLogger(__name__)


class OverpassQueryError(Exception):
    """Raised when Overpass fails to answer a query.

    *retryable* marks server-side and timeout failures worth another attempt.
    """

    def __init__(self, message: str, retryable: bool = False, status_code: int = 0):
        super().__init__(message)
        self.retryable = retryable
        self.status_code = status_code


class OverpassRateLimitError(OverpassQueryError):
    """Raised when Overpass returns 429 or rate-limit indicators."""

    def __init__(self, message: str, status_code: int = 429):
        super().__init__(message, retryable=True, status_code=status_code)


def is_transient(exc: BaseException) -> bool:
    """Retry predicate: rate limits, 5xx and timeouts only."""
    return isinstance(exc, OverpassQueryError) and exc.retryable


# Substrings in osm3s.remark that indicate a server-side failure even
# though the HTTP status was 200.
_SERVER_ERROR_REMARKS = ("runtime error", "timed out", "out of memory")


class OverpassHTTPClient:
    MIN_SPACING = 1.0  # seconds between HTTP requests

    def __init__(
        self,
        settings: ProviderSettings = PROVIDER_SETTINGS,
        policy: RetryPolicy = DEFAULT_POLICY,
        sleep: Optional[Callable[[float], None]] = None,
    ):
        self._lock = threading.Lock()
        self._last_request_time = 0.0
        self.base_url = settings.overpass_endpoint
        self.timeout = settings.effective_timeout
        self.user_agent = settings.user_agent
        self.policy = policy
        self._sleep = sleep

    def query(
        self,
        overpass_ql: str,
        caller: str = "unknown",
        cancel_event: Optional[threading.Event] = None,
    ) -> Dict[str, Any]:
        """
        Execute an Overpass QL query with rate-limited, retried HTTP.

        Args:
            overpass_ql: The Overpass QL query string.
            caller: Identifier for trace attribution.
            cancel_event: Aborts pending retries when set.

        Returns:
            Parsed JSON response dict from Overpass.

        Raises:
            OverpassRateLimitError: Still rate limited after the last attempt.
            OverpassQueryError: Non-retryable failure, or a transient one
                that persisted through every attempt.
            retry.RequestCancelled: If *cancel_event* fires.
        """
        attempt_counter = {"n": 0}

        def _attempt() -> Dict[str, Any]:
            attempt_counter["n"] += 1
            return self._do_request(overpass_ql, caller, attempt_counter["n"])

        return call_with_retry(
            _attempt,
            is_transient,
            policy=self.policy,
            sleep=self._sleep,
            cancel_event=cancel_event,
            caller=caller,
        )

    def _do_request(self, overpass_ql: str, caller: str, attempt: int) -> Dict[str, Any]:
        """Make a single rate-limited HTTP request to Overpass."""
        # Enforce minimum spacing
        with self._lock:
            now = time.monotonic()
            elapsed_since_last = now - self._last_request_time
            if elapsed_since_last < self.MIN_SPACING:
                time.sleep(self.MIN_SPACING - elapsed_since_last)
            self._last_request_time = time.monotonic()

        start = time.monotonic()
        trace = get_trace()

        def _record(status_code: int, provider_status: str = ""):
            if trace:
                trace.record_api_call(
                    service="overpass",
                    endpoint=caller,
                    elapsed_ms=int((time.monotonic() - start) * 1000),
                    status_code=status_code,
                    provider_status=provider_status,
                    attempt=attempt,
                )

        # Fresh session per request (thread-safe, no shared state)
        session = requests.Session()
        session.trust_env = False
        try:
            resp = session.post(
                self.base_url,
                data={"data": overpass_ql},
                headers={"User-Agent": self.user_agent},
                timeout=self.timeout,
            )
        except requests.exceptions.Timeout:
            _record(0, "timeout")
            raise OverpassQueryError(
                f"Overpass request timeout after {self.timeout}s [caller={caller}]",
                retryable=True,
            )
        except requests.exceptions.RequestException as e:
            _record(0, "exception")
            raise OverpassQueryError(
                f"Overpass request failed: {e} [caller={caller}]"
            ) from e
        finally:
            session.close()

        status_code = resp.status_code
        if status_code == 429:
            _record(429, "rate_limit")
            raise OverpassRateLimitError(
                f"Overpass 429 Too Many Requests [caller={caller}]"
            )
        if status_code >= 500:
            _record(status_code, "server_error")
            raise OverpassQueryError(
                f"Overpass HTTP {status_code} server error [caller={caller}]",
                retryable=True,
                status_code=status_code,
            )
        if status_code >= 400:
            _record(status_code, "http_error")
            raise OverpassQueryError(
                f"Overpass HTTP {status_code} [caller={caller}]",
                status_code=status_code,
            )

        try:
            data = resp.json()
        except ValueError:
            _record(status_code, "parse_error")
            raise OverpassQueryError(
                f"Overpass returned non-JSON response (HTTP {status_code}) [caller={caller}]",
                status_code=status_code,
            )

        # Overpass may put errors in osm3s.remark or top-level remark
        remark = ""
        if isinstance(data, dict):
            osm3s = data.get("osm3s", {}) or {}
            remark = str(osm3s.get("remark") or data.get("remark") or "")
        remark_lower = remark.lower()

        if "too many requests" in remark_lower:
            _record(status_code, "rate_limit")
            raise OverpassRateLimitError(
                f"Overpass rate limit in response body [caller={caller}]",
                status_code=status_code,
            )
        if any(indicator in remark_lower for indicator in _SERVER_ERROR_REMARKS):
            _record(status_code, "body_error")
            raise OverpassQueryError(
                f"Overpass server error in response body: {remark[:100]} [caller={caller}]",
                retryable=True,
                status_code=status_code,
            )

        _record(status_code)
        return data


# Module-level singleton: all callers in this process share one instance
_client = OverpassHTTPClient()


def overpass_query(
    overpass_ql: str,
    caller: str = "unknown",
    cancel_event: Optional[threading.Event] = None,
) -> Dict[str, Any]:
    """Module-level convenience function. All Overpass calls should use this."""
    return _client.query(overpass_ql, caller=caller, cancel_event=cancel_event)
