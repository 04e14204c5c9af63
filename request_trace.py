"""
Request-scoped tracing for site-scoring requests.

Provides a thread-local TraceContext that records:
  - Per-stage timing (fallback_snapshot, poi_enrichment, normalize, score)
  - Per-outbound-call timing (Overpass, Google Places) with provider status
  - End-of-request summary (total elapsed, API call count, outcome)

Usage:
    from request_trace import TraceContext, get_trace, set_trace, clear_trace

    # In the request handler (app.py):
    ctx = TraceContext(trace_id=request_id)
    set_trace(ctx)
    ...
    ctx.log_summary()
    clear_trace()

    # In provider clients:
    trace = get_trace()
    if trace:
        trace.record_api_call(...)

Worker threads do not inherit thread-locals, so code that fans out to a
ThreadPoolExecutor must call set_trace(parent) inside the worker (see
run_stage_in_thread).
"""

import logging
import threading
import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

logger = logging.getLogger(__name__)


# =============================================================================
# Data classes for trace records
# =============================================================================

@dataclass
class APICallRecord:
    """One outbound HTTP call."""
    service: str          # "overpass" | "google_places"
    endpoint: str         # "interpreter", "nearbysearch:mall", ...
    elapsed_ms: int
    status_code: int
    provider_status: str = ""   # e.g. "rate_limit", Google "ZERO_RESULTS"
    attempt: int = 1
    stage: str = ""


@dataclass
class StageRecord:
    """One pipeline stage."""
    stage_name: str
    elapsed_ms: int = 0
    api_calls_made: int = 0
    error_class: str = ""
    error_message: str = ""


# =============================================================================
# Trace context
# =============================================================================

@dataclass
class TraceContext:
    """Accumulates timing data for a single scoring request."""
    trace_id: str
    request_start: float = field(default_factory=time.time)
    stages: List[StageRecord] = field(default_factory=list)
    api_calls: List[APICallRecord] = field(default_factory=list)
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False)

    def record_stage(
        self,
        stage_name: str,
        start_ts: float,
        end_ts: float,
        error_class: str = "",
        error_message: str = "",
    ):
        with self._lock:
            api_in_stage = sum(1 for c in self.api_calls if c.stage == stage_name)
            rec = StageRecord(
                stage_name=stage_name,
                elapsed_ms=int((end_ts - start_ts) * 1000),
                api_calls_made=api_in_stage,
                error_class=error_class,
                error_message=error_message,
            )
            self.stages.append(rec)

        status = "ERR" if error_class else "OK"
        err_info = f" err={error_class}: {error_message}" if error_class else ""
        logger.info(
            "  [stage] trace=%s %s %s %dms api_calls=%d%s",
            self.trace_id,
            stage_name,
            status,
            rec.elapsed_ms,
            api_in_stage,
            err_info,
        )

    def record_api_call(
        self,
        service: str,
        endpoint: str,
        elapsed_ms: int,
        status_code: int,
        provider_status: str = "",
        attempt: int = 1,
    ):
        # Stage comes from the calling thread: both providers record into the
        # same context from different worker threads.
        rec = APICallRecord(
            service=service,
            endpoint=endpoint,
            elapsed_ms=int(elapsed_ms),
            status_code=status_code,
            provider_status=provider_status,
            attempt=attempt,
            stage=current_stage(),
        )
        with self._lock:
            self.api_calls.append(rec)
        logger.info(
            "  [api] trace=%s stage=%s svc=%s ep=%s ms=%d http=%d provider=%s",
            self.trace_id,
            rec.stage or "-",
            service,
            endpoint,
            rec.elapsed_ms,
            status_code,
            provider_status,
        )

    # ------------------------------------------------------------------
    # Summary
    # ------------------------------------------------------------------

    def summary_dict(self) -> Dict[str, Any]:
        total_elapsed = int((time.time() - self.request_start) * 1000)
        errored = [s for s in self.stages if s.error_class]
        if errored and len(errored) == len(self.stages):
            outcome = "error"
        elif errored:
            outcome = "partial"
        elif not self.stages:
            outcome = "empty"
        else:
            outcome = "success"

        return {
            "trace_id": self.trace_id,
            "total_elapsed_ms": total_elapsed,
            "total_api_calls": len(self.api_calls),
            "stages_completed": len(self.stages) - len(errored),
            "stages_errored": len(errored),
            "final_outcome": outcome,
        }

    def log_summary(self):
        """Emit a single structured summary log line."""
        s = self.summary_dict()
        logger.info(
            "[trace-summary] trace=%s total_ms=%d api_calls=%d "
            "completed=%d errored=%d outcome=%s",
            s["trace_id"],
            s["total_elapsed_ms"],
            s["total_api_calls"],
            s["stages_completed"],
            s["stages_errored"],
            s["final_outcome"],
        )


# =============================================================================
# Thread-local storage
# =============================================================================

_trace_local = threading.local()


def get_trace() -> Optional[TraceContext]:
    """Get the current request's trace context, or None."""
    return getattr(_trace_local, "ctx", None)


def set_trace(ctx: Optional[TraceContext]):
    """Set the trace context for the current thread."""
    _trace_local.ctx = ctx


def clear_trace():
    """Clear the current trace context."""
    _trace_local.ctx = None
    _trace_local.stage = ""


def current_stage() -> str:
    return getattr(_trace_local, "stage", "")


# =============================================================================
# Stage helpers
# =============================================================================

def timed_stage(stage_name, fn, *args, **kwargs):
    """Run *fn* with timing.  Logs duration and re-raises on failure."""
    trace = get_trace()
    _trace_local.stage = stage_name
    t0 = time.time()
    try:
        result = fn(*args, **kwargs)
        t1 = time.time()
        if trace:
            trace.record_stage(stage_name, t0, t1)
        else:
            logger.debug("  [stage] %s OK (%.2fs)", stage_name, t1 - t0)
        return result
    except Exception as exc:
        t1 = time.time()
        if trace:
            trace.record_stage(
                stage_name, t0, t1,
                error_class=type(exc).__name__,
                error_message=str(exc)[:200],
            )
        else:
            logger.warning("  [stage] %s FAILED (%.2fs)", stage_name, t1 - t0)
        raise
    finally:
        _trace_local.stage = ""


def run_stage_in_thread(parent_trace, stage_name, fn, *args, **kwargs):
    """Run timed_stage in a worker thread with trace propagation."""
    set_trace(parent_trace)
    try:
        return timed_stage(stage_name, fn, *args, **kwargs)
    finally:
        clear_trace()
