"""
Retry with exponential backoff for outbound provider calls.

Decoupled from any particular HTTP client: the caller supplies the
callable, a predicate deciding which exceptions are transient, and
(optionally) a sleep function and a cancellation event.  Tests inject a
recording sleep so no real waiting happens.

Backoff for the default policy (3 attempts, 0.5 s base, x2):
    attempt 1 fails -> wait 0.5 s
    attempt 2 fails -> wait 1.0 s
    attempt 3 fails -> last exception propagates
"""

import logging
import threading
from dataclasses import dataclass
from typing import Callable, Optional, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


class RequestCancelled(Exception):
    """Raised when a request's cancellation event fires mid-call or mid-backoff."""

    pass


@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int = 3
    base_delay: float = 0.5  # seconds
    multiplier: float = 2.0

    def __post_init__(self):
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        if self.base_delay < 0:
            raise ValueError("base_delay must not be negative")

    def delay_for(self, attempt: int) -> float:
        """Seconds to wait after the *attempt*-th (1-based) failure."""
        return self.base_delay * (self.multiplier ** (attempt - 1))


DEFAULT_POLICY = RetryPolicy()


def _interruptible_sleep(seconds: float, cancel_event: Optional[threading.Event]) -> None:
    # Event.wait returns True as soon as the event is set, which is what
    # lets a cancelled request abandon a pending backoff immediately.
    event = cancel_event if cancel_event is not None else threading.Event()
    if event.wait(seconds):
        raise RequestCancelled("Request cancelled during retry backoff")


def call_with_retry(
    fn: Callable[[], T],
    is_retryable: Callable[[BaseException], bool],
    policy: RetryPolicy = DEFAULT_POLICY,
    sleep: Optional[Callable[[float], None]] = None,
    cancel_event: Optional[threading.Event] = None,
    caller: str = "unknown",
) -> T:
    """Call *fn* until it succeeds, a non-retryable error occurs, or attempts run out.

    Args:
        fn: Zero-argument callable performing one attempt.
        is_retryable: Returns True for transient failures worth retrying.
        policy: Attempt cap and backoff schedule.
        sleep: Replacement for the backoff wait (tests).  When given,
            cancellation is still checked before and after each wait.
        cancel_event: When set, pending and future attempts are abandoned
            with RequestCancelled.
        caller: Label for log attribution.

    Raises:
        RequestCancelled: If *cancel_event* is set.
        Exception: The last exception from *fn* once attempts are exhausted,
            or the first non-retryable one.
    """
    for attempt in range(1, policy.max_attempts + 1):
        if cancel_event is not None and cancel_event.is_set():
            raise RequestCancelled(f"Request cancelled before attempt {attempt} [caller={caller}]")

        try:
            return fn()
        except RequestCancelled:
            raise
        except Exception as e:
            if not is_retryable(e) or attempt >= policy.max_attempts:
                raise

            delay = policy.delay_for(attempt)
            logger.warning(
                "Transient error (attempt %d/%d), waiting %.2fs before retry [caller=%s]: %s",
                attempt,
                policy.max_attempts,
                delay,
                caller,
                e,
            )
            if sleep is not None:
                sleep(delay)
                if cancel_event is not None and cancel_event.is_set():
                    raise RequestCancelled(f"Request cancelled during retry backoff [caller={caller}]")
            else:
                _interruptible_sleep(delay, cancel_event)

    # max_attempts >= 1 guarantees the loop either returned or raised
    raise RuntimeError("call_with_retry exhausted without result")
