"""Backoff helpers: per-request retries and hold-off between outbox sweeps."""

import logging
import random
import threading
import time
from dataclasses import dataclass
from typing import Callable, Optional, TypeVar

__all__ = [
    "RetryConfig",
    "RetryExhausted",
    "RetryAborted",
    "calculate_delay",
    "retry_with_backoff",
    "BackoffTracker",
]

logger = logging.getLogger(__name__)

T = TypeVar("T")

AbortCheck = Callable[[], bool]


@dataclass
class RetryConfig:
    """How often and how patiently a request is retried."""

    max_retries: int = 3
    base_delay: float = 1.0
    max_delay: float = 60.0
    exponential_base: float = 2.0
    jitter: bool = True  # +/- 25% so clients do not retry in lockstep

    def delay_for(self, attempt: int) -> float:
        return calculate_delay(
            attempt, self.base_delay, self.max_delay, self.exponential_base, self.jitter
        )


class RetryExhausted(Exception):
    """Every attempt failed."""

    def __init__(self, attempts: int, last_error: Optional[Exception] = None):
        self.attempts = attempts
        self.last_error = last_error
        super().__init__(f"Gave up after {attempts} attempts")


class RetryAborted(RetryExhausted):
    """The caller asked to stop before the attempts ran out."""

    def __init__(self, attempts: int, last_error: Optional[Exception] = None):
        super().__init__(attempts, last_error)
        self.args = (f"Aborted after {attempts} attempts",)


def calculate_delay(
    attempt: int,
    base_delay: float = 1.0,
    max_delay: float = 60.0,
    exponential_base: float = 2.0,
    jitter: bool = True,
) -> float:
    """Seconds to wait before retry number attempt (0 for the first retry).

    The delay grows geometrically from base_delay and is capped at max_delay
    before jitter is applied.
    """
    delay = min(base_delay * exponential_base ** attempt, max_delay)
    if jitter:
        delay *= random.uniform(0.75, 1.25)
    return max(0.0, delay)


def _sleep_unless_aborted(seconds: float, should_abort: Optional[AbortCheck]) -> bool:
    """Sleep, waking every 100ms to poll should_abort. True means aborted."""
    if should_abort is None:
        time.sleep(seconds)
        return False

    wake_at = time.monotonic() + seconds
    while not should_abort():
        left = wake_at - time.monotonic()
        if left <= 0:
            return False
        time.sleep(min(left, 0.1))
    return True


def retry_with_backoff(
    func: Callable[[], T],
    config: Optional[RetryConfig] = None,
    on_retry: Optional[Callable[[int, Exception, float], None]] = None,
    retryable_exceptions: tuple = (Exception,),
    should_abort: Optional[AbortCheck] = None,
) -> T:
    """Call func until it succeeds or the retries are used up.

    Args:
        func: Zero-argument callable to run
        config: Retry limits and delays (defaults to RetryConfig())
        on_retry: Gets (attempt, error, delay) instead of the default warning
        retryable_exceptions: Errors worth another attempt; anything else propagates
        should_abort: Polled while waiting; True stops retrying

    Returns:
        Whatever func returned

    Raises:
        RetryAborted: should_abort returned True while waiting
        RetryExhausted: The final attempt failed too
    """
    config = config or RetryConfig()
    attempts = config.max_retries + 1
    error: Optional[Exception] = None

    for attempt in range(attempts):
        try:
            return func()
        except retryable_exceptions as e:
            error = e
        if attempt == attempts - 1:
            break

        delay = config.delay_for(attempt)
        if on_retry:
            on_retry(attempt, error, delay)
        else:
            logger.warning(f"Attempt {attempt + 1}/{attempts} failed ({error}), next in {delay:.1f}s")

        if _sleep_unless_aborted(delay, should_abort):
            raise RetryAborted(attempt + 1, error)

    raise RetryExhausted(attempts, error)


class BackoffTracker:
    """Tracks consecutive failures and how long to hold off afterwards.

    The first failure holds off for base_delay seconds, each further one
    doubles it up to max_delay. A success resets the tracker.
    """

    def __init__(
        self,
        base_delay: float = 60.0,
        max_delay: float = 600.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.base_delay = base_delay
        self.max_delay = max_delay
        self._clock = clock
        self._lock = threading.Lock()
        self._failures = 0
        self._not_before = 0.0

    @property
    def failures(self) -> int:
        return self._failures

    def ready(self) -> bool:
        with self._lock:
            return self._clock() >= self._not_before

    def remaining(self) -> float:
        """Seconds left before the next attempt is allowed."""
        with self._lock:
            return max(0.0, self._not_before - self._clock())

    def record_failure(self) -> float:
        """Register a failure. Returns the new hold-off in seconds."""
        with self._lock:
            delay = min(self.base_delay * (2 ** self._failures), self.max_delay)
            self._failures += 1
            self._not_before = self._clock() + delay
            return delay

    def record_success(self) -> None:
        with self._lock:
            self._failures = 0
            self._not_before = 0.0
