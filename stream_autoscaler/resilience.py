"""
Resilience Patterns
Backoff for Kubernetes API writes and a circuit breaker guarding the metrics backend
"""

import logging
import time
from enum import Enum
from functools import wraps
from threading import Lock
from typing import Callable, Optional, TypeVar

from kubernetes.client.exceptions import ApiException

logger = logging.getLogger(__name__)

T = TypeVar('T')

# Conflict, throttling and server-side errors are worth another attempt
RETRYABLE_STATUSES = {409, 429, 500, 502, 503, 504}


def is_retryable(error: Exception) -> bool:
    if isinstance(error, ApiException):
        return error.status in RETRYABLE_STATUSES
    return isinstance(error, (ConnectionError, TimeoutError))


def retry_with_backoff(
    max_retries: int = 3,
    initial_delay: float = 0.5,
    max_delay: float = 10.0,
    exponential_base: float = 2.0,
    retryable: Callable[[Exception], bool] = is_retryable,
    sleep: Callable[[float], None] = time.sleep
):
    """
    Retry decorator with exponential backoff

    Only errors accepted by `retryable` are retried; anything else (a 404,
    a validation error) propagates on the first attempt.

    Args:
        max_retries: Retries after the first attempt
        initial_delay: Delay before the first retry, in seconds
        max_delay: Upper bound on any single delay
        exponential_base: Growth factor between delays
        retryable: Predicate deciding whether an error is transient
        sleep: Sleep function, replaceable in tests
    """
    def decorator(func: Callable[..., T]) -> Callable[..., T]:
        @wraps(func)
        def wrapper(*args, **kwargs):
            attempts = max_retries + 1
            delays = _backoff_delays(initial_delay, max_delay, exponential_base)

            for attempt in range(1, attempts + 1):
                try:
                    return func(*args, **kwargs)
                except Exception as e:
                    if not retryable(e):
                        raise
                    if attempt == attempts:
                        logger.error(f"{func.__name__} failed {attempts} times, giving up: {e}")
                        raise
                    delay = next(delays)
                    logger.warning(f"{func.__name__} failed ({attempt}/{attempts}): {e}. Retrying in {delay:.1f}s")
                    sleep(delay)
        return wrapper
    return decorator


def _backoff_delays(initial: float, ceiling: float, factor: float):
    delay = initial
    while True:
        yield min(delay, ceiling)
        delay *= factor


class CircuitState(Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


class CircuitBreakerOpenError(Exception):
    """Raised instead of calling through an open circuit"""


class CircuitBreaker:
    """
    Stops hammering a failing backend.

    After `failure_threshold` consecutive failures calls are rejected for
    `timeout` seconds; then one trial call decides whether to close again.
    """

    def __init__(self, failure_threshold: int = 5, timeout: float = 60, name: str = "circuit",
                 time_source: Callable[[], float] = time.monotonic):
        self.failure_threshold = failure_threshold
        self.timeout = timeout
        self.name = name
        self.time_source = time_source
        self.state = CircuitState.CLOSED
        self.consecutive_failures = 0
        self.opened_at: Optional[float] = None
        self._lock = Lock()

    def call(self, func: Callable[..., T], *args, **kwargs) -> T:
        self._before_call()
        try:
            result = func(*args, **kwargs)
        except Exception:
            self._record_failure()
            raise
        self._record_success()
        return result

    def _before_call(self):
        with self._lock:
            if self.state != CircuitState.OPEN:
                return
            waited = self.time_source() - self.opened_at
            if waited < self.timeout:
                raise CircuitBreakerOpenError(
                    f"{self.name} unavailable, retrying in {self.timeout - waited:.0f}s"
                )
            logger.info(f"{self.name}: trial call after {waited:.0f}s open")
            self.state = CircuitState.HALF_OPEN

    def _record_success(self):
        with self._lock:
            if self.state == CircuitState.HALF_OPEN:
                logger.info(f"{self.name}: recovered, circuit closed")
            self.state = CircuitState.CLOSED
            self.consecutive_failures = 0
            self.opened_at = None

    def _record_failure(self):
        with self._lock:
            self.consecutive_failures += 1
            trial_failed = self.state == CircuitState.HALF_OPEN
            if trial_failed or self.consecutive_failures >= self.failure_threshold:
                self.state = CircuitState.OPEN
                self.opened_at = self.time_source()
                logger.error(
                    f"{self.name}: circuit opened after {self.consecutive_failures} consecutive failures, "
                    f"pausing calls for {self.timeout}s"
                )
