"""
Tests for resilience module
"""
from unittest.mock import Mock

import pytest
from kubernetes.client.exceptions import ApiException

from stream_autoscaler.resilience import (
    CircuitBreaker, CircuitBreakerOpenError, CircuitState, is_retryable, retry_with_backoff
)


class TestRetryWithBackoff:
    """Test retry decorator"""

    def test_retries_transient_errors(self):
        sleep = Mock()
        func = Mock(side_effect=[ApiException(status=503), ApiException(status=503), "ok"])
        func.__name__ = "patch"

        result = retry_with_backoff(sleep=sleep)(func)()

        assert result == "ok"
        assert func.call_count == 3
        assert [c[0][0] for c in sleep.call_args_list] == [0.5, 1.0]

    def test_not_found_is_not_retried(self):
        sleep = Mock()
        func = Mock(side_effect=ApiException(status=404))
        func.__name__ = "read"

        with pytest.raises(ApiException):
            retry_with_backoff(sleep=sleep)(func)()

        assert func.call_count == 1
        sleep.assert_not_called()

    def test_gives_up_after_max_retries(self):
        sleep = Mock()
        func = Mock(side_effect=ApiException(status=500))
        func.__name__ = "list"

        with pytest.raises(ApiException):
            retry_with_backoff(max_retries=2, sleep=sleep)(func)()

        assert func.call_count == 3
        assert sleep.call_count == 2

    def test_delay_capped(self):
        sleep = Mock()
        func = Mock(side_effect=[ConnectionError()] * 4 + ["ok"])
        func.__name__ = "call"

        retry_with_backoff(max_retries=4, initial_delay=1.0, max_delay=3.0, sleep=sleep)(func)()

        assert [c[0][0] for c in sleep.call_args_list] == [1.0, 2.0, 3.0, 3.0]

    def test_is_retryable(self):
        assert is_retryable(ApiException(status=409))
        assert is_retryable(TimeoutError())
        assert not is_retryable(ApiException(status=403))
        assert not is_retryable(ValueError())


class TestCircuitBreaker:
    """Test circuit breaker"""

    def test_opens_after_threshold(self):
        breaker = CircuitBreaker(failure_threshold=2, timeout=60, name="test")
        failing = Mock(side_effect=ConnectionError("down"))

        for _ in range(2):
            with pytest.raises(ConnectionError):
                breaker.call(failing)

        assert breaker.state == CircuitState.OPEN
        with pytest.raises(CircuitBreakerOpenError):
            breaker.call(failing)
        assert failing.call_count == 2

    def test_success_resets_failure_count(self):
        breaker = CircuitBreaker(failure_threshold=2, timeout=60, name="test")

        with pytest.raises(ConnectionError):
            breaker.call(Mock(side_effect=ConnectionError("down")))
        breaker.call(lambda: "ok")
        with pytest.raises(ConnectionError):
            breaker.call(Mock(side_effect=ConnectionError("down")))

        assert breaker.state == CircuitState.CLOSED

    def test_closes_after_successful_trial(self):
        now = [100.0]
        breaker = CircuitBreaker(failure_threshold=1, timeout=60, name="test", time_source=lambda: now[0])

        with pytest.raises(ConnectionError):
            breaker.call(Mock(side_effect=ConnectionError("down")))

        now[0] += 61
        assert breaker.call(lambda: "ok") == "ok"
        assert breaker.state == CircuitState.CLOSED
        assert breaker.consecutive_failures == 0

    def test_failed_trial_reopens(self):
        now = [100.0]
        breaker = CircuitBreaker(failure_threshold=3, timeout=60, name="test", time_source=lambda: now[0])
        breaker.state = CircuitState.OPEN
        breaker.opened_at = now[0]

        now[0] += 61
        with pytest.raises(ConnectionError):
            breaker.call(Mock(side_effect=ConnectionError("still down")))

        assert breaker.state == CircuitState.OPEN
        assert breaker.opened_at == now[0]
