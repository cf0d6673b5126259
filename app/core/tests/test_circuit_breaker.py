"""
Tests for the cache-backed CircuitBreaker.

Covers:
- Failure counting and the open threshold
- Recovery: half-open trial calls and the success threshold
- The call() context manager and its failure predicate
- The on_open callback used for alerting
- Fail-open behaviour when the cache errors
"""

from __future__ import annotations

from unittest.mock import MagicMock, patch

import pytest
from django.core.cache import cache

from core.circuit_breaker import CircuitBreaker, CircuitOpenError, CircuitState


@pytest.fixture(autouse=True)
def clear_cache():
    """Clear cache before each test to ensure isolation."""
    cache.clear()
    yield
    cache.clear()


@pytest.fixture
def circuit():
    """Breaker with a low threshold and a short recovery window."""
    return CircuitBreaker(
        name="test-gateway",
        failure_threshold=3,
        recovery_timeout=5,
        success_threshold=2,
    )


def _open(circuit: CircuitBreaker) -> float:
    for _ in range(circuit.config.failure_threshold):
        circuit.record_failure()
    return cache.get(circuit._opened_at_key)


class TestFailureThreshold:
    """Opening the circuit."""

    def test_starts_closed(self, circuit):
        assert circuit.state == CircuitState.CLOSED
        assert circuit.is_available() is True

    def test_failures_below_threshold_keep_circuit_closed(self, circuit):
        circuit.record_failure()
        circuit.record_failure()

        assert circuit.state == CircuitState.CLOSED
        assert circuit.get_status()["failure_count"] == 2

    def test_reaching_threshold_opens_circuit(self, circuit):
        _open(circuit)

        assert circuit.state == CircuitState.OPEN
        assert circuit.is_available() is False

    def test_success_resets_failure_count(self, circuit):
        circuit.record_failure()
        circuit.record_failure()
        circuit.record_success()
        circuit.record_failure()

        assert circuit.state == CircuitState.CLOSED

    def test_on_open_callback_invoked_once_per_opening(self):
        callback = MagicMock()
        breaker = CircuitBreaker("cb-alert", failure_threshold=2, on_open=callback)

        breaker.record_failure()
        breaker.record_failure()

        callback.assert_called_once_with(breaker)

    def test_on_open_callback_errors_are_contained(self):
        breaker = CircuitBreaker(
            "cb-bad-callback",
            failure_threshold=1,
            on_open=MagicMock(side_effect=RuntimeError("alert sink down")),
        )

        breaker.record_failure()

        assert breaker.state == CircuitState.OPEN


class TestRecovery:
    """Half-open trial calls."""

    def test_transitions_to_half_open_after_timeout(self, circuit):
        opened_at = _open(circuit)

        with patch("core.circuit_breaker.time.time", return_value=opened_at + 6):
            assert circuit.is_available() is True

        assert circuit.state == CircuitState.HALF_OPEN

    def test_closes_only_after_success_threshold(self, circuit):
        opened_at = _open(circuit)

        with patch("core.circuit_breaker.time.time", return_value=opened_at + 6):
            assert circuit.is_available() is True
            circuit.record_success()
            assert circuit.state == CircuitState.HALF_OPEN

            assert circuit.is_available() is True
            circuit.record_success()

        assert circuit.state == CircuitState.CLOSED

    def test_failed_trial_reopens_circuit(self, circuit):
        opened_at = _open(circuit)

        with patch("core.circuit_breaker.time.time", return_value=opened_at + 6):
            circuit.is_available()
            circuit.record_failure()

        assert circuit.state == CircuitState.OPEN

    def test_limits_trial_calls_in_half_open(self, circuit):
        opened_at = _open(circuit)

        with patch("core.circuit_breaker.time.time", return_value=opened_at + 6):
            assert circuit.is_available() is True
            assert circuit.is_available() is True
            assert circuit.is_available() is False


class TestCallContextManager:
    """call() records outcomes automatically."""

    def test_records_success(self, circuit):
        circuit.record_failure()

        with circuit.call():
            pass

        assert circuit.get_status()["failure_count"] == 0

    def test_records_failure_on_exception(self, circuit):
        with pytest.raises(ValueError):
            with circuit.call():
                raise ValueError("boom")

        assert circuit.get_status()["failure_count"] == 1

    def test_predicate_rejected_exception_is_not_a_failure(self, circuit):
        for _ in range(5):
            with pytest.raises(ValueError):
                with circuit.call(is_failure=lambda exc: False):
                    raise ValueError("business rejection")

        assert circuit.state == CircuitState.CLOSED

    def test_raises_circuit_open_error_when_open(self, circuit):
        _open(circuit)

        with pytest.raises(CircuitOpenError):
            with circuit.call():
                pytest.fail("block must not run while open")


class TestResilience:
    """Cache errors must not break callers."""

    def test_is_available_fails_open_on_cache_error(self, circuit):
        with patch.object(cache, "get", side_effect=Exception("Cache error")):
            assert circuit.is_available() is True

    def test_record_failure_swallows_cache_error(self, circuit):
        with patch.object(cache, "get", side_effect=Exception("Cache error")):
            circuit.record_failure()

    def test_reset_closes_open_circuit(self, circuit):
        _open(circuit)

        circuit.reset()

        assert circuit.state == CircuitState.CLOSED
        assert circuit.get_status()["failure_count"] == 0

    def test_state_shared_across_instances(self):
        first = CircuitBreaker("shared", failure_threshold=2)
        second = CircuitBreaker("shared", failure_threshold=2)

        first.record_failure()
        second.record_failure()

        assert first.state == CircuitState.OPEN
        assert second.is_available() is False
