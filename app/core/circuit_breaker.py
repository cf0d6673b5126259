"""
Circuit breaker for resilient calls to external services.

State lives in Django's cache backend (Redis in production) so every web
worker, webhook thread and Celery worker sees the same circuit.

States:
    - CLOSED: Normal operation, all requests pass through
    - OPEN: Service is failing, requests fail fast without calling service
    - HALF_OPEN: Testing recovery, limited requests allowed through; the
      circuit closes after `success_threshold` consecutive successes

Usage:
    from core.circuit_breaker import CircuitBreaker

    gateway_circuit = CircuitBreaker(
        name="paypal-api",
        failure_threshold=5,
        recovery_timeout=60,
        success_threshold=2,
        on_open=lambda cb: alerts.alert_gateway_circuit_open(cb.name),
    )

    # Only transient errors count toward opening the circuit
    with gateway_circuit.call(is_failure=lambda exc: exc.is_retryable):
        response = session.post(url, json=body)

Design Notes:
    - Falls back to closed state if the cache is unavailable
    - Counters use atomic cache.incr
"""

from __future__ import annotations

import logging
import time
from contextlib import contextmanager
from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING

from django.core.cache import cache

if TYPE_CHECKING:
    from collections.abc import Callable, Generator

logger = logging.getLogger(__name__)


class CircuitState(str, Enum):
    """Circuit breaker states."""

    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


@dataclass
class CircuitBreakerConfig:
    """Configuration for a circuit breaker instance."""

    failure_threshold: int = 5
    """Consecutive failures before opening the circuit."""

    recovery_timeout: int = 60
    """Seconds the circuit stays open before allowing trial calls."""

    half_open_max_calls: int = 2
    """Trial calls allowed while half-open."""

    success_threshold: int = 2
    """Consecutive trial successes needed to close the circuit."""

    cache_ttl: int = 3600
    """TTL for cache keys in seconds (must exceed recovery_timeout)."""


class CircuitOpenError(Exception):
    """
    Raised when attempting to call through an open circuit.

    This signals that the service is considered unavailable, not that
    an actual call failed.
    """


class CircuitBreaker:
    """
    Cache-backed circuit breaker.

    Attributes:
        name: Unique identifier, used in cache keys and logs
        config: Thresholds and timeouts
        on_open: Optional callback invoked with the breaker whenever the
            circuit transitions to OPEN (used to raise alerts)
    """

    def __init__(
        self,
        name: str,
        failure_threshold: int = 5,
        recovery_timeout: int = 60,
        half_open_max_calls: int = 2,
        success_threshold: int = 2,
        on_open: Callable[[CircuitBreaker], None] | None = None,
    ):
        self.name = name
        self.config = CircuitBreakerConfig(
            failure_threshold=failure_threshold,
            recovery_timeout=recovery_timeout,
            half_open_max_calls=max(half_open_max_calls, success_threshold),
            success_threshold=success_threshold,
        )
        self.on_open = on_open

        self._state_key = f"circuit:{name}:state"
        self._failures_key = f"circuit:{name}:failures"
        self._successes_key = f"circuit:{name}:half_open_successes"
        self._opened_at_key = f"circuit:{name}:opened_at"
        self._half_open_calls_key = f"circuit:{name}:half_open_calls"

    @property
    def state(self) -> CircuitState:
        return self._get_state()

    def is_available(self) -> bool:
        """
        Check if the circuit allows a call through.

        An OPEN circuit whose recovery timeout has elapsed moves to
        HALF_OPEN and admits the caller as a trial call.
        """
        try:
            state = self._get_state()

            if state == CircuitState.CLOSED:
                return True

            if state == CircuitState.OPEN:
                opened_at = cache.get(self._opened_at_key)
                if (
                    opened_at
                    and (time.time() - opened_at) >= self.config.recovery_timeout
                ):
                    self._set_state(CircuitState.HALF_OPEN)
                    cache.set(self._half_open_calls_key, 1, self.config.cache_ttl)
                    cache.set(self._successes_key, 0, self.config.cache_ttl)
                    logger.info(
                        "Circuit breaker half-open, admitting trial call",
                        extra={"circuit": self.name},
                    )
                    return True
                return False

            calls = self._incr(self._half_open_calls_key)
            return calls <= self.config.half_open_max_calls

        except Exception as e:
            logger.warning(
                f"Circuit breaker cache error, failing open: {e}",
                extra={"circuit": self.name},
            )
            return True

    def record_success(self) -> None:
        """Record a successful call; closes a half-open circuit after enough successes."""
        try:
            if self._get_state() == CircuitState.HALF_OPEN:
                successes = self._incr(self._successes_key)
                if successes >= self.config.success_threshold:
                    self._set_state(CircuitState.CLOSED)
                    logger.info(
                        "Circuit breaker closed after successful recovery",
                        extra={"circuit": self.name, "successes": successes},
                    )
            cache.set(self._failures_key, 0, self.config.cache_ttl)
        except Exception as e:
            logger.warning(
                f"Circuit breaker failed to record success: {e}",
                extra={"circuit": self.name},
            )

    def record_failure(self) -> None:
        """Record a failed call; opens the circuit at the threshold or on a failed trial."""
        try:
            if self._get_state() == CircuitState.HALF_OPEN:
                logger.warning(
                    "Circuit breaker reopened after failed recovery attempt",
                    extra={"circuit": self.name},
                )
                self._open_circuit()
                return

            failures = self._incr(self._failures_key)
            if (
                failures >= self.config.failure_threshold
                and self._get_state() != CircuitState.OPEN
            ):
                logger.warning(
                    f"Circuit breaker opened after {failures} failures",
                    extra={
                        "circuit": self.name,
                        "failure_count": failures,
                        "threshold": self.config.failure_threshold,
                    },
                )
                self._open_circuit()

        except Exception as e:
            logger.warning(
                f"Circuit breaker failed to record failure: {e}",
                extra={"circuit": self.name},
            )

    @contextmanager
    def call(
        self, is_failure: Callable[[Exception], bool] | None = None
    ) -> Generator[None, None, None]:
        """
        Guard a block of code with the circuit.

        Args:
            is_failure: Predicate deciding whether a raised exception counts
                as a service failure. Exceptions it rejects (e.g. a 4xx
                business error) are recorded as a success, since the
                service answered. Defaults to counting every exception.

        Raises:
            CircuitOpenError: If the circuit does not admit the call
        """
        if not self.is_available():
            raise CircuitOpenError(f"Circuit '{self.name}' is open")

        try:
            yield
        except CircuitOpenError:
            raise
        except Exception as exc:
            if is_failure is None or is_failure(exc):
                self.record_failure()
            else:
                self.record_success()
            raise
        else:
            self.record_success()

    def reset(self) -> None:
        """Force the circuit closed and clear counters (admin and tests)."""
        try:
            self._set_state(CircuitState.CLOSED)
            cache.delete_many(
                [
                    self._failures_key,
                    self._successes_key,
                    self._opened_at_key,
                    self._half_open_calls_key,
                ]
            )
            logger.info("Circuit breaker manually reset", extra={"circuit": self.name})
        except Exception as e:
            logger.warning(
                f"Circuit breaker failed to reset: {e}",
                extra={"circuit": self.name},
            )

    def get_status(self) -> dict:
        """Current state and counters, for health checks and monitoring."""
        try:
            state = self._get_state()
            status = {
                "name": self.name,
                "state": state.value,
                "failure_count": cache.get(self._failures_key, 0),
                "failure_threshold": self.config.failure_threshold,
            }
            opened_at = cache.get(self._opened_at_key)
            if state != CircuitState.CLOSED and opened_at:
                elapsed = time.time() - opened_at
                status["opened_seconds_ago"] = int(elapsed)
                status["recovery_in_seconds"] = max(
                    0, int(self.config.recovery_timeout - elapsed)
                )
            return status
        except Exception as e:
            return {"name": self.name, "state": "unknown", "error": str(e)}

    # =========================================================================
    # Private cache operations
    # =========================================================================

    def _get_state(self) -> CircuitState:
        state_str = cache.get(self._state_key, CircuitState.CLOSED.value)
        try:
            return CircuitState(state_str)
        except ValueError:
            return CircuitState.CLOSED

    def _set_state(self, state: CircuitState) -> None:
        cache.set(self._state_key, state.value, timeout=self.config.cache_ttl)

    def _incr(self, key: str) -> int:
        try:
            return cache.incr(key)
        except ValueError:
            cache.set(key, 1, timeout=self.config.cache_ttl)
            return 1

    def _open_circuit(self) -> None:
        self._set_state(CircuitState.OPEN)
        cache.set(self._opened_at_key, time.time(), timeout=self.config.cache_ttl)
        cache.set(self._failures_key, 0, timeout=self.config.cache_ttl)
        if self.on_open is not None:
            try:
                self.on_open(self)
            except Exception:
                logger.exception(
                    "Circuit breaker on_open callback failed",
                    extra={"circuit": self.name},
                )

    def __repr__(self) -> str:
        return f"CircuitBreaker(name={self.name!r}, state={self._get_state().value})"
