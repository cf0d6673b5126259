"""
Billing-specific exceptions.

Exception Hierarchy:
    ExternalServiceError (core)
    └── GatewayError - Base for all payment gateway errors
        ├── GatewayTimeoutError - Request timed out (transient, retry)
        ├── GatewayUnavailableError - Connection error or 5xx (transient, retry)
        ├── GatewayRateLimitError - HTTP 429 (transient, retry)
        ├── GatewayRequestError - Other 4xx (permanent)
        ├── GatewayAuthenticationError - Credentials rejected (permanent)
        ├── GatewayResponseError - Malformed 2xx body (permanent)
        └── GatewayCircuitOpenError - Circuit breaker open (fail fast)

    GatewayRetryInterrupted - Retry backoff cancelled by shutdown
    InvalidStateTransitionError - Transition not allowed (ConflictError)
    ImmutableFieldError - Write to a frozen field (ConflictError)
    WebhookVerificationError - Signature verification failed
    WebhookQueueFullError - Dispatcher saturated

    IdempotencyShortCircuit - Not an error: the operation already happened

Usage:
    from billing.exceptions import GatewayError, is_retryable_gateway_error

    try:
        result = gateway.capture_order(order_id, request_id)
    except GatewayError as e:
        if e.is_retryable:
            ...  # retries were already exhausted inside the adapter
        raise
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from core.exceptions import BaseApplicationError, ConflictError, ExternalServiceError

if TYPE_CHECKING:
    from typing import Any


# =============================================================================
# Gateway Exceptions
# =============================================================================


class GatewayError(ExternalServiceError):
    """
    Base exception for payment gateway errors.

    Attributes:
        status_code: HTTP status returned by the gateway, if any
        debug_id: Gateway debug identifier for support tickets
        is_retryable: Whether the call may succeed if repeated
    """

    default_error_code: str = "GATEWAY_ERROR"
    is_retryable: bool = False

    def __init__(
        self,
        message: str,
        error_code: str | None = None,
        status_code: int | None = None,
        debug_id: str | None = None,
        details: dict[str, Any] | None = None,
    ):
        details = details or {}
        if status_code is not None:
            details["status_code"] = status_code
        if debug_id:
            details["debug_id"] = debug_id
        super().__init__(message, error_code=error_code, details=details)
        self.status_code = status_code
        self.debug_id = debug_id


# -----------------------------------------------------------------------------
# Transient Errors (safe to retry with backoff)
# -----------------------------------------------------------------------------


class GatewayTimeoutError(GatewayError):
    """
    Gateway call timed out.

    The operation may have succeeded at the gateway. Retries reuse the
    same PayPal-Request-Id so the gateway returns the original outcome.
    """

    default_error_code: str = "GATEWAY_TIMEOUT"
    is_retryable: bool = True


class GatewayUnavailableError(GatewayError):
    """Connection failure or 5xx response."""

    default_error_code: str = "GATEWAY_UNAVAILABLE"
    is_retryable: bool = True


class GatewayRateLimitError(GatewayError):
    default_error_code: str = "GATEWAY_RATE_LIMITED"
    is_retryable: bool = True


# -----------------------------------------------------------------------------
# Permanent Errors (do not retry)
# -----------------------------------------------------------------------------


class GatewayRequestError(GatewayError):
    """
    The gateway rejected the request (4xx other than 401/429).

    Usually a bug in the request we built, or a resource in the wrong
    state at the gateway.
    """

    default_error_code: str = "GATEWAY_REQUEST_REJECTED"


class GatewayAuthenticationError(GatewayError):
    default_error_code: str = "GATEWAY_AUTHENTICATION_FAILED"


class GatewayResponseError(GatewayError):
    """A 2xx response whose body lacks a field we depend on."""

    default_error_code: str = "GATEWAY_BAD_RESPONSE"


class GatewayCircuitOpenError(GatewayError):
    """
    The gateway circuit breaker is open.

    Raised without calling the gateway. Not retryable: retrying against
    an open circuit only delays the caller.
    """

    default_error_code: str = "GATEWAY_CIRCUIT_OPEN"


class GatewayRetryInterrupted(GatewayError):
    """Retry backoff was interrupted because the client is shutting down."""

    default_error_code: str = "GATEWAY_RETRY_INTERRUPTED"


def is_retryable_gateway_error(exc: BaseException) -> bool:
    """tenacity predicate: retry only transient gateway errors."""
    return isinstance(exc, GatewayError) and exc.is_retryable


# =============================================================================
# State Exceptions
# =============================================================================


class InvalidStateTransitionError(ConflictError):
    """
    Raised when a state transition is not allowed.

    Example:
        if not can_proceed(order.complete):
            raise InvalidStateTransitionError(
                f"Cannot complete order from '{order.status}'",
                details={"current_state": order.status, "target_state": "COMPLETED"},
            )
    """

    default_error_code: str = "INVALID_STATE_TRANSITION"


class ImmutableFieldError(ConflictError):
    """Raised when a frozen field (amount or currency of a completed order) changes."""

    default_error_code: str = "IMMUTABLE_FIELD"


# =============================================================================
# Webhook Exceptions
# =============================================================================


class WebhookVerificationError(BaseApplicationError):
    default_error_code: str = "WEBHOOK_VERIFICATION_FAILED"


class WebhookQueueFullError(BaseApplicationError):
    """
    The webhook dispatcher could not accept work within the submit timeout.

    The webhook endpoint answers 503 so the provider redelivers later.
    """

    default_error_code: str = "WEBHOOK_QUEUE_FULL"


# =============================================================================
# Control Flow
# =============================================================================


class IdempotencyShortCircuit(Exception):
    """
    Signals that an idempotent operation has already been applied.

    Not an error. Carries the existing result so the caller can return it
    unchanged.
    """

    def __init__(self, result: Any = None, reason: str = ""):
        super().__init__(reason or "Operation already applied")
        self.result = result
        self.reason = reason
