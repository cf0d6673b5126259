"""
Base exception classes for application-wide error handling.

This module provides a standardized exception hierarchy that enables:
- Consistent error responses across the application
- Machine-readable error codes for client handling
- One place (core.exception_handler) that maps each kind to an HTTP status

Exception Hierarchy:
    BaseApplicationError (base)
    ├── ValidationError - Bad or missing input
    ├── NotFoundError - Unknown order, subscription or tenant
    ├── PermissionDeniedError - Authorization failures
    ├── ConflictError - State conflicts (duplicates, illegal transitions)
    ├── RateLimitError - Rate limit exceeded
    ├── ExternalServiceError - Third-party service failures
    └── ConfigurationError - Missing credentials or unmapped plan ids

Usage:
    from core.exceptions import ValidationError, NotFoundError

    raise ValidationError("Consultation fee is not configured")

    raise NotFoundError(
        "Payment order not found",
        error_code="ORDER_NOT_FOUND",
        details={"order_id": order_id},
    )

    # Convert to dict for API response
    try:
        ...
    except BaseApplicationError as e:
        return Response(e.to_dict(), status=status_for_exception(e))

Note:
    These exceptions are for domain/business logic errors.
    DRF handles API-layer exceptions (serialization, authentication, etc.).
"""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from typing import Any


class BaseApplicationError(Exception):
    """
    Base exception for all application-specific errors.

    Attributes:
        message: Human-readable error description
        error_code: Machine-readable code for client-side handling
        details: Additional error context (field errors, identifiers, etc.)
    """

    default_error_code: str = "APPLICATION_ERROR"

    def __init__(
        self,
        message: str,
        error_code: str | None = None,
        details: dict[str, Any] | None = None,
    ):
        self.message = message
        self.error_code = error_code or self.default_error_code
        self.details = details or {}
        super().__init__(message)

    def to_dict(self) -> dict[str, Any]:
        """
        Convert exception to dictionary for API response.

        Example:
            {
                "error": "Payment order not found",
                "error_code": "ORDER_NOT_FOUND",
                "details": {"order_id": "5O190127TN364715T"}
            }
        """
        result: dict[str, Any] = {
            "error": self.message,
            "error_code": self.error_code,
        }
        if self.details:
            result["details"] = self.details
        return result

    def __str__(self) -> str:
        return f"[{self.error_code}] {self.message}"

    def __repr__(self) -> str:
        return (
            f"{self.__class__.__name__}("
            f"message={self.message!r}, "
            f"error_code={self.error_code!r}, "
            f"details={self.details!r})"
        )


class ValidationError(BaseApplicationError):
    """
    Raised when input validation fails.

    Use for:
    - Missing or non-positive fees
    - Unknown plan tiers or billing cycles
    - Business rule violations (changing to the current tier)

    Note:
        For DRF serializer validation, use DRF's built-in validation.
        Use this for service-layer validation logic.
    """

    default_error_code: str = "VALIDATION_ERROR"


class NotFoundError(BaseApplicationError):
    """
    Raised when a requested resource is not found.

    Example:
        order = PaymentOrder.objects.filter(order_id=order_id).first()
        if not order:
            raise NotFoundError(
                f"Payment order {order_id} not found",
                error_code="ORDER_NOT_FOUND",
                details={"order_id": order_id},
            )
    """

    default_error_code: str = "NOT_FOUND"


class PermissionDeniedError(BaseApplicationError):
    """
    Raised when the caller lacks permission for an operation.

    Note:
        For authentication failures (missing/invalid token), use DRF's
        AuthenticationFailed. Use this for authorization failures.
    """

    default_error_code: str = "PERMISSION_DENIED"


class ConflictError(BaseApplicationError):
    """
    Raised when an operation conflicts with current resource state.

    Use for:
    - A tenant that already has a live subscription
    - A cancellation that is already scheduled
    - Invalid state transitions
    - Optimistic locking failures
    """

    default_error_code: str = "CONFLICT"


class RateLimitError(BaseApplicationError):
    """
    Raised when a rate limit is exceeded.

    Note:
        Include retry_after in details when possible to help clients.
    """

    default_error_code: str = "RATE_LIMIT_EXCEEDED"


class ExternalServiceError(BaseApplicationError):
    """
    Raised when an external service call fails.

    Use for:
    - Payment gateway failures (see billing.exceptions.GatewayError)
    - Network timeouts
    - Unexpected external service responses

    Note:
        Log the original error for debugging but don't expose
        internal details to clients in production.
    """

    default_error_code: str = "EXTERNAL_SERVICE_ERROR"


class ConfigurationError(BaseApplicationError):
    """
    Raised when the deployment is missing required configuration.

    Fatal and never retried. Use for missing gateway credentials and
    provider plan ids that map to no configured tier.

    Example:
        if not client_id or not client_secret:
            raise ConfigurationError(
                "PayPal credentials are not configured",
                error_code="GATEWAY_CREDENTIALS_MISSING",
                details={"tenant_id": tenant_id},
            )
    """

    default_error_code: str = "CONFIGURATION_ERROR"
