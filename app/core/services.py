"""
Base service layer patterns for business logic encapsulation.

- ServiceResult: Outcome wrapper for results a caller branches on
- BaseService: Base class with a per-service logger

Services encapsulate business logic separate from views and models.
Views handle HTTP concerns, models handle data, services handle logic.

When to use which:
    - ServiceResult: expected outcomes the caller branches on
      (webhook handlers, lifecycle events for unknown subscriptions)
    - Exceptions: failures the caller cannot continue from
      (validation, not found, gateway errors)

Usage:
    from core.services import BaseService, ServiceResult

    def handle_subscription_event(webhook_event) -> ServiceResult[Subscription]:
        subscription = find_subscription(webhook_event)
        if subscription is None:
            return ServiceResult.failure(
                "Subscription not found",
                error_code="SUBSCRIPTION_NOT_FOUND",
            )
        return ServiceResult.success(subscription)
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Generic, TypeVar

T = TypeVar("T")


@dataclass
class ServiceResult(Generic[T]):
    """
    Result of a service operation.

    Attributes:
        success: Whether the operation succeeded
        data: Result data if successful (None if failed)
        error: Error message if failed (None if successful)
        error_code: Machine-readable error code

    Usage:
        result = dispatch_webhook(webhook_event)
        if not result:
            webhook_event.mark_failed(result.error)
    """

    success: bool
    data: T | None = None
    error: str | None = None
    error_code: str | None = None

    @classmethod
    def success(cls, data: T) -> ServiceResult[T]:
        return cls(success=True, data=data)

    @classmethod
    def failure(cls, error: str, error_code: str | None = None) -> ServiceResult[T]:
        return cls(success=False, error=error, error_code=error_code)

    @classmethod
    def from_exception(
        cls, exc: Exception, error_code: str | None = None
    ) -> ServiceResult[T]:
        """
        Failed result from an exception.

        Application errors keep their own error_code; other exceptions
        fall back to the upper-cased class name.
        """
        return cls(
            success=False,
            error=getattr(exc, "message", None) or str(exc),
            error_code=error_code
            or getattr(exc, "error_code", None)
            or exc.__class__.__name__.upper(),
        )

    def __bool__(self) -> bool:
        return self.success


class BaseService:
    """Base class for service layer classes."""

    @classmethod
    def get_logger(cls) -> logging.Logger:
        """Logger named after the service class."""
        return logging.getLogger(f"{cls.__module__}.{cls.__name__}")
