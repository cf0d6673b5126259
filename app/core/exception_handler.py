"""
Explicit error-kind to HTTP status mapping for the API boundary.

Views and services raise exceptions from core.exceptions (or subclasses
such as billing.exceptions.GatewayError). This module is the single place
that decides which HTTP status each kind becomes.

ERROR_STATUS_TABLE is evaluated top to bottom and the first matching
class wins, so subclasses must be listed before their parents.

Usage:
    # settings.py
    REST_FRAMEWORK = {
        "EXCEPTION_HANDLER": "core.exception_handler.api_exception_handler",
    }

    # Outside DRF views (plain Django views, webhooks)
    status_code = status_for_exception(exc)
    return JsonResponse(exc.to_dict(), status=status_code)
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from rest_framework import status
from rest_framework.response import Response
from rest_framework.views import exception_handler as drf_exception_handler

from core.exceptions import (
    BaseApplicationError,
    ConfigurationError,
    ConflictError,
    ExternalServiceError,
    NotFoundError,
    PermissionDeniedError,
    RateLimitError,
    ValidationError,
)

if TYPE_CHECKING:
    from typing import Any


logger = logging.getLogger(__name__)


ERROR_STATUS_TABLE: tuple[tuple[type[BaseApplicationError], int], ...] = (
    (ValidationError, status.HTTP_400_BAD_REQUEST),
    (PermissionDeniedError, status.HTTP_403_FORBIDDEN),
    (NotFoundError, status.HTTP_404_NOT_FOUND),
    (ConflictError, status.HTTP_409_CONFLICT),
    (RateLimitError, status.HTTP_429_TOO_MANY_REQUESTS),
    (ConfigurationError, status.HTTP_500_INTERNAL_SERVER_ERROR),
    (ExternalServiceError, status.HTTP_502_BAD_GATEWAY),
    (BaseApplicationError, status.HTTP_400_BAD_REQUEST),
)


def status_for_exception(exc: BaseApplicationError) -> int:
    """
    Look up the HTTP status for an application error.

    Args:
        exc: The raised application error

    Returns:
        HTTP status code from the first matching table row
    """
    for error_class, status_code in ERROR_STATUS_TABLE:
        if isinstance(exc, error_class):
            return status_code
    return status.HTTP_500_INTERNAL_SERVER_ERROR


def api_exception_handler(exc: Exception, context: dict[str, Any]) -> Response | None:
    """
    DRF exception handler that understands application errors.

    Application errors are rendered with BaseApplicationError.to_dict()
    and the status from ERROR_STATUS_TABLE. Anything else goes to DRF's
    default handler (which returns None for unhandled exceptions, letting
    Django produce a 500).
    """
    if isinstance(exc, BaseApplicationError):
        status_code = status_for_exception(exc)
        view = context.get("view")
        log_extra = {
            "error_code": exc.error_code,
            "status_code": status_code,
            "view": view.__class__.__name__ if view else None,
        }
        if status_code >= 500:
            logger.error(f"API request failed: {exc}", extra=log_extra)
        else:
            logger.info(f"API request rejected: {exc}", extra=log_extra)
        return Response(exc.to_dict(), status=status_code)

    return drf_exception_handler(exc, context)
