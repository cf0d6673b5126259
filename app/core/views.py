"""
Core views providing infrastructure endpoints.

This module contains views that are not part of the business domain but are
essential for application infrastructure, such as health checks.
"""

from django.conf import settings
from django.core.cache import cache
from django.db import connection
from django.http import JsonResponse

from core.circuit_breaker import CircuitBreaker


def health_check(request):
    """
    Health check endpoint for monitoring and orchestration.

    Returns:
        JsonResponse with status and component health:
        - status: "healthy" or "unhealthy"
        - database: "connected" or "disconnected"
        - cache: "connected" or "disconnected"
        - circuits: state of each circuit named in HEALTH_CHECK_CIRCUITS

    HTTP Status Codes:
        200: Database reachable (cache and open circuits only degrade)
        503: Database unreachable

    Example Response:
        {
            "status": "healthy",
            "database": "connected",
            "cache": "connected",
            "circuits": {"paypal-api": "closed"}
        }
    """
    health_status = {
        "status": "healthy",
        "database": "unknown",
        "cache": "unknown",
        "circuits": {},
    }
    is_healthy = True

    try:
        with connection.cursor() as cursor:
            cursor.execute("SELECT 1")
            cursor.fetchone()
        health_status["database"] = "connected"
    except Exception:
        health_status["database"] = "disconnected"
        health_status["status"] = "unhealthy"
        is_healthy = False

    try:
        cache.set("health_check", "ok", timeout=1)
        if cache.get("health_check") == "ok":
            health_status["cache"] = "connected"
        else:
            health_status["cache"] = "disconnected"
    except Exception:
        health_status["cache"] = "disconnected"

    for name in getattr(settings, "HEALTH_CHECK_CIRCUITS", []):
        circuit_status = CircuitBreaker(name).get_status()
        health_status["circuits"][name] = circuit_status["state"]
        if circuit_status["state"] != "closed":
            health_status["status"] = "degraded" if is_healthy else "unhealthy"

    return JsonResponse(health_status, status=200 if is_healthy else 503)
