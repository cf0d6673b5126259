"""
Tests for the /health/ endpoint.
"""

import json

import pytest
from django.core.cache import cache
from django.test import RequestFactory

from core.circuit_breaker import CircuitBreaker
from core.views import health_check


@pytest.fixture(autouse=True)
def clear_cache():
    cache.clear()
    yield
    cache.clear()


@pytest.mark.django_db
class TestHealthCheck:
    def test_healthy(self, settings):
        settings.HEALTH_CHECK_CIRCUITS = ["paypal-api"]

        response = health_check(RequestFactory().get("/health/"))

        assert response.status_code == 200
        assert json.loads(response.content) == {
            "status": "healthy",
            "database": "connected",
            "cache": "connected",
            "circuits": {"paypal-api": "closed"},
        }

    def test_open_circuit_degrades(self, settings):
        settings.HEALTH_CHECK_CIRCUITS = ["paypal-api"]
        breaker = CircuitBreaker("paypal-api", failure_threshold=2)
        breaker.record_failure()
        breaker.record_failure()

        response = health_check(RequestFactory().get("/health/"))

        body = json.loads(response.content)
        assert response.status_code == 200
        assert body["status"] == "degraded"
        assert body["circuits"]["paypal-api"] == "open"
