"""
Root pytest configuration for the Django project.

This module configures pytest-django and provides project-wide fixtures.
App-specific fixtures are defined in each app's tests/conftest.py.
"""

import os

import django
import pytest

# Ensure Django settings are configured before any tests run
os.environ.setdefault("DJANGO_SETTINGS_MODULE", "config.settings")


def pytest_configure():
    """Configure Django settings before tests run."""
    django.setup()

    from django.conf import settings

    # Disable throttling during tests to prevent rate limit failures
    settings.REST_FRAMEWORK["DEFAULT_THROTTLE_CLASSES"] = []
    settings.REST_FRAMEWORK["DEFAULT_THROTTLE_RATES"] = {}

    # Use fast password hasher for tests
    settings.PASSWORD_HASHERS = [
        "django.contrib.auth.hashers.MD5PasswordHasher",
    ]

    # Run Celery tasks and webhook jobs on the calling thread
    settings.CELERY_TASK_ALWAYS_EAGER = True
    settings.BILLING_WEBHOOK_EAGER = True

    # No real waiting between gateway retries
    settings.BILLING_GATEWAY_RETRY_INITIAL_DELAY = 0
    settings.BILLING_GATEWAY_RETRY_MAX_DELAY = 0

    settings.BILLING_ALERT_EMAILS = []


def pytest_collection_modifyitems(items):
    """
    Auto-mark tests based on filename patterns.

    Mapping:
    - test_integration.py → e2e (full request-to-side-effect workflows)
    - test_views.py, test_tasks.py, service tests, etc. → integration
    - test_models.py, test_catalog.py, test_paypal_adapter.py, etc. → unit
    - Unmatched files → integration (safe default for Django)

    Explicit markers on test functions/classes take precedence.
    """
    e2e_patterns = ["test_integration.py"]

    integration_patterns = [
        "test_views.py",
        "test_tasks.py",
        "test_handlers.py",
        "test_processing.py",
        "test_order_processor.py",
        "test_subscription_lifecycle.py",
        "test_dispatcher.py",
        "test_exception_handler.py",
        "test_circuit_breaker.py",
        "test_health_check.py",
    ]

    unit_patterns = [
        "test_models.py",
        "test_catalog.py",
        "test_serializers.py",
        "test_paypal_adapter.py",
        "test_credentials.py",
        "test_metrics.py",
        "test_alerts.py",
    ]

    for item in items:
        existing_markers = {m.name for m in item.iter_markers()}
        if existing_markers & {"unit", "integration", "e2e"}:
            continue

        filename = str(item.fspath).split("/")[-1]

        if any(pattern in filename for pattern in e2e_patterns):
            item.add_marker(pytest.mark.e2e)
        elif any(pattern in filename for pattern in integration_patterns):
            item.add_marker(pytest.mark.integration)
        elif any(pattern in filename for pattern in unit_patterns):
            item.add_marker(pytest.mark.unit)
        else:
            item.add_marker(pytest.mark.integration)
