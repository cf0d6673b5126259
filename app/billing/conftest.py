"""
Pytest fixtures shared by every billing test package.

Billing state that outlives a single test (cache-backed metrics and
circuit breaker, the plan catalog, shared gateway clients) is reset
around each test.

Usage:
    def test_capture(pending_order, gateway, processor):
        gateway.capture_order.return_value = capture_result(pending_order)
        processor.capture_order(pending_order.order_id)
"""

from unittest.mock import MagicMock

import pytest
from django.core.cache import cache

from billing.adapters import CaptureResult, OrderResult, SubscriptionResult
from billing.adapters.paypal_adapter import reset_gateway_clients
from billing.catalog import reset_plan_catalog
from billing.monitoring import BillingAlertService, BillingMetrics
from billing.services import OrderPaymentProcessor, SubscriptionLifecycleManager
from billing.services.audit import BillingAuditLogger
from billing.state_machines import SubscriptionStatus
from billing.tests.factories import (
    ActiveSubscriptionFactory,
    PaymentOrderFactory,
    SubscriptionFactory,
)


# =============================================================================
# Isolation
# =============================================================================


@pytest.fixture(autouse=True)
def reset_billing_state():
    """Clear cached counters, catalog answers and shared gateway clients."""
    cache.clear()
    reset_plan_catalog()
    reset_gateway_clients()
    yield
    reset_gateway_clients()
    reset_plan_catalog()
    cache.clear()


@pytest.fixture
def paypal_settings(settings):
    """Platform PayPal credentials and webhook id."""
    settings.PAYPAL_CLIENT_ID = "platform-client"
    settings.PAYPAL_CLIENT_SECRET = "platform-secret"
    settings.PAYPAL_ENVIRONMENT = "sandbox"
    settings.PAYPAL_WEBHOOK_ID = "WH-PLATFORM"
    return settings


# =============================================================================
# Collaborators
# =============================================================================


@pytest.fixture
def metrics():
    return BillingMetrics()


@pytest.fixture
def alerts(metrics):
    """Alert service with a mocked email sender."""
    return BillingAlertService(metrics=metrics, email_sender=MagicMock())


@pytest.fixture
def audit():
    return BillingAuditLogger()


@pytest.fixture
def gateway():
    """Gateway double; tests set return values per call."""
    return MagicMock(name="PayPalAdapter")


@pytest.fixture
def notifier():
    return MagicMock(name="PaymentNotifier")


@pytest.fixture
def processor(gateway, notifier, audit, alerts):
    return OrderPaymentProcessor(
        gateway=gateway, notifier=notifier, audit=audit, alerts=alerts
    )


@pytest.fixture
def manager(gateway, audit, metrics, alerts):
    return SubscriptionLifecycleManager(
        gateway=gateway, audit=audit, metrics=metrics, alerts=alerts
    )


# =============================================================================
# Gateway Results
# =============================================================================


def order_result(order_id: str = "5O190127TN364715T") -> OrderResult:
    return OrderResult(
        order_id=order_id,
        status="CREATED",
        approval_url=f"https://www.sandbox.paypal.com/checkoutnow?token={order_id}",
        raw_response={"id": order_id, "status": "CREATED"},
    )


def capture_result(order, capture_id: str = "3C679366HH908993F") -> CaptureResult:
    return CaptureResult(
        success=True,
        order_id=order.order_id,
        status="COMPLETED",
        capture_id=capture_id,
        payer_email="payer@example.com",
        payer_name="Ada Lovelace",
        raw_response={"id": order.order_id, "status": "COMPLETED"},
    )


def declined_result(order, reason: str = "INSTRUMENT_DECLINED") -> CaptureResult:
    return CaptureResult(
        success=False,
        order_id=order.order_id,
        status="DECLINED",
        decline_reason=reason,
        raw_response={"name": "UNPROCESSABLE_ENTITY", "details": [{"issue": reason}]},
    )


def subscription_result(subscription_id: str = "I-BW452GLLEP1G") -> SubscriptionResult:
    return SubscriptionResult(
        subscription_id=subscription_id,
        status="APPROVAL_PENDING",
        approval_url=f"https://www.sandbox.paypal.com/webapps/billing/subscriptions?ba_token={subscription_id}",
    )


# =============================================================================
# Model Fixtures
# =============================================================================


@pytest.fixture
def pending_order(db):
    """PENDING order for a clinic charging 45.00."""
    return PaymentOrderFactory()


@pytest.fixture
def pending_subscription(db):
    return SubscriptionFactory()


@pytest.fixture
def active_subscription(db):
    return ActiveSubscriptionFactory()


@pytest.fixture
def past_due_subscription(db):
    return ActiveSubscriptionFactory(status=SubscriptionStatus.PAST_DUE)
