"""
Tests for webhook handlers.

Tests cover:
- Registry dispatch and unknown event types
- Capture webhooks resolving the order (related ids, custom_id fallback)
- Order-completed webhooks
- Subscription events routed to the lifecycle manager
"""

from unittest.mock import MagicMock, patch

import pytest

from core.exceptions import NotFoundError
from core.services import ServiceResult

from billing.models import Subscription
from billing.services.order_processor import CaptureOutcome
from billing.state_machines import SubscriptionStatus
from billing.tests.factories import PaymentOrderFactory, SubscriptionFactory, WebhookEventFactory
from billing.webhooks.handlers import (
    WEBHOOK_HANDLERS,
    dispatch_webhook,
    handle_capture_completed,
    handle_order_completed,
    register_handler,
)


def capture_event(resource: dict):
    return WebhookEventFactory(
        event_type="PAYMENT.CAPTURE.COMPLETED",
        payload={"id": "WH-CAP", "event_type": "PAYMENT.CAPTURE.COMPLETED", "resource": resource},
    )


CAPTURE_RESOURCE = {
    "id": "3C679366HH908993F",
    "status": "COMPLETED",
    "amount": {"currency_code": "USD", "value": "45.00"},
    "supplementary_data": {"related_ids": {"order_id": "5O190127TN364715T"}},
    "payer": {
        "email_address": "payer@example.com",
        "name": {"given_name": "Ada", "surname": "Lovelace"},
    },
}


@pytest.fixture
def mock_processor():
    with patch("billing.webhooks.handlers.OrderPaymentProcessor") as processor_class:
        processor = processor_class.return_value
        processor.process_webhook_payment.return_value = CaptureOutcome(
            order=MagicMock(name="PaymentOrder"), success=True
        )
        yield processor


# =============================================================================
# Registry
# =============================================================================


@pytest.mark.django_db
class TestDispatch:
    def test_unknown_event_type_succeeds(self):
        event = WebhookEventFactory(event_type="CUSTOMER.DISPUTE.CREATED")

        result = dispatch_webhook(event)

        assert result.success is True
        assert result.data is None

    def test_registered_handler_is_called(self):
        calls = []

        @register_handler("TEST.EVENT.ONE", "TEST.EVENT.TWO")
        def handler(webhook_event):
            calls.append(webhook_event.event_type)
            return ServiceResult.success("ok")

        try:
            assert dispatch_webhook(WebhookEventFactory(event_type="TEST.EVENT.TWO")).data == "ok"
            assert calls == ["TEST.EVENT.TWO"]
        finally:
            WEBHOOK_HANDLERS.pop("TEST.EVENT.ONE", None)
            WEBHOOK_HANDLERS.pop("TEST.EVENT.TWO", None)

    def test_payment_and_subscription_events_are_registered(self):
        for event_type in (
            "PAYMENT.CAPTURE.COMPLETED",
            "CHECKOUT.ORDER.COMPLETED",
            "BILLING.SUBSCRIPTION.ACTIVATED",
            "BILLING.SUBSCRIPTION.PAYMENT.FAILED",
            "PAYMENT.SALE.COMPLETED",
        ):
            assert event_type in WEBHOOK_HANDLERS


# =============================================================================
# Capture Handlers
# =============================================================================


@pytest.mark.django_db
class TestCaptureCompleted:
    def test_passes_capture_details(self, mock_processor):
        result = handle_capture_completed(capture_event(CAPTURE_RESOURCE))

        assert result.success is True
        mock_processor.process_webhook_payment.assert_called_once_with(
            "5O190127TN364715T",
            capture_id="3C679366HH908993F",
            payer_email="payer@example.com",
            payer_name="Ada Lovelace",
            raw_payload=CAPTURE_RESOURCE,
        )

    def test_custom_id_fallback(self, mock_processor):
        order = PaymentOrderFactory()
        resource = {"id": "CAP-2", "custom_id": str(order.pk)}

        handle_capture_completed(capture_event(resource))

        assert mock_processor.process_webhook_payment.call_args.args == (order.order_id,)

    def test_unresolvable_order_fails(self, mock_processor):
        result = handle_capture_completed(capture_event({"id": "CAP-3", "custom_id": "not-a-uuid"}))

        assert result.success is False
        assert result.error_code == "INVALID_WEBHOOK_PAYLOAD"
        mock_processor.process_webhook_payment.assert_not_called()

    def test_unknown_order_fails_for_retry(self, mock_processor):
        mock_processor.process_webhook_payment.side_effect = NotFoundError(
            "Order not found", error_code="ORDER_NOT_FOUND"
        )

        result = handle_capture_completed(capture_event(CAPTURE_RESOURCE))

        assert result.success is False
        assert result.error_code == "ORDER_NOT_FOUND"


@pytest.mark.django_db
class TestOrderCompleted:
    def test_capture_id_from_purchase_units(self, mock_processor):
        resource = {
            "id": "5O190127TN364715T",
            "status": "COMPLETED",
            "purchase_units": [{"payments": {"captures": [{"id": "CAP-9"}]}}],
            "payer": {"email_address": "payer@example.com", "name": {"given_name": "Ada"}},
        }
        event = WebhookEventFactory(
            event_type="CHECKOUT.ORDER.COMPLETED", payload={"resource": resource}
        )

        handle_order_completed(event)

        kwargs = mock_processor.process_webhook_payment.call_args.kwargs
        assert kwargs["capture_id"] == "CAP-9"
        assert kwargs["payer_name"] == "Ada"

    def test_missing_order_id(self, mock_processor):
        event = WebhookEventFactory(
            event_type="CHECKOUT.ORDER.COMPLETED", payload={"resource": {}}
        )

        assert handle_order_completed(event).success is False


# =============================================================================
# Subscription Handler
# =============================================================================


@pytest.mark.django_db
class TestSubscriptionEvents:
    def test_activation_applied(self):
        subscription = SubscriptionFactory()
        event = WebhookEventFactory(
            event_type="BILLING.SUBSCRIPTION.ACTIVATED",
            payload={"resource": {"id": subscription.provider_subscription_id}},
        )

        result = dispatch_webhook(event)

        assert result.success is True
        stored = Subscription.objects.get(pk=subscription.pk)
        assert stored.status == SubscriptionStatus.ACTIVE

    def test_unknown_subscription_fails(self):
        event = WebhookEventFactory(
            event_type="BILLING.SUBSCRIPTION.SUSPENDED",
            payload={"resource": {"id": "I-UNKNOWN"}},
        )

        result = dispatch_webhook(event)

        assert result.success is False
        assert result.error_code == "SUBSCRIPTION_NOT_FOUND"
