"""
Tests for the PayPal webhook view.

Tests cover:
- Transmission header checks
- Signature verification through the gateway
- WebhookEvent creation and idempotency
- Hand-off to the dispatcher and back-pressure
"""

import json
from unittest.mock import MagicMock, patch

import pytest
from django.test import RequestFactory

from billing.exceptions import GatewayUnavailableError, WebhookQueueFullError
from billing.models import BillingAuditLogEntry, Subscription, WebhookEvent
from billing.monitoring import BillingMetrics
from billing.state_machines import SubscriptionStatus, WebhookEventStatus
from billing.tests.factories import SubscriptionFactory, WebhookEventFactory
from billing.webhooks.views import paypal_webhook


# =============================================================================
# Setup
# =============================================================================

URL = "/api/v1/billing/webhooks/paypal/"

TRANSMISSION_HEADERS = {
    "HTTP_PAYPAL_TRANSMISSION_ID": "69cd13f0-d67a-11e5-baa3-778b53f4ae55",
    "HTTP_PAYPAL_TRANSMISSION_TIME": "2026-02-18T20:01:35Z",
    "HTTP_PAYPAL_TRANSMISSION_SIG": "c4Sj...",
    "HTTP_PAYPAL_CERT_URL": "https://api.sandbox.paypal.com/v1/notifications/certs/CERT",
    "HTTP_PAYPAL_AUTH_ALGO": "SHA256withRSA",
}


@pytest.fixture
def rf():
    return RequestFactory()


@pytest.fixture
def gateway(paypal_settings):
    """Gateway returned to the view; verification succeeds unless told otherwise."""
    gateway = MagicMock()
    gateway.verify_webhook_signature.return_value = True
    with patch("billing.webhooks.views.get_gateway_client", return_value=gateway):
        yield gateway


def make_webhook_request(rf, payload, headers=None):
    body = payload if isinstance(payload, (str, bytes)) else json.dumps(payload)
    return rf.post(
        URL,
        data=body,
        content_type="application/json",
        **(TRANSMISSION_HEADERS if headers is None else headers),
    )


def activation_payload(subscription_id: str, event_id: str = "WH-4SW78779LY2325805-07E03580SX1414828"):
    return {
        "id": event_id,
        "event_type": "BILLING.SUBSCRIPTION.ACTIVATED",
        "resource_type": "subscription",
        "resource": {"id": subscription_id},
    }


# =============================================================================
# Header & Payload Checks
# =============================================================================


@pytest.mark.django_db
class TestRequestValidation:
    def test_missing_headers_returns_400(self, rf, gateway):
        request = make_webhook_request(rf, activation_payload("I-1"), headers={})

        response = paypal_webhook(request)

        assert response.status_code == 400
        assert b"Missing headers" in response.content
        gateway.verify_webhook_signature.assert_not_called()
        assert BillingMetrics().get("webhook_verification_failure") == 1

    def test_invalid_json_returns_400(self, rf, gateway):
        response = paypal_webhook(make_webhook_request(rf, "{not json"))

        assert response.status_code == 400
        assert WebhookEvent.objects.count() == 0

    def test_missing_event_type_returns_400(self, rf, gateway):
        response = paypal_webhook(make_webhook_request(rf, {"id": "WH-1"}))

        assert response.status_code == 400

    def test_get_not_allowed(self, rf):
        response = paypal_webhook(rf.get(URL))

        assert response.status_code == 405


# =============================================================================
# Verification
# =============================================================================


@pytest.mark.django_db
class TestVerification:
    def test_failed_verification_returns_401(self, rf, gateway):
        gateway.verify_webhook_signature.return_value = False

        response = paypal_webhook(make_webhook_request(rf, activation_payload("I-1")))

        assert response.status_code == 401
        assert WebhookEvent.objects.count() == 0
        assert BillingAuditLogEntry.objects.filter(action="WEBHOOK_VERIFICATION_FAILED").exists()
        assert BillingMetrics().get("alerts_triggered:WEBHOOK_VERIFICATION_FAILURE") == 1

    def test_verifies_against_platform_webhook_id(self, rf, gateway):
        payload = activation_payload("I-1")

        paypal_webhook(make_webhook_request(rf, payload))

        headers, event, webhook_id = gateway.verify_webhook_signature.call_args.args
        assert headers["PayPal-Transmission-Id"] == "69cd13f0-d67a-11e5-baa3-778b53f4ae55"
        assert event == payload
        assert webhook_id == "WH-PLATFORM"

    def test_gateway_unavailable_returns_503(self, rf, gateway):
        gateway.verify_webhook_signature.side_effect = GatewayUnavailableError("PayPal down")

        response = paypal_webhook(make_webhook_request(rf, activation_payload("I-1")))

        assert response.status_code == 503
        assert WebhookEvent.objects.count() == 0

    def test_no_webhook_id_rejects(self, rf, gateway, settings):
        settings.PAYPAL_WEBHOOK_ID = ""
        settings.PAYPAL_WEBHOOK_ALLOW_UNVERIFIED = False

        response = paypal_webhook(make_webhook_request(rf, activation_payload("I-1")))

        assert response.status_code == 401

    def test_unverified_allowed_when_configured(self, rf, gateway, settings):
        settings.PAYPAL_WEBHOOK_ID = ""
        settings.PAYPAL_WEBHOOK_ALLOW_UNVERIFIED = True

        response = paypal_webhook(make_webhook_request(rf, activation_payload("I-1")))

        assert response.status_code == 200
        gateway.verify_webhook_signature.assert_not_called()


# =============================================================================
# Storage & Hand-off
# =============================================================================


@pytest.mark.django_db
class TestEventHandling:
    def test_new_event_is_stored_and_processed(self, rf, gateway):
        subscription = SubscriptionFactory()
        payload = activation_payload(subscription.provider_subscription_id)

        response = paypal_webhook(make_webhook_request(rf, payload))

        assert response.status_code == 200
        assert json.loads(response.content) == {"received": True}
        event = WebhookEvent.objects.get(provider_event_id=payload["id"])
        assert event.event_type == "BILLING.SUBSCRIPTION.ACTIVATED"
        assert event.resource_type == "subscription"
        assert event.status == WebhookEventStatus.PROCESSED
        stored = Subscription.objects.get(pk=subscription.pk)
        assert stored.status == SubscriptionStatus.ACTIVE

    def test_duplicate_processed_event_short_circuits(self, rf, gateway):
        WebhookEventFactory(provider_event_id="WH-DUP", status=WebhookEventStatus.PROCESSED)

        with patch("billing.webhooks.views.get_webhook_dispatcher") as mock_dispatcher:
            response = paypal_webhook(
                make_webhook_request(rf, activation_payload("I-1", event_id="WH-DUP"))
            )

        assert response.status_code == 200
        assert json.loads(response.content)["duplicate"] is True
        mock_dispatcher.return_value.submit.assert_not_called()
        assert WebhookEvent.objects.filter(provider_event_id="WH-DUP").count() == 1

    def test_failed_event_is_resubmitted(self, rf, gateway):
        event = WebhookEventFactory(provider_event_id="WH-RETRY", status=WebhookEventStatus.FAILED)

        with patch("billing.webhooks.views.get_webhook_dispatcher") as mock_dispatcher:
            response = paypal_webhook(
                make_webhook_request(rf, activation_payload("I-1", event_id="WH-RETRY"))
            )

        assert response.status_code == 200
        mock_dispatcher.return_value.submit.assert_called_once_with(event.id)

    def test_business_failure_still_returns_200(self, rf, gateway):
        payload = activation_payload("I-UNKNOWN")

        response = paypal_webhook(make_webhook_request(rf, payload))

        assert response.status_code == 200
        event = WebhookEvent.objects.get(provider_event_id=payload["id"])
        assert event.status == WebhookEventStatus.FAILED

    def test_queue_full_returns_503(self, rf, gateway):
        with patch("billing.webhooks.views.get_webhook_dispatcher") as mock_dispatcher:
            mock_dispatcher.return_value.submit.side_effect = WebhookQueueFullError("full")

            response = paypal_webhook(make_webhook_request(rf, activation_payload("I-1")))

        assert response.status_code == 503
        assert WebhookEvent.objects.filter(status=WebhookEventStatus.PENDING).count() == 1
