"""
Tests for process_webhook_event.

Tests cover:
- Missing and already-processed events
- Successful processing and the PROCESSED marker
- Handler failures and exceptions persisted as FAILED
- The alert once retries are exhausted
"""

import uuid
from unittest.mock import patch

import pytest

from billing.models import BillingAuditLogEntry, WebhookEvent
from billing.monitoring import BillingMetrics
from billing.state_machines import WebhookEventStatus
from billing.tests.factories import SubscriptionFactory, WebhookEventFactory
from billing.webhooks.processing import process_webhook_event


def _reload(event) -> WebhookEvent:
    return WebhookEvent.objects.get(pk=event.pk)


def activation_event(subscription_id: str, **kwargs):
    return WebhookEventFactory(
        event_type="BILLING.SUBSCRIPTION.ACTIVATED",
        payload={"resource": {"id": subscription_id}},
        **kwargs,
    )


@pytest.mark.django_db
class TestProcessWebhookEvent:
    def test_not_found(self):
        result = process_webhook_event(uuid.uuid4())

        assert result["status"] == "not_found"

    def test_accepts_string_id(self):
        subscription = SubscriptionFactory()
        event = activation_event(subscription.provider_subscription_id)

        result = process_webhook_event(str(event.id))

        assert result["status"] == "processed"

    def test_processed(self):
        subscription = SubscriptionFactory()
        event = activation_event(subscription.provider_subscription_id)

        result = process_webhook_event(event.id)

        assert result == {
            "status": "processed",
            "webhook_event_id": str(event.id),
            "provider_event_id": event.provider_event_id,
        }
        stored = _reload(event)
        assert stored.status == WebhookEventStatus.PROCESSED
        assert stored.retry_count == 1
        assert BillingMetrics().get("webhook_success") == 1
        assert BillingAuditLogEntry.objects.filter(
            action="WEBHOOK_PROCESSED", success=True
        ).exists()

    def test_already_processed_is_skipped(self):
        event = WebhookEventFactory(status=WebhookEventStatus.PROCESSED)

        with patch("billing.webhooks.processing.dispatch_webhook") as mock_dispatch:
            result = process_webhook_event(event.id)

        assert result["status"] == "already_processed"
        mock_dispatch.assert_not_called()

    def test_handler_failure_marks_failed(self):
        event = activation_event("I-UNKNOWN")

        result = process_webhook_event(event.id)

        assert result["status"] == "handler_failed"
        stored = _reload(event)
        assert stored.status == WebhookEventStatus.FAILED
        assert "I-UNKNOWN" in stored.error_message
        assert BillingMetrics().get("webhook_failure") == 1

    def test_exception_marks_failed(self):
        event = WebhookEventFactory()

        with patch(
            "billing.webhooks.processing.dispatch_webhook",
            side_effect=RuntimeError("database hiccup"),
        ):
            result = process_webhook_event(event.id)

        assert result["status"] == "error"
        assert result["error"] == "RuntimeError: database hiccup"
        assert _reload(event).status == WebhookEventStatus.FAILED

    def test_failed_event_can_be_retried(self):
        subscription = SubscriptionFactory()
        event = activation_event(
            subscription.provider_subscription_id,
            status=WebhookEventStatus.FAILED,
            retry_count=2,
            error_message="Subscription not found",
        )

        result = process_webhook_event(event.id)

        assert result["status"] == "processed"
        stored = _reload(event)
        assert stored.retry_count == 3
        assert stored.error_message is None

    def test_alert_when_retries_exhausted(self, settings):
        settings.BILLING_WEBHOOK_MAX_RETRIES = 3
        event = activation_event(
            "I-UNKNOWN", status=WebhookEventStatus.FAILED, retry_count=2
        )

        process_webhook_event(event.id)

        assert _reload(event).retry_count == 3
        metrics = BillingMetrics()
        assert metrics.get("alerts_triggered:WEBHOOK_PROCESSING_FAILED_AFTER_RETRIES") == 1

    def test_no_alert_before_retries_exhausted(self, settings):
        settings.BILLING_WEBHOOK_MAX_RETRIES = 3
        event = activation_event("I-UNKNOWN")

        process_webhook_event(event.id)

        metrics = BillingMetrics()
        assert metrics.get("alerts_triggered:WEBHOOK_PROCESSING_FAILED_AFTER_RETRIES") == 0
