"""
Tests for billing Celery tasks.

Tests cover:
- process_webhook_event task
- retry_failed_webhooks task
- cleanup_stuck_webhooks and cleanup_old_webhooks tasks
- apply_scheduled_subscription_changes task
- Health check and token refresh tasks
"""

from datetime import timedelta
from unittest.mock import MagicMock, patch

import pytest
from django.utils import timezone

from core.exceptions import NotFoundError

from billing.exceptions import GatewayUnavailableError
from billing.models import WebhookEvent
from billing.monitoring import BillingMetrics
from billing.state_machines import WebhookEventStatus
from billing.tasks import (
    STUCK_PROCESSING_THRESHOLD_MINUTES,
    apply_scheduled_subscription_changes,
    check_gateway_and_webhook_health,
    check_subscription_creation_health,
    cleanup_old_webhooks,
    cleanup_stuck_webhooks,
    process_webhook_event,
    refresh_gateway_access_token,
    retry_failed_webhooks,
    sync_subscription_from_gateway,
)
from billing.tests.factories import WebhookEventFactory


# =============================================================================
# Webhook Tasks
# =============================================================================


@pytest.mark.django_db
class TestProcessWebhookEvent:
    def test_process_pending_event(self):
        """Should process a pending event and mark it PROCESSED."""
        event = WebhookEventFactory(event_type="CUSTOMER.DISPUTE.CREATED")

        result = process_webhook_event(str(event.id))

        assert result["status"] == "processed"
        stored = WebhookEvent.objects.get(pk=event.pk)
        assert stored.status == WebhookEventStatus.PROCESSED
        assert stored.processed_at is not None

    def test_skip_already_processed_event(self):
        """Should skip events that were already processed."""
        event = WebhookEventFactory(status=WebhookEventStatus.PROCESSED)

        with patch("billing.webhooks.processing.dispatch_webhook") as mock_dispatch:
            result = process_webhook_event(str(event.id))

        assert result["status"] == "already_processed"
        mock_dispatch.assert_not_called()


@pytest.mark.django_db
class TestRetryFailedWebhooks:
    def test_requeues_retryable_events(self, settings):
        """Should retry failed events below the retry limit only."""
        settings.BILLING_WEBHOOK_MAX_RETRIES = 3
        retryable = WebhookEventFactory(status=WebhookEventStatus.FAILED, retry_count=1)
        WebhookEventFactory(status=WebhookEventStatus.FAILED, retry_count=3)
        WebhookEventFactory(status=WebhookEventStatus.PENDING)

        with patch.object(process_webhook_event, "delay") as mock_delay:
            result = retry_failed_webhooks()

        assert result == {"queued_count": 1}
        mock_delay.assert_called_once_with(str(retryable.id))

    def test_queue_error_is_skipped(self):
        WebhookEventFactory(status=WebhookEventStatus.FAILED, retry_count=1)

        with patch.object(process_webhook_event, "delay", side_effect=OSError("broker down")):
            result = retry_failed_webhooks()

        assert result == {"queued_count": 0}

    def test_nothing_to_retry(self):
        assert retry_failed_webhooks() == {"queued_count": 0}


@pytest.mark.django_db
class TestCleanupStuckWebhooks:
    def test_resets_old_processing_events(self):
        """Should move events stuck in PROCESSING to FAILED."""
        stuck = WebhookEventFactory(status=WebhookEventStatus.PROCESSING)
        fresh = WebhookEventFactory(status=WebhookEventStatus.PROCESSING)
        WebhookEvent.objects.filter(pk=stuck.pk).update(
            updated_at=timezone.now()
            - timedelta(minutes=STUCK_PROCESSING_THRESHOLD_MINUTES + 5)
        )

        result = cleanup_stuck_webhooks()

        assert result == {"reset_count": 1}
        assert WebhookEvent.objects.get(pk=stuck.pk).status == WebhookEventStatus.FAILED
        assert WebhookEvent.objects.get(pk=fresh.pk).status == WebhookEventStatus.PROCESSING


@pytest.mark.django_db
class TestCleanupOldWebhooks:
    def test_deletes_old_processed_events_only(self):
        """Should delete processed events past the cutoff and keep failures."""
        old = timezone.now() - timedelta(days=120)
        WebhookEventFactory(status=WebhookEventStatus.PROCESSED, processed_at=old)
        recent = WebhookEventFactory(
            status=WebhookEventStatus.PROCESSED,
            processed_at=timezone.now() - timedelta(days=10),
        )
        failed = WebhookEventFactory(status=WebhookEventStatus.FAILED)

        result = cleanup_old_webhooks(days=90)

        assert result == {"deleted_count": 1}
        remaining = set(WebhookEvent.objects.values_list("pk", flat=True))
        assert remaining == {recent.pk, failed.pk}


# =============================================================================
# Subscription Tasks
# =============================================================================


@pytest.mark.django_db
class TestApplyScheduledSubscriptionChanges:
    def test_returns_sweep_counts(self):
        with patch(
            "billing.services.SubscriptionLifecycleManager.apply_scheduled_changes",
            return_value={"plan_changes_applied": 2, "cancellations_applied": 1, "failures": 0},
        ):
            result = apply_scheduled_subscription_changes()

        assert result == {"plan_changes_applied": 2, "cancellations_applied": 1, "failures": 0}

    def test_empty_sweep(self):
        result = apply_scheduled_subscription_changes()

        assert result == {"plan_changes_applied": 0, "cancellations_applied": 0, "failures": 0}


@pytest.mark.django_db
class TestSyncSubscriptionFromGateway:
    SYNC = "billing.services.SubscriptionLifecycleManager.sync_from_gateway"

    def test_synced(self):
        with patch(self.SYNC, return_value=MagicMock(status="ACTIVE")) as mock_sync:
            result = sync_subscription_from_gateway("I-BW452GLLEP1G")

        assert result == {"status": "synced", "subscription_status": "ACTIVE"}
        mock_sync.assert_called_once_with("I-BW452GLLEP1G")

    def test_unknown_subscription(self):
        with patch(self.SYNC, side_effect=NotFoundError("missing")):
            assert sync_subscription_from_gateway("I-MISSING") == {"status": "not_found"}

    def test_gateway_failure(self):
        with patch(self.SYNC, side_effect=GatewayUnavailableError("PayPal down")):
            result = sync_subscription_from_gateway("I-BW452GLLEP1G")

        assert result == {"status": "failed", "error_code": "GATEWAY_UNAVAILABLE"}


# =============================================================================
# Monitoring Tasks
# =============================================================================


class TestHealthChecks:
    def test_gateway_and_webhook_health(self):
        metrics = BillingMetrics()
        metrics.increment("gateway_api_success", amount=1)
        metrics.increment("gateway_api_failure", amount=1)

        assert check_gateway_and_webhook_health() == {"alerts": ["GATEWAY_API_ERROR_RATE_HIGH"]}

    def test_healthy(self):
        assert check_gateway_and_webhook_health() == {"alerts": []}

    def test_subscription_creation_health(self):
        BillingMetrics().increment("subscription_creation_failure", amount=3)

        assert check_subscription_creation_health() == {
            "alerts": ["SUBSCRIPTION_CREATION_FAILURE_RATE_HIGH"]
        }


@pytest.mark.django_db
class TestRefreshGatewayAccessToken:
    def test_not_configured(self, settings):
        settings.PAYPAL_CLIENT_ID = ""
        settings.PAYPAL_CLIENT_SECRET = ""

        assert refresh_gateway_access_token() == {"status": "not_configured"}

    def test_refreshes(self):
        client = MagicMock()
        with patch("billing.tasks.get_gateway_client", return_value=client):
            result = refresh_gateway_access_token()

        assert result == {"status": "refreshed"}
        client.token_cache.invalidate.assert_called_once()
        client.get_access_token.assert_called_once()

    def test_gateway_failure(self):
        client = MagicMock()
        client.get_access_token.side_effect = GatewayUnavailableError("PayPal down")
        with patch("billing.tasks.get_gateway_client", return_value=client):
            result = refresh_gateway_access_token()

        assert result == {"status": "failed", "error_code": "GATEWAY_UNAVAILABLE"}
