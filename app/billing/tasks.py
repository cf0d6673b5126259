"""
Celery tasks for billing.

This module provides periodic and async tasks for:
- Retrying failed PayPal webhook events
- Periodic cleanup of old/stuck events
- Applying deferred plan changes and cancellations
- Reconciling a subscription with PayPal on demand
- Health checks that raise billing alerts
- Keeping the platform access token warm

Each task body can also be called directly (no broker needed), which is
how the tests drive them.

Usage:
    from billing.tasks import process_webhook_event

    # Queue a stored webhook for another processing attempt
    process_webhook_event.delay(str(webhook_event_id))
"""

from __future__ import annotations

import logging
from datetime import timedelta

from celery import shared_task
from django.conf import settings
from django.utils import timezone

from core.exceptions import ConfigurationError, NotFoundError

from billing.adapters import get_gateway_client
from billing.exceptions import GatewayError
from billing.models import WebhookEvent
from billing.monitoring import BillingAlertService
from billing.state_machines import WebhookEventStatus

logger = logging.getLogger(__name__)


# =============================================================================
# Constants
# =============================================================================

STUCK_PROCESSING_THRESHOLD_MINUTES = 30
RETRY_BATCH_SIZE = 100


def _max_webhook_retries() -> int:
    return getattr(settings, "BILLING_WEBHOOK_MAX_RETRIES", 5)


# =============================================================================
# Webhook Processing Tasks
# =============================================================================


@shared_task(acks_late=True)
def process_webhook_event(webhook_event_id: str) -> dict:
    """
    Process a stored PayPal webhook event.

    Failures are recorded on the WebhookEvent row rather than raised;
    retry_failed_webhooks picks them up again.

    Args:
        webhook_event_id: UUID of the WebhookEvent to process

    Returns:
        Dict with processing result status
    """
    from billing.webhooks.processing import process_webhook_event as process

    return process(webhook_event_id)


@shared_task
def retry_failed_webhooks() -> dict:
    """
    Periodic task to retry failed webhook events.

    Finds failed webhooks that haven't exceeded max retries and
    re-queues them for processing.

    Returns:
        Dict with count of webhooks queued for retry
    """
    failed_webhooks = WebhookEvent.objects.filter(
        status=WebhookEventStatus.FAILED,
        retry_count__lt=_max_webhook_retries(),
    ).order_by("created_at")[:RETRY_BATCH_SIZE]

    queued_count = 0
    for webhook in failed_webhooks:
        try:
            process_webhook_event.delay(str(webhook.id))
            queued_count += 1
            logger.info(
                "Queued failed webhook for retry",
                extra={
                    "webhook_event_id": str(webhook.id),
                    "provider_event_id": webhook.provider_event_id,
                    "retry_count": webhook.retry_count,
                },
            )
        except Exception as e:
            logger.error(
                f"Failed to queue webhook for retry: {e}",
                extra={"webhook_event_id": str(webhook.id)},
            )

    logger.info(
        f"Queued {queued_count} failed webhooks for retry",
        extra={"queued_count": queued_count},
    )

    return {"queued_count": queued_count}


@shared_task
def cleanup_stuck_webhooks() -> dict:
    """
    Periodic task to reset stuck webhooks.

    Webhooks left in PROCESSING (a worker died mid-job) are moved to
    FAILED so the retry sweep can pick them up.

    Returns:
        Dict with count of webhooks reset
    """
    threshold = timezone.now() - timedelta(minutes=STUCK_PROCESSING_THRESHOLD_MINUTES)

    stuck_webhooks = WebhookEvent.objects.filter(
        status=WebhookEventStatus.PROCESSING,
        updated_at__lt=threshold,
    )

    reset_count = 0
    for webhook in stuck_webhooks:
        stuck_since = webhook.updated_at
        webhook.mark_failed("Processing timed out - reset for retry")
        webhook.save()
        reset_count += 1
        logger.warning(
            "Reset stuck webhook",
            extra={
                "webhook_event_id": str(webhook.id),
                "provider_event_id": webhook.provider_event_id,
                "stuck_since": stuck_since.isoformat(),
            },
        )

    if reset_count > 0:
        logger.info(
            f"Reset {reset_count} stuck webhooks",
            extra={"reset_count": reset_count},
        )

    return {"reset_count": reset_count}


@shared_task
def cleanup_old_webhooks(days: int = 90) -> dict:
    """
    Periodic task to clean up old processed webhook events.

    Failed events are kept for investigation.

    Args:
        days: Delete processed webhooks older than this many days

    Returns:
        Dict with count of webhooks deleted
    """
    cutoff = timezone.now() - timedelta(days=days)

    deleted_count, _ = WebhookEvent.objects.filter(
        status=WebhookEventStatus.PROCESSED,
        processed_at__lt=cutoff,
    ).delete()

    if deleted_count > 0:
        logger.info(
            f"Deleted {deleted_count} old webhook events",
            extra={
                "deleted_count": deleted_count,
                "cutoff_date": cutoff.isoformat(),
            },
        )

    return {"deleted_count": deleted_count}


# =============================================================================
# Subscription Tasks
# =============================================================================


@shared_task
def apply_scheduled_subscription_changes() -> dict:
    """
    Daily sweep applying plan changes and cancellations that came due.

    A failing subscription is logged and skipped; the rest still apply.

    Returns:
        Dict with plan_changes_applied, cancellations_applied and failures
    """
    from billing.services import SubscriptionLifecycleManager

    result = SubscriptionLifecycleManager().apply_scheduled_changes()
    logger.info("Scheduled subscription changes applied", extra=result)
    return result


@shared_task
def sync_subscription_from_gateway(subscription_id: str) -> dict:
    """
    Reconcile one subscription with the status PayPal reports.

    Queued from the admin when a webhook was missed.

    Returns:
        Dict with "status" of synced, not_found or failed
    """
    from billing.services import SubscriptionLifecycleManager

    try:
        subscription = SubscriptionLifecycleManager().sync_from_gateway(subscription_id)
    except NotFoundError:
        logger.warning(
            "Cannot sync unknown subscription",
            extra={"subscription_id": subscription_id},
        )
        return {"status": "not_found"}
    except GatewayError as e:
        logger.error(
            f"Subscription sync failed: {e}",
            extra={"subscription_id": subscription_id, "error_code": e.error_code},
        )
        return {"status": "failed", "error_code": e.error_code}

    return {"status": "synced", "subscription_status": subscription.status}


# =============================================================================
# Monitoring Tasks
# =============================================================================


@shared_task
def check_gateway_and_webhook_health() -> dict:
    """
    Five-minute check of webhook and gateway success rates.

    Returns:
        Dict with the alert types that fired
    """
    alerts = BillingAlertService().check_all()
    return {"alerts": [alert.alert_type for alert in alerts]}


@shared_task
def check_subscription_creation_health() -> dict:
    """
    Ten-minute check of the subscription creation success rate.

    Returns:
        Dict with the alert types that fired
    """
    alert = BillingAlertService().check_subscription_creation_rate()
    return {"alerts": [alert.alert_type] if alert else []}


@shared_task
def refresh_gateway_access_token() -> dict:
    """
    Fetch a fresh platform access token ahead of expiry.

    The token lives in the shared Django cache, so one refresh here
    warms the slot for every web and worker process. Tokens last about
    nine hours; refreshing every eight keeps request paths from paying
    the token round trip.

    Returns:
        Dict with "status" of refreshed, not_configured or failed
    """
    try:
        client = get_gateway_client()
    except ConfigurationError:
        logger.info("Skipping token refresh: PayPal credentials not configured")
        return {"status": "not_configured"}

    client.token_cache.invalidate()
    try:
        client.get_access_token()
    except GatewayError as e:
        logger.error(
            f"Access token refresh failed: {e}",
            extra={"error_code": e.error_code},
        )
        return {"status": "failed", "error_code": e.error_code}

    logger.info("Access token refreshed")
    return {"status": "refreshed"}
