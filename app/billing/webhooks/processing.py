"""
Processing of stored webhook events.

process_webhook_event() is the single entry point used by the in-process
dispatcher (first attempt) and by the Celery retry task (later attempts).
Outcomes are persisted on the WebhookEvent row; nothing is raised to the
caller, since a FAILED row is what the retry sweep picks up.

Usage:
    from billing.webhooks.processing import process_webhook_event

    result = process_webhook_event(webhook_event.id)
    # {"status": "processed", "webhook_event_id": "...", ...}
"""

from __future__ import annotations

import logging
from uuid import UUID

from django.conf import settings

from billing.models import WebhookEvent
from billing.monitoring import BillingAlertService, BillingMetrics
from billing.services.audit import BillingAuditLogger
from billing.webhooks.handlers import dispatch_webhook

logger = logging.getLogger(__name__)


def process_webhook_event(
    webhook_event_id: UUID | str,
    metrics: BillingMetrics | None = None,
    alerts: BillingAlertService | None = None,
    audit: BillingAuditLogger | None = None,
) -> dict:
    """
    Load, dispatch and record the outcome of one webhook event.

    Each handler manages its own transactions; the event row is saved
    outside them so a handler rollback never loses the FAILED marker.

    Returns:
        Dict with a "status" of not_found, already_processed, processed,
        handler_failed or error
    """
    metrics = metrics or BillingMetrics()
    alerts = alerts or BillingAlertService(metrics=metrics)
    audit = audit or BillingAuditLogger()

    if isinstance(webhook_event_id, str):
        webhook_event_id = UUID(webhook_event_id)

    try:
        webhook_event = WebhookEvent.objects.get(id=webhook_event_id)
    except WebhookEvent.DoesNotExist:
        logger.error(
            "WebhookEvent not found",
            extra={"webhook_event_id": str(webhook_event_id)},
        )
        return {"status": "not_found", "webhook_event_id": str(webhook_event_id)}

    if webhook_event.is_processed:
        logger.info(
            "WebhookEvent already processed, skipping",
            extra={
                "webhook_event_id": str(webhook_event_id),
                "provider_event_id": webhook_event.provider_event_id,
            },
        )
        return {
            "status": "already_processed",
            "webhook_event_id": str(webhook_event_id),
        }

    webhook_event.mark_processing()
    webhook_event.save()

    logger.info(
        f"Dispatching webhook: {webhook_event.event_type}",
        extra={
            "webhook_event_id": str(webhook_event_id),
            "provider_event_id": webhook_event.provider_event_id,
            "event_type": webhook_event.event_type,
            "retry_count": webhook_event.retry_count,
        },
    )

    try:
        result = dispatch_webhook(webhook_event)
    except Exception as e:
        error_msg = f"{type(e).__name__}: {str(e)}"
        logger.exception(
            "Webhook processing failed with exception",
            extra={
                "webhook_event_id": str(webhook_event_id),
                "provider_event_id": webhook_event.provider_event_id,
                "error": error_msg,
            },
        )
        _record_failure(webhook_event, error_msg, metrics, alerts, audit)
        return {
            "status": "error",
            "webhook_event_id": str(webhook_event_id),
            "error": error_msg,
        }

    if not result.success:
        error_msg = result.error or "Handler returned failure"
        logger.warning(
            f"Webhook handler failed: {error_msg}",
            extra={
                "webhook_event_id": str(webhook_event_id),
                "provider_event_id": webhook_event.provider_event_id,
                "error_code": result.error_code,
            },
        )
        _record_failure(webhook_event, error_msg, metrics, alerts, audit)
        return {
            "status": "handler_failed",
            "webhook_event_id": str(webhook_event_id),
            "error": error_msg,
        }

    webhook_event.mark_processed()
    webhook_event.save()
    metrics.record_webhook_success()
    audit.log_webhook_processed(webhook_event, success=True)

    logger.info(
        "Webhook processed successfully",
        extra={
            "webhook_event_id": str(webhook_event_id),
            "provider_event_id": webhook_event.provider_event_id,
        },
    )
    return {
        "status": "processed",
        "webhook_event_id": str(webhook_event_id),
        "provider_event_id": webhook_event.provider_event_id,
    }


def _record_failure(
    webhook_event: WebhookEvent,
    error_msg: str,
    metrics: BillingMetrics,
    alerts: BillingAlertService,
    audit: BillingAuditLogger,
) -> None:
    webhook_event.mark_failed(error_msg)
    webhook_event.save()
    metrics.record_webhook_failure()
    audit.log_webhook_processed(webhook_event, success=False, error=error_msg)

    max_retries = getattr(settings, "BILLING_WEBHOOK_MAX_RETRIES", 5)
    if webhook_event.retry_count >= max_retries:
        alerts.alert_webhook_failed_after_retries(
            webhook_event.provider_event_id,
            webhook_event.event_type,
            webhook_event.retry_count,
            error_msg,
        )
