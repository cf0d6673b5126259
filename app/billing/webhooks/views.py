"""
Webhook endpoint view for PayPal.

The view:
1. Checks the PayPal transmission headers
2. Verifies the event through PayPal's verify-webhook-signature endpoint
3. Creates/retrieves the WebhookEvent record (idempotent)
4. Hands the event to the bounded dispatcher
5. Returns immediately

Usage:
    # In urls.py
    from billing.webhooks.views import paypal_webhook

    urlpatterns = [
        path("webhooks/paypal/", paypal_webhook, name="paypal_webhook"),
    ]
"""

from __future__ import annotations

import json
import logging

from django.conf import settings
from django.http import HttpRequest, JsonResponse
from django.views.decorators.csrf import csrf_exempt
from django.views.decorators.http import require_POST

from core.exceptions import ConfigurationError

from billing.adapters import get_gateway_client, resolve_webhook_id
from billing.exceptions import GatewayError, WebhookQueueFullError
from billing.models import WebhookEvent
from billing.monitoring import BillingAlertService, BillingMetrics
from billing.services.audit import BillingAuditLogger
from billing.state_machines import WebhookEventStatus
from billing.webhooks.dispatcher import get_webhook_dispatcher

logger = logging.getLogger(__name__)

REQUIRED_HEADERS = (
    "PAYPAL-TRANSMISSION-ID",
    "PAYPAL-TRANSMISSION-TIME",
    "PAYPAL-TRANSMISSION-SIG",
    "PAYPAL-CERT-URL",
    "PAYPAL-AUTH-ALGO",
)


def _reject_unverified(
    event_id: str | None,
    reason: str,
    status: int,
    metrics: BillingMetrics,
    alerts: BillingAlertService,
    audit: BillingAuditLogger,
) -> JsonResponse:
    metrics.record_webhook_verification_failure()
    alerts.alert_webhook_verification_failure(event_id, reason)
    audit.log_webhook_verification_failure(event_id, reason)
    logger.warning(
        f"Webhook rejected: {reason}",
        extra={"provider_event_id": event_id},
    )
    return JsonResponse({"error": reason}, status=status)


@csrf_exempt
@require_POST
def paypal_webhook(request: HttpRequest) -> JsonResponse:
    """
    Receive, verify and queue PayPal webhook events.

    PayPal redelivers on any non-2xx, so transient problems (gateway down
    during verification, dispatcher full) answer 503 and business
    failures still answer 200: they are tracked on the WebhookEvent row.

    Returns:
        JsonResponse with status:
        - 200: Event accepted (new or duplicate)
        - 400: Missing headers or invalid payload
        - 401: Verification failed
        - 503: Verification unavailable or dispatcher full
    """
    metrics = BillingMetrics()
    alerts = BillingAlertService(metrics=metrics)
    audit = BillingAuditLogger()

    metrics.record_webhook_received()

    missing = [name for name in REQUIRED_HEADERS if not request.headers.get(name)]
    if missing:
        return _reject_unverified(
            None,
            f"Missing headers: {', '.join(missing)}",
            400,
            metrics,
            alerts,
            audit,
        )

    try:
        event_data = json.loads(request.body)
    except (ValueError, UnicodeDecodeError):
        logger.warning("Webhook body is not valid JSON")
        return JsonResponse({"error": "Invalid JSON"}, status=400)

    if not isinstance(event_data, dict):
        return JsonResponse({"error": "Invalid event"}, status=400)

    provider_event_id = event_data.get("id")
    event_type = event_data.get("event_type")
    if not provider_event_id or not event_type:
        logger.warning("Webhook missing required fields")
        return JsonResponse({"error": "Invalid event"}, status=400)

    # Step 1: Verify
    webhook_id = resolve_webhook_id()
    if not webhook_id:
        if not getattr(settings, "PAYPAL_WEBHOOK_ALLOW_UNVERIFIED", False):
            return _reject_unverified(
                provider_event_id,
                "No webhook id configured",
                401,
                metrics,
                alerts,
                audit,
            )
        logger.warning(
            "Accepting unverified webhook (PAYPAL_WEBHOOK_ALLOW_UNVERIFIED)",
            extra={"provider_event_id": provider_event_id},
        )
    else:
        try:
            verified = get_gateway_client().verify_webhook_signature(
                request.headers, event_data, webhook_id
            )
        except (GatewayError, ConfigurationError) as e:
            logger.error(
                f"Webhook verification unavailable: {e}",
                extra={"provider_event_id": provider_event_id},
            )
            return JsonResponse({"error": "Verification unavailable"}, status=503)

        if not verified:
            return _reject_unverified(
                provider_event_id,
                "Signature verification failed",
                401,
                metrics,
                alerts,
                audit,
            )

    logger.info(
        f"Received PayPal webhook: {event_type}",
        extra={"provider_event_id": provider_event_id, "event_type": event_type},
    )

    # Step 2: Create/get WebhookEvent (idempotent)
    webhook_event, created = WebhookEvent.objects.get_or_create(
        provider_event_id=provider_event_id,
        defaults={
            "event_type": event_type,
            "resource_type": event_data.get("resource_type") or "",
            "payload": event_data,
            "status": WebhookEventStatus.PENDING,
        },
    )

    if created:
        audit.log_webhook_received(webhook_event)
    elif webhook_event.status in (
        WebhookEventStatus.PROCESSED,
        WebhookEventStatus.PROCESSING,
    ):
        logger.info(
            f"Duplicate webhook ({webhook_event.status}), returning success",
            extra={"provider_event_id": provider_event_id},
        )
        return JsonResponse({"received": True, "duplicate": True})

    # Step 3: Hand off
    try:
        get_webhook_dispatcher().submit(webhook_event.id)
    except WebhookQueueFullError:
        return JsonResponse({"error": "Busy, retry later"}, status=503)

    return JsonResponse({"received": True})
