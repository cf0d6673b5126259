"""
WebhookEvent model for gateway webhook tracking.

Stores every verified webhook from the gateway for idempotent processing
and retries. The unique provider_event_id makes redelivery detectable.

Usage:
    from billing.models import WebhookEvent

    event, created = WebhookEvent.objects.get_or_create(
        provider_event_id="WH-2WR32451HC0233532-67976317FL4543714",
        defaults={
            "event_type": "PAYMENT.CAPTURE.COMPLETED",
            "resource_type": "capture",
            "payload": payload,
        },
    )

    if not created and event.is_processed:
        return JsonResponse({"received": True, "duplicate": True})
"""

from __future__ import annotations

from django.conf import settings
from django.db import models
from django.utils import timezone

from core.models import BaseModel
from core.model_mixins import UUIDPrimaryKeyMixin

from billing.state_machines import WebhookEventStatus


class WebhookEvent(UUIDPrimaryKeyMixin, BaseModel):
    """
    Tracks gateway webhook events for idempotent processing.

    Processing Flow:
        1. Webhook arrives, signature verified with the gateway
        2. Insert/get WebhookEvent with provider_event_id
        3. If exists and PROCESSED -> 200 (duplicate)
        4. Submit to the dispatcher; worker marks PROCESSING
        5. Route to handler by event_type
        6. Mark PROCESSED or FAILED
        7. If FAILED, the retry task picks it up until retries run out

    Fields:
        provider_event_id: Gateway event id (unique)
        event_type: e.g. BILLING.SUBSCRIPTION.ACTIVATED
        resource_type: e.g. subscription, capture, sale
        payload: Full event body
        status: Processing status
        processed_at: When processing succeeded
        error_message: Last failure
        retry_count: Processing attempts so far
    """

    # ==========================================================================
    # Event Identification
    # ==========================================================================

    provider_event_id = models.CharField(
        max_length=255,
        unique=True,
        help_text="Gateway event id - unique constraint for idempotency",
    )

    event_type = models.CharField(max_length=100, db_index=True)

    resource_type = models.CharField(max_length=50, blank=True)

    # ==========================================================================
    # Payload
    # ==========================================================================

    payload = models.JSONField(help_text="Full webhook body from the gateway")

    # ==========================================================================
    # Processing Status
    # ==========================================================================

    status = models.CharField(
        max_length=20,
        choices=WebhookEventStatus.choices,
        default=WebhookEventStatus.PENDING,
        db_index=True,
    )

    processed_at = models.DateTimeField(null=True, blank=True)

    error_message = models.TextField(null=True, blank=True)

    retry_count = models.PositiveSmallIntegerField(
        default=0,
        help_text="Number of processing attempts",
    )

    # ==========================================================================
    # Meta & Methods
    # ==========================================================================

    class Meta:
        db_table = "billing_webhook_events"
        ordering = ["-created_at"]
        verbose_name = "Webhook Event"
        verbose_name_plural = "Webhook Events"
        indexes = [
            models.Index(fields=["status", "created_at"], name="billing_whk_status_idx"),
            models.Index(fields=["status", "retry_count"], name="billing_whk_retry_idx"),
        ]

    def __str__(self) -> str:
        return f"WebhookEvent({self.provider_event_id}, {self.event_type})"

    # ==========================================================================
    # Properties
    # ==========================================================================

    @property
    def is_processed(self) -> bool:
        return self.status == WebhookEventStatus.PROCESSED

    @property
    def is_failed(self) -> bool:
        return self.status == WebhookEventStatus.FAILED

    @property
    def can_retry(self) -> bool:
        """Failed and below BILLING_WEBHOOK_MAX_RETRIES attempts."""
        max_retries = getattr(settings, "BILLING_WEBHOOK_MAX_RETRIES", 5)
        return self.is_failed and self.retry_count < max_retries

    @property
    def resource(self) -> dict:
        """The event's resource object (empty dict if absent)."""
        resource = (self.payload or {}).get("resource")
        return resource if isinstance(resource, dict) else {}

    # ==========================================================================
    # Helper Methods
    # ==========================================================================

    def mark_processing(self) -> None:
        """
        Mark event as being processed.

        Note: Does not save - caller must save after calling.
        """
        self.status = WebhookEventStatus.PROCESSING
        self.retry_count += 1

    def mark_processed(self) -> None:
        """
        Mark event as successfully processed.

        Note: Does not save - caller must save after calling.
        """
        self.status = WebhookEventStatus.PROCESSED
        self.processed_at = timezone.now()
        self.error_message = None

    def mark_failed(self, error_message: str) -> None:
        """
        Mark event as failed with error message.

        Note: Does not save - caller must save after calling.
        """
        self.status = WebhookEventStatus.FAILED
        self.error_message = error_message
