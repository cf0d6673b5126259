"""
Billing admin configuration.

State changes on orders and subscriptions go through the service layer;
the admin is read-mostly. Failed webhook events can be replayed.
"""

from django.contrib import admin, messages

from billing.models import (
    BillingAuditLogEntry,
    PaymentOrder,
    PaymentTransaction,
    Subscription,
    TenantGatewayCredentials,
    WebhookEvent,
)
from billing.state_machines import WebhookEventStatus


@admin.register(PaymentOrder)
class PaymentOrderAdmin(admin.ModelAdmin):
    """
    Admin configuration for PaymentOrder.

    Orders are immutable once COMPLETED or FAILED.
    """

    list_display = [
        "order_id",
        "tenant",
        "patient",
        "amount",
        "currency",
        "status",
        "appointment",
        "created_at",
    ]
    list_filter = ["status", "currency", "created_at"]
    search_fields = ["id", "order_id", "capture_id", "payer_email"]
    readonly_fields = [
        "id",
        "order_id",
        "status",
        "amount",
        "currency",
        "capture_id",
        "payer_email",
        "payer_name",
        "completed_at",
        "failed_at",
        "failure_reason",
        "appointment",
        "raw_payload",
        "version",
        "created_at",
        "updated_at",
    ]
    date_hierarchy = "created_at"
    ordering = ["-created_at"]

    fieldsets = (
        (None, {"fields": ("id", "order_id", "status", "payment_type")}),
        ("Amount", {"fields": ("amount", "currency")}),
        ("Booking", {"fields": ("tenant", "patient", "doctor", "service", "slot_start", "notes", "appointment")}),
        (
            "Capture",
            {"fields": ("capture_id", "payer_email", "payer_name", "completed_at", "failed_at", "failure_reason")},
        ),
        ("Gateway Data", {"fields": ("raw_payload", "metadata", "version"), "classes": ("collapse",)}),
        ("Timestamps", {"fields": ("created_at", "updated_at")}),
    )

    def has_delete_permission(self, request, obj=None) -> bool:
        return False


@admin.register(Subscription)
class SubscriptionAdmin(admin.ModelAdmin):
    """
    Admin configuration for Subscription.

    Use SubscriptionLifecycleManager.override_plan for manual plan changes
    so the change is audited.
    """

    list_display = [
        "provider_subscription_id",
        "tenant",
        "plan_tier",
        "billing_cycle",
        "status",
        "renewal_date",
        "pending_plan_tier",
        "cancellation_effective_date",
    ]
    list_filter = ["status", "plan_tier", "billing_cycle"]
    search_fields = ["provider_subscription_id", "tenant__name"]
    readonly_fields = [
        "id",
        "provider_subscription_id",
        "status",
        "provider_plan_id",
        "approval_url",
        "version",
        "created_at",
        "updated_at",
    ]
    ordering = ["-created_at"]
    actions = ["sync_with_paypal"]

    @admin.action(description="Sync selected subscriptions with PayPal")
    def sync_with_paypal(self, request, queryset):
        from billing.tasks import sync_subscription_from_gateway

        for subscription in queryset:
            sync_subscription_from_gateway.delay(subscription.provider_subscription_id)
        self.message_user(
            request,
            f"Queued {queryset.count()} subscriptions for sync",
            messages.INFO,
        )


@admin.register(PaymentTransaction)
class PaymentTransactionAdmin(admin.ModelAdmin):
    list_display = ["transaction_id", "tenant", "subscription", "amount", "currency", "status", "created_at"]
    list_filter = ["status", "currency"]
    search_fields = ["transaction_id"]
    readonly_fields = [field.name for field in PaymentTransaction._meta.fields]


@admin.register(BillingAuditLogEntry)
class BillingAuditLogEntryAdmin(admin.ModelAdmin):
    """Append-only audit trail."""

    list_display = ["created_at", "action", "entity_type", "entity_id", "actor", "success"]
    list_filter = ["action", "entity_type", "success"]
    search_fields = ["entity_id", "action", "actor"]
    readonly_fields = [field.name for field in BillingAuditLogEntry._meta.fields]
    date_hierarchy = "created_at"
    ordering = ["-created_at"]

    def has_add_permission(self, request) -> bool:
        return False

    def has_change_permission(self, request, obj=None) -> bool:
        return False

    def has_delete_permission(self, request, obj=None) -> bool:
        return False


@admin.register(TenantGatewayCredentials)
class TenantGatewayCredentialsAdmin(admin.ModelAdmin):
    list_display = ["tenant", "client_id", "environment", "is_active"]
    list_filter = ["environment", "is_active"]
    search_fields = ["tenant__name", "client_id"]

    def get_readonly_fields(self, request, obj=None):
        # The secret can be set on creation but never read back.
        if obj is not None:
            return ["masked_secret"]
        return []

    def get_fields(self, request, obj=None):
        fields = ["tenant", "client_id", "environment", "webhook_id", "is_active"]
        if obj is None:
            return fields[:2] + ["client_secret"] + fields[2:]
        return fields + ["masked_secret"]

    @admin.display(description="Client secret")
    def masked_secret(self, obj) -> str:
        return f"****{obj.client_secret[-4:]}" if obj.client_secret else ""


@admin.register(WebhookEvent)
class WebhookEventAdmin(admin.ModelAdmin):
    """
    Admin configuration for WebhookEvent.

    Webhook events are immutable once received; failed ones can be
    replayed through the processing pipeline.
    """

    list_display = [
        "id",
        "provider_event_id",
        "event_type",
        "status",
        "retry_count",
        "processed_at",
        "created_at",
    ]
    list_filter = ["status", "event_type", "created_at"]
    search_fields = ["id", "provider_event_id", "event_type"]
    readonly_fields = [
        "id",
        "created_at",
        "updated_at",
        "provider_event_id",
        "event_type",
        "resource_type",
        "payload",
        "processed_at",
    ]
    date_hierarchy = "created_at"
    ordering = ["-created_at"]
    actions = ["replay_events"]

    fieldsets = (
        (None, {"fields": ("id", "provider_event_id", "event_type", "resource_type", "status")}),
        ("Processing", {"fields": ("processed_at", "retry_count")}),
        ("Error Info", {"fields": ("error_message",), "classes": ("collapse",)}),
        ("Payload", {"fields": ("payload",), "classes": ("collapse",)}),
        ("Timestamps", {"fields": ("created_at", "updated_at")}),
    )

    @admin.action(description="Replay selected webhook events")
    def replay_events(self, request, queryset):
        from billing.webhooks.processing import process_webhook_event

        replayed = 0
        for event in queryset.exclude(status=WebhookEventStatus.PROCESSED):
            result = process_webhook_event(event.id)
            if result["status"] == "processed":
                replayed += 1
        self.message_user(
            request,
            f"Replayed {replayed} of {queryset.count()} events successfully",
            messages.INFO,
        )

    def has_delete_permission(self, request, obj=None) -> bool:
        return False

    def has_add_permission(self, request) -> bool:
        return False
