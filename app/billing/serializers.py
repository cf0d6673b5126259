"""
DRF serializers for the billing app.

This module provides serializers for:
- Consultation payment orders (create request, display)
- Subscriptions (create, plan change, cancellation requests, display)
- The plan tier catalog

Related files:
    - models: PaymentOrder, Subscription
    - views.py: Billing API views
    - catalog.py: PlanTierDetails

Usage:
    serializer = CreateOrderSerializer(data=request.data)
    serializer.is_valid(raise_exception=True)
    order = OrderPaymentProcessor().create_order(**serializer.validated_data)
"""

from __future__ import annotations

from rest_framework import serializers

from billing.models import PaymentOrder, Subscription
from billing.state_machines import BillingCycle, PlanTier


# =============================================================================
# Payment Orders
# =============================================================================


class CreateOrderSerializer(serializers.Serializer):
    """
    Request body for creating a consultation payment order.

    slot_start is kept as text: an unparseable value is accepted and
    falls back to a provisional slot at fulfilment.
    """

    tenant_id = serializers.IntegerField(min_value=1)
    patient_id = serializers.IntegerField(min_value=1)
    doctor_id = serializers.IntegerField(min_value=1)
    service_id = serializers.IntegerField(min_value=1)
    slot_start = serializers.CharField(
        max_length=64,
        help_text="Requested slot start (ISO 8601, clinic local time if naive)",
    )
    notes = serializers.CharField(required=False, allow_blank=True, default="")


class PaymentOrderSerializer(serializers.ModelSerializer):
    """Payment order for API responses."""

    approval_url = serializers.SerializerMethodField()
    appointment_id = serializers.IntegerField(read_only=True, allow_null=True)

    class Meta:
        model = PaymentOrder
        fields = [
            "id",
            "order_id",
            "status",
            "payment_type",
            "amount",
            "currency",
            "tenant_id",
            "patient_id",
            "doctor_id",
            "service_id",
            "slot_start",
            "approval_url",
            "appointment_id",
            "capture_id",
            "completed_at",
            "failed_at",
            "failure_reason",
            "created_at",
        ]
        read_only_fields = fields

    def get_approval_url(self, obj: PaymentOrder) -> str:
        return (obj.metadata or {}).get("approval_url", "")


# =============================================================================
# Subscriptions
# =============================================================================


class CreateSubscriptionSerializer(serializers.Serializer):
    tenant_id = serializers.IntegerField(min_value=1)
    tier = serializers.ChoiceField(choices=PlanTier.choices)
    cycle = serializers.ChoiceField(
        choices=BillingCycle.choices,
        default=BillingCycle.MONTHLY,
    )


class PlanChangeSerializer(serializers.Serializer):
    """
    Plan change request.

    Fields:
        tier: Target tier
        immediate: Apply now (upgrade path) instead of at the next renewal
    """

    tier = serializers.ChoiceField(choices=PlanTier.choices)
    immediate = serializers.BooleanField(default=False)


class CancelSubscriptionSerializer(serializers.Serializer):
    """
    Cancellation request.

    Fields:
        effective_date: When the cancellation takes effect (default: period end)
        reason: Free-text reason kept on the subscription and audit log
    """

    effective_date = serializers.DateTimeField(required=False, allow_null=True)
    reason = serializers.CharField(required=False, allow_blank=True, default="")


class SubscriptionSerializer(serializers.ModelSerializer):
    """Subscription for API responses."""

    class Meta:
        model = Subscription
        fields = [
            "id",
            "tenant_id",
            "provider_subscription_id",
            "status",
            "plan_tier",
            "billing_cycle",
            "provider_plan_id",
            "approval_url",
            "current_period_start",
            "current_period_end",
            "renewal_date",
            "pending_plan_tier",
            "pending_plan_effective_date",
            "cancellation_date",
            "cancellation_effective_date",
            "cancellation_reason",
            "payment_method_mask",
            "payment_method_type",
            "created_at",
            "updated_at",
        ]
        read_only_fields = fields


# =============================================================================
# Plan Catalog
# =============================================================================


class PlanTierSerializer(serializers.Serializer):
    """Read-only view of a PlanTierDetails entry."""

    tier = serializers.CharField()
    tier_name = serializers.CharField()
    description = serializers.CharField()
    monthly_plan_id = serializers.CharField()
    annual_plan_id = serializers.CharField()
    prices = serializers.SerializerMethodField()
    features = serializers.ListField(child=serializers.CharField())
    limits = serializers.DictField(child=serializers.IntegerField())

    def get_prices(self, obj) -> dict[str, dict[str, str]]:
        """Amounts as strings, keyed by currency then cycle."""
        return {
            currency: {cycle: str(amount) for cycle, amount in cycles.items()}
            for currency, cycles in obj.prices.items()
        }
