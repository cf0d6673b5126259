"""
State enums for billing models.

These are Django TextChoices for database storage and admin integration.
PaymentOrder and Subscription drive theirs with django-fsm.

State Machines Overview:

PaymentOrder States:
    PENDING → COMPLETED (capture succeeded)
    PENDING → FAILED (declined or gateway error)

Subscription States:
    PENDING_APPROVAL → ACTIVE
    ACTIVE → PAST_DUE → ACTIVE
    ACTIVE/PAST_DUE → SUSPENDED → ACTIVE
    any non-terminal → CANCELED
"""

from django.db import models


class PaymentOrderStatus(models.TextChoices):
    """
    States for a consultation payment order.

    Terminal states: COMPLETED, FAILED
    """

    PENDING = "PENDING", "Pending"
    COMPLETED = "COMPLETED", "Completed"
    FAILED = "FAILED", "Failed"


class PaymentType(models.TextChoices):
    VIRTUAL_CONSULTATION = "VIRTUAL_CONSULTATION", "Virtual Consultation"


class SubscriptionStatus(models.TextChoices):
    """
    States for a clinic subscription.

    Terminal states: CANCELED

    State Flow:
        PENDING_APPROVAL → ACTIVE (subscriber approved at the gateway)
        ACTIVE → PAST_DUE (renewal payment failed)
        ACTIVE/PAST_DUE → SUSPENDED (gateway suspended billing)
        PAST_DUE/SUSPENDED → ACTIVE (payment recovered / reactivated)
        any non-terminal → CANCELED
    """

    PENDING_APPROVAL = "PENDING_APPROVAL", "Pending Approval"
    ACTIVE = "ACTIVE", "Active"
    PAST_DUE = "PAST_DUE", "Past Due"
    SUSPENDED = "SUSPENDED", "Suspended"
    CANCELED = "CANCELED", "Canceled"


class PlanTier(models.TextChoices):
    """Subscription tiers, in ascending order of capability."""

    BASIC = "BASIC", "Basic"
    PROFESSIONAL = "PROFESSIONAL", "Professional"
    ENTERPRISE = "ENTERPRISE", "Enterprise"
    CUSTOM = "CUSTOM", "Custom"


class BillingCycle(models.TextChoices):
    MONTHLY = "MONTHLY", "Monthly"
    ANNUAL = "ANNUAL", "Annual"


class WebhookEventStatus(models.TextChoices):
    """
    Processing status for WebhookEvent.

    State Flow:
        PENDING → PROCESSING → PROCESSED
        PENDING → PROCESSING → FAILED (can retry)
    """

    PENDING = "PENDING", "Pending"
    PROCESSING = "PROCESSING", "Processing"
    PROCESSED = "PROCESSED", "Processed"
    FAILED = "FAILED", "Failed"


class GatewayEnvironment(models.TextChoices):
    SANDBOX = "sandbox", "Sandbox"
    LIVE = "live", "Live"


PLAN_TIER_ORDER = {
    PlanTier.BASIC: 0,
    PlanTier.PROFESSIONAL: 1,
    PlanTier.ENTERPRISE: 2,
    PlanTier.CUSTOM: 3,
}

__all__ = [
    "BillingCycle",
    "GatewayEnvironment",
    "PLAN_TIER_ORDER",
    "PaymentOrderStatus",
    "PaymentType",
    "PlanTier",
    "SubscriptionStatus",
    "WebhookEventStatus",
]
