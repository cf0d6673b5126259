"""
State machine enums for billing models.
"""

from billing.state_machines.states import (
    PLAN_TIER_ORDER,
    BillingCycle,
    GatewayEnvironment,
    PaymentOrderStatus,
    PaymentType,
    PlanTier,
    SubscriptionStatus,
    WebhookEventStatus,
)

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
