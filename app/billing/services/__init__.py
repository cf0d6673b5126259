"""
Billing services.

Usage:
    from billing.services import OrderPaymentProcessor, SubscriptionLifecycleManager
"""

from billing.services.audit import BillingAuditLogger
from billing.services.order_processor import (
    CaptureOutcome,
    OrderPaymentProcessor,
    parse_slot_start,
)
from billing.services.subscription_lifecycle import SubscriptionLifecycleManager

__all__ = [
    "BillingAuditLogger",
    "CaptureOutcome",
    "OrderPaymentProcessor",
    "SubscriptionLifecycleManager",
    "parse_slot_start",
]
