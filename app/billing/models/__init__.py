"""
Billing domain models.

- PaymentOrder: One-time consultation payment
- Subscription: Clinic plan subscription
- PaymentTransaction: Recurring subscription payment
- WebhookEvent: Gateway webhook tracking for idempotent processing
- BillingAuditLogEntry: Append-only audit trail
- TenantGatewayCredentials: Per-clinic gateway credentials
"""

from billing.models.audit_log import BillingAuditLogEntry
from billing.models.credentials import TenantGatewayCredentials
from billing.models.payment_order import PaymentOrder
from billing.models.payment_transaction import PaymentTransaction
from billing.models.subscription import Subscription
from billing.models.webhook_event import WebhookEvent

__all__ = [
    "BillingAuditLogEntry",
    "PaymentOrder",
    "PaymentTransaction",
    "Subscription",
    "TenantGatewayCredentials",
    "WebhookEvent",
]
