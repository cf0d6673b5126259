"""
Payment gateway adapters.

Usage:
    from billing.adapters import get_gateway_client

    gateway = get_gateway_client(tenant_id=tenant.id)
    result = gateway.capture_order(paypal_order_id)
"""

from billing.adapters.credentials import GatewayCredentials, resolve_credentials, resolve_webhook_id
from billing.adapters.paypal_adapter import (
    AccessTokenCache,
    CaptureResult,
    CreateOrderParams,
    CreateSubscriptionParams,
    IdempotencyKeyGenerator,
    OrderResult,
    PayPalAdapter,
    SubscriptionDetails,
    SubscriptionResult,
    get_gateway_client,
    parse_subscription_details,
    reset_gateway_clients,
)

__all__ = [
    "AccessTokenCache",
    "CaptureResult",
    "CreateOrderParams",
    "CreateSubscriptionParams",
    "GatewayCredentials",
    "IdempotencyKeyGenerator",
    "OrderResult",
    "PayPalAdapter",
    "SubscriptionDetails",
    "SubscriptionResult",
    "get_gateway_client",
    "parse_subscription_details",
    "reset_gateway_clients",
    "resolve_credentials",
    "resolve_webhook_id",
]
