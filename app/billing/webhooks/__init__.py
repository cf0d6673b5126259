"""
PayPal webhook ingestion: endpoint, dispatcher, processing and handlers.

Usage:
    from billing.webhooks import dispatch_webhook, register_handler
"""

from billing.webhooks.handlers import (
    WEBHOOK_HANDLERS,
    dispatch_webhook,
    register_handler,
)

__all__ = ["WEBHOOK_HANDLERS", "dispatch_webhook", "register_handler"]
