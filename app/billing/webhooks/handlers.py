"""
Webhook event handlers for PayPal events.

Handlers are looked up by event type in a registry. Each takes the stored
WebhookEvent and returns a ServiceResult: success marks the event
PROCESSED, failure marks it FAILED for the retry sweep.

Usage:
    from billing.webhooks.handlers import dispatch_webhook, register_handler

    @register_handler("CUSTOMER.DISPUTE.CREATED")
    def handle_dispute(webhook_event: WebhookEvent) -> ServiceResult:
        ...

    result = dispatch_webhook(webhook_event)
"""

from __future__ import annotations

import logging
import uuid
from typing import Any, Callable

from core.exceptions import NotFoundError
from core.services import ServiceResult

from billing.models import PaymentOrder, WebhookEvent
from billing.services import OrderPaymentProcessor, SubscriptionLifecycleManager
from billing.services.subscription_lifecycle import SUBSCRIPTION_EVENT_TYPES

logger = logging.getLogger(__name__)


# =============================================================================
# Handler Registry
# =============================================================================


WEBHOOK_HANDLERS: dict[str, Callable[[WebhookEvent], ServiceResult]] = {}


def register_handler(*event_types: str) -> Callable:
    """
    Decorator to register a handler for one or more event types.

    Usage:
        @register_handler("PAYMENT.CAPTURE.COMPLETED")
        def handle_capture_completed(webhook_event: WebhookEvent) -> ServiceResult:
            ...
    """

    def decorator(func: Callable[[WebhookEvent], ServiceResult]) -> Callable:
        for event_type in event_types:
            WEBHOOK_HANDLERS[event_type] = func
            logger.debug(f"Registered webhook handler for {event_type}")
        return func

    return decorator


def dispatch_webhook(webhook_event: WebhookEvent) -> ServiceResult:
    """
    Dispatch a webhook event to its handler.

    Unknown event types are logged and succeed, so they are not retried.
    """
    handler = WEBHOOK_HANDLERS.get(webhook_event.event_type)

    if not handler:
        logger.info(
            f"No handler registered for event type: {webhook_event.event_type}",
            extra={"provider_event_id": webhook_event.provider_event_id},
        )
        return ServiceResult.success(None)

    logger.info(
        f"Dispatching {webhook_event.event_type} to handler",
        extra={"provider_event_id": webhook_event.provider_event_id},
    )

    return handler(webhook_event)


# =============================================================================
# Order Capture Handlers
# =============================================================================


def _order_id_from_capture(resource: dict[str, Any]) -> str | None:
    related = (resource.get("supplementary_data") or {}).get("related_ids") or {}
    if related.get("order_id"):
        return related["order_id"]

    # Fall back to our own reference, sent as custom_id at order creation.
    custom_id = resource.get("custom_id")
    if custom_id:
        order = PaymentOrder.objects.filter(pk=_as_uuid(custom_id)).first()
        if order is not None:
            return order.order_id
    return None


def _as_uuid(value: str) -> uuid.UUID | None:
    try:
        return uuid.UUID(str(value))
    except ValueError:
        return None


@register_handler("PAYMENT.CAPTURE.COMPLETED")
def handle_capture_completed(webhook_event: WebhookEvent) -> ServiceResult:
    """
    A capture settled at PayPal.

    Completes and fulfils the order unless the synchronous capture
    already did.
    """
    resource = webhook_event.resource
    order_id = _order_id_from_capture(resource)
    if not order_id:
        logger.error(
            "PAYMENT.CAPTURE.COMPLETED: could not resolve order",
            extra={"provider_event_id": webhook_event.provider_event_id},
        )
        return ServiceResult.failure(
            "Could not resolve order from capture webhook",
            error_code="INVALID_WEBHOOK_PAYLOAD",
        )

    payer = resource.get("payer") or {}
    name = payer.get("name") or {}
    return _process_payment(
        webhook_event,
        order_id=order_id,
        capture_id=resource.get("id", ""),
        payer_email=payer.get("email_address", ""),
        payer_name=" ".join(p for p in (name.get("given_name"), name.get("surname")) if p),
    )


@register_handler("CHECKOUT.ORDER.COMPLETED")
def handle_order_completed(webhook_event: WebhookEvent) -> ServiceResult:
    """An order reached COMPLETED (capture included in the order resource)."""
    resource = webhook_event.resource
    order_id = resource.get("id")
    if not order_id:
        return ServiceResult.failure(
            "Order webhook has no order id",
            error_code="INVALID_WEBHOOK_PAYLOAD",
        )

    capture_id = ""
    for unit in resource.get("purchase_units") or []:
        captures = (unit.get("payments") or {}).get("captures") or []
        if captures:
            capture_id = captures[0].get("id", "")
            break

    payer = resource.get("payer") or {}
    name = payer.get("name") or {}
    return _process_payment(
        webhook_event,
        order_id=order_id,
        capture_id=capture_id,
        payer_email=payer.get("email_address", ""),
        payer_name=" ".join(p for p in (name.get("given_name"), name.get("surname")) if p),
    )


def _process_payment(
    webhook_event: WebhookEvent,
    order_id: str,
    capture_id: str,
    payer_email: str,
    payer_name: str,
) -> ServiceResult:
    try:
        outcome = OrderPaymentProcessor().process_webhook_payment(
            order_id,
            capture_id=capture_id,
            payer_email=payer_email,
            payer_name=payer_name,
            raw_payload=webhook_event.resource,
        )
    except NotFoundError as e:
        logger.warning(
            "Payment webhook for unknown order",
            extra={
                "order_id": order_id,
                "provider_event_id": webhook_event.provider_event_id,
            },
        )
        return ServiceResult.from_exception(e)

    # A capture for a FAILED order is flagged for reconciliation; the
    # event itself has been handled.
    return ServiceResult.success(outcome.order)


# =============================================================================
# Subscription Handlers
# =============================================================================


@register_handler(*SUBSCRIPTION_EVENT_TYPES)
def handle_subscription_event(webhook_event: WebhookEvent) -> ServiceResult:
    """Subscription lifecycle events and recurring sale payments."""
    return SubscriptionLifecycleManager().apply_webhook_event(
        webhook_event.event_type, webhook_event.resource
    )
