"""
Billing audit trail writer.

Writes BillingAuditLogEntry rows and mirrors each one to the
"billing.audit" logger. The audit trail is a side channel: a failed write
is logged and never interrupts the billing operation being audited.

Usage:
    from billing.services.audit import BillingAuditLogger

    audit = BillingAuditLogger()
    audit.log_plan_change(subscription, old_tier="BASIC", new_tier="PROFESSIONAL",
                          actor="42", action="PLAN_CHANGE_APPLIED")
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from django.db import transaction

from billing.models import BillingAuditLogEntry

if TYPE_CHECKING:
    from typing import Any

    from billing.models import PaymentOrder, Subscription, WebhookEvent

audit_logger = logging.getLogger("billing.audit")
logger = logging.getLogger(__name__)

SYSTEM_ACTOR = "system"
WEBHOOK_ACTOR = "webhook"


class BillingAuditLogger:
    """Append-only audit writer. Every method returns the entry or None."""

    # =========================================================================
    # Core
    # =========================================================================

    def _write(
        self,
        action: str,
        *,
        tenant_id=None,
        entity_type: str = "",
        entity_id: Any = "",
        actor: str | None = None,
        old_value: Any = "",
        new_value: Any = "",
        details: dict[str, Any] | None = None,
        success: bool = True,
        error_message: str = "",
    ) -> BillingAuditLogEntry | None:
        log_extra = {
            "action": action,
            "tenant_id": str(tenant_id) if tenant_id is not None else None,
            "entity_type": entity_type,
            "entity_id": str(entity_id),
            "actor": actor or SYSTEM_ACTOR,
            "success": success,
        }
        if success:
            audit_logger.info(f"{action} {entity_type}:{entity_id}", extra=log_extra)
        else:
            audit_logger.warning(
                f"{action} {entity_type}:{entity_id} failed: {error_message}",
                extra=log_extra,
            )

        try:
            with transaction.atomic():
                return BillingAuditLogEntry.objects.create(
                    tenant_id=tenant_id,
                    action=action,
                    entity_type=entity_type,
                    entity_id=str(entity_id or "")[:64],
                    actor=str(actor or SYSTEM_ACTOR)[:64],
                    old_value=str(old_value or "")[:255],
                    new_value=str(new_value or "")[:255],
                    details=details or {},
                    success=success,
                    error_message=error_message or "",
                )
        except Exception:
            logger.exception("Failed to write billing audit entry", extra=log_extra)
            return None

    def log_success(self, action: str, **kwargs) -> BillingAuditLogEntry | None:
        return self._write(action, success=True, **kwargs)

    def log_failure(
        self, action: str, error_message: str, **kwargs
    ) -> BillingAuditLogEntry | None:
        return self._write(action, success=False, error_message=error_message, **kwargs)

    # =========================================================================
    # Gateway
    # =========================================================================

    def log_gateway_api_call(
        self, operation: str, entity_id: Any = "", tenant_id=None, details=None
    ):
        return self._write(
            "GATEWAY_API_CALL",
            tenant_id=tenant_id,
            entity_type="gateway",
            entity_id=entity_id,
            new_value=operation,
            details=details,
        )

    def log_gateway_api_error(
        self, operation: str, error: Exception, entity_id: Any = "", tenant_id=None
    ):
        return self._write(
            "GATEWAY_API_ERROR",
            tenant_id=tenant_id,
            entity_type="gateway",
            entity_id=entity_id,
            new_value=operation,
            details={"error_code": getattr(error, "error_code", type(error).__name__)},
            success=False,
            error_message=str(error),
        )

    # =========================================================================
    # Webhooks
    # =========================================================================

    def log_webhook_received(self, event: WebhookEvent):
        return self._write(
            "WEBHOOK_RECEIVED",
            entity_type="webhook_event",
            entity_id=event.provider_event_id,
            actor=WEBHOOK_ACTOR,
            new_value=event.event_type,
        )

    def log_webhook_processed(self, event: WebhookEvent, success: bool, error: str = ""):
        return self._write(
            "WEBHOOK_PROCESSED",
            entity_type="webhook_event",
            entity_id=event.provider_event_id,
            actor=WEBHOOK_ACTOR,
            new_value=event.event_type,
            details={"retry_count": event.retry_count},
            success=success,
            error_message=error,
        )

    def log_webhook_verification_failure(self, event_id: str | None, reason: str):
        return self._write(
            "WEBHOOK_VERIFICATION_FAILED",
            entity_type="webhook_event",
            entity_id=event_id or "",
            actor=WEBHOOK_ACTOR,
            success=False,
            error_message=reason,
        )

    # =========================================================================
    # Subscriptions
    # =========================================================================

    def log_billing_status_change(
        self, tenant_id, old_status: str, new_status: str, actor: str | None = None
    ):
        return self._write(
            "BILLING_STATUS_CHANGED",
            tenant_id=tenant_id,
            entity_type="tenant",
            entity_id=tenant_id,
            actor=actor,
            old_value=old_status,
            new_value=new_status,
        )

    def log_subscription_event(
        self,
        subscription: Subscription,
        action: str,
        actor: str | None = None,
        old_value: Any = "",
        new_value: Any = "",
        details: dict[str, Any] | None = None,
        success: bool = True,
        error_message: str = "",
    ):
        return self._write(
            action,
            tenant_id=subscription.tenant_id,
            entity_type="subscription",
            entity_id=subscription.provider_subscription_id,
            actor=actor,
            old_value=old_value,
            new_value=new_value,
            details=details,
            success=success,
            error_message=error_message,
        )

    def log_payment_transaction(
        self, subscription: Subscription, transaction_id: str, amount, currency: str
    ):
        return self.log_subscription_event(
            subscription,
            "PAYMENT_RECORDED",
            actor=WEBHOOK_ACTOR,
            new_value=f"{amount} {currency}",
            details={"transaction_id": transaction_id},
        )

    def log_plan_change(
        self,
        subscription: Subscription,
        old_tier: str,
        new_tier: str,
        actor: str | None = None,
        action: str = "PLAN_CHANGE_REQUESTED",
        details: dict[str, Any] | None = None,
    ):
        return self.log_subscription_event(
            subscription, action, actor=actor, old_value=old_tier, new_value=new_tier,
            details=details,
        )

    def log_scheduled_plan_change(
        self, subscription: Subscription, old_tier: str, new_tier: str, effective_date, actor=None
    ):
        return self.log_plan_change(
            subscription,
            old_tier,
            new_tier,
            actor=actor,
            action="PLAN_CHANGE_SCHEDULED",
            details={"effective_date": effective_date.isoformat() if effective_date else None},
        )

    def log_plan_upgrade(self, subscription: Subscription, old_tier: str, new_tier: str, actor=None):
        return self.log_plan_change(
            subscription, old_tier, new_tier, actor=actor, action="PLAN_UPGRADE"
        )

    def log_plan_downgrade(self, subscription: Subscription, old_tier: str, new_tier: str, actor=None):
        return self.log_plan_change(
            subscription, old_tier, new_tier, actor=actor, action="PLAN_DOWNGRADE"
        )

    def log_manual_plan_override(
        self, subscription: Subscription, old_tier: str, new_tier: str, actor: str, reason: str
    ):
        return self.log_plan_change(
            subscription,
            old_tier,
            new_tier,
            actor=actor,
            action="MANUAL_PLAN_OVERRIDE",
            details={"reason": reason},
        )

    def log_cancellation(
        self,
        subscription: Subscription,
        action: str,
        actor: str | None = None,
        reason: str = "",
        success: bool = True,
        error_message: str = "",
    ):
        effective = subscription.cancellation_effective_date
        return self.log_subscription_event(
            subscription,
            action,
            actor=actor,
            old_value=subscription.status,
            new_value=effective.isoformat() if effective else "",
            details={"reason": reason},
            success=success,
            error_message=error_message,
        )

    def log_payment_method_update(
        self, subscription: Subscription, old_mask: str, new_mask: str, actor: str | None = None
    ):
        return self.log_subscription_event(
            subscription,
            "PAYMENT_METHOD_UPDATED",
            actor=actor,
            old_value=old_mask,
            new_value=new_mask,
        )

    # =========================================================================
    # Orders
    # =========================================================================

    def log_order_event(
        self,
        order: PaymentOrder,
        action: str,
        actor: str | None = None,
        details: dict[str, Any] | None = None,
        success: bool = True,
        error_message: str = "",
    ):
        return self._write(
            action,
            tenant_id=order.tenant_id,
            entity_type="payment_order",
            entity_id=order.order_id,
            actor=actor,
            new_value=order.status,
            details=details,
            success=success,
            error_message=error_message,
        )
