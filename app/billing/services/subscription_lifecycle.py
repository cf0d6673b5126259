"""
Subscription lifecycle management for clinic plans.

SubscriptionLifecycleManager owns every change to a Subscription:

- Creation (PENDING_APPROVAL until the clinic approves at PayPal)
- Webhook-driven transitions (activation, failed renewals, suspension,
  cancellation, renewals)
- Plan changes, applied now or deferred to the next renewal
- Scheduled cancellations
- The daily sweep that applies deferred changes whose date has come

Out-of-order webhooks are expected: a transition the current state does
not allow is logged and audited, then ignored.

Usage:
    from billing.services import SubscriptionLifecycleManager

    manager = SubscriptionLifecycleManager()
    subscription = manager.create_subscription(tenant.id, "PROFESSIONAL", "MONTHLY")
    redirect(subscription.approval_url)

    manager.request_plan_change(subscription.provider_subscription_id, "ENTERPRISE")
    manager.apply_scheduled_changes()  # daily, from Celery beat
"""

from __future__ import annotations

from datetime import timedelta
from decimal import Decimal, InvalidOperation
from typing import TYPE_CHECKING, Any

from django.db import transaction
from django.utils import timezone
from django.utils.dateparse import parse_datetime

from django_fsm import can_proceed

from core.exceptions import ConfigurationError, ConflictError, NotFoundError, ValidationError
from core.services import BaseService, ServiceResult

from clinic.models import TenantBillingStatus
from clinic.services import DirectoryService

from billing.adapters import CreateSubscriptionParams, get_gateway_client
from billing.catalog import PlanTierCatalog, get_plan_catalog
from billing.exceptions import GatewayError, InvalidStateTransitionError
from billing.models import PaymentTransaction, Subscription
from billing.models.subscription import NON_TERMINAL_STATES
from billing.monitoring import BillingAlertService, BillingMetrics
from billing.services.audit import SYSTEM_ACTOR, WEBHOOK_ACTOR, BillingAuditLogger
from billing.state_machines import BillingCycle, SubscriptionStatus

if TYPE_CHECKING:
    from collections.abc import Callable
    from datetime import datetime

    from billing.adapters import PayPalAdapter, SubscriptionDetails


# =============================================================================
# Event Types
# =============================================================================

EVENT_SUBSCRIPTION_ACTIVATED = "BILLING.SUBSCRIPTION.ACTIVATED"
EVENT_SUBSCRIPTION_REACTIVATED = "BILLING.SUBSCRIPTION.RE-ACTIVATED"
EVENT_SUBSCRIPTION_PAYMENT_FAILED = "BILLING.SUBSCRIPTION.PAYMENT.FAILED"
EVENT_SUBSCRIPTION_SUSPENDED = "BILLING.SUBSCRIPTION.SUSPENDED"
EVENT_SUBSCRIPTION_CANCELLED = "BILLING.SUBSCRIPTION.CANCELLED"
EVENT_SUBSCRIPTION_EXPIRED = "BILLING.SUBSCRIPTION.EXPIRED"
EVENT_SUBSCRIPTION_UPDATED = "BILLING.SUBSCRIPTION.UPDATED"
EVENT_SALE_COMPLETED = "PAYMENT.SALE.COMPLETED"

SUBSCRIPTION_EVENT_TYPES = (
    EVENT_SUBSCRIPTION_ACTIVATED,
    EVENT_SUBSCRIPTION_REACTIVATED,
    EVENT_SUBSCRIPTION_PAYMENT_FAILED,
    EVENT_SUBSCRIPTION_SUSPENDED,
    EVENT_SUBSCRIPTION_CANCELLED,
    EVENT_SUBSCRIPTION_EXPIRED,
    EVENT_SUBSCRIPTION_UPDATED,
    EVENT_SALE_COMPLETED,
)

CYCLE_LENGTH = {
    BillingCycle.MONTHLY: timedelta(days=30),
    BillingCycle.ANNUAL: timedelta(days=365),
}

TENANT_STATUS_FOR = {
    SubscriptionStatus.ACTIVE: TenantBillingStatus.ACTIVE,
    SubscriptionStatus.PAST_DUE: TenantBillingStatus.PAST_DUE,
    SubscriptionStatus.SUSPENDED: TenantBillingStatus.SUSPENDED,
    SubscriptionStatus.CANCELED: TenantBillingStatus.CANCELED,
}

# PayPal subscription status -> local status
GATEWAY_STATUS_MAP = {
    "APPROVAL_PENDING": SubscriptionStatus.PENDING_APPROVAL,
    "APPROVED": SubscriptionStatus.PENDING_APPROVAL,
    "ACTIVE": SubscriptionStatus.ACTIVE,
    "SUSPENDED": SubscriptionStatus.SUSPENDED,
    "CANCELLED": SubscriptionStatus.CANCELED,
    "EXPIRED": SubscriptionStatus.CANCELED,
}


def normalize_cycle(cycle: str | None) -> str:
    if (cycle or "").strip().upper() == BillingCycle.ANNUAL:
        return BillingCycle.ANNUAL
    return BillingCycle.MONTHLY


class SubscriptionLifecycleManager(BaseService):
    """
    Applies subscription state changes.

    Collaborators are injectable for tests:
        gateway: PayPalAdapter (default: get_gateway_client(tenant_id))
        catalog: PlanTierCatalog (default: get_plan_catalog())
        audit, metrics, alerts
    """

    def __init__(
        self,
        gateway: PayPalAdapter | None = None,
        catalog: PlanTierCatalog | None = None,
        audit: BillingAuditLogger | None = None,
        metrics: BillingMetrics | None = None,
        alerts: BillingAlertService | None = None,
    ):
        self._gateway = gateway
        self.catalog = catalog or get_plan_catalog()
        self.audit = audit or BillingAuditLogger()
        self.metrics = metrics or BillingMetrics()
        self.alerts = alerts or BillingAlertService(metrics=self.metrics)

    def gateway_for(self, tenant_id) -> PayPalAdapter:
        return self._gateway or get_gateway_client(tenant_id)

    # =========================================================================
    # Creation
    # =========================================================================

    def create_subscription(
        self,
        tenant_id,
        tier: str,
        cycle: str | None = None,
        actor: str | None = None,
    ) -> Subscription:
        """
        Create a subscription awaiting the clinic's approval at PayPal.

        Raises:
            NotFoundError: Unknown tenant
            ValidationError: Unknown tier
            ConfigurationError: The tier has no gateway plan id for the cycle
            ConflictError: The tenant already has a live subscription
            GatewayError: The gateway refused or failed after retries
        """
        logger = self.get_logger()
        tenant = DirectoryService.get_tenant(tenant_id)
        tier_key = self.catalog.get_tier_details(tier).tier
        billing_cycle = normalize_cycle(cycle)

        plan_id = self.catalog.get_plan_id(tier_key, billing_cycle)
        if not plan_id:
            raise ConfigurationError(
                f"No gateway plan configured for {tier_key} {billing_cycle}",
                error_code="PLAN_NOT_MAPPED",
                details={"tier": tier_key, "billing_cycle": billing_cycle},
            )

        if Subscription.objects.filter(
            tenant_id=tenant.id, status__in=NON_TERMINAL_STATES
        ).exists():
            raise ConflictError(
                "Clinic already has a subscription",
                error_code="SUBSCRIPTION_EXISTS",
                details={"tenant_id": tenant.id},
            )

        try:
            result = self.gateway_for(tenant.id).create_subscription(
                CreateSubscriptionParams(plan_id=plan_id, tenant_id=tenant.id)
            )
        except GatewayError as e:
            self.metrics.record_subscription_creation_failure()
            self.alerts.alert_subscription_creation_failure(
                tenant.id, e.error_code, e.message
            )
            self.audit.log_gateway_api_error(
                "create_subscription", e, entity_id=plan_id, tenant_id=tenant.id
            )
            raise

        subscription = Subscription.objects.create(
            tenant=tenant,
            provider_subscription_id=result.subscription_id,
            plan_tier=tier_key,
            billing_cycle=billing_cycle,
            provider_plan_id=plan_id,
            approval_url=result.approval_url or "",
        )
        self.metrics.record_subscription_created()
        self.audit.log_subscription_event(
            subscription,
            "SUBSCRIPTION_CREATED",
            actor=actor,
            new_value=tier_key,
            details={"billing_cycle": billing_cycle, "plan_id": plan_id},
        )
        logger.info(
            "Subscription created",
            extra={
                "tenant_id": tenant.id,
                "subscription_id": subscription.provider_subscription_id,
                "plan_tier": tier_key,
            },
        )
        return subscription

    # =========================================================================
    # Webhook Events
    # =========================================================================

    def apply_webhook_event(
        self, event_type: str, resource: dict[str, Any]
    ) -> ServiceResult[Subscription | None]:
        """
        Apply a subscription or sale webhook.

        Returns:
            success(subscription) when applied or safely ignored,
            success(None) for event types this manager does not handle,
            failure when the subscription is unknown (so the event is retried)
        """
        logger = self.get_logger()
        handlers: dict[str, Callable[[Subscription, dict, str], None]] = {
            EVENT_SUBSCRIPTION_ACTIVATED: self._on_activated,
            EVENT_SUBSCRIPTION_REACTIVATED: self._on_reactivated,
            EVENT_SUBSCRIPTION_PAYMENT_FAILED: self._on_payment_failed,
            EVENT_SUBSCRIPTION_SUSPENDED: self._on_suspended,
            EVENT_SUBSCRIPTION_CANCELLED: self._on_cancelled,
            EVENT_SUBSCRIPTION_EXPIRED: self._on_cancelled,
            EVENT_SUBSCRIPTION_UPDATED: self._on_updated,
            EVENT_SALE_COMPLETED: self._on_sale_completed,
        }
        handler = handlers.get(event_type)
        if handler is None:
            logger.info(
                "Ignoring unhandled subscription event",
                extra={"event_type": event_type},
            )
            return ServiceResult.success(None)

        if event_type == EVENT_SALE_COMPLETED:
            subscription_id = resource.get("billing_agreement_id")
        else:
            subscription_id = resource.get("id")
        if not subscription_id:
            return ServiceResult.failure(
                f"{event_type} resource has no subscription id",
                error_code="MISSING_SUBSCRIPTION_ID",
            )

        with transaction.atomic():
            subscription = (
                Subscription.objects.select_for_update()
                .filter(provider_subscription_id=subscription_id)
                .first()
            )
            if subscription is None:
                logger.warning(
                    "Webhook for unknown subscription",
                    extra={"event_type": event_type, "subscription_id": subscription_id},
                )
                return ServiceResult.failure(
                    f"Subscription {subscription_id} not found",
                    error_code="SUBSCRIPTION_NOT_FOUND",
                )
            handler(subscription, resource, event_type)

        return ServiceResult.success(subscription)

    def _on_activated(self, subscription: Subscription, resource: dict, event_type: str) -> None:
        if subscription.status == SubscriptionStatus.ACTIVE:
            # Redelivery: refresh the period only.
            self._apply_billing_info(subscription, resource)
            subscription.save()
            return

        method = (
            "activate"
            if subscription.status == SubscriptionStatus.PENDING_APPROVAL
            else "reactivate"
        )
        if not self._transition(subscription, method, event_type):
            return
        self._apply_billing_info(subscription, resource)
        subscription.save()
        self.metrics.record_subscription_activated()
        self._after_transition(subscription, "SUBSCRIPTION_ACTIVATED", event_type)

    def _on_reactivated(self, subscription: Subscription, resource: dict, event_type: str) -> None:
        if not self._transition(subscription, "reactivate", event_type):
            return
        self._apply_billing_info(subscription, resource)
        subscription.save()
        self._after_transition(subscription, "SUBSCRIPTION_REACTIVATED", event_type)

    def _on_payment_failed(self, subscription: Subscription, resource: dict, event_type: str) -> None:
        if not self._transition(subscription, "mark_past_due", event_type):
            return
        subscription.save()
        self._after_transition(subscription, "SUBSCRIPTION_PAST_DUE", event_type)

    def _on_suspended(self, subscription: Subscription, resource: dict, event_type: str) -> None:
        if not self._transition(subscription, "suspend", event_type):
            return
        subscription.save()
        self.metrics.record_subscription_suspended()
        self._after_transition(subscription, "SUBSCRIPTION_SUSPENDED", event_type)

    def _on_cancelled(self, subscription: Subscription, resource: dict, event_type: str) -> None:
        reason = resource.get("status_change_note") or event_type
        if not self._transition(subscription, "cancel", event_type, reason=reason):
            return
        subscription.save()
        self.metrics.record_subscription_cancelled()
        self._after_transition(subscription, "SUBSCRIPTION_CANCELLED", event_type)

    def _on_updated(self, subscription: Subscription, resource: dict, event_type: str) -> None:
        logger = self.get_logger()
        self._apply_billing_info(subscription, resource)

        plan_id = (resource.get("plan_id") or "").strip()
        if plan_id and plan_id != subscription.provider_plan_id:
            tier = self.catalog.resolve_tier_by_provider_plan_id(plan_id)
            if tier is None:
                error = ConfigurationError(
                    f"Gateway plan {plan_id} is not mapped to a tier",
                    error_code="PLAN_NOT_MAPPED",
                )
                logger.error(
                    str(error),
                    extra={
                        "error_code": error.error_code,
                        "subscription_id": subscription.provider_subscription_id,
                        "plan_id": plan_id,
                    },
                )
            elif tier == subscription.pending_plan_tier and not subscription.pending_plan_due():
                # Revision already at the gateway; the tier waits for its effective date
                subscription.provider_plan_id = plan_id
                logger.info(
                    "Gateway plan updated ahead of scheduled change",
                    extra={
                        "subscription_id": subscription.provider_subscription_id,
                        "plan_id": plan_id,
                        "effective_date": str(subscription.pending_plan_effective_date),
                    },
                )
            else:
                old_tier = subscription.plan_tier
                subscription.plan_tier = tier
                subscription.provider_plan_id = plan_id
                if subscription.pending_plan_tier == tier:
                    subscription.clear_pending_plan()
                if old_tier != tier:
                    self.audit.log_plan_change(
                        subscription,
                        old_tier,
                        tier,
                        actor=WEBHOOK_ACTOR,
                        action="PLAN_CHANGE_APPLIED",
                        details={"plan_id": plan_id},
                    )

        self._promote_if_due(subscription, actor=WEBHOOK_ACTOR)
        subscription.save()

    def _on_sale_completed(self, subscription: Subscription, resource: dict, event_type: str) -> None:
        logger = self.get_logger()
        transaction_id = resource.get("id")
        if not transaction_id:
            logger.warning(
                "Sale event without id ignored",
                extra={"subscription_id": subscription.provider_subscription_id},
            )
            return

        amount_info = resource.get("amount") or {}
        try:
            amount = Decimal(str(amount_info.get("total") or amount_info.get("value") or "0"))
        except InvalidOperation:
            amount = Decimal("0")
        currency = amount_info.get("currency") or amount_info.get("currency_code") or "USD"

        payment, created = PaymentTransaction.objects.get_or_create(
            transaction_id=transaction_id,
            defaults={
                "tenant_id": subscription.tenant_id,
                "subscription": subscription,
                "amount": amount,
                "currency": currency,
                "status": resource.get("state", "completed"),
                "event_type": event_type,
                "raw_payload": resource,
            },
        )
        if not created:
            logger.info(
                "Sale already recorded",
                extra={"transaction_id": transaction_id},
            )
            return

        self.audit.log_payment_transaction(subscription, transaction_id, amount, currency)

        if subscription.status in (SubscriptionStatus.PAST_DUE, SubscriptionStatus.SUSPENDED):
            subscription.reactivate()
            self._after_transition(subscription, "SUBSCRIPTION_REACTIVATED", event_type)

        self._promote_if_due(subscription, actor=WEBHOOK_ACTOR)
        subscription.save()

    # =========================================================================
    # Plan Changes
    # =========================================================================

    def request_plan_change(
        self,
        subscription_id: str,
        new_tier: str,
        immediate: bool = False,
        actor: str | None = None,
    ) -> Subscription:
        """
        Change the plan now or at the next renewal.

        Raises:
            ValidationError: Unknown tier, or the subscription is already on it
            InvalidStateTransitionError: The subscription is CANCELED
            GatewayError: The gateway refused the revision
        """
        subscription = self._get_subscription(subscription_id)
        tier_key = str(new_tier or "").strip().upper()
        if not self.catalog.has_tier(tier_key):
            raise ValidationError(
                f"Unknown plan tier: {new_tier}",
                error_code="UNKNOWN_PLAN_TIER",
                details={"tier": str(new_tier)},
            )
        if subscription.status == SubscriptionStatus.CANCELED:
            raise InvalidStateTransitionError(
                "Cannot change the plan of a canceled subscription",
                details={"current_state": subscription.status},
            )
        if tier_key == subscription.plan_tier:
            raise ValidationError(
                f"Subscription is already on {tier_key}",
                error_code="SAME_PLAN_TIER",
                details={"tier": tier_key},
            )

        plan_id = self.catalog.get_plan_id(tier_key, subscription.billing_cycle)
        try:
            revision = self.gateway_for(subscription.tenant_id).revise_subscription(
                subscription.provider_subscription_id, plan_id
            )
        except GatewayError as e:
            self.audit.log_gateway_api_error(
                "revise_subscription",
                e,
                entity_id=subscription.provider_subscription_id,
                tenant_id=subscription.tenant_id,
            )
            raise

        with transaction.atomic():
            subscription = Subscription.objects.select_for_update().get(pk=subscription.pk)
            old_tier = subscription.plan_tier
            if immediate:
                subscription.plan_tier = tier_key
                subscription.provider_plan_id = plan_id
                subscription.clear_pending_plan()
            else:
                subscription.set_pending_plan(tier_key, self._next_renewal(subscription))
            if revision.approval_url:
                subscription.approval_url = revision.approval_url
            subscription.save()

        if self.catalog.compare_tiers(old_tier, tier_key) > 0:
            self.audit.log_plan_upgrade(subscription, old_tier, tier_key, actor=actor)
        else:
            self.audit.log_plan_downgrade(subscription, old_tier, tier_key, actor=actor)

        if immediate:
            self.audit.log_plan_change(subscription, old_tier, tier_key, actor=actor)
        else:
            self.audit.log_scheduled_plan_change(
                subscription,
                old_tier,
                tier_key,
                subscription.pending_plan_effective_date,
                actor=actor,
            )

        self.get_logger().info(
            "Plan change requested",
            extra={
                "subscription_id": subscription.provider_subscription_id,
                "old_tier": old_tier,
                "new_tier": tier_key,
                "immediate": immediate,
            },
        )
        return subscription

    # =========================================================================
    # Cancellation
    # =========================================================================

    def request_cancellation(
        self,
        subscription_id: str,
        effective_date: datetime | None = None,
        reason: str = "",
        actor: str | None = None,
    ) -> Subscription:
        """
        Schedule a cancellation. The status does not change until the sweep applies it.

        Raises:
            InvalidStateTransitionError: The subscription is not ACTIVE or PAST_DUE
            ConflictError: A cancellation is already scheduled
        """
        with transaction.atomic():
            subscription = (
                Subscription.objects.select_for_update()
                .filter(provider_subscription_id=subscription_id)
                .first()
            )
            if subscription is None:
                raise self._not_found(subscription_id)

            if subscription.status not in (
                SubscriptionStatus.ACTIVE,
                SubscriptionStatus.PAST_DUE,
            ):
                raise InvalidStateTransitionError(
                    f"Cannot cancel a subscription in '{subscription.status}'",
                    details={"current_state": subscription.status},
                )
            if subscription.has_scheduled_cancellation:
                raise ConflictError(
                    "Cancellation already scheduled",
                    error_code="CANCELLATION_ALREADY_SCHEDULED",
                    details={
                        "effective_date": subscription.cancellation_effective_date.isoformat()
                    },
                )

            now = timezone.now()
            subscription.cancellation_date = now
            subscription.cancellation_effective_date = (
                effective_date or subscription.current_period_end or now
            )
            subscription.cancellation_reason = reason or ""
            subscription.save()

        self.audit.log_cancellation(
            subscription, "CANCELLATION_SCHEDULED", actor=actor, reason=reason
        )
        return subscription

    # =========================================================================
    # Scheduled Sweep
    # =========================================================================

    def apply_scheduled_changes(self, now: datetime | None = None) -> dict[str, int]:
        """
        Apply deferred plan changes and cancellations that are due.

        Each subscription is handled in its own transaction; a failure is
        logged and audited and the sweep moves on.

        Returns:
            Counts: plan_changes_applied, cancellations_applied, failures
        """
        logger = self.get_logger()
        now = now or timezone.now()
        counts = {"plan_changes_applied": 0, "cancellations_applied": 0, "failures": 0}

        due_plan_changes = list(
            Subscription.objects.filter(
                pending_plan_tier__isnull=False,
                pending_plan_effective_date__lte=now,
            )
            .exclude(status=SubscriptionStatus.CANCELED)
            .values_list("pk", flat=True)
        )
        for pk in due_plan_changes:
            try:
                if self._apply_due_plan_change(pk, now):
                    counts["plan_changes_applied"] += 1
            except Exception as e:
                counts["failures"] += 1
                logger.error(
                    f"Scheduled plan change failed: {e}",
                    extra={"subscription_pk": str(pk)},
                    exc_info=True,
                )
                self.audit.log_failure(
                    "PLAN_CHANGE_APPLIED",
                    str(e),
                    entity_type="subscription",
                    entity_id=pk,
                )

        due_cancellations = list(
            Subscription.objects.filter(cancellation_effective_date__lte=now)
            .exclude(status=SubscriptionStatus.CANCELED)
            .values_list("pk", flat=True)
        )
        for pk in due_cancellations:
            try:
                if self._apply_due_cancellation(pk, now):
                    counts["cancellations_applied"] += 1
            except Exception as e:
                counts["failures"] += 1
                logger.error(
                    f"Scheduled cancellation failed: {e}",
                    extra={"subscription_pk": str(pk)},
                    exc_info=True,
                )
                self.audit.log_failure(
                    "CANCELLATION_APPLIED",
                    str(e),
                    entity_type="subscription",
                    entity_id=pk,
                )

        logger.info("Scheduled subscription changes applied", extra=counts)
        return counts

    def _apply_due_plan_change(self, pk, now: datetime) -> bool:
        with transaction.atomic():
            subscription = Subscription.objects.select_for_update().get(pk=pk)
            if not subscription.pending_plan_due(now):
                return False
            promoted = self._promote_if_due(subscription, actor=SYSTEM_ACTOR, now=now)
            subscription.save()
        return promoted

    def _apply_due_cancellation(self, pk, now: datetime) -> bool:
        subscription = Subscription.objects.get(pk=pk)
        if subscription.status == SubscriptionStatus.CANCELED:
            return False

        self.gateway_for(subscription.tenant_id).cancel_subscription(
            subscription.provider_subscription_id,
            reason=subscription.cancellation_reason,
        )

        with transaction.atomic():
            subscription = Subscription.objects.select_for_update().get(pk=pk)
            if subscription.status == SubscriptionStatus.CANCELED:
                return False
            subscription.cancel(reason=subscription.cancellation_reason)
            subscription.save()

        self.metrics.record_subscription_cancelled()
        self._set_tenant_status(subscription, SubscriptionStatus.CANCELED, SYSTEM_ACTOR)
        self.audit.log_cancellation(
            subscription,
            "CANCELLATION_APPLIED",
            reason=subscription.cancellation_reason,
        )
        return True

    # =========================================================================
    # Admin Operations
    # =========================================================================

    def update_payment_method(
        self,
        subscription_id: str,
        mask: str,
        method_type: str = "",
        actor: str | None = None,
    ) -> Subscription:
        with transaction.atomic():
            subscription = (
                Subscription.objects.select_for_update()
                .filter(provider_subscription_id=subscription_id)
                .first()
            )
            if subscription is None:
                raise self._not_found(subscription_id)
            old_mask = subscription.payment_method_mask
            subscription.payment_method_mask = (mask or "")[:32]
            subscription.payment_method_type = (method_type or "")[:32]
            subscription.save()

        self.audit.log_payment_method_update(
            subscription, old_mask, subscription.payment_method_mask, actor=actor
        )
        return subscription

    def override_plan(
        self,
        subscription_id: str,
        tier: str,
        actor: str,
        reason: str,
    ) -> Subscription:
        """
        Set the tier without calling the gateway (support and migrations).

        Raises:
            ValidationError: Unknown tier or missing reason
        """
        tier_key = str(tier or "").strip().upper()
        if not self.catalog.has_tier(tier_key):
            raise ValidationError(
                f"Unknown plan tier: {tier}",
                error_code="UNKNOWN_PLAN_TIER",
                details={"tier": str(tier)},
            )
        if not (reason or "").strip():
            raise ValidationError(
                "A reason is required for a manual plan override",
                error_code="OVERRIDE_REASON_REQUIRED",
            )

        with transaction.atomic():
            subscription = (
                Subscription.objects.select_for_update()
                .filter(provider_subscription_id=subscription_id)
                .first()
            )
            if subscription is None:
                raise self._not_found(subscription_id)
            old_tier = subscription.plan_tier
            subscription.plan_tier = tier_key
            subscription.provider_plan_id = self.catalog.get_plan_id(
                tier_key, subscription.billing_cycle
            )
            subscription.clear_pending_plan()
            subscription.save()

        self.audit.log_manual_plan_override(subscription, old_tier, tier_key, actor, reason)
        return subscription

    def sync_from_gateway(self, subscription_id: str) -> Subscription:
        """Reconcile status, period and plan with what PayPal reports."""
        logger = self.get_logger()
        subscription = self._get_subscription(subscription_id)
        details = self.gateway_for(subscription.tenant_id).fetch_subscription(
            subscription.provider_subscription_id
        )

        with transaction.atomic():
            subscription = Subscription.objects.select_for_update().get(pk=subscription.pk)
            old_status = subscription.status
            target = GATEWAY_STATUS_MAP.get(details.status)
            if target is not None and target != subscription.status:
                self._sync_status(subscription, target)
            self._apply_details(subscription, details)
            subscription.save()

        if subscription.status != old_status:
            self._after_transition(subscription, "SUBSCRIPTION_SYNCED", "gateway_sync")
            logger.info(
                "Subscription status reconciled from gateway",
                extra={
                    "subscription_id": subscription.provider_subscription_id,
                    "old_status": old_status,
                    "new_status": subscription.status,
                },
            )
        return subscription

    def resolve_tier_by_provider_plan_id(self, plan_id: str | None) -> str | None:
        return self.catalog.resolve_tier_by_provider_plan_id(plan_id)

    # =========================================================================
    # Helpers
    # =========================================================================

    def _get_subscription(self, subscription_id: str) -> Subscription:
        subscription = Subscription.objects.filter(
            provider_subscription_id=subscription_id
        ).first()
        if subscription is None:
            raise self._not_found(subscription_id)
        return subscription

    @staticmethod
    def _not_found(subscription_id: str) -> NotFoundError:
        return NotFoundError(
            f"Subscription {subscription_id} not found",
            error_code="SUBSCRIPTION_NOT_FOUND",
            details={"subscription_id": subscription_id},
        )

    def _transition(
        self, subscription: Subscription, method_name: str, event_type: str, **kwargs
    ) -> bool:
        """Apply an FSM transition if the current state allows it; otherwise log and audit."""
        method = getattr(subscription, method_name)
        if not can_proceed(method):
            self.get_logger().warning(
                "Ignoring subscription event not allowed from current state",
                extra={
                    "subscription_id": subscription.provider_subscription_id,
                    "event_type": event_type,
                    "current_state": subscription.status,
                    "transition": method_name,
                },
            )
            self.audit.log_subscription_event(
                subscription,
                "TRANSITION_IGNORED",
                actor=WEBHOOK_ACTOR,
                old_value=subscription.status,
                new_value=method_name,
                details={"event_type": event_type},
            )
            return False
        method(**kwargs)
        return True

    def _sync_status(self, subscription: Subscription, target: str) -> None:
        if target == SubscriptionStatus.ACTIVE:
            method = (
                subscription.activate
                if subscription.status == SubscriptionStatus.PENDING_APPROVAL
                else subscription.reactivate
            )
        elif target == SubscriptionStatus.SUSPENDED:
            method = subscription.suspend
        elif target == SubscriptionStatus.CANCELED:
            method = subscription.cancel
        else:
            return
        if can_proceed(method):
            method()

    def _after_transition(self, subscription: Subscription, action: str, event_type: str) -> None:
        actor = WEBHOOK_ACTOR if event_type in SUBSCRIPTION_EVENT_TYPES else SYSTEM_ACTOR
        self.audit.log_subscription_event(
            subscription,
            action,
            actor=actor,
            new_value=subscription.status,
            details={"event_type": event_type},
        )
        self._set_tenant_status(subscription, subscription.status, actor)

    def _set_tenant_status(self, subscription: Subscription, status: str, actor: str) -> None:
        tenant_status = TENANT_STATUS_FOR.get(status)
        if tenant_status is None:
            return
        previous = DirectoryService.set_billing_status(subscription.tenant_id, tenant_status)
        if previous is not None and previous != tenant_status:
            self.metrics.record_billing_status_change()
            self.audit.log_billing_status_change(
                subscription.tenant_id, previous, tenant_status, actor=actor
            )

    def _apply_billing_info(self, subscription: Subscription, resource: dict) -> None:
        billing_info = resource.get("billing_info") or {}
        next_billing = _parse_time(billing_info.get("next_billing_time"))
        start = _parse_time(resource.get("start_time"))
        if next_billing is not None:
            if subscription.renewal_date and subscription.renewal_date < next_billing:
                subscription.current_period_start = subscription.renewal_date
            subscription.renewal_date = next_billing
            subscription.current_period_end = next_billing
        if start is not None and subscription.current_period_start is None:
            subscription.current_period_start = start

    def _apply_details(self, subscription: Subscription, details: SubscriptionDetails) -> None:
        if details.next_billing_time is not None:
            subscription.renewal_date = details.next_billing_time
            subscription.current_period_end = details.next_billing_time
        if details.start_time is not None and subscription.current_period_start is None:
            subscription.current_period_start = details.start_time
        if details.plan_id and details.plan_id != subscription.provider_plan_id:
            tier = self.catalog.resolve_tier_by_provider_plan_id(details.plan_id)
            if tier is None:
                return
            subscription.provider_plan_id = details.plan_id
            if not (
                tier == subscription.pending_plan_tier
                and not subscription.pending_plan_due()
            ):
                subscription.plan_tier = tier

    def _next_renewal(self, subscription: Subscription) -> datetime:
        return (
            subscription.renewal_date
            or subscription.current_period_end
            or timezone.now() + CYCLE_LENGTH[normalize_cycle(subscription.billing_cycle)]
        )

    def _promote_if_due(
        self, subscription: Subscription, actor: str, now: datetime | None = None
    ) -> bool:
        """Promote a due pending tier. Does not save."""
        if not subscription.pending_plan_due(now):
            return False
        new_tier = subscription.pending_plan_tier
        old_tier = subscription.promote_pending_plan()
        subscription.provider_plan_id = self.catalog.get_plan_id(
            new_tier, subscription.billing_cycle
        )
        self.audit.log_plan_change(
            subscription,
            old_tier,
            new_tier,
            actor=actor,
            action="PLAN_CHANGE_APPLIED",
        )
        return True


def _parse_time(value: str | None) -> datetime | None:
    if not value:
        return None
    try:
        return parse_datetime(value)
    except ValueError:
        return None
