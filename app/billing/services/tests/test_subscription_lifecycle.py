"""
Tests for SubscriptionLifecycleManager.

Covers:
- Subscription creation and its failure accounting
- Webhook-driven transitions, including out-of-order delivery
- Recurring sale payments
- Immediate and deferred plan changes
- Scheduled cancellations and the daily sweep
- Admin operations (plan override, payment method, gateway sync)
"""

from dataclasses import replace
from datetime import timedelta
from decimal import Decimal

import pytest
from django.utils import timezone
from freezegun import freeze_time

from core.exceptions import ConfigurationError, ConflictError, NotFoundError, ValidationError

from clinic.models import Tenant, TenantBillingStatus
from clinic.tests.factories import TenantFactory

from billing.adapters import SubscriptionDetails, SubscriptionResult
from billing.catalog import DEFAULT_TIERS, PlanTierCatalog
from billing.conftest import subscription_result
from billing.exceptions import GatewayUnavailableError, InvalidStateTransitionError
from billing.models import BillingAuditLogEntry, PaymentTransaction, Subscription
from billing.monitoring.metrics import BillingMetrics
from billing.services import SubscriptionLifecycleManager
from billing.state_machines import PlanTier, SubscriptionStatus
from billing.tests.factories import ActiveSubscriptionFactory, SubscriptionFactory


def _reload(subscription) -> Subscription:
    return Subscription.objects.get(pk=subscription.pk)


def _audited(action: str) -> bool:
    return BillingAuditLogEntry.objects.filter(action=action).exists()


def _subscription_resource(subscription, **extra) -> dict:
    return {"id": subscription.provider_subscription_id, **extra}


# =============================================================================
# Creation
# =============================================================================


@pytest.mark.django_db
class TestCreateSubscription:
    def test_creates_pending_approval_subscription(self, manager, gateway):
        tenant = TenantFactory()
        gateway.create_subscription.return_value = subscription_result("I-BW452GLLEP1G")

        subscription = manager.create_subscription(
            tenant.id, "professional", "annual", actor="user:1"
        )

        assert subscription.status == SubscriptionStatus.PENDING_APPROVAL
        assert subscription.plan_tier == PlanTier.PROFESSIONAL
        assert subscription.billing_cycle == "ANNUAL"
        assert subscription.provider_plan_id == "PLAN_PROFESSIONAL_ANNUAL"
        assert "ba_token=I-BW452GLLEP1G" in subscription.approval_url

        params = gateway.create_subscription.call_args.args[0]
        assert params.plan_id == "PLAN_PROFESSIONAL_ANNUAL"
        assert params.custom_id == f"tenant_{tenant.id}"
        assert BillingMetrics().get("subscription_created") == 1
        assert _audited("SUBSCRIPTION_CREATED")

    def test_cycle_defaults_to_monthly(self, manager, gateway):
        gateway.create_subscription.return_value = subscription_result()

        subscription = manager.create_subscription(TenantFactory().id, "BASIC")

        assert subscription.provider_plan_id == "PLAN_BASIC_MONTHLY"

    def test_rejects_second_live_subscription(self, manager, gateway, active_subscription):
        with pytest.raises(ConflictError) as exc_info:
            manager.create_subscription(active_subscription.tenant_id, "BASIC")

        assert exc_info.value.error_code == "SUBSCRIPTION_EXISTS"
        gateway.create_subscription.assert_not_called()

    def test_canceled_subscription_does_not_block(self, manager, gateway):
        old = SubscriptionFactory(status=SubscriptionStatus.CANCELED)
        gateway.create_subscription.return_value = subscription_result("I-NEW")

        subscription = manager.create_subscription(old.tenant_id, "BASIC")

        assert subscription.provider_subscription_id == "I-NEW"

    def test_unknown_tier(self, manager, gateway):
        with pytest.raises(ValidationError):
            manager.create_subscription(TenantFactory().id, "PLATINUM")

    def test_unknown_tenant(self, manager):
        with pytest.raises(NotFoundError):
            manager.create_subscription(999999, "BASIC")

    def test_unmapped_plan_is_configuration_error(self, gateway, audit, metrics, alerts):
        tiers = {str(tier): details for tier, details in DEFAULT_TIERS.items()}
        tiers["CUSTOM"] = replace(tiers["CUSTOM"], monthly_plan_id="")
        manager = SubscriptionLifecycleManager(
            gateway=gateway,
            catalog=PlanTierCatalog(tiers=tiers, cache_ttl=0),
            audit=audit,
            metrics=metrics,
            alerts=alerts,
        )

        with pytest.raises(ConfigurationError) as exc_info:
            manager.create_subscription(TenantFactory().id, "CUSTOM", "MONTHLY")

        assert exc_info.value.error_code == "PLAN_NOT_MAPPED"

    def test_gateway_failure_is_counted_and_alerted(self, manager, gateway):
        gateway.create_subscription.side_effect = GatewayUnavailableError("PayPal down")

        with pytest.raises(GatewayUnavailableError):
            manager.create_subscription(TenantFactory().id, "BASIC")

        metrics = BillingMetrics()
        assert metrics.get("subscription_creation_failure") == 1
        assert metrics.get("alerts_triggered:SUBSCRIPTION_CREATION_FAILURE") == 1
        assert Subscription.objects.count() == 0


# =============================================================================
# Webhook transitions
# =============================================================================


@pytest.mark.django_db
class TestWebhookTransitions:
    def test_activation_sets_period_and_tenant_status(self, manager, pending_subscription):
        result = manager.apply_webhook_event(
            "BILLING.SUBSCRIPTION.ACTIVATED",
            _subscription_resource(
                pending_subscription,
                start_time="2026-03-01T10:00:00Z",
                billing_info={"next_billing_time": "2026-04-01T10:00:00Z"},
            ),
        )

        assert result.success is True
        subscription = _reload(pending_subscription)
        assert subscription.status == SubscriptionStatus.ACTIVE
        assert subscription.renewal_date.isoformat().startswith("2026-04-01T10:00:00")
        assert subscription.current_period_start.isoformat().startswith("2026-03-01T10:00:00")
        tenant = Tenant.objects.get(pk=subscription.tenant_id)
        assert tenant.billing_status == TenantBillingStatus.ACTIVE
        assert _audited("BILLING_STATUS_CHANGED")
        assert BillingMetrics().get("subscription_activated") == 1

    def test_activation_redelivery_keeps_active(self, manager, active_subscription):
        result = manager.apply_webhook_event(
            "BILLING.SUBSCRIPTION.ACTIVATED", _subscription_resource(active_subscription)
        )

        assert result.success is True
        assert _reload(active_subscription).status == SubscriptionStatus.ACTIVE
        assert not _audited("TRANSITION_IGNORED")

    def test_payment_failed_marks_past_due(self, manager, active_subscription):
        manager.apply_webhook_event(
            "BILLING.SUBSCRIPTION.PAYMENT.FAILED", _subscription_resource(active_subscription)
        )

        assert _reload(active_subscription).status == SubscriptionStatus.PAST_DUE
        tenant = Tenant.objects.get(pk=active_subscription.tenant_id)
        assert tenant.billing_status == TenantBillingStatus.PAST_DUE

    def test_suspension(self, manager, past_due_subscription):
        manager.apply_webhook_event(
            "BILLING.SUBSCRIPTION.SUSPENDED", _subscription_resource(past_due_subscription)
        )

        assert _reload(past_due_subscription).status == SubscriptionStatus.SUSPENDED
        assert BillingMetrics().get("subscription_suspended") == 1

    def test_cancellation_records_note(self, manager, active_subscription):
        manager.apply_webhook_event(
            "BILLING.SUBSCRIPTION.CANCELLED",
            _subscription_resource(active_subscription, status_change_note="Card expired"),
        )

        subscription = _reload(active_subscription)
        assert subscription.status == SubscriptionStatus.CANCELED
        assert subscription.cancellation_reason == "Card expired"

    def test_expiry_cancels(self, manager, active_subscription):
        manager.apply_webhook_event(
            "BILLING.SUBSCRIPTION.EXPIRED", _subscription_resource(active_subscription)
        )

        assert _reload(active_subscription).status == SubscriptionStatus.CANCELED

    def test_out_of_order_event_is_ignored_and_audited(self, manager, pending_subscription):
        result = manager.apply_webhook_event(
            "BILLING.SUBSCRIPTION.PAYMENT.FAILED", _subscription_resource(pending_subscription)
        )

        assert result.success is True
        assert _reload(pending_subscription).status == SubscriptionStatus.PENDING_APPROVAL
        entry = BillingAuditLogEntry.objects.get(action="TRANSITION_IGNORED")
        assert entry.old_value == SubscriptionStatus.PENDING_APPROVAL
        assert entry.details["event_type"] == "BILLING.SUBSCRIPTION.PAYMENT.FAILED"

    def test_activation_after_cancellation_is_ignored(self, manager):
        subscription = SubscriptionFactory(status=SubscriptionStatus.CANCELED)

        result = manager.apply_webhook_event(
            "BILLING.SUBSCRIPTION.ACTIVATED", _subscription_resource(subscription)
        )

        assert result.success is True
        assert _reload(subscription).status == SubscriptionStatus.CANCELED
        assert _audited("TRANSITION_IGNORED")

    def test_unknown_subscription_fails_for_retry(self, manager, db):
        result = manager.apply_webhook_event(
            "BILLING.SUBSCRIPTION.ACTIVATED", {"id": "I-DOES-NOT-EXIST"}
        )

        assert result.success is False
        assert result.error_code == "SUBSCRIPTION_NOT_FOUND"

    def test_missing_subscription_id(self, manager, db):
        result = manager.apply_webhook_event("BILLING.SUBSCRIPTION.ACTIVATED", {})

        assert result.success is False
        assert result.error_code == "MISSING_SUBSCRIPTION_ID"

    def test_unhandled_event_type_succeeds_with_nothing(self, manager, db):
        result = manager.apply_webhook_event("BILLING.PLAN.CREATED", {"id": "P-1"})

        assert result.success is True
        assert result.data is None

    def test_update_with_new_plan_changes_tier(self, manager, active_subscription):
        manager.apply_webhook_event(
            "BILLING.SUBSCRIPTION.UPDATED",
            _subscription_resource(active_subscription, plan_id="PLAN_ENTERPRISE_MONTHLY"),
        )

        subscription = _reload(active_subscription)
        assert subscription.plan_tier == PlanTier.ENTERPRISE
        assert subscription.provider_plan_id == "PLAN_ENTERPRISE_MONTHLY"
        assert _audited("PLAN_CHANGE_APPLIED")

    def test_update_with_unmapped_plan_keeps_tier(self, manager, active_subscription):
        manager.apply_webhook_event(
            "BILLING.SUBSCRIPTION.UPDATED",
            _subscription_resource(active_subscription, plan_id="P-UNKNOWN"),
        )

        subscription = _reload(active_subscription)
        assert subscription.plan_tier == PlanTier.BASIC
        assert subscription.provider_plan_id == "PLAN_BASIC_MONTHLY"


# =============================================================================
# Recurring payments
# =============================================================================


def _sale(subscription, sale_id: str = "8GX71234AB") -> dict:
    return {
        "id": sale_id,
        "billing_agreement_id": subscription.provider_subscription_id,
        "amount": {"total": "29.99", "currency": "USD"},
        "state": "completed",
    }


@pytest.mark.django_db
class TestSaleCompleted:
    def test_records_payment(self, manager, active_subscription):
        result = manager.apply_webhook_event("PAYMENT.SALE.COMPLETED", _sale(active_subscription))

        assert result.success is True
        payment = PaymentTransaction.objects.get(transaction_id="8GX71234AB")
        assert payment.amount == Decimal("29.99")
        assert payment.subscription_id == active_subscription.pk
        assert _audited("PAYMENT_RECORDED")

    def test_duplicate_sale_recorded_once(self, manager, active_subscription):
        manager.apply_webhook_event("PAYMENT.SALE.COMPLETED", _sale(active_subscription))
        manager.apply_webhook_event("PAYMENT.SALE.COMPLETED", _sale(active_subscription))

        assert PaymentTransaction.objects.count() == 1
        assert BillingAuditLogEntry.objects.filter(action="PAYMENT_RECORDED").count() == 1

    def test_sale_reactivates_past_due(self, manager, past_due_subscription):
        manager.apply_webhook_event("PAYMENT.SALE.COMPLETED", _sale(past_due_subscription))

        assert _reload(past_due_subscription).status == SubscriptionStatus.ACTIVE
        assert _audited("SUBSCRIPTION_REACTIVATED")


# =============================================================================
# Plan changes
# =============================================================================


@pytest.mark.django_db
class TestPlanChanges:
    def test_immediate_upgrade(self, manager, gateway, active_subscription):
        gateway.revise_subscription.return_value = SubscriptionResult(
            subscription_id=active_subscription.provider_subscription_id,
            status="ACTIVE",
            approval_url="https://www.sandbox.paypal.com/webapps/billing/subscriptions/update?ba_token=BA-2",
        )

        subscription = manager.request_plan_change(
            active_subscription.provider_subscription_id, "enterprise", immediate=True
        )

        gateway.revise_subscription.assert_called_once_with(
            active_subscription.provider_subscription_id, "PLAN_ENTERPRISE_MONTHLY"
        )
        assert subscription.plan_tier == PlanTier.ENTERPRISE
        assert subscription.provider_plan_id == "PLAN_ENTERPRISE_MONTHLY"
        assert subscription.pending_plan_tier is None
        assert subscription.approval_url.endswith("ba_token=BA-2")
        assert _audited("PLAN_UPGRADE")
        assert _audited("PLAN_CHANGE_REQUESTED")

    def test_deferred_downgrade_sets_pending_pair(self, manager, gateway):
        subscription = ActiveSubscriptionFactory(
            plan_tier=PlanTier.ENTERPRISE, provider_plan_id="PLAN_ENTERPRISE_MONTHLY"
        )
        gateway.revise_subscription.return_value = SubscriptionResult(
            subscription_id=subscription.provider_subscription_id, status="ACTIVE"
        )

        updated = manager.request_plan_change(subscription.provider_subscription_id, "BASIC")

        assert updated.plan_tier == PlanTier.ENTERPRISE
        assert updated.pending_plan_tier == PlanTier.BASIC
        assert updated.pending_plan_effective_date == subscription.renewal_date
        assert _audited("PLAN_DOWNGRADE")
        assert _audited("PLAN_CHANGE_SCHEDULED")

    def test_deferred_change_applied_by_sweep_after_renewal(self, manager, gateway):
        with freeze_time("2026-03-01 09:00:00"):
            subscription = ActiveSubscriptionFactory()
            gateway.revise_subscription.return_value = SubscriptionResult(
                subscription_id=subscription.provider_subscription_id, status="ACTIVE"
            )
            manager.request_plan_change(subscription.provider_subscription_id, "PROFESSIONAL")

            counts = manager.apply_scheduled_changes()
            assert counts["plan_changes_applied"] == 0
            assert _reload(subscription).plan_tier == PlanTier.BASIC

        with freeze_time("2026-04-01 09:00:00"):
            counts = manager.apply_scheduled_changes()

        assert counts == {"plan_changes_applied": 1, "cancellations_applied": 0, "failures": 0}
        promoted = _reload(subscription)
        assert promoted.plan_tier == PlanTier.PROFESSIONAL
        assert promoted.provider_plan_id == "PLAN_PROFESSIONAL_MONTHLY"
        assert promoted.pending_plan_tier is None
        assert promoted.pending_plan_effective_date is None

    def test_updated_webhook_waits_for_scheduled_date(self, manager, gateway):
        with freeze_time("2026-03-01 09:00:00"):
            subscription = ActiveSubscriptionFactory(
                plan_tier=PlanTier.ENTERPRISE,
                provider_plan_id="PLAN_ENTERPRISE_MONTHLY",
                renewal_date=timezone.now() + timedelta(days=20),
            )
            gateway.revise_subscription.return_value = SubscriptionResult(
                subscription_id=subscription.provider_subscription_id, status="ACTIVE"
            )
            manager.request_plan_change(subscription.provider_subscription_id, "BASIC")

            result = manager.apply_webhook_event(
                "BILLING.SUBSCRIPTION.UPDATED",
                _subscription_resource(subscription, plan_id="PLAN_BASIC_MONTHLY"),
            )

            assert result.success is True
            waiting = _reload(subscription)
            assert waiting.plan_tier == PlanTier.ENTERPRISE
            assert waiting.provider_plan_id == "PLAN_BASIC_MONTHLY"
            assert waiting.pending_plan_tier == PlanTier.BASIC
            assert waiting.pending_plan_effective_date == subscription.renewal_date

        with freeze_time("2026-03-22 09:00:00"):
            counts = manager.apply_scheduled_changes()

        assert counts["plan_changes_applied"] == 1
        promoted = _reload(subscription)
        assert promoted.plan_tier == PlanTier.BASIC
        assert promoted.pending_plan_tier is None

    def test_same_tier_rejected(self, manager, gateway, active_subscription):
        with pytest.raises(ValidationError) as exc_info:
            manager.request_plan_change(active_subscription.provider_subscription_id, "BASIC")

        assert exc_info.value.error_code == "SAME_PLAN_TIER"
        gateway.revise_subscription.assert_not_called()

    def test_canceled_subscription_rejected(self, manager, gateway):
        subscription = SubscriptionFactory(status=SubscriptionStatus.CANCELED)

        with pytest.raises(InvalidStateTransitionError):
            manager.request_plan_change(subscription.provider_subscription_id, "ENTERPRISE")

    def test_gateway_refusal_changes_nothing(self, manager, gateway, active_subscription):
        gateway.revise_subscription.side_effect = GatewayUnavailableError("PayPal down")

        with pytest.raises(GatewayUnavailableError):
            manager.request_plan_change(
                active_subscription.provider_subscription_id, "ENTERPRISE", immediate=True
            )

        assert _reload(active_subscription).plan_tier == PlanTier.BASIC


# =============================================================================
# Cancellation & sweep
# =============================================================================


@pytest.mark.django_db
class TestCancellation:
    def test_schedules_at_period_end(self, manager, active_subscription):
        subscription = manager.request_cancellation(
            active_subscription.provider_subscription_id, reason="Closing the clinic"
        )

        assert subscription.status == SubscriptionStatus.ACTIVE
        assert subscription.cancellation_effective_date == active_subscription.current_period_end
        assert subscription.cancellation_reason == "Closing the clinic"
        assert _audited("CANCELLATION_SCHEDULED")

    def test_explicit_effective_date(self, manager, active_subscription):
        effective = timezone.now() + timedelta(days=3)

        subscription = manager.request_cancellation(
            active_subscription.provider_subscription_id, effective_date=effective
        )

        assert subscription.cancellation_effective_date == effective

    def test_second_request_conflicts(self, manager, active_subscription):
        manager.request_cancellation(active_subscription.provider_subscription_id)

        with pytest.raises(ConflictError) as exc_info:
            manager.request_cancellation(active_subscription.provider_subscription_id)

        assert exc_info.value.error_code == "CANCELLATION_ALREADY_SCHEDULED"

    def test_pending_approval_cannot_be_cancelled(self, manager, pending_subscription):
        with pytest.raises(InvalidStateTransitionError):
            manager.request_cancellation(pending_subscription.provider_subscription_id)

    def test_sweep_applies_due_cancellation(self, manager, gateway, active_subscription):
        manager.request_cancellation(
            active_subscription.provider_subscription_id,
            effective_date=timezone.now() - timedelta(minutes=1),
            reason="Closing",
        )

        counts = manager.apply_scheduled_changes()

        assert counts["cancellations_applied"] == 1
        gateway.cancel_subscription.assert_called_once_with(
            active_subscription.provider_subscription_id, reason="Closing"
        )
        assert _reload(active_subscription).status == SubscriptionStatus.CANCELED
        tenant = Tenant.objects.get(pk=active_subscription.tenant_id)
        assert tenant.billing_status == TenantBillingStatus.CANCELED
        assert _audited("CANCELLATION_APPLIED")

    def test_sweep_isolates_failures(self, manager, gateway):
        past = timezone.now() - timedelta(minutes=1)
        broken = ActiveSubscriptionFactory(cancellation_effective_date=past)
        healthy = ActiveSubscriptionFactory(cancellation_effective_date=past)

        def cancel(subscription_id, reason=""):
            if subscription_id == broken.provider_subscription_id:
                raise GatewayUnavailableError("PayPal down")
            return True

        gateway.cancel_subscription.side_effect = cancel

        counts = manager.apply_scheduled_changes()

        assert counts == {"plan_changes_applied": 0, "cancellations_applied": 1, "failures": 1}
        assert _reload(broken).status == SubscriptionStatus.ACTIVE
        assert _reload(healthy).status == SubscriptionStatus.CANCELED
        failure = BillingAuditLogEntry.objects.get(action="CANCELLATION_APPLIED", success=False)
        assert "PayPal down" in failure.error_message

    def test_sweep_skips_future_dates(self, manager, gateway):
        ActiveSubscriptionFactory(cancellation_effective_date=timezone.now() + timedelta(days=1))

        counts = manager.apply_scheduled_changes()

        assert counts["cancellations_applied"] == 0
        gateway.cancel_subscription.assert_not_called()


# =============================================================================
# Admin operations
# =============================================================================


@pytest.mark.django_db
class TestAdminOperations:
    def test_override_plan_skips_gateway(self, manager, gateway, active_subscription):
        subscription = manager.override_plan(
            active_subscription.provider_subscription_id,
            "ENTERPRISE",
            actor="user:1",
            reason="Migration from legacy billing",
        )

        assert subscription.plan_tier == PlanTier.ENTERPRISE
        gateway.revise_subscription.assert_not_called()
        entry = BillingAuditLogEntry.objects.get(action="MANUAL_PLAN_OVERRIDE")
        assert entry.actor == "user:1"

    def test_override_requires_reason(self, manager, active_subscription):
        with pytest.raises(ValidationError):
            manager.override_plan(
                active_subscription.provider_subscription_id, "ENTERPRISE", "user:1", "  "
            )

    def test_update_payment_method(self, manager, active_subscription):
        subscription = manager.update_payment_method(
            active_subscription.provider_subscription_id, "VISA ****4242", "card"
        )

        assert subscription.payment_method_mask == "VISA ****4242"
        assert _audited("PAYMENT_METHOD_UPDATED")

    def test_sync_from_gateway_applies_status(self, manager, gateway, active_subscription):
        gateway.fetch_subscription.return_value = SubscriptionDetails(
            subscription_id=active_subscription.provider_subscription_id,
            status="SUSPENDED",
            plan_id="PLAN_BASIC_MONTHLY",
        )

        subscription = manager.sync_from_gateway(active_subscription.provider_subscription_id)

        assert subscription.status == SubscriptionStatus.SUSPENDED
        assert _audited("SUBSCRIPTION_SYNCED")

    def test_sync_keeps_tier_until_scheduled_change_is_due(self, manager, gateway):
        subscription = ActiveSubscriptionFactory(
            plan_tier=PlanTier.ENTERPRISE,
            provider_plan_id="PLAN_ENTERPRISE_MONTHLY",
        )
        subscription.set_pending_plan(PlanTier.BASIC, subscription.renewal_date)
        subscription.save()
        gateway.fetch_subscription.return_value = SubscriptionDetails(
            subscription_id=subscription.provider_subscription_id,
            status="ACTIVE",
            plan_id="PLAN_BASIC_MONTHLY",
        )

        synced = manager.sync_from_gateway(subscription.provider_subscription_id)

        assert synced.plan_tier == PlanTier.ENTERPRISE
        assert synced.provider_plan_id == "PLAN_BASIC_MONTHLY"
        assert synced.pending_plan_tier == PlanTier.BASIC
