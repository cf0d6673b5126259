"""
Subscription model for clinic plan billing.

A clinic (tenant) subscribes to a plan tier at the gateway. The gateway
owns billing; this row mirrors the state we act on and holds changes the
clinic scheduled for a later date.

Usage:
    from billing.models import Subscription

    subscription = Subscription.objects.create(
        tenant=tenant,
        provider_subscription_id="I-BW452GLLEP1G",
        plan_tier=PlanTier.PROFESSIONAL,
        billing_cycle=BillingCycle.MONTHLY,
        provider_plan_id="PLAN_PROFESSIONAL_MONTHLY",
    )

    subscription.activate()  # PENDING_APPROVAL -> ACTIVE
    subscription.save()
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from django.db import models
from django.utils import timezone

from django_fsm import FSMField, transition

from core.models import BaseModel
from core.model_mixins import UUIDPrimaryKeyMixin, VersionedMixin

from billing.state_machines import BillingCycle, PlanTier, SubscriptionStatus

if TYPE_CHECKING:
    from datetime import datetime

NON_TERMINAL_STATES = [
    SubscriptionStatus.PENDING_APPROVAL,
    SubscriptionStatus.ACTIVE,
    SubscriptionStatus.PAST_DUE,
    SubscriptionStatus.SUSPENDED,
]


class Subscription(UUIDPrimaryKeyMixin, VersionedMixin, BaseModel):
    """
    A clinic's plan subscription.

    State Flow:
        PENDING_APPROVAL -> ACTIVE (subscriber approved)
        ACTIVE -> PAST_DUE (renewal payment failed)
        ACTIVE/PAST_DUE -> SUSPENDED
        PAST_DUE/SUSPENDED -> ACTIVE
        any non-terminal -> CANCELED

    Fields:
        provider_subscription_id: Gateway subscription id (unique)
        plan_tier/billing_cycle/provider_plan_id: Current plan
        current_period_start/end, renewal_date: Billing period
        pending_plan_tier/pending_plan_effective_date: Deferred plan
            change; both set or both null
        cancellation_*: Scheduled cancellation, applied by the daily sweep
        payment_method_mask/type: Display-only payment method summary

    Note:
        Subscriptions are never deleted. CANCELED is terminal.
    """

    # ==========================================================================
    # Identity & State
    # ==========================================================================

    tenant = models.ForeignKey(
        "clinic.Tenant",
        on_delete=models.PROTECT,
        related_name="subscriptions",
    )

    provider_subscription_id = models.CharField(
        max_length=64,
        unique=True,
        help_text="Gateway subscription id",
    )

    status = FSMField(
        default=SubscriptionStatus.PENDING_APPROVAL,
        choices=SubscriptionStatus.choices,
        db_index=True,
        protected=True,
        help_text="Current state of the subscription (managed by FSM)",
    )

    # ==========================================================================
    # Plan
    # ==========================================================================

    plan_tier = models.CharField(max_length=20, choices=PlanTier.choices)
    billing_cycle = models.CharField(
        max_length=10,
        choices=BillingCycle.choices,
        default=BillingCycle.MONTHLY,
    )
    provider_plan_id = models.CharField(max_length=64, blank=True)
    approval_url = models.URLField(max_length=500, blank=True)

    # ==========================================================================
    # Billing Period
    # ==========================================================================

    current_period_start = models.DateTimeField(null=True, blank=True)
    current_period_end = models.DateTimeField(null=True, blank=True)
    renewal_date = models.DateTimeField(null=True, blank=True)

    # ==========================================================================
    # Scheduled Changes
    # ==========================================================================

    pending_plan_tier = models.CharField(
        max_length=20,
        choices=PlanTier.choices,
        null=True,
        blank=True,
        help_text="Tier that takes effect on pending_plan_effective_date",
    )
    pending_plan_effective_date = models.DateTimeField(null=True, blank=True)

    cancellation_date = models.DateTimeField(
        null=True,
        blank=True,
        help_text="When the cancellation was requested",
    )
    cancellation_effective_date = models.DateTimeField(
        null=True,
        blank=True,
        db_index=True,
        help_text="When the scheduled cancellation is applied",
    )
    cancellation_reason = models.TextField(blank=True)

    # ==========================================================================
    # Payment Method
    # ==========================================================================

    payment_method_mask = models.CharField(max_length=32, blank=True)
    payment_method_type = models.CharField(max_length=32, blank=True)

    # ==========================================================================
    # Meta & Methods
    # ==========================================================================

    class Meta:
        db_table = "billing_subscriptions"
        ordering = ["-created_at"]
        verbose_name = "Subscription"
        verbose_name_plural = "Subscriptions"
        indexes = [
            models.Index(fields=["tenant", "status"], name="billing_sub_tenant_st_idx"),
            models.Index(
                fields=["pending_plan_effective_date"], name="billing_sub_pending_idx"
            ),
        ]
        constraints = [
            models.CheckConstraint(
                condition=(
                    models.Q(
                        pending_plan_tier__isnull=True,
                        pending_plan_effective_date__isnull=True,
                    )
                    | models.Q(
                        pending_plan_tier__isnull=False,
                        pending_plan_effective_date__isnull=False,
                    )
                ),
                name="billing_subscription_pending_pair",
            ),
        ]

    def __str__(self) -> str:
        return f"Subscription({self.provider_subscription_id}, {self.status}, {self.plan_tier})"

    # ==========================================================================
    # State Transitions (django-fsm)
    # ==========================================================================

    @transition(
        field=status,
        source=SubscriptionStatus.PENDING_APPROVAL,
        target=SubscriptionStatus.ACTIVE,
    )
    def activate(self):
        """Transition: PENDING_APPROVAL -> ACTIVE"""

    @transition(
        field=status,
        source=SubscriptionStatus.ACTIVE,
        target=SubscriptionStatus.PAST_DUE,
    )
    def mark_past_due(self):
        """Transition: ACTIVE -> PAST_DUE"""

    @transition(
        field=status,
        source=[SubscriptionStatus.ACTIVE, SubscriptionStatus.PAST_DUE],
        target=SubscriptionStatus.SUSPENDED,
    )
    def suspend(self):
        """Transition: ACTIVE/PAST_DUE -> SUSPENDED"""

    @transition(
        field=status,
        source=[SubscriptionStatus.PAST_DUE, SubscriptionStatus.SUSPENDED],
        target=SubscriptionStatus.ACTIVE,
    )
    def reactivate(self):
        """Transition: PAST_DUE/SUSPENDED -> ACTIVE"""

    @transition(
        field=status,
        source=NON_TERMINAL_STATES,
        target=SubscriptionStatus.CANCELED,
    )
    def cancel(self, reason: str = ""):
        """
        Cancel the subscription.

        Transition: any non-terminal -> CANCELED

        Any pending plan change is dropped.
        """
        if reason and not self.cancellation_reason:
            self.cancellation_reason = reason
        if self.cancellation_date is None:
            self.cancellation_date = timezone.now()
        self.clear_pending_plan()

    # ==========================================================================
    # Helper Properties
    # ==========================================================================

    @property
    def is_live(self) -> bool:
        """Anything but CANCELED."""
        return self.status != SubscriptionStatus.CANCELED

    @property
    def has_pending_plan(self) -> bool:
        return self.pending_plan_tier is not None

    @property
    def has_scheduled_cancellation(self) -> bool:
        return self.cancellation_effective_date is not None

    def pending_plan_due(self, now: datetime | None = None) -> bool:
        now = now or timezone.now()
        return (
            self.has_pending_plan
            and self.pending_plan_effective_date is not None
            and self.pending_plan_effective_date <= now
        )

    # ==========================================================================
    # Helper Methods
    # ==========================================================================

    def set_pending_plan(self, tier: str, effective_date: datetime) -> None:
        """Schedule a plan change. Does not save."""
        self.pending_plan_tier = tier
        self.pending_plan_effective_date = effective_date

    def clear_pending_plan(self) -> None:
        """Drop any scheduled plan change. Does not save."""
        self.pending_plan_tier = None
        self.pending_plan_effective_date = None

    def promote_pending_plan(self) -> str | None:
        """
        Make the pending tier current and clear the pending pair.

        Returns:
            The previous tier, or None if nothing was pending
        """
        if not self.has_pending_plan:
            return None
        previous = self.plan_tier
        self.plan_tier = self.pending_plan_tier
        self.clear_pending_plan()
        return previous
