"""
PaymentOrder model for one-time consultation payments.

A PaymentOrder is created when the patient starts checkout and is
completed exactly once, either by the synchronous capture call or by the
capture webhook, whichever lands first.

Usage:
    from billing.models import PaymentOrder
    from billing.state_machines import PaymentOrderStatus

    order = PaymentOrder.objects.create(
        id=local_id,
        order_id=gateway_result.order_id,
        tenant=tenant,
        patient=patient,
        doctor=doctor,
        service=service,
        amount=Decimal("45.00"),
        currency="USD",
        slot_start="2026-03-02T10:00:00",
    )

    order.complete(capture_id="3C679366HH908993F", payer_email="p@example.com")
    order.save()
"""

from __future__ import annotations

from decimal import Decimal

from django.db import models
from django.utils import timezone

from django_fsm import FSMField, transition

from core.models import BaseModel
from core.model_mixins import UUIDPrimaryKeyMixin, VersionedMixin

from billing.exceptions import ImmutableFieldError
from billing.state_machines import PaymentOrderStatus, PaymentType


class PaymentOrder(UUIDPrimaryKeyMixin, VersionedMixin, BaseModel):
    """
    Consultation payment tracked through the gateway order lifecycle.

    State Flow:
        PENDING -> COMPLETED (capture succeeded)
        PENDING -> FAILED (capture declined or gateway error)

    Fields:
        order_id: Gateway order id (unique)
        status: Current FSM state
        amount/currency: Charged amount, frozen once COMPLETED
        tenant/patient/doctor/service: Booking context
        slot_start: Requested slot as submitted by the client
        capture_id, payer_email, payer_name: Set on completion
        appointment: The booked appointment; set once, by whichever
            completion path wins the race
        raw_payload: Last gateway payload applied to this order
        metadata: Flags such as needs_reconciliation

    Note:
        The local UUID is generated before the gateway call and sent as
        the order's custom_id.
    """

    # ==========================================================================
    # Identity & State
    # ==========================================================================

    order_id = models.CharField(
        max_length=64,
        unique=True,
        help_text="Gateway order id",
    )

    status = FSMField(
        default=PaymentOrderStatus.PENDING,
        choices=PaymentOrderStatus.choices,
        db_index=True,
        protected=True,
        help_text="Current state of the order (managed by FSM)",
    )

    payment_type = models.CharField(
        max_length=30,
        choices=PaymentType.choices,
        default=PaymentType.VIRTUAL_CONSULTATION,
    )

    # ==========================================================================
    # Amount & Currency
    # ==========================================================================

    amount = models.DecimalField(
        max_digits=12,
        decimal_places=2,
        help_text="Charged amount; immutable once the order is completed",
    )

    currency = models.CharField(
        max_length=3,
        default="USD",
        help_text="ISO 4217 currency code",
    )

    # ==========================================================================
    # Booking Context
    # ==========================================================================

    tenant = models.ForeignKey(
        "clinic.Tenant",
        on_delete=models.PROTECT,
        related_name="payment_orders",
    )
    patient = models.ForeignKey(
        "clinic.Patient",
        on_delete=models.PROTECT,
        related_name="payment_orders",
    )
    doctor = models.ForeignKey(
        "clinic.Doctor",
        on_delete=models.PROTECT,
        related_name="payment_orders",
    )
    service = models.ForeignKey(
        "clinic.ClinicService",
        on_delete=models.PROTECT,
        null=True,
        blank=True,
        related_name="payment_orders",
    )
    slot_start = models.CharField(
        max_length=64,
        help_text="Requested slot start as submitted (ISO 8601)",
    )
    notes = models.TextField(blank=True)

    appointment = models.OneToOneField(
        "clinic.Appointment",
        on_delete=models.PROTECT,
        null=True,
        blank=True,
        related_name="payment_order",
        help_text="Appointment booked for this payment (set once)",
    )

    # ==========================================================================
    # Capture Details
    # ==========================================================================

    capture_id = models.CharField(max_length=64, blank=True)
    payer_email = models.EmailField(blank=True)
    payer_name = models.CharField(max_length=200, blank=True)

    completed_at = models.DateTimeField(null=True, blank=True)
    failed_at = models.DateTimeField(null=True, blank=True)
    failure_reason = models.TextField(blank=True)

    # ==========================================================================
    # Payloads
    # ==========================================================================

    raw_payload = models.JSONField(default=dict, blank=True)
    metadata = models.JSONField(default=dict, blank=True)

    # ==========================================================================
    # Meta & Methods
    # ==========================================================================

    class Meta:
        db_table = "billing_payment_orders"
        ordering = ["-created_at"]
        verbose_name = "Payment Order"
        verbose_name_plural = "Payment Orders"
        indexes = [
            models.Index(fields=["tenant", "status"], name="billing_ord_tenant_st_idx"),
        ]
        constraints = [
            models.CheckConstraint(
                condition=models.Q(amount__gt=0),
                name="billing_payment_order_amount_positive",
            ),
        ]

    def __str__(self) -> str:
        return f"PaymentOrder({self.order_id}, {self.status}, {self.amount} {self.currency})"

    def save(self, *args, **kwargs):
        """
        Save, refusing to change amount or currency of a completed order.

        The check reads the stored row, so it holds regardless of what
        the in-memory instance believes its prior state was.
        """
        if not self._state.adding and self.pk is not None:
            stored = (
                type(self)
                .objects.filter(pk=self.pk)
                .values("status", "amount", "currency")
                .first()
            )
            if stored and stored["status"] == PaymentOrderStatus.COMPLETED:
                if (
                    Decimal(str(self.amount)) != stored["amount"]
                    or self.currency != stored["currency"]
                ):
                    raise ImmutableFieldError(
                        "Amount and currency cannot change after completion",
                        details={
                            "order_id": self.order_id,
                            "stored_amount": str(stored["amount"]),
                            "stored_currency": stored["currency"],
                        },
                    )
        super().save(*args, **kwargs)

    @property
    def is_terminal(self) -> bool:
        return self.status in (PaymentOrderStatus.COMPLETED, PaymentOrderStatus.FAILED)

    @property
    def is_fulfilled(self) -> bool:
        """Completed and the appointment side effect has been applied."""
        return self.status == PaymentOrderStatus.COMPLETED and self.appointment_id is not None

    # ==========================================================================
    # State Transitions (django-fsm)
    # ==========================================================================

    @transition(
        field=status,
        source=PaymentOrderStatus.PENDING,
        target=PaymentOrderStatus.COMPLETED,
    )
    def complete(
        self,
        capture_id: str = "",
        payer_email: str = "",
        payer_name: str = "",
        raw_payload: dict | None = None,
    ):
        """
        Record a successful capture.

        Transition: PENDING -> COMPLETED
        """
        self.capture_id = capture_id or ""
        self.payer_email = payer_email or ""
        self.payer_name = payer_name or ""
        if raw_payload is not None:
            self.raw_payload = raw_payload
        self.completed_at = timezone.now()

    @transition(
        field=status,
        source=PaymentOrderStatus.PENDING,
        target=PaymentOrderStatus.FAILED,
    )
    def fail(self, reason: str = "", raw_payload: dict | None = None):
        """
        Record a declined capture or unrecoverable gateway error.

        Transition: PENDING -> FAILED
        """
        self.failure_reason = reason or ""
        if raw_payload is not None:
            self.raw_payload = raw_payload
        self.failed_at = timezone.now()
