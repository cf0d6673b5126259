"""
PaymentTransaction: a recurring subscription payment reported by the gateway.

Rows are keyed by the gateway sale id, so a redelivered
PAYMENT.SALE.COMPLETED webhook finds the existing row and does nothing.
"""

from __future__ import annotations

from django.db import models

from core.models import BaseModel
from core.model_mixins import UUIDPrimaryKeyMixin


class PaymentTransaction(UUIDPrimaryKeyMixin, BaseModel):
    transaction_id = models.CharField(
        max_length=64,
        unique=True,
        help_text="Gateway sale id",
    )
    tenant = models.ForeignKey(
        "clinic.Tenant",
        on_delete=models.PROTECT,
        related_name="payment_transactions",
    )
    subscription = models.ForeignKey(
        "billing.Subscription",
        on_delete=models.PROTECT,
        null=True,
        blank=True,
        related_name="transactions",
    )
    amount = models.DecimalField(max_digits=12, decimal_places=2)
    currency = models.CharField(max_length=3, default="USD")
    status = models.CharField(max_length=32)
    event_type = models.CharField(max_length=100)
    raw_payload = models.JSONField(default=dict, blank=True)

    class Meta:
        db_table = "billing_payment_transactions"
        ordering = ["-created_at"]
        verbose_name = "Payment Transaction"
        verbose_name_plural = "Payment Transactions"

    def __str__(self) -> str:
        return f"PaymentTransaction({self.transaction_id}, {self.amount} {self.currency})"
