"""
Append-only billing audit trail.

Every billing decision (plan changes, cancellations, status changes,
webhook outcomes, gateway errors) is written here by
billing.services.audit.BillingAuditLogger.
"""

from __future__ import annotations

from django.db import models

from core.models import BaseModel

from billing.exceptions import ImmutableFieldError


class BillingAuditLogEntry(BaseModel):
    """
    One audited billing event.

    Fields:
        tenant: Clinic the event concerns (null for system-wide events)
        action: Event name, e.g. PLAN_CHANGE_APPLIED
        entity_type/entity_id: What the event happened to
        actor: User id, "system" or "webhook"
        old_value/new_value: Before and after, where meaningful
        details: Structured context
        success/error_message: Outcome

    Note:
        Rows cannot be updated or deleted through the ORM instance API.
    """

    tenant = models.ForeignKey(
        "clinic.Tenant",
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name="billing_audit_entries",
    )
    action = models.CharField(max_length=64, db_index=True)
    entity_type = models.CharField(max_length=64, blank=True)
    entity_id = models.CharField(max_length=64, blank=True, db_index=True)
    actor = models.CharField(max_length=64, default="system")
    old_value = models.CharField(max_length=255, blank=True)
    new_value = models.CharField(max_length=255, blank=True)
    details = models.JSONField(default=dict, blank=True)
    success = models.BooleanField(default=True)
    error_message = models.TextField(blank=True)

    class Meta:
        db_table = "billing_audit_log"
        ordering = ["-created_at"]
        verbose_name = "Billing Audit Log Entry"
        verbose_name_plural = "Billing Audit Log"
        indexes = [
            models.Index(fields=["tenant", "created_at"], name="billing_aud_tenant_idx"),
            models.Index(fields=["entity_type", "entity_id"], name="billing_aud_entity_idx"),
        ]

    def __str__(self) -> str:
        return f"{self.action} {self.entity_type}:{self.entity_id}"

    def save(self, *args, **kwargs):
        if not self._state.adding:
            raise ImmutableFieldError(
                "Billing audit log entries are append-only",
                details={"entry_id": self.pk},
            )
        super().save(*args, **kwargs)

    def delete(self, *args, **kwargs):
        raise ImmutableFieldError(
            "Billing audit log entries cannot be deleted",
            details={"entry_id": self.pk},
        )
