"""
Per-tenant gateway credentials.

A clinic that brings its own PayPal account stores its REST app
credentials here; everyone else uses the platform credentials from
settings. See billing.adapters.credentials for the lookup order.
"""

from __future__ import annotations

from django.db import models

from core.models import BaseModel

from billing.state_machines import GatewayEnvironment


class TenantGatewayCredentials(BaseModel):
    tenant = models.OneToOneField(
        "clinic.Tenant",
        on_delete=models.CASCADE,
        related_name="gateway_credentials",
    )
    client_id = models.CharField(max_length=255)
    client_secret = models.CharField(max_length=255)
    environment = models.CharField(
        max_length=10,
        choices=GatewayEnvironment.choices,
        default=GatewayEnvironment.SANDBOX,
    )
    webhook_id = models.CharField(max_length=64, blank=True)
    is_active = models.BooleanField(default=True)

    class Meta:
        db_table = "billing_tenant_gateway_credentials"
        verbose_name = "Tenant Gateway Credentials"
        verbose_name_plural = "Tenant Gateway Credentials"

    def __str__(self) -> str:
        return f"TenantGatewayCredentials({self.tenant_id}, {self.environment})"
