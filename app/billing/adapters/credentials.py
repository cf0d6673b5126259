"""
Gateway credential resolution.

Lookup order for both the REST credentials and the webhook id:
    1. An active TenantGatewayCredentials row for the tenant
    2. PAYPAL_* settings (the platform account)
    3. ConfigurationError

Usage:
    from billing.adapters.credentials import resolve_credentials

    creds = resolve_credentials(tenant_id=tenant.id)
    adapter = PayPalAdapter(creds)
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

from django.conf import settings

from core.exceptions import ConfigurationError

from billing.models import TenantGatewayCredentials

logger = logging.getLogger(__name__)

LIVE_ENVIRONMENTS = frozenset({"live", "production"})


@dataclass(frozen=True)
class GatewayCredentials:
    """
    Resolved credentials for one PayPal REST app.

    Attributes:
        client_id: REST app client id
        client_secret: REST app secret
        environment: "sandbox" or "live"
        webhook_id: Webhook id used for signature verification (may be empty)
        source: "tenant" or "settings", for logs
    """

    client_id: str
    client_secret: str
    environment: str = "sandbox"
    webhook_id: str = ""
    source: str = "settings"

    @property
    def is_live(self) -> bool:
        return self.environment.lower() in LIVE_ENVIRONMENTS

    @property
    def cache_key(self) -> tuple[str, str]:
        return (self.client_id, "live" if self.is_live else "sandbox")

    def __repr__(self) -> str:
        return (
            f"GatewayCredentials(client_id={self.client_id!r}, "
            f"environment={self.environment!r}, source={self.source!r})"
        )


def _tenant_row(tenant_id: int | None) -> TenantGatewayCredentials | None:
    if tenant_id is None:
        return None
    return TenantGatewayCredentials.objects.filter(
        tenant_id=tenant_id, is_active=True
    ).first()


def resolve_credentials(tenant_id: int | None = None) -> GatewayCredentials:
    """
    Resolve the REST credentials to use for a tenant.

    Raises:
        ConfigurationError: Neither a tenant row nor settings provide credentials
    """
    row = _tenant_row(tenant_id)
    if row is not None and row.client_id and row.client_secret:
        return GatewayCredentials(
            client_id=row.client_id,
            client_secret=row.client_secret,
            environment=row.environment,
            webhook_id=row.webhook_id or getattr(settings, "PAYPAL_WEBHOOK_ID", ""),
            source="tenant",
        )

    client_id = getattr(settings, "PAYPAL_CLIENT_ID", "")
    client_secret = getattr(settings, "PAYPAL_CLIENT_SECRET", "")
    if not client_id or not client_secret:
        logger.error(
            "PayPal credentials are not configured",
            extra={"tenant_id": tenant_id},
        )
        raise ConfigurationError(
            "PayPal credentials are not configured",
            error_code="GATEWAY_CREDENTIALS_MISSING",
            details={"tenant_id": tenant_id},
        )

    return GatewayCredentials(
        client_id=client_id,
        client_secret=client_secret,
        environment=getattr(settings, "PAYPAL_ENVIRONMENT", "sandbox"),
        webhook_id=getattr(settings, "PAYPAL_WEBHOOK_ID", ""),
        source="settings",
    )


def resolve_webhook_id(tenant_id: int | None = None) -> str:
    """Webhook id for signature verification; empty string when none is configured."""
    row = _tenant_row(tenant_id)
    if row is not None and row.webhook_id:
        return row.webhook_id
    return getattr(settings, "PAYPAL_WEBHOOK_ID", "")
