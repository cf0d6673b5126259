"""
Billing metrics and alerting.

Usage:
    from billing.monitoring import BillingAlertService, BillingMetrics
"""

from billing.monitoring.alerts import Alert, AlertSeverity, BillingAlertService
from billing.monitoring.metrics import BillingMetrics

__all__ = ["Alert", "AlertSeverity", "BillingAlertService", "BillingMetrics"]
