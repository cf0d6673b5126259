"""
Billing alerting: threshold checks over BillingMetrics and immediate alerts.

Alerts are written to the "billing.alerts" logger, which production
routes to the log aggregator's paging rules, and optionally emailed to
settings.BILLING_ALERT_EMAILS.

Usage:
    from billing.monitoring.alerts import BillingAlertService

    alerts = BillingAlertService()

    # Periodic (Celery beat)
    alerts.check_webhook_success_rate()

    # Immediate
    alerts.alert_subscription_creation_failure(tenant_id, "GATEWAY_TIMEOUT")

Design Notes:
    - Threshold checks fire only when the underlying counters have samples
    - Alert methods never raise into the caller
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import TYPE_CHECKING

from django.conf import settings
from django.utils import timezone

from toolkit.services import EmailService

from billing.monitoring import metrics as metric_names
from billing.monitoring.metrics import BillingMetrics

if TYPE_CHECKING:
    from typing import Any

    from toolkit.protocols import EmailSender

alert_logger = logging.getLogger("billing.alerts")
logger = logging.getLogger(__name__)

WEBHOOK_SUCCESS_RATE_THRESHOLD = 95.0
GATEWAY_API_SUCCESS_RATE_THRESHOLD = 90.0
SUBSCRIPTION_CREATION_RATE_THRESHOLD = 85.0


class AlertSeverity(str, Enum):
    CRITICAL = "CRITICAL"
    HIGH = "HIGH"
    MEDIUM = "MEDIUM"
    LOW = "LOW"


@dataclass
class Alert:
    """A raised alert, returned to callers for inspection and tests."""

    alert_type: str
    severity: AlertSeverity
    message: str
    recommendation: str = ""
    details: dict[str, Any] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=timezone.now)

    def format(self) -> str:
        return (
            f"[{self.severity.value}] [{self.alert_type}] {self.message}"
            f" | Recommendation: {self.recommendation}"
        )


class BillingAlertService:
    """
    Raises billing alerts.

    Attributes:
        metrics: Counter source for threshold checks
        email_sender: Used when BILLING_ALERT_EMAILS is configured
    """

    def __init__(
        self,
        metrics: BillingMetrics | None = None,
        email_sender: EmailSender | None = None,
    ):
        self.metrics = metrics or BillingMetrics()
        self.email_sender = email_sender or EmailService()

    # =========================================================================
    # Core
    # =========================================================================

    def trigger_alert(
        self,
        alert_type: str,
        severity: AlertSeverity,
        message: str,
        recommendation: str = "",
        details: dict[str, Any] | None = None,
    ) -> Alert | None:
        """
        Log an alert, count it and email it if recipients are configured.

        Returns:
            The Alert, or None if even logging it failed
        """
        try:
            alert = Alert(
                alert_type=alert_type,
                severity=severity,
                message=message,
                recommendation=recommendation,
                details=details or {},
            )
            alert_logger.error(
                alert.format(),
                extra={
                    "alert_type": alert_type,
                    "severity": severity.value,
                    "details": alert.details,
                },
            )
            self.metrics.record_alert(alert_type)
            self._email(alert)
            return alert
        except Exception:
            logger.exception("Failed to trigger billing alert", extra={"alert_type": alert_type})
            return None

    def _email(self, alert: Alert) -> None:
        recipients = list(getattr(settings, "BILLING_ALERT_EMAILS", []) or [])
        if not recipients:
            return
        try:
            self.email_sender.send_raw(
                to=recipients,
                subject=f"[{alert.severity.value}] Billing alert: {alert.alert_type}",
                body_text=(
                    f"{alert.message}\n\n"
                    f"Recommendation: {alert.recommendation}\n"
                    f"Time: {alert.timestamp.isoformat()}\n"
                    f"Details: {alert.details}"
                ),
            )
        except Exception:
            logger.exception(
                "Failed to email billing alert", extra={"alert_type": alert.alert_type}
            )

    # =========================================================================
    # Threshold checks
    # =========================================================================

    def check_webhook_success_rate(self) -> Alert | None:
        success = self.metrics.get(metric_names.WEBHOOK_SUCCESS)
        failure = self.metrics.get(metric_names.WEBHOOK_FAILURE)
        if success + failure == 0:
            return None
        rate = metric_names.success_rate(success, failure)
        if rate >= WEBHOOK_SUCCESS_RATE_THRESHOLD:
            return None
        return self.trigger_alert(
            "WEBHOOK_SUCCESS_RATE_LOW",
            AlertSeverity.HIGH,
            f"Webhook success rate is {rate:.1f}% "
            f"(threshold {WEBHOOK_SUCCESS_RATE_THRESHOLD:.0f}%)",
            "Check failed webhook events in the admin and the billing log.",
            {"success": success, "failure": failure, "rate": rate},
        )

    def check_gateway_api_success_rate(self) -> Alert | None:
        success = self.metrics.get(metric_names.GATEWAY_API_SUCCESS)
        failure = self.metrics.get(metric_names.GATEWAY_API_FAILURE)
        if success + failure == 0:
            return None
        rate = metric_names.success_rate(success, failure)
        if rate >= GATEWAY_API_SUCCESS_RATE_THRESHOLD:
            return None
        return self.trigger_alert(
            "GATEWAY_API_ERROR_RATE_HIGH",
            AlertSeverity.CRITICAL,
            f"Gateway API success rate is {rate:.1f}% "
            f"(threshold {GATEWAY_API_SUCCESS_RATE_THRESHOLD:.0f}%)",
            "Check PayPal status and credentials; payments may be failing.",
            {"success": success, "failure": failure, "rate": rate},
        )

    def check_subscription_creation_rate(self) -> Alert | None:
        success = self.metrics.get(metric_names.SUBSCRIPTION_CREATED)
        failure = self.metrics.get(metric_names.SUBSCRIPTION_CREATION_FAILURE)
        if success + failure == 0:
            return None
        rate = metric_names.success_rate(success, failure)
        if rate >= SUBSCRIPTION_CREATION_RATE_THRESHOLD:
            return None
        return self.trigger_alert(
            "SUBSCRIPTION_CREATION_FAILURE_RATE_HIGH",
            AlertSeverity.HIGH,
            f"Subscription creation success rate is {rate:.1f}% "
            f"(threshold {SUBSCRIPTION_CREATION_RATE_THRESHOLD:.0f}%)",
            "Check plan id mappings and gateway errors for new signups.",
            {"success": success, "failure": failure, "rate": rate},
        )

    def check_all(self) -> list[Alert]:
        """Run the webhook and gateway checks (the 5 minute job)."""
        fired = [self.check_webhook_success_rate(), self.check_gateway_api_success_rate()]
        return [alert for alert in fired if alert is not None]

    # =========================================================================
    # Immediate alerts
    # =========================================================================

    def alert_webhook_verification_failure(
        self, event_id: str | None, reason: str
    ) -> Alert | None:
        return self.trigger_alert(
            "WEBHOOK_VERIFICATION_FAILURE",
            AlertSeverity.CRITICAL,
            f"Webhook signature verification failed: {reason}",
            "Confirm PAYPAL_WEBHOOK_ID; repeated failures may indicate forged requests.",
            {"event_id": event_id, "reason": reason},
        )

    def alert_webhook_failed_after_retries(
        self, event_id: str, event_type: str, retry_count: int, error: str
    ) -> Alert | None:
        return self.trigger_alert(
            "WEBHOOK_PROCESSING_FAILED_AFTER_RETRIES",
            AlertSeverity.HIGH,
            f"Webhook {event_id} ({event_type}) failed after {retry_count} attempts: {error}",
            "Investigate the event payload and replay it from the admin once fixed.",
            {"event_id": event_id, "event_type": event_type, "retry_count": retry_count},
        )

    def alert_subscription_creation_failure(
        self, tenant_id, error_code: str, message: str = ""
    ) -> Alert | None:
        return self.trigger_alert(
            "SUBSCRIPTION_CREATION_FAILURE",
            AlertSeverity.HIGH,
            f"Subscription creation failed for tenant {tenant_id}: {message or error_code}",
            "Verify the tier's plan id exists at the gateway.",
            {"tenant_id": str(tenant_id), "error_code": error_code},
        )

    def alert_gateway_circuit_open(self, circuit_name: str) -> Alert | None:
        return self.trigger_alert(
            "GATEWAY_CIRCUIT_OPEN",
            AlertSeverity.CRITICAL,
            f"Circuit '{circuit_name}' opened; gateway calls are failing fast",
            "Check PayPal status. The circuit retries automatically after the recovery timeout.",
            {"circuit": circuit_name},
        )

    def alert_post_capture_side_effect_failed(
        self, order_id: str, side_effect: str, error: str
    ) -> Alert | None:
        return self.trigger_alert(
            "POST_CAPTURE_SIDE_EFFECT_FAILED",
            AlertSeverity.MEDIUM,
            f"{side_effect} failed after capture of order {order_id}: {error}",
            "The payment and appointment are recorded; notify the patient manually.",
            {"order_id": order_id, "side_effect": side_effect},
        )

    def alert_payment_reconciliation_required(
        self, order_id: str, reason: str
    ) -> Alert | None:
        return self.trigger_alert(
            "PAYMENT_RECONCILIATION_REQUIRED",
            AlertSeverity.HIGH,
            f"Order {order_id} needs manual reconciliation: {reason}",
            "Compare the order with the PayPal dashboard and refund or book manually.",
            {"order_id": order_id, "reason": reason},
        )
