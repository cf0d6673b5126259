"""
Billing metrics: monotonic counters in the Django cache.

Counters live under "billing:metrics:<name>" so every web worker, webhook
thread and Celery worker increments the same numbers (Redis in
production). Rates are computed from cumulative counters.

Usage:
    from billing.monitoring.metrics import BillingMetrics

    metrics = BillingMetrics()
    metrics.record_webhook_received()
    metrics.record_gateway_call("capture_order", success=False)

    if metrics.gateway_api_success_rate() < 90:
        ...

Design Notes:
    - Metric writes never raise; a cache outage loses counts, not requests
    - reset() exists for tests
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from django.core.cache import cache

if TYPE_CHECKING:
    from typing import Any

logger = logging.getLogger(__name__)

METRIC_PREFIX = "billing:metrics"

WEBHOOK_RECEIVED = "webhook_received"
WEBHOOK_SUCCESS = "webhook_success"
WEBHOOK_FAILURE = "webhook_failure"
WEBHOOK_VERIFICATION_FAILURE = "webhook_verification_failure"
GATEWAY_API_CALL = "gateway_api_call"
GATEWAY_API_SUCCESS = "gateway_api_success"
GATEWAY_API_FAILURE = "gateway_api_failure"
SUBSCRIPTION_CREATED = "subscription_created"
SUBSCRIPTION_CREATION_FAILURE = "subscription_creation_failure"
SUBSCRIPTION_ACTIVATED = "subscription_activated"
SUBSCRIPTION_CANCELLED = "subscription_cancelled"
SUBSCRIPTION_SUSPENDED = "subscription_suspended"
BILLING_STATUS_CHANGE = "billing_status_change"

CORE_METRICS = (
    WEBHOOK_RECEIVED,
    WEBHOOK_SUCCESS,
    WEBHOOK_FAILURE,
    WEBHOOK_VERIFICATION_FAILURE,
    GATEWAY_API_CALL,
    GATEWAY_API_SUCCESS,
    GATEWAY_API_FAILURE,
    SUBSCRIPTION_CREATED,
    SUBSCRIPTION_CREATION_FAILURE,
    SUBSCRIPTION_ACTIVATED,
    SUBSCRIPTION_CANCELLED,
    SUBSCRIPTION_SUSPENDED,
    BILLING_STATUS_CHANGE,
)

GATEWAY_OPERATIONS = (
    "get_access_token",
    "create_order",
    "capture_order",
    "fetch_subscription",
    "create_subscription",
    "revise_subscription",
    "cancel_subscription",
    "verify_webhook_signature",
)

ALERT_TYPES = (
    "WEBHOOK_SUCCESS_RATE_LOW",
    "GATEWAY_API_ERROR_RATE_HIGH",
    "SUBSCRIPTION_CREATION_FAILURE_RATE_HIGH",
    "WEBHOOK_VERIFICATION_FAILURE",
    "WEBHOOK_PROCESSING_FAILED_AFTER_RETRIES",
    "SUBSCRIPTION_CREATION_FAILURE",
    "GATEWAY_CIRCUIT_OPEN",
    "POST_CAPTURE_SIDE_EFFECT_FAILED",
    "PAYMENT_RECONCILIATION_REQUIRED",
)


def success_rate(success: int, failure: int) -> float:
    """Percentage of successes; 100.0 when there are no samples."""
    total = success + failure
    if total == 0:
        return 100.0
    return success / total * 100


class BillingMetrics:
    """Counter facade over the Django cache."""

    # =========================================================================
    # Primitives
    # =========================================================================

    @staticmethod
    def key(name: str) -> str:
        return f"{METRIC_PREFIX}:{name}"

    def increment(self, name: str, amount: int = 1) -> None:
        """Add to a counter. Never raises."""
        key = self.key(name)
        try:
            try:
                cache.incr(key, amount)
            except ValueError:
                # add() is a no-op if another worker created the key first
                if not cache.add(key, amount, timeout=None):
                    cache.incr(key, amount)
        except Exception as e:
            logger.warning(
                f"Failed to record billing metric: {e}",
                extra={"metric": name},
            )

    def get(self, name: str) -> int:
        try:
            return int(cache.get(self.key(name), 0) or 0)
        except Exception as e:
            logger.warning(
                f"Failed to read billing metric: {e}",
                extra={"metric": name},
            )
            return 0

    # =========================================================================
    # Webhooks
    # =========================================================================

    def record_webhook_received(self) -> None:
        self.increment(WEBHOOK_RECEIVED)

    def record_webhook_success(self) -> None:
        self.increment(WEBHOOK_SUCCESS)

    def record_webhook_failure(self) -> None:
        self.increment(WEBHOOK_FAILURE)

    def record_webhook_verification_failure(self) -> None:
        self.increment(WEBHOOK_VERIFICATION_FAILURE)

    # =========================================================================
    # Gateway
    # =========================================================================

    def record_gateway_call(self, operation: str, success: bool) -> None:
        """Count one gateway call overall and per operation."""
        outcome = GATEWAY_API_SUCCESS if success else GATEWAY_API_FAILURE
        self.increment(GATEWAY_API_CALL)
        self.increment(outcome)
        self.increment(f"{GATEWAY_API_CALL}:{operation}")
        self.increment(f"{outcome}:{operation}")

    # =========================================================================
    # Subscriptions
    # =========================================================================

    def record_subscription_created(self) -> None:
        self.increment(SUBSCRIPTION_CREATED)

    def record_subscription_creation_failure(self) -> None:
        self.increment(SUBSCRIPTION_CREATION_FAILURE)

    def record_subscription_activated(self) -> None:
        self.increment(SUBSCRIPTION_ACTIVATED)

    def record_subscription_cancelled(self) -> None:
        self.increment(SUBSCRIPTION_CANCELLED)

    def record_subscription_suspended(self) -> None:
        self.increment(SUBSCRIPTION_SUSPENDED)

    def record_billing_status_change(self) -> None:
        self.increment(BILLING_STATUS_CHANGE)

    def record_alert(self, alert_type: str) -> None:
        self.increment(f"alerts_triggered:{alert_type}")

    # =========================================================================
    # Rates
    # =========================================================================

    def webhook_success_rate(self) -> float:
        return success_rate(self.get(WEBHOOK_SUCCESS), self.get(WEBHOOK_FAILURE))

    def gateway_api_success_rate(self) -> float:
        return success_rate(
            self.get(GATEWAY_API_SUCCESS), self.get(GATEWAY_API_FAILURE)
        )

    def subscription_creation_success_rate(self) -> float:
        return success_rate(
            self.get(SUBSCRIPTION_CREATED), self.get(SUBSCRIPTION_CREATION_FAILURE)
        )

    def snapshot(self) -> dict[str, Any]:
        """All core counters plus the derived rates."""
        counters = {name: self.get(name) for name in CORE_METRICS}
        return {
            "counters": counters,
            "rates": {
                "webhook_success_rate": self.webhook_success_rate(),
                "gateway_api_success_rate": self.gateway_api_success_rate(),
                "subscription_creation_success_rate": (
                    self.subscription_creation_success_rate()
                ),
            },
        }

    def reset(self) -> None:
        """Delete every billing counter. Tests only."""
        names = list(CORE_METRICS)
        for operation in GATEWAY_OPERATIONS:
            names.append(f"{GATEWAY_API_CALL}:{operation}")
            names.append(f"{GATEWAY_API_SUCCESS}:{operation}")
            names.append(f"{GATEWAY_API_FAILURE}:{operation}")
        names.extend(f"alerts_triggered:{alert_type}" for alert_type in ALERT_TYPES)
        cache.delete_many([self.key(name) for name in names])
