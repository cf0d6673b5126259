"""
PayPal REST adapter for checkout orders, subscriptions and webhook verification.

This adapter wraps the PayPal REST API with:
- OAuth2 client-credentials tokens shared through the Django cache
  (single-flight refresh across threads and processes)
- PayPal-Request-Id idempotency headers on every mutating call
- Bounded exponential retry (tenacity) for transient failures only
- A shared circuit breaker so a failing gateway fails fast
- Structured logging with timing, and gateway metrics per operation

Configuration (via settings):
- PAYPAL_CLIENT_ID / PAYPAL_CLIENT_SECRET: Platform REST app credentials
- PAYPAL_ENVIRONMENT: "sandbox" or "live"
- PAYPAL_API_TIMEOUT_SECONDS: Per-request timeout (default: 15)
- BILLING_GATEWAY_MAX_ATTEMPTS: Attempts per operation (default: 3)
- BILLING_GATEWAY_RETRY_INITIAL_DELAY: First backoff in seconds (default: 2)
- BILLING_GATEWAY_RETRY_MAX_DELAY: Backoff ceiling in seconds (default: 30)

Usage:
    from billing.adapters import CreateOrderParams, get_gateway_client

    gateway = get_gateway_client(tenant_id=tenant.id)
    order = gateway.create_order(
        CreateOrderParams(reference_id=str(payment_order.id), amount=Decimal("45.00"))
    )
    redirect(order.approval_url)

    capture = gateway.capture_order(order.order_id)
    if not capture.success:
        ...  # declined; capture.raw_response has the details
"""

from __future__ import annotations

import hashlib
import logging
import threading
import time
import uuid
from dataclasses import dataclass, field
from decimal import Decimal
from typing import TYPE_CHECKING, Any

import requests
from django.conf import settings
from django.core.cache import cache
from django.utils.dateparse import parse_datetime
from tenacity import (
    Retrying,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)

from core.circuit_breaker import CircuitBreaker, CircuitOpenError

from billing.adapters.credentials import GatewayCredentials, resolve_credentials
from billing.exceptions import (
    GatewayAuthenticationError,
    GatewayCircuitOpenError,
    GatewayError,
    GatewayRateLimitError,
    GatewayRequestError,
    GatewayResponseError,
    GatewayRetryInterrupted,
    GatewayTimeoutError,
    GatewayUnavailableError,
    is_retryable_gateway_error,
)
from billing.monitoring import BillingAlertService, BillingMetrics

if TYPE_CHECKING:
    from collections.abc import Callable, Mapping
    from datetime import datetime

logger = logging.getLogger(__name__)

SANDBOX_BASE_URL = "https://api-m.sandbox.paypal.com"
LIVE_BASE_URL = "https://api-m.paypal.com"

GATEWAY_CIRCUIT_NAME = "paypal-api"

# Refresh a minute before PayPal expires the token, and never hold one
# longer than nine hours.
TOKEN_EXPIRY_MARGIN_SECONDS = 60
TOKEN_MAX_TTL_SECONDS = 9 * 60 * 60
TOKEN_REFRESH_LOCK_SECONDS = 10

WEBHOOK_SIGNATURE_HEADERS = {
    "transmission_id": "paypal-transmission-id",
    "transmission_time": "paypal-transmission-time",
    "transmission_sig": "paypal-transmission-sig",
    "cert_url": "paypal-cert-url",
    "auth_algo": "paypal-auth-algo",
}


# =============================================================================
# Data Transfer Objects
# =============================================================================


@dataclass
class CreateOrderParams:
    """
    Parameters for creating a checkout order.

    Attributes:
        reference_id: Local PaymentOrder id, sent as custom_id
        amount: Amount in major units (e.g. Decimal("45.00"))
        currency: ISO 4217 currency code
        description: Line shown to the payer
        return_url: Where PayPal sends the payer after approval
        cancel_url: Where PayPal sends the payer on cancel
        request_id: PayPal-Request-Id; generated from reference_id if omitted
    """

    reference_id: str
    amount: Decimal
    currency: str = "USD"
    description: str = "Virtual Consultation Fee"
    return_url: str | None = None
    cancel_url: str | None = None
    request_id: str | None = None

    def __post_init__(self) -> None:
        if not self.reference_id:
            raise ValueError("reference_id is required")
        if self.amount is None or Decimal(self.amount) <= 0:
            raise ValueError("amount must be positive")
        if len(self.currency) != 3:
            raise ValueError("currency must be a 3-letter ISO code")
        self.amount = Decimal(self.amount).quantize(Decimal("0.01"))
        self.currency = self.currency.upper()


@dataclass
class OrderResult:
    order_id: str
    status: str
    approval_url: str | None = None
    raw_response: dict[str, Any] = field(default_factory=dict)


@dataclass
class CaptureResult:
    """
    Outcome of capturing an approved order.

    A declined capture is a result, not an exception: success is False
    and raw_response carries PayPal's explanation.
    """

    success: bool
    order_id: str
    status: str = ""
    capture_id: str = ""
    payer_email: str = ""
    payer_name: str = ""
    decline_reason: str = ""
    raw_response: dict[str, Any] = field(default_factory=dict)


@dataclass
class CreateSubscriptionParams:
    """
    Parameters for creating a subscription awaiting payer approval.

    Attributes:
        plan_id: PayPal billing plan id (e.g. PLAN_BASIC_MONTHLY)
        tenant_id: Clinic the subscription is for, sent as custom_id tenant_<id>
        brand_name: Shown on the PayPal approval page
        return_url: Defaults to {BILLING_FRONTEND_BASE_URL}/payment-confirmation
        cancel_url: Defaults to {BILLING_FRONTEND_BASE_URL}/signup?canceled=true
        request_id: PayPal-Request-Id; generated if omitted
    """

    plan_id: str
    tenant_id: int
    brand_name: str | None = None
    return_url: str | None = None
    cancel_url: str | None = None
    request_id: str | None = None

    def __post_init__(self) -> None:
        if not self.plan_id:
            raise ValueError("plan_id is required")
        if self.tenant_id is None:
            raise ValueError("tenant_id is required")

    @property
    def custom_id(self) -> str:
        return f"tenant_{self.tenant_id}"


@dataclass
class SubscriptionResult:
    subscription_id: str
    status: str
    approval_url: str | None = None
    raw_response: dict[str, Any] = field(default_factory=dict)


@dataclass
class SubscriptionDetails:
    """Subscription as PayPal currently sees it."""

    subscription_id: str
    status: str
    plan_id: str = ""
    custom_id: str = ""
    start_time: datetime | None = None
    next_billing_time: datetime | None = None
    subscriber_email: str = ""
    last_payment_amount: Decimal | None = None
    last_payment_currency: str = ""
    raw_response: dict[str, Any] = field(default_factory=dict)


# =============================================================================
# Idempotency Key Generator
# =============================================================================


class IdempotencyKeyGenerator:
    """
    Generate PayPal-Request-Id values.

    Format: "{operation}:{entity_id}:{attempt}:{hash}"

    The same operation on the same entity yields the same key, so a
    retried create or capture returns PayPal's original response instead
    of repeating the side effect.

    Example:
        key = IdempotencyKeyGenerator.generate("capture_order", "5O190127TN364715T")
        # Result: "capture_order:5O190127TN364715T:1:a1b2c3d4"
    """

    @staticmethod
    def generate(
        operation: str,
        entity_id: uuid.UUID | str,
        attempt: int = 1,
    ) -> str:
        entity_str = str(entity_id)
        hash_input = f"{operation}:{entity_str}:{attempt}:{settings.SECRET_KEY}"
        short_hash = hashlib.sha256(hash_input.encode()).hexdigest()[:8]

        return f"{operation}:{entity_str}:{attempt}:{short_hash}"


# =============================================================================
# Access Token Cache
# =============================================================================


class AccessTokenCache:
    """
    OAuth token slot shared through Django's cache.

    Every process using the same REST app (web workers, webhook threads,
    Celery workers) reads one token, so the periodic refresh task warms
    the slot for all of them. Refresh is single-flight twice over: a
    thread lock within the process, and a cache.add() lock across
    processes. A caller that loses the cache lock waits for the winner's
    token and only fetches its own if none appears in time.
    """

    def __init__(
        self,
        namespace: str,
        lock_timeout: float = TOKEN_REFRESH_LOCK_SECONDS,
        poll_interval: float = 0.1,
    ):
        self._token_key = f"gateway_token:{namespace}"
        self._refresh_key = f"gateway_token:{namespace}:refresh"
        self._lock = threading.Lock()
        self.lock_timeout = lock_timeout
        self.poll_interval = poll_interval

    @classmethod
    def for_credentials(cls, credentials: GatewayCredentials) -> AccessTokenCache:
        client_id, environment = credentials.cache_key
        digest = hashlib.sha256(client_id.encode()).hexdigest()[:16]
        return cls(f"{environment}:{digest}")

    def peek(self) -> str | None:
        """Return the cached token if still valid, without refreshing."""
        try:
            return cache.get(self._token_key)
        except Exception as e:
            logger.warning(f"Access token cache read failed: {e}")
            return None

    def get(self, fetch: Callable[[], tuple[str, int]]) -> str:
        """
        Return a valid token, calling fetch() at most once per expiry.

        Args:
            fetch: Returns (access_token, expires_in_seconds)
        """
        token = self.peek()
        if token:
            return token

        with self._lock:
            token = self.peek()
            if token:
                return token

            holds_refresh = self._acquire_refresh()
            if not holds_refresh:
                token = self._wait_for_refresh()
                if token:
                    return token
            try:
                token, expires_in = fetch()
                self._store(token, expires_in)
                return token
            finally:
                if holds_refresh:
                    self._release_refresh()

    def invalidate(self) -> None:
        with self._lock:
            try:
                cache.delete(self._token_key)
            except Exception as e:
                logger.warning(f"Access token cache delete failed: {e}")

    def _store(self, token: str, expires_in: int) -> None:
        ttl = min(int(expires_in) - TOKEN_EXPIRY_MARGIN_SECONDS, TOKEN_MAX_TTL_SECONDS)
        if ttl <= 0:
            return
        try:
            cache.set(self._token_key, token, timeout=ttl)
        except Exception as e:
            logger.warning(f"Access token cache write failed: {e}")

    def _acquire_refresh(self) -> bool:
        try:
            return cache.add(self._refresh_key, 1, timeout=self.lock_timeout)
        except Exception as e:
            logger.warning(f"Access token refresh lock unavailable: {e}")
            return True

    def _release_refresh(self) -> None:
        try:
            cache.delete(self._refresh_key)
        except Exception as e:
            logger.warning(f"Access token refresh lock release failed: {e}")

    def _wait_for_refresh(self) -> str | None:
        deadline = time.monotonic() + self.lock_timeout
        while time.monotonic() < deadline:
            time.sleep(self.poll_interval)
            token = self.peek()
            if token:
                return token
        return None


# =============================================================================
# PayPal Adapter
# =============================================================================


class PayPalAdapter:
    """
    Adapter for PayPal REST operations.

    One instance per REST app (client id and environment). Instances are
    thread-safe and shared through get_gateway_client(); they hold a
    requests.Session, an AccessTokenCache and a stop event that
    interrupts retry backoff on shutdown.

    Error mapping:
    - Timeout -> GatewayTimeoutError (retried)
    - Connection error, 5xx -> GatewayUnavailableError (retried)
    - 429 -> GatewayRateLimitError (retried)
    - 401 -> GatewayAuthenticationError (token slot invalidated)
    - Other 4xx -> GatewayRequestError (fails fast)
    """

    def __init__(
        self,
        credentials: GatewayCredentials,
        session: requests.Session | None = None,
        metrics: BillingMetrics | None = None,
        alerts: BillingAlertService | None = None,
        timeout: float | None = None,
        max_attempts: int | None = None,
        retry_initial_delay: float | None = None,
        retry_max_delay: float | None = None,
    ):
        self.credentials = credentials
        self.base_url = LIVE_BASE_URL if credentials.is_live else SANDBOX_BASE_URL
        self.session = session or requests.Session()
        self.token_cache = AccessTokenCache.for_credentials(credentials)
        self.metrics = metrics or BillingMetrics()
        self.alerts = alerts or BillingAlertService(metrics=self.metrics)

        self.timeout = (
            timeout
            if timeout is not None
            else getattr(settings, "PAYPAL_API_TIMEOUT_SECONDS", 15)
        )
        self.max_attempts = max_attempts or getattr(
            settings, "BILLING_GATEWAY_MAX_ATTEMPTS", 3
        )
        self.retry_initial_delay = (
            retry_initial_delay
            if retry_initial_delay is not None
            else getattr(settings, "BILLING_GATEWAY_RETRY_INITIAL_DELAY", 2.0)
        )
        self.retry_max_delay = (
            retry_max_delay
            if retry_max_delay is not None
            else getattr(settings, "BILLING_GATEWAY_RETRY_MAX_DELAY", 30.0)
        )

        self.circuit = CircuitBreaker(
            name=GATEWAY_CIRCUIT_NAME,
            failure_threshold=5,
            recovery_timeout=60,
            success_threshold=2,
            on_open=lambda breaker: self.alerts.alert_gateway_circuit_open(breaker.name),
        )
        self._stop = threading.Event()

    @classmethod
    def get_logger(cls) -> logging.Logger:
        """Get logger for this adapter."""
        return logging.getLogger(f"{cls.__module__}.{cls.__name__}")

    # =========================================================================
    # Lifecycle
    # =========================================================================

    def interrupt(self) -> None:
        """Wake any caller sleeping between retries; it raises GatewayRetryInterrupted."""
        self._stop.set()

    def close(self) -> None:
        self.interrupt()
        self.session.close()

    # =========================================================================
    # Authentication
    # =========================================================================

    def get_access_token(self) -> str:
        """
        Return a valid OAuth access token, fetching one if the slot is empty.

        Raises:
            GatewayError: Token endpoint failed after retries
        """
        log_context = {"operation": "get_access_token", **self._log_base()}
        return self._execute(
            "get_access_token",
            lambda: self.token_cache.get(self._request_access_token),
            log_context,
        )

    def _request_access_token(self) -> tuple[str, int]:
        try:
            response = self.session.post(
                f"{self.base_url}/v1/oauth2/token",
                data={"grant_type": "client_credentials"},
                auth=(self.credentials.client_id, self.credentials.client_secret),
                headers={"Accept": "application/json"},
                timeout=self.timeout,
            )
        except requests.RequestException as e:
            raise self._translate_transport_error(e) from e

        self._handle_error_response(response, {"operation": "oauth2_token"})
        data = self._json(response)
        access_token = data.get("access_token")
        if not access_token:
            raise GatewayResponseError(
                "PayPal token response missing access_token",
                status_code=response.status_code,
            )
        return access_token, int(data.get("expires_in", 0) or 0)

    # =========================================================================
    # Checkout Orders
    # =========================================================================

    def create_order(self, params: CreateOrderParams) -> OrderResult:
        """
        Create a CAPTURE-intent checkout order.

        Raises:
            GatewayResponseError: PayPal answered without an order id
            GatewayError: Any other gateway failure after retries
        """
        request_id = params.request_id or IdempotencyKeyGenerator.generate(
            "create_order", params.reference_id
        )
        frontend = getattr(settings, "BILLING_FRONTEND_BASE_URL", "").rstrip("/")
        body = {
            "intent": "CAPTURE",
            "purchase_units": [
                {
                    "amount": {
                        "currency_code": params.currency,
                        "value": str(params.amount),
                    },
                    "description": params.description,
                    "custom_id": params.reference_id,
                }
            ],
            "application_context": {
                "return_url": params.return_url or f"{frontend}/payment-confirmation",
                "cancel_url": params.cancel_url or f"{frontend}/booking?canceled=true",
                "shipping_preference": "NO_SHIPPING",
                "user_action": "PAY_NOW",
                "payment_method": {"payee_preferred": "IMMEDIATE_PAYMENT_REQUIRED"},
            },
        }
        log_context = {
            "operation": "create_order",
            "reference_id": params.reference_id,
            "amount": str(params.amount),
            "currency": params.currency,
            **self._log_base(),
        }

        def call() -> OrderResult:
            response = self._send(
                "POST",
                "/v2/checkout/orders",
                json_body=body,
                headers={"PayPal-Request-Id": request_id},
            )
            self._handle_error_response(response, log_context)
            data = self._json(response)
            order_id = data.get("id")
            if not order_id:
                raise GatewayResponseError(
                    "PayPal order response missing id",
                    status_code=response.status_code,
                )
            return OrderResult(
                order_id=order_id,
                status=data.get("status", ""),
                approval_url=_find_link(data, "approve"),
                raw_response=data,
            )

        return self._execute("create_order", call, log_context)

    def capture_order(self, order_id: str, request_id: str | None = None) -> CaptureResult:
        """
        Capture an approved order.

        A decline (HTTP 422, or any status other than COMPLETED) returns
        success=False. Transport and server failures raise after retries.
        """
        request_id = request_id or IdempotencyKeyGenerator.generate(
            "capture_order", order_id
        )
        log_context = {
            "operation": "capture_order",
            "paypal_order_id": order_id,
            **self._log_base(),
        }

        def call() -> CaptureResult:
            response = self._send(
                "POST",
                f"/v2/checkout/orders/{order_id}/capture",
                json_body={},
                headers={"PayPal-Request-Id": request_id},
            )
            if response.status_code == 422:
                data = self._json(response, required=False)
                reason = _first_issue(data) or data.get("message", "UNPROCESSABLE_ENTITY")
                self.get_logger().warning(
                    "PayPal declined capture",
                    extra={**log_context, "decline_reason": reason},
                )
                return CaptureResult(
                    success=False,
                    order_id=order_id,
                    status="DECLINED",
                    decline_reason=reason,
                    raw_response=data,
                )

            self._handle_error_response(response, log_context)
            data = self._json(response)
            status = data.get("status", "")
            if status != "COMPLETED":
                return CaptureResult(
                    success=False,
                    order_id=order_id,
                    status=status,
                    decline_reason=f"Capture status {status or 'missing'}",
                    raw_response=data,
                )

            payer = data.get("payer") or {}
            name = payer.get("name") or {}
            payer_name = " ".join(
                part for part in (name.get("given_name"), name.get("surname")) if part
            )
            return CaptureResult(
                success=True,
                order_id=data.get("id", order_id),
                status=status,
                capture_id=_capture_id(data),
                payer_email=payer.get("email_address", ""),
                payer_name=payer_name,
                raw_response=data,
            )

        return self._execute("capture_order", call, log_context)

    # =========================================================================
    # Subscriptions
    # =========================================================================

    def create_subscription(self, params: CreateSubscriptionParams) -> SubscriptionResult:
        request_id = params.request_id or IdempotencyKeyGenerator.generate(
            "create_subscription", f"{params.custom_id}:{params.plan_id}"
        )
        frontend = getattr(settings, "BILLING_FRONTEND_BASE_URL", "").rstrip("/")
        body = {
            "plan_id": params.plan_id,
            "custom_id": params.custom_id,
            "application_context": {
                "brand_name": params.brand_name
                or getattr(settings, "BILLING_BRAND_NAME", "Clinic Manager"),
                "locale": "en-US",
                "shipping_preference": "NO_SHIPPING",
                "user_action": "SUBSCRIBE_NOW",
                "return_url": params.return_url or f"{frontend}/payment-confirmation",
                "cancel_url": params.cancel_url or f"{frontend}/signup?canceled=true",
            },
        }
        log_context = {
            "operation": "create_subscription",
            "plan_id": params.plan_id,
            "tenant_id": params.tenant_id,
            **self._log_base(),
        }

        def call() -> SubscriptionResult:
            response = self._send(
                "POST",
                "/v1/billing/subscriptions",
                json_body=body,
                headers={
                    "PayPal-Request-Id": request_id,
                    "Prefer": "return=representation",
                },
            )
            self._handle_error_response(response, log_context)
            data = self._json(response)
            subscription_id = data.get("id")
            if not subscription_id:
                raise GatewayResponseError(
                    "PayPal subscription response missing id",
                    status_code=response.status_code,
                )
            return SubscriptionResult(
                subscription_id=subscription_id,
                status=data.get("status", ""),
                approval_url=_find_link(data, "approve"),
                raw_response=data,
            )

        return self._execute("create_subscription", call, log_context)

    def fetch_subscription(self, subscription_id: str) -> SubscriptionDetails:
        log_context = {
            "operation": "fetch_subscription",
            "subscription_id": subscription_id,
            **self._log_base(),
        }

        def call() -> SubscriptionDetails:
            response = self._send("GET", f"/v1/billing/subscriptions/{subscription_id}")
            self._handle_error_response(response, log_context)
            data = self._json(response)
            return parse_subscription_details(data, subscription_id)

        return self._execute("fetch_subscription", call, log_context)

    def revise_subscription(self, subscription_id: str, plan_id: str) -> SubscriptionResult:
        """
        Move a subscription to another plan.

        PayPal may answer with an approve link when the payer must
        consent to the new price.
        """
        log_context = {
            "operation": "revise_subscription",
            "subscription_id": subscription_id,
            "plan_id": plan_id,
            **self._log_base(),
        }

        def call() -> SubscriptionResult:
            response = self._send(
                "POST",
                f"/v1/billing/subscriptions/{subscription_id}/revise",
                json_body={"plan_id": plan_id},
                headers={
                    "PayPal-Request-Id": IdempotencyKeyGenerator.generate(
                        "revise_subscription", f"{subscription_id}:{plan_id}"
                    )
                },
            )
            self._handle_error_response(response, log_context)
            data = self._json(response, required=False)
            return SubscriptionResult(
                subscription_id=subscription_id,
                status=data.get("status", ""),
                approval_url=_find_link(data, "approve"),
                raw_response=data,
            )

        return self._execute("revise_subscription", call, log_context)

    def cancel_subscription(self, subscription_id: str, reason: str = "") -> bool:
        """
        Cancel a subscription at PayPal.

        Returns:
            True if cancelled now, False if PayPal reports it is no longer
            active (already cancelled or expired)
        """
        log_context = {
            "operation": "cancel_subscription",
            "subscription_id": subscription_id,
            **self._log_base(),
        }

        def call() -> bool:
            response = self._send(
                "POST",
                f"/v1/billing/subscriptions/{subscription_id}/cancel",
                json_body={"reason": (reason or "Cancelled by clinic")[:128]},
            )
            if response.status_code == 422:
                data = self._json(response, required=False)
                if _first_issue(data) == "SUBSCRIPTION_STATUS_INVALID":
                    self.get_logger().info(
                        "Subscription already inactive at PayPal",
                        extra=log_context,
                    )
                    return False
            self._handle_error_response(response, log_context)
            return True

        return self._execute("cancel_subscription", call, log_context)

    # =========================================================================
    # Webhooks
    # =========================================================================

    def verify_webhook_signature(
        self,
        headers: Mapping[str, str],
        event: dict[str, Any],
        webhook_id: str,
    ) -> bool:
        """
        Verify a webhook through PayPal's verify-webhook-signature endpoint.

        Args:
            headers: Request headers (any case) carrying PAYPAL-TRANSMISSION-*
            event: Parsed webhook body
            webhook_id: Id of the webhook subscription that received the event

        Returns:
            True iff PayPal reports verification_status SUCCESS
        """
        lowered = {key.lower(): value for key, value in headers.items()}
        body = {
            field_name: lowered.get(header, "")
            for field_name, header in WEBHOOK_SIGNATURE_HEADERS.items()
        }
        body["webhook_id"] = webhook_id
        body["webhook_event"] = event
        log_context = {
            "operation": "verify_webhook_signature",
            "event_id": event.get("id"),
            **self._log_base(),
        }

        def call() -> bool:
            response = self._send(
                "POST",
                "/v1/notifications/verify-webhook-signature",
                json_body=body,
            )
            self._handle_error_response(response, log_context)
            data = self._json(response)
            return data.get("verification_status") == "SUCCESS"

        return self._execute("verify_webhook_signature", call, log_context)

    # =========================================================================
    # Transport
    # =========================================================================

    def _log_base(self) -> dict[str, Any]:
        return {
            "environment": "live" if self.credentials.is_live else "sandbox",
            "credentials_source": self.credentials.source,
        }

    def _send(
        self,
        method: str,
        path: str,
        json_body: dict[str, Any] | None = None,
        headers: dict[str, str] | None = None,
    ) -> requests.Response:
        token = self.token_cache.get(self._request_access_token)
        request_headers = {
            "Authorization": f"Bearer {token}",
            "Content-Type": "application/json",
            "Accept": "application/json",
            **(headers or {}),
        }
        try:
            response = self.session.request(
                method,
                f"{self.base_url}{path}",
                json=json_body,
                headers=request_headers,
                timeout=self.timeout,
            )
        except requests.RequestException as e:
            raise self._translate_transport_error(e) from e

        if response.status_code == 401:
            self.token_cache.invalidate()
        return response

    def _execute(
        self,
        operation: str,
        call: Callable[[], Any],
        log_context: dict[str, Any],
    ) -> Any:
        """Run one operation with retry, the circuit breaker, timing and metrics."""
        logger = self.get_logger()
        logger.info("Starting PayPal operation", extra=log_context)
        start_time = time.time()

        try:
            result = self._retrying(log_context)(self._guarded, call)
        except GatewayError as e:
            duration_ms = (time.time() - start_time) * 1000
            self.metrics.record_gateway_call(operation, success=False)
            logger.error(
                f"PayPal operation failed: {e.message}",
                extra={
                    **log_context,
                    "duration_ms": duration_ms,
                    "error_code": e.error_code,
                    "status_code": e.status_code,
                    "debug_id": e.debug_id,
                },
            )
            raise

        duration_ms = (time.time() - start_time) * 1000
        self.metrics.record_gateway_call(operation, success=True)
        logger.info(
            "PayPal operation completed",
            extra={**log_context, "duration_ms": duration_ms},
        )
        return result

    def _guarded(self, call: Callable[[], Any]) -> Any:
        try:
            with self.circuit.call(is_failure=is_retryable_gateway_error):
                return call()
        except CircuitOpenError as e:
            raise GatewayCircuitOpenError(
                "PayPal is unavailable (circuit open)",
                details={"circuit": self.circuit.name},
            ) from e

    def _retrying(self, log_context: dict[str, Any]) -> Retrying:
        logger = self.get_logger()

        def before_sleep(retry_state) -> None:
            error = retry_state.outcome.exception()
            logger.warning(
                f"Retrying PayPal operation after transient error: {error}",
                extra={
                    **log_context,
                    "attempt": retry_state.attempt_number,
                    "max_attempts": self.max_attempts,
                    "sleep_seconds": retry_state.next_action.sleep,
                },
            )

        return Retrying(
            stop=stop_after_attempt(self.max_attempts),
            wait=wait_exponential(
                multiplier=self.retry_initial_delay, max=self.retry_max_delay
            ),
            retry=retry_if_exception(is_retryable_gateway_error),
            sleep=self._sleep,
            before_sleep=before_sleep,
            reraise=True,
        )

    def _sleep(self, seconds: float) -> None:
        if self._stop.wait(seconds):
            raise GatewayRetryInterrupted("PayPal retry interrupted by shutdown")

    # =========================================================================
    # Error Handling
    # =========================================================================

    @staticmethod
    def _json(response: requests.Response, required: bool = True) -> dict[str, Any]:
        if not response.content:
            if required:
                raise GatewayResponseError(
                    "PayPal returned an empty body",
                    status_code=response.status_code,
                )
            return {}
        try:
            data = response.json()
        except ValueError as e:
            if required:
                raise GatewayResponseError(
                    "PayPal returned invalid JSON",
                    status_code=response.status_code,
                ) from e
            return {}
        return data if isinstance(data, dict) else {}

    @staticmethod
    def _translate_transport_error(error: requests.RequestException) -> GatewayError:
        if isinstance(error, requests.Timeout):
            return GatewayTimeoutError(f"PayPal request timed out: {error}")
        return GatewayUnavailableError(f"Could not reach PayPal: {error}")

    @classmethod
    def _handle_error_response(
        cls,
        response: requests.Response,
        log_context: dict[str, Any],
    ) -> None:
        """
        Translate a non-2xx response into a domain exception.

        Raises:
            GatewayAuthenticationError: 401
            GatewayRateLimitError: 429
            GatewayUnavailableError: 5xx
            GatewayRequestError: Any other 4xx
        """
        status_code = response.status_code
        if 200 <= status_code < 300:
            return

        logger = cls.get_logger()
        data = cls._json(response, required=False)
        debug_id = data.get("debug_id") or response.headers.get("PayPal-Debug-Id")
        message = (
            data.get("message")
            or data.get("error_description")
            or f"PayPal returned HTTP {status_code}"
        )
        details = {"name": data.get("name") or data.get("error"), "issue": _first_issue(data)}
        log_context = {
            **log_context,
            "status_code": status_code,
            "debug_id": debug_id,
            "paypal_error": details["name"],
        }

        if status_code == 401:
            logger.error("PayPal rejected credentials", extra=log_context)
            raise GatewayAuthenticationError(
                message, status_code=status_code, debug_id=debug_id, details=details
            )

        if status_code == 429:
            logger.warning("Rate limited by PayPal", extra=log_context)
            raise GatewayRateLimitError(
                message, status_code=status_code, debug_id=debug_id, details=details
            )

        if status_code >= 500:
            logger.error("PayPal server error", extra=log_context)
            raise GatewayUnavailableError(
                message, status_code=status_code, debug_id=debug_id, details=details
            )

        logger.error("PayPal rejected request", extra=log_context)
        raise GatewayRequestError(
            message, status_code=status_code, debug_id=debug_id, details=details
        )


# =============================================================================
# Response Parsing Helpers
# =============================================================================


def _find_link(data: dict[str, Any], rel: str) -> str | None:
    for link in data.get("links") or []:
        if link.get("rel") == rel:
            return link.get("href")
    return None


def _first_issue(data: dict[str, Any]) -> str:
    details = data.get("details") or []
    if details and isinstance(details[0], dict):
        return details[0].get("issue", "") or ""
    return ""


def _capture_id(data: dict[str, Any]) -> str:
    try:
        return data["purchase_units"][0]["payments"]["captures"][0]["id"]
    except (KeyError, IndexError, TypeError):
        return ""


def parse_subscription_details(
    data: dict[str, Any], subscription_id: str = ""
) -> SubscriptionDetails:
    """Build SubscriptionDetails from a subscription resource (API or webhook)."""
    billing_info = data.get("billing_info") or {}
    last_payment = (billing_info.get("last_payment") or {}).get("amount") or {}
    subscriber = data.get("subscriber") or {}

    amount = last_payment.get("value")
    return SubscriptionDetails(
        subscription_id=data.get("id") or subscription_id,
        status=data.get("status", ""),
        plan_id=data.get("plan_id", ""),
        custom_id=data.get("custom_id", ""),
        start_time=_parse_time(data.get("start_time")),
        next_billing_time=_parse_time(billing_info.get("next_billing_time")),
        subscriber_email=subscriber.get("email_address", ""),
        last_payment_amount=Decimal(str(amount)) if amount is not None else None,
        last_payment_currency=last_payment.get("currency_code", ""),
        raw_response=data,
    )


def _parse_time(value: str | None) -> datetime | None:
    if not value:
        return None
    try:
        return parse_datetime(value)
    except ValueError:
        return None


# =============================================================================
# Client Registry
# =============================================================================


_clients: dict[tuple[str, str], PayPalAdapter] = {}
_clients_lock = threading.Lock()


def get_gateway_client(tenant_id: int | None = None) -> PayPalAdapter:
    """
    Return the shared adapter for a tenant's resolved credentials.

    Tenants on the platform account share one adapter (and one token).

    Raises:
        ConfigurationError: No credentials are configured
    """
    credentials = resolve_credentials(tenant_id)
    with _clients_lock:
        client = _clients.get(credentials.cache_key)
        if client is None or client.credentials != credentials:
            client = PayPalAdapter(credentials)
            _clients[credentials.cache_key] = client
        return client


def reset_gateway_clients() -> None:
    """Interrupt and drop every shared adapter (worker shutdown and tests)."""
    with _clients_lock:
        for client in _clients.values():
            client.close()
        _clients.clear()
