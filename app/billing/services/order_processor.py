"""
Order payment processing for paid virtual consultations.

OrderPaymentProcessor is the entry point for one-time payments:

    create_order -> patient approves at PayPal -> capture_order
                                               \\-> capture webhook

Either completion path may arrive first; both converge on the same
completion and fulfilment steps, which apply exactly once:

    1. Transaction 1 (row locked): PENDING -> COMPLETED, committed first
    2. Transaction 2 (row re-locked): create the appointment, link it
    3. Outside both: confirmation email and staff broadcast, best-effort

A failure in step 3 is logged and alerted; it never rolls back 1 or 2.

Usage:
    from billing.services import OrderPaymentProcessor

    processor = OrderPaymentProcessor()
    order = processor.create_order(
        tenant_id=clinic.id,
        patient_id=patient.id,
        doctor_id=doctor.id,
        service_id=service.id,
        slot_start="2026-03-02T10:00:00",
    )
    outcome = processor.capture_order(order.order_id)
    if not outcome.success:
        ...  # declined, order is FAILED
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import TYPE_CHECKING, Any
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from django.conf import settings
from django.db import transaction
from django.db.models import F
from django.utils import timezone
from django.utils.dateparse import parse_datetime

from core.exceptions import NotFoundError, ValidationError
from core.services import BaseService

from clinic.services import DirectoryService

from billing.adapters import CreateOrderParams, IdempotencyKeyGenerator, get_gateway_client
from billing.exceptions import (
    GatewayError,
    IdempotencyShortCircuit,
    InvalidStateTransitionError,
)
from billing.models import PaymentOrder
from billing.monitoring import BillingAlertService
from billing.notifications import PaymentNotifier
from billing.services.audit import SYSTEM_ACTOR, WEBHOOK_ACTOR, BillingAuditLogger
from billing.state_machines import PaymentOrderStatus

if TYPE_CHECKING:
    from clinic.models import Appointment

    from billing.adapters import PayPalAdapter


DEFAULT_SLOT_MINUTES = 30
SLOT_FALLBACK_DELAY = timedelta(hours=1)


@dataclass
class CaptureOutcome:
    """
    Result of a capture attempt (API or webhook).

    Attributes:
        order: The order after the attempt
        success: True if the order is paid
        appointment: Booked appointment, if fulfilment has happened
        already_processed: An earlier call had already applied the outcome
        decline_reason: Why the gateway declined, for failed captures
        needs_reconciliation: A capture arrived for an order already FAILED
    """

    order: PaymentOrder
    success: bool
    appointment: Appointment | None = None
    already_processed: bool = False
    decline_reason: str = ""
    needs_reconciliation: bool = False


def parse_slot_start(value: Any, tz_name: str = "UTC") -> tuple[datetime, bool]:
    """
    Parse a requested slot start.

    A naive value is read in the clinic's timezone. An unparseable value
    falls back to one hour from now.

    Returns:
        (start_time, used_fallback)
    """
    if isinstance(value, datetime):
        parsed = value
    else:
        try:
            parsed = parse_datetime(str(value)) if value else None
        except ValueError:
            parsed = None

    if parsed is None:
        return timezone.now() + SLOT_FALLBACK_DELAY, True

    if timezone.is_naive(parsed):
        try:
            zone = ZoneInfo(tz_name or "UTC")
        except (ZoneInfoNotFoundError, ValueError):
            zone = ZoneInfo("UTC")
        parsed = timezone.make_aware(parsed, zone)
    return parsed, False


class OrderPaymentProcessor(BaseService):
    """
    Creates and captures consultation payment orders.

    Collaborators are injectable for tests:
        gateway: PayPalAdapter (default: get_gateway_client(tenant_id))
        notifier: PaymentNotifier
        audit: BillingAuditLogger
        alerts: BillingAlertService
    """

    def __init__(
        self,
        gateway: PayPalAdapter | None = None,
        notifier: PaymentNotifier | None = None,
        audit: BillingAuditLogger | None = None,
        alerts: BillingAlertService | None = None,
    ):
        self._gateway = gateway
        self.notifier = notifier or PaymentNotifier()
        self.audit = audit or BillingAuditLogger()
        self.alerts = alerts or BillingAlertService()

    def gateway_for(self, tenant_id) -> PayPalAdapter:
        return self._gateway or get_gateway_client(tenant_id)

    # =========================================================================
    # Create
    # =========================================================================

    def create_order(
        self,
        tenant_id,
        patient_id,
        doctor_id,
        service_id,
        slot_start: str | datetime,
        notes: str = "",
        actor: str | None = None,
    ) -> PaymentOrder:
        """
        Create a gateway order for the clinic's consultation fee.

        Raises:
            NotFoundError: Tenant, patient, doctor or service does not exist
            ValidationError: The clinic has no positive consultation fee
            GatewayError: The gateway refused or failed after retries
        """
        logger = self.get_logger()

        tenant = DirectoryService.get_tenant(tenant_id)
        patient = DirectoryService.get_patient(tenant.id, patient_id)
        doctor = DirectoryService.get_doctor(tenant.id, doctor_id)
        service = (
            DirectoryService.get_service(tenant.id, service_id)
            if service_id is not None
            else None
        )

        clinic_settings = DirectoryService.get_clinic_settings(tenant.id)
        fee = clinic_settings.virtual_consultation_fee
        if fee is None or fee <= 0:
            raise ValidationError(
                "Virtual consultation fee is not configured for this clinic",
                error_code="CONSULTATION_FEE_NOT_CONFIGURED",
                details={"tenant_id": tenant.id},
            )

        currency = getattr(settings, "BILLING_SETTLEMENT_CURRENCY", "USD")
        local_id = uuid.uuid4()
        if isinstance(slot_start, datetime):
            slot_start = slot_start.isoformat()

        log_context = {
            "payment_order_id": str(local_id),
            "tenant_id": tenant.id,
            "amount": str(fee),
            "currency": currency,
        }
        logger.info("Creating consultation payment order", extra=log_context)

        try:
            result = self.gateway_for(tenant.id).create_order(
                CreateOrderParams(
                    reference_id=str(local_id),
                    amount=fee,
                    currency=currency,
                )
            )
        except GatewayError as e:
            self.audit.log_gateway_api_error(
                "create_order", e, entity_id=local_id, tenant_id=tenant.id
            )
            raise

        order = PaymentOrder.objects.create(
            id=local_id,
            order_id=result.order_id,
            tenant=tenant,
            patient=patient,
            doctor=doctor,
            service=service,
            amount=fee,
            currency=currency,
            slot_start=str(slot_start or ""),
            notes=notes or "",
            raw_payload=result.raw_response,
            metadata={"approval_url": result.approval_url},
        )
        self.audit.log_order_event(
            order,
            "ORDER_CREATED",
            actor=actor,
            details={"amount": str(fee), "currency": currency},
        )
        logger.info(
            "Consultation payment order created",
            extra={**log_context, "order_id": order.order_id},
        )
        return order

    # =========================================================================
    # Capture (synchronous path)
    # =========================================================================

    def capture_order(self, order_id: str, actor: str | None = None) -> CaptureOutcome:
        """
        Capture an approved order and fulfil it.

        Raises:
            NotFoundError: Unknown order
            InvalidStateTransitionError: The order already FAILED
            GatewayError: The gateway failed after retries (order is FAILED)
        """
        logger = self.get_logger()
        order = self._get_order(order_id)

        try:
            self._ensure_capturable(order)
        except IdempotencyShortCircuit as short:
            logger.info(
                "Capture already applied",
                extra={"order_id": order.order_id, "reason": short.reason},
            )
            if order.is_fulfilled:
                return CaptureOutcome(
                    order=order,
                    success=True,
                    appointment=order.appointment,
                    already_processed=True,
                )
            return self._fulfil_after_capture(order.pk, actor=actor, raise_errors=False)

        request_id = IdempotencyKeyGenerator.generate("capture_order", order.id)
        try:
            result = self.gateway_for(order.tenant_id).capture_order(
                order.order_id, request_id=request_id
            )
        except GatewayError as e:
            self._mark_failed(
                order.pk,
                reason=f"{e.error_code}: {e.message}",
                raw_payload={"error_code": e.error_code, "status_code": e.status_code},
            )
            self.audit.log_gateway_api_error(
                "capture_order", e, entity_id=order.order_id, tenant_id=order.tenant_id
            )
            self.alerts.alert_payment_reconciliation_required(
                order.order_id,
                f"Capture failed after retries ({e.error_code}); the gateway may still settle it",
            )
            raise

        if not result.success:
            order = self._mark_failed(
                order.pk, reason=result.decline_reason, raw_payload=result.raw_response
            )
            self.audit.log_order_event(
                order,
                "ORDER_CAPTURE_DECLINED",
                actor=actor,
                details={"decline_reason": result.decline_reason},
                success=False,
                error_message=result.decline_reason,
            )
            logger.warning(
                "Capture declined",
                extra={"order_id": order.order_id, "decline_reason": result.decline_reason},
            )
            return CaptureOutcome(
                order=order,
                success=order.status == PaymentOrderStatus.COMPLETED,
                appointment=order.appointment if order.appointment_id else None,
                decline_reason=result.decline_reason,
            )

        return self._complete_and_fulfil(
            order.pk,
            capture_id=result.capture_id,
            payer_email=result.payer_email,
            payer_name=result.payer_name,
            raw_payload=result.raw_response,
            actor=actor,
            raise_errors=False,
        )

    # =========================================================================
    # Capture (webhook path)
    # =========================================================================

    def process_webhook_payment(
        self,
        order_id: str,
        capture_id: str = "",
        payer_email: str = "",
        payer_name: str = "",
        raw_payload: dict[str, Any] | None = None,
    ) -> CaptureOutcome:
        """
        Apply a capture reported by webhook. Idempotent.

        Raises:
            NotFoundError: Unknown order (the webhook will be retried)
        """
        logger = self.get_logger()
        order = self._get_order(order_id)

        if order.is_fulfilled:
            logger.info(
                "Capture webhook for fulfilled order ignored",
                extra={"order_id": order.order_id},
            )
            return CaptureOutcome(
                order=order,
                success=True,
                appointment=order.appointment,
                already_processed=True,
            )

        if order.status == PaymentOrderStatus.FAILED:
            return self._flag_reconciliation(order, capture_id)

        return self._complete_and_fulfil(
            order.pk,
            capture_id=capture_id,
            payer_email=payer_email,
            payer_name=payer_name,
            raw_payload=raw_payload,
            actor=WEBHOOK_ACTOR,
            raise_errors=True,
        )

    # =========================================================================
    # Completion & Fulfilment
    # =========================================================================

    def _complete_and_fulfil(
        self,
        pk,
        capture_id: str,
        payer_email: str,
        payer_name: str,
        raw_payload: dict[str, Any] | None,
        actor: str | None,
        raise_errors: bool,
    ) -> CaptureOutcome:
        logger = self.get_logger()

        # Transaction 1: record the payment.
        with transaction.atomic():
            order = PaymentOrder.objects.select_for_update().get(pk=pk)
            if order.status == PaymentOrderStatus.FAILED:
                completed_now = False
            elif order.status == PaymentOrderStatus.PENDING:
                order.complete(
                    capture_id=capture_id,
                    payer_email=payer_email,
                    payer_name=payer_name,
                    raw_payload=raw_payload,
                )
                order.save()
                completed_now = True
            else:
                completed_now = False

        if order.status == PaymentOrderStatus.FAILED:
            return self._flag_reconciliation(order, capture_id)

        if completed_now:
            self.audit.log_order_event(
                order,
                "ORDER_COMPLETED",
                actor=actor,
                details={"capture_id": capture_id},
            )
            logger.info(
                "Payment order completed",
                extra={"order_id": order.order_id, "capture_id": capture_id},
            )

        return self._fulfil_after_capture(pk, actor=actor, raise_errors=raise_errors)

    def _fulfil_after_capture(
        self, pk, actor: str | None, raise_errors: bool
    ) -> CaptureOutcome:
        logger = self.get_logger()

        try:
            order, appointment, used_fallback = self._book_appointment(pk)
        except Exception as e:
            order = PaymentOrder.objects.get(pk=pk)
            logger.error(
                f"Appointment booking failed after capture: {e}",
                extra={"order_id": order.order_id},
                exc_info=True,
            )
            self.audit.log_order_event(
                order,
                "APPOINTMENT_BOOKING_FAILED",
                actor=actor,
                success=False,
                error_message=str(e),
            )
            self.alerts.alert_post_capture_side_effect_failed(
                order.order_id, "appointment", str(e)
            )
            if raise_errors:
                raise
            return CaptureOutcome(order=order, success=True)

        if appointment is None:
            # Another caller linked the appointment and owns the notifications.
            return CaptureOutcome(
                order=order,
                success=True,
                appointment=order.appointment,
                already_processed=True,
            )

        if used_fallback:
            self.audit.log_order_event(
                order,
                "APPOINTMENT_SLOT_FALLBACK",
                actor=actor or SYSTEM_ACTOR,
                details={
                    "requested_slot": order.slot_start,
                    "booked_start": appointment.start_time.isoformat(),
                },
                success=False,
                error_message="Requested slot could not be parsed",
            )
        self.audit.log_order_event(
            order,
            "ORDER_FULFILLED",
            actor=actor,
            details={"appointment_id": appointment.pk},
        )

        self._send_notifications(order, appointment)
        return CaptureOutcome(order=order, success=True, appointment=appointment)

    def _book_appointment(self, pk) -> tuple[PaymentOrder, Appointment | None, bool]:
        """
        Transaction 2: create and link the appointment once.

        Returns:
            (order, appointment or None if already linked, used_slot_fallback)
        """
        with transaction.atomic():
            order = (
                PaymentOrder.objects.select_for_update()
                .select_related("tenant", "patient", "doctor")
                .get(pk=pk)
            )
            if order.appointment_id is not None:
                return order, None, False

            clinic_settings = DirectoryService.get_clinic_settings(order.tenant_id)
            start_time, used_fallback = parse_slot_start(
                order.slot_start, clinic_settings.timezone
            )
            duration = clinic_settings.slot_duration_minutes or DEFAULT_SLOT_MINUTES

            appointment = DirectoryService.create_virtual_consultation(
                tenant_id=order.tenant_id,
                patient_id=order.patient_id,
                doctor_id=order.doctor_id,
                service_id=order.service_id,
                start_time=start_time,
                end_time=start_time + timedelta(minutes=duration),
                amount=order.amount,
                currency=order.currency,
                meeting_link=clinic_settings.virtual_meeting_link,
                notes=order.notes,
                requires_review=used_fallback,
            )

            order.appointment = appointment
            update_fields = ["appointment", "updated_at"]
            if used_fallback:
                order.metadata = {**(order.metadata or {}), "needs_reconciliation": True}
                update_fields.append("metadata")
            order.save(update_fields=update_fields)

        if used_fallback:
            self.get_logger().warning(
                "Slot could not be parsed; booked fallback slot for review",
                extra={"order_id": order.order_id, "slot_start": order.slot_start},
            )
        return order, appointment, used_fallback

    def _send_notifications(self, order: PaymentOrder, appointment: Appointment) -> None:
        logger = self.get_logger()
        side_effects = (
            ("patient_confirmation_email", self.notifier.send_patient_confirmation),
            ("staff_notification", self.notifier.notify_staff),
        )
        for name, send in side_effects:
            try:
                send(order, appointment)
            except Exception as e:
                logger.error(
                    f"Post-capture side effect failed: {name}",
                    extra={"order_id": order.order_id, "side_effect": name},
                    exc_info=True,
                )
                self.alerts.alert_post_capture_side_effect_failed(
                    order.order_id, name, str(e)
                )

    # =========================================================================
    # Helpers
    # =========================================================================

    @staticmethod
    def _get_order(order_id: str) -> PaymentOrder:
        order = (
            PaymentOrder.objects.select_related("appointment")
            .filter(order_id=order_id)
            .first()
        )
        if order is None:
            raise NotFoundError(
                f"Payment order {order_id} not found",
                error_code="PAYMENT_ORDER_NOT_FOUND",
                details={"order_id": order_id},
            )
        return order

    @staticmethod
    def _ensure_capturable(order: PaymentOrder) -> None:
        """
        Raises:
            IdempotencyShortCircuit: The order is already COMPLETED
            InvalidStateTransitionError: The order is FAILED
        """
        if order.status == PaymentOrderStatus.COMPLETED:
            raise IdempotencyShortCircuit(result=order, reason="order already completed")
        if order.status == PaymentOrderStatus.FAILED:
            raise InvalidStateTransitionError(
                f"Cannot capture order from '{order.status}'",
                details={
                    "order_id": order.order_id,
                    "current_state": order.status,
                    "target_state": PaymentOrderStatus.COMPLETED,
                },
            )

    def _mark_failed(
        self, pk, reason: str, raw_payload: dict[str, Any] | None = None
    ) -> PaymentOrder:
        """Move a PENDING order to FAILED in its own transaction."""
        with transaction.atomic():
            order = PaymentOrder.objects.select_for_update().get(pk=pk)
            if order.status == PaymentOrderStatus.PENDING:
                order.fail(reason=reason, raw_payload=raw_payload)
                order.save()
        return order

    def _flag_reconciliation(self, order: PaymentOrder, capture_id: str) -> CaptureOutcome:
        reason = f"Capture {capture_id or '(unknown)'} reported for a FAILED order"
        PaymentOrder.objects.filter(pk=order.pk).update(
            metadata={**(order.metadata or {}), "needs_reconciliation": True},
            updated_at=timezone.now(),
            version=F("version") + 1,
        )
        self.audit.log_order_event(
            order,
            "PAYMENT_RECONCILIATION_REQUIRED",
            actor=WEBHOOK_ACTOR,
            details={"capture_id": capture_id},
            success=False,
            error_message=reason,
        )
        self.alerts.alert_payment_reconciliation_required(order.order_id, reason)
        self.get_logger().error(
            "Capture reported for failed order; manual reconciliation required",
            extra={"order_id": order.order_id, "capture_id": capture_id},
        )
        return CaptureOutcome(order=order, success=False, needs_reconciliation=True)
