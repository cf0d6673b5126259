"""
Post-payment notifications: patient confirmation email and staff broadcast.

Both are best-effort and run after the payment and appointment are
committed. Each method raises on failure so the caller can count and
alert; the caller never lets a failure here undo the payment.

Usage:
    from billing.notifications import PaymentNotifier

    notifier = PaymentNotifier()
    notifier.send_patient_confirmation(order, appointment)
    notifier.notify_staff(order, appointment)
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from django.conf import settings

from clinic.consumers import staff_group_name
from toolkit.services import ChannelsBroadcaster, EmailService

if TYPE_CHECKING:
    from clinic.models import Appointment
    from toolkit.protocols import Broadcaster, EmailSender

    from billing.models import PaymentOrder

logger = logging.getLogger(__name__)


class NotificationError(Exception):
    """A notification could not be handed to its transport."""


class PaymentNotifier:
    def __init__(
        self,
        email_sender: EmailSender | None = None,
        broadcaster: Broadcaster | None = None,
    ):
        self.email_sender = email_sender or EmailService()
        self.broadcaster = broadcaster or ChannelsBroadcaster()

    def send_patient_confirmation(self, order: PaymentOrder, appointment: Appointment) -> None:
        """
        Email the patient (or the payer, if the patient has no email).

        Raises:
            NotificationError: If there is no address or the send failed
        """
        recipient = order.patient.email or order.payer_email
        if not recipient:
            raise NotificationError(f"No email address for order {order.order_id}")

        brand = getattr(settings, "BILLING_BRAND_NAME", "Clinic")
        when = appointment.start_time.strftime("%A %d %B %Y, %H:%M %Z").strip()
        lines = [
            f"Hello {order.patient.first_name},",
            "",
            f"Your payment of {order.amount} {order.currency} was received and your "
            f"virtual consultation with Dr. {order.doctor.last_name} is confirmed for {when}.",
        ]
        if appointment.meeting_link:
            lines += ["", f"Join here: {appointment.meeting_link}"]
        if appointment.requires_review:
            lines += ["", "Our staff will contact you to confirm the exact time."]
        lines += ["", f"Payment reference: {order.capture_id or order.order_id}", "", brand]

        sent = self.email_sender.send_raw(
            to=recipient,
            subject=f"{brand}: consultation confirmed",
            body_text="\n".join(lines),
        )
        if not sent:
            raise NotificationError(f"Confirmation email not sent for order {order.order_id}")

    def notify_staff(self, order: PaymentOrder, appointment: Appointment) -> None:
        """
        Broadcast a "new paid consultation" notice to the clinic's staff.

        Raises:
            NotificationError: If no channel layer accepted the event
        """
        delivered = self.broadcaster.broadcast(
            staff_group_name(order.tenant_id),
            "staff.notification",
            {
                "kind": "virtual_consultation_paid",
                "title": "New paid virtual consultation",
                "order_id": order.order_id,
                "appointment_id": appointment.pk,
                "patient": order.patient.full_name,
                "start_time": appointment.start_time.isoformat(),
                "amount": str(order.amount),
                "currency": order.currency,
                "requires_review": appointment.requires_review,
            },
        )
        if not delivered:
            raise NotificationError(f"Staff notification not delivered for order {order.order_id}")
