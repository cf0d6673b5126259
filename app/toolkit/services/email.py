"""
Email service for transactional messages.

Sends plain-text (optionally HTML) email through Django's configured
EMAIL_BACKEND. Used for payment confirmations and billing alert emails.

Usage:
    from toolkit.services.email import EmailService

    sent = EmailService.send_raw(
        to="patient@example.com",
        subject="Your consultation is confirmed",
        body_text="See you on Monday at 10:00.",
    )
    if not sent:
        ...  # caller decides whether a failed email matters
"""

from __future__ import annotations

import logging

from django.conf import settings
from django.core.mail import EmailMultiAlternatives

logger = logging.getLogger(__name__)


class EmailService:
    """
    Centralized email sending.

    Methods return a bool instead of raising so that callers sending
    best-effort email can branch on the outcome without try/except.
    """

    @staticmethod
    def send_raw(
        to: str | list[str],
        subject: str,
        body_text: str,
        body_html: str | None = None,
        from_email: str | None = None,
        reply_to: str | None = None,
    ) -> bool:
        """
        Send an email with literal content.

        Args:
            to: Recipient email address(es)
            subject: Email subject line
            body_text: Plain text email body
            body_html: HTML alternative (optional)
            from_email: Sender email (defaults to DEFAULT_FROM_EMAIL)
            reply_to: Reply-to address

        Returns:
            True if the backend accepted the message
        """
        recipients = [to] if isinstance(to, str) else list(to)
        recipients = [address for address in recipients if address]
        if not recipients:
            logger.warning("Email not sent: no recipients", extra={"subject": subject})
            return False

        message = EmailMultiAlternatives(
            subject=subject,
            body=body_text,
            from_email=from_email or settings.DEFAULT_FROM_EMAIL,
            to=recipients,
            reply_to=[reply_to] if reply_to else None,
        )
        if body_html:
            message.attach_alternative(body_html, "text/html")

        try:
            sent = message.send(fail_silently=False)
        except Exception as e:
            logger.error(
                f"Failed to send email: {type(e).__name__}: {e}",
                extra={"subject": subject, "recipient_count": len(recipients)},
                exc_info=True,
            )
            return False

        logger.info(
            "Email sent",
            extra={"subject": subject, "recipient_count": len(recipients)},
        )
        return sent > 0
