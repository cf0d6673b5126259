"""
Protocol definitions (interfaces) for outbound notification services.

Billing code depends on these protocols rather than on concrete senders,
so tests can inject fakes and deployments can swap transports.

Available Protocols:
    EmailSender: Transactional email
    Broadcaster: Realtime group broadcast (websocket fan-out)

Usage:
    from toolkit.protocols import Broadcaster, EmailSender

    class RecordingBroadcaster:
        def __init__(self):
            self.sent = []

        def broadcast(self, group, event_type, payload):
            self.sent.append((group, event_type, payload))
            return True

    broadcaster: Broadcaster = RecordingBroadcaster()
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Protocol, runtime_checkable

if TYPE_CHECKING:
    from typing import Any


@runtime_checkable
class EmailSender(Protocol):
    """Protocol for email sending services (see toolkit.services.EmailService)."""

    def send_raw(
        self,
        to: str | list[str],
        subject: str,
        body_text: str,
        body_html: str | None = None,
        from_email: str | None = None,
        reply_to: str | None = None,
    ) -> bool:
        """
        Send an email.

        Returns:
            True if sent successfully
        """
        ...


@runtime_checkable
class Broadcaster(Protocol):
    """Protocol for group broadcasts (see toolkit.services.ChannelsBroadcaster)."""

    def broadcast(self, group: str, event_type: str, payload: dict[str, Any]) -> bool:
        """
        Send an event to every subscriber of a group.

        Returns:
            True if the event was handed to the transport
        """
        ...
