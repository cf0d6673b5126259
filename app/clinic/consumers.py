"""
WebSocket consumer for the clinic staff dashboard.

Staff members of a clinic connect to receive realtime notices such as
"new paid consultation booked".

Consumers:
    StaffNotificationConsumer: Read-only push channel per tenant

Channel Groups:
    Each clinic has a group named "clinic_staff_{tenant_id}". Billing
    broadcasts to it through toolkit.services.ChannelsBroadcaster.

Message Types (to client):
    - staff_notification: {"type": "staff_notification", "payload": {...}}
"""

from __future__ import annotations

import logging

from channels.generic.websocket import AsyncJsonWebsocketConsumer
from django.contrib.auth.models import AnonymousUser

logger = logging.getLogger(__name__)


def staff_group_name(tenant_id) -> str:
    """Channel layer group for a clinic's staff."""
    return f"clinic_staff_{tenant_id}"


class StaffNotificationConsumer(AsyncJsonWebsocketConsumer):
    """
    Push-only consumer for clinic staff.

    Attributes:
        tenant_id: Clinic the socket is subscribed to
        group_name: Channel layer group for that clinic
    """

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.tenant_id: int | None = None
        self.group_name: str | None = None

    async def connect(self):
        self.tenant_id = self.scope["url_route"]["kwargs"]["tenant_id"]

        user = self.scope.get("user")
        if not user or isinstance(user, AnonymousUser) or not user.is_staff:
            logger.warning(
                f"Rejected staff notification connection for tenant {self.tenant_id}"
            )
            await self.close(code=4001)
            return

        self.group_name = staff_group_name(self.tenant_id)
        await self.channel_layer.group_add(self.group_name, self.channel_name)
        await self.accept()
        logger.info(f"User {user.id} subscribed to staff notifications for {self.tenant_id}")

    async def disconnect(self, close_code):
        if self.group_name:
            await self.channel_layer.group_discard(self.group_name, self.channel_name)

    async def receive_json(self, content):
        await self.send_json({"type": "error", "error": "This channel is read-only"})

    async def staff_notification(self, event):
        """Relay a group broadcast of type "staff.notification" to the client."""
        await self.send_json(
            {"type": "staff_notification", "payload": event.get("payload", {})}
        )
