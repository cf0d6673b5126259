"""
Realtime broadcasts over the Django Channels layer.

Sends an event to every websocket consumer subscribed to a group. The
clinic staff dashboard subscribes to one group per tenant.

Usage:
    from toolkit.services.broadcast import ChannelsBroadcaster

    ChannelsBroadcaster().broadcast(
        group="clinic_staff_42",
        event_type="staff.notification",
        payload={"title": "New paid consultation"},
    )
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from asgiref.sync import async_to_sync
from channels.layers import get_channel_layer

if TYPE_CHECKING:
    from typing import Any

logger = logging.getLogger(__name__)


class ChannelsBroadcaster:
    """
    Group broadcaster backed by the default channel layer.

    The layer is looked up lazily so tests can swap CHANNEL_LAYERS.
    """

    def broadcast(self, group: str, event_type: str, payload: dict[str, Any]) -> bool:
        """
        Send an event to a channel layer group.

        Returns:
            False if no channel layer is configured, True once sent

        Raises:
            Exception: Channel layer errors propagate to the caller
        """
        channel_layer = get_channel_layer()
        if channel_layer is None:
            logger.warning(
                "No channel layer configured, broadcast skipped",
                extra={"group": group, "event_type": event_type},
            )
            return False

        async_to_sync(channel_layer.group_send)(
            group,
            {"type": event_type, "payload": payload},
        )
        logger.debug(
            "Broadcast sent",
            extra={"group": group, "event_type": event_type},
        )
        return True
