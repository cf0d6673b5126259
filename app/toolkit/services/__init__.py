"""
Service classes for toolkit app.

- EmailService: Transactional email
- ChannelsBroadcaster: Channel layer group broadcasts

Usage:
    from toolkit.services import ChannelsBroadcaster, EmailService
"""

from toolkit.services.broadcast import ChannelsBroadcaster
from toolkit.services.email import EmailService

__all__ = ["ChannelsBroadcaster", "EmailService"]
