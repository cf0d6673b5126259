"""
Toolkit - Outbound notification services.

Key components:
    - services/email.py: EmailService (transactional email)
    - services/broadcast.py: ChannelsBroadcaster (websocket group fan-out)
    - protocols.py: EmailSender and Broadcaster interfaces

Usage:
    from toolkit.services import ChannelsBroadcaster, EmailService
    from toolkit.protocols import Broadcaster, EmailSender

Note:
    This app has no models.
"""
