"""
WebSocket URL routing for the clinic application.

URL Patterns:
    ws/clinic/<tenant_id>/staff/ - Staff notification stream for a clinic
"""

from django.urls import path

from clinic import consumers

websocket_urlpatterns = [
    path(
        "ws/clinic/<int:tenant_id>/staff/",
        consumers.StaffNotificationConsumer.as_asgi(),
    ),
]
