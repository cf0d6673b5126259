"""
WSGI config for the clinic billing backend.

The project is served over ASGI (see asgi.py) so the staff notification
websocket works; WSGI remains for plain HTTP deployments and management
tooling that expects it.
"""

import os

from django.core.wsgi import get_wsgi_application

os.environ.setdefault("DJANGO_SETTINGS_MODULE", "config.settings")

application = get_wsgi_application()
