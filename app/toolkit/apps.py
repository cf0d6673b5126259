"""
Django app configuration for toolkit.
"""

from django.apps import AppConfig


class ToolkitConfig(AppConfig):
    """Configuration for the toolkit application."""

    default_auto_field = "django.db.models.BigAutoField"
    name = "toolkit"
    verbose_name = "Toolkit"
