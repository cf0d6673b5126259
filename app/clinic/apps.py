"""
Django app configuration for clinic.
"""

from django.apps import AppConfig


class ClinicConfig(AppConfig):
    """Configuration for the clinic application."""

    default_auto_field = "django.db.models.BigAutoField"
    name = "clinic"
    verbose_name = "Clinic"
