"""
Billing app configuration.

This app owns the payment gateway integration, consultation payments,
clinic subscriptions, billing metrics and alerting.
"""

from django.apps import AppConfig


class BillingConfig(AppConfig):
    """Configuration for the billing application."""

    default_auto_field = "django.db.models.BigAutoField"
    name = "billing"
    verbose_name = "Billing"
