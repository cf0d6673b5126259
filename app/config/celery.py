"""
Celery configuration for the clinic billing backend.

Celery runs two kinds of billing work:
- Webhook retries picked up from the WebhookEvent table
- Periodic sweeps scheduled by celery-beat (metric threshold checks,
  deferred plan-change promotion, access token warm-up, cleanup)

Redis is both the message broker and result backend. Tasks are
auto-discovered from the installed apps; the beat schedule lives in
settings.CELERY_BEAT_SCHEDULE and is synced by django_celery_beat's
DatabaseScheduler.

On worker shutdown, gateway retry backoff is interrupted and the webhook
thread pool drains before the process exits.

Usage:
    # Run a worker and the scheduler
    celery -A config worker -l info
    celery -A config beat -l info

    # Every periodic task body can also be invoked directly
    from billing.tasks import apply_scheduled_subscription_changes
    apply_scheduled_subscription_changes()
"""

import os

from celery import Celery
from celery.signals import worker_shutdown

os.environ.setdefault("DJANGO_SETTINGS_MODULE", "config.settings")

app = Celery("config")

# All Celery settings are prefixed with CELERY_ in settings.py
app.config_from_object("django.conf:settings", namespace="CELERY")

app.autodiscover_tasks()


@worker_shutdown.connect
def release_billing_resources(**kwargs):
    """
    Wake gateway retries sleeping in backoff, then drain webhook jobs.

    Interrupted retries raise GatewayRetryInterrupted; a webhook job that
    hits one is left FAILED for the retry sweep.
    """
    from billing.adapters import reset_gateway_clients
    from billing.webhooks.dispatcher import shutdown_webhook_dispatcher

    reset_gateway_clients()
    shutdown_webhook_dispatcher(wait=True)
