"""
Bounded in-process dispatcher for webhook events.

The webhook view stores the event and hands its id here; a small thread
pool runs process_webhook_event() so the HTTP response does not wait for
handlers. Accepted work is bounded by workers + queue capacity: once
full, submit() waits up to the submit timeout and then raises
WebhookQueueFullError, and the view answers 503 so PayPal redelivers.

Usage:
    from billing.webhooks.dispatcher import get_webhook_dispatcher

    get_webhook_dispatcher().submit(webhook_event.id)

Settings:
    BILLING_WEBHOOK_WORKERS: Pool size, clamped to 2..5
    BILLING_WEBHOOK_QUEUE_CAPACITY: Jobs that may wait for a worker
    BILLING_WEBHOOK_SUBMIT_TIMEOUT: Seconds submit() waits for room
    BILLING_WEBHOOK_EAGER: Run jobs inline on the request thread (tests)
"""

from __future__ import annotations

import logging
import threading
from concurrent.futures import Future, ThreadPoolExecutor
from uuid import UUID

from django.conf import settings
from django.db import close_old_connections

from billing.exceptions import WebhookQueueFullError

logger = logging.getLogger(__name__)

MIN_WORKERS = 2
MAX_WORKERS = 5
THREAD_NAME_PREFIX = "billing-webhook"


class WebhookDispatcher:
    """
    Thread pool with back-pressure for webhook processing.

    Attributes:
        workers: Number of worker threads
        capacity: Jobs allowed to wait beyond the running ones
        submit_timeout: Seconds to wait for room before rejecting
        eager: Process on the calling thread instead of the pool
    """

    def __init__(
        self,
        workers: int | None = None,
        capacity: int | None = None,
        submit_timeout: float | None = None,
        eager: bool | None = None,
    ):
        if workers is None:
            workers = getattr(settings, "BILLING_WEBHOOK_WORKERS", 4)
        if capacity is None:
            capacity = getattr(settings, "BILLING_WEBHOOK_QUEUE_CAPACITY", 100)
        if submit_timeout is None:
            submit_timeout = getattr(settings, "BILLING_WEBHOOK_SUBMIT_TIMEOUT", 10.0)
        if eager is None:
            eager = getattr(settings, "BILLING_WEBHOOK_EAGER", False)

        self.workers = max(MIN_WORKERS, min(MAX_WORKERS, int(workers)))
        self.capacity = max(0, int(capacity))
        self.submit_timeout = float(submit_timeout)
        self.eager = eager

        self._slots = threading.BoundedSemaphore(self.workers + self.capacity)
        self._executor: ThreadPoolExecutor | None = None
        self._lock = threading.Lock()
        self._closed = False

    def _get_executor(self) -> ThreadPoolExecutor:
        with self._lock:
            if self._closed:
                raise WebhookQueueFullError(
                    "Webhook dispatcher is shut down",
                    error_code="WEBHOOK_DISPATCHER_CLOSED",
                )
            if self._executor is None:
                self._executor = ThreadPoolExecutor(
                    max_workers=self.workers,
                    thread_name_prefix=THREAD_NAME_PREFIX,
                )
            return self._executor

    def submit(self, webhook_event_id: UUID | str) -> Future | None:
        """
        Queue a stored webhook event for processing.

        Returns:
            The Future for the job, or None when run eagerly

        Raises:
            WebhookQueueFullError: No room within submit_timeout
        """
        if self.eager:
            self._run(webhook_event_id)
            return None

        executor = self._get_executor()

        if not self._slots.acquire(timeout=self.submit_timeout):
            logger.warning(
                "Webhook dispatcher full, rejecting event",
                extra={
                    "webhook_event_id": str(webhook_event_id),
                    "workers": self.workers,
                    "capacity": self.capacity,
                },
            )
            raise WebhookQueueFullError(
                "Webhook queue is full",
                details={"webhook_event_id": str(webhook_event_id)},
            )

        try:
            future = executor.submit(self._run, webhook_event_id)
        except RuntimeError:
            self._slots.release()
            raise WebhookQueueFullError(
                "Webhook dispatcher is shut down",
                error_code="WEBHOOK_DISPATCHER_CLOSED",
            )

        future.add_done_callback(lambda _: self._slots.release())
        return future

    def _run(self, webhook_event_id: UUID | str) -> dict | None:
        from billing.webhooks.processing import process_webhook_event

        if not self.eager:
            close_old_connections()
        try:
            return process_webhook_event(webhook_event_id)
        except Exception:
            # Outcomes are persisted by process_webhook_event; this only
            # catches failures to load or save the row itself.
            logger.exception(
                "Webhook job crashed",
                extra={"webhook_event_id": str(webhook_event_id)},
            )
            return None
        finally:
            if not self.eager:
                close_old_connections()

    def shutdown(self, wait: bool = True) -> None:
        """Stop accepting work and optionally wait for running jobs."""
        with self._lock:
            self._closed = True
            executor, self._executor = self._executor, None
        if executor is not None:
            executor.shutdown(wait=wait)
        logger.info("Webhook dispatcher shut down")


# =============================================================================
# Shared dispatcher
# =============================================================================

_dispatcher: WebhookDispatcher | None = None
_dispatcher_lock = threading.Lock()


def get_webhook_dispatcher() -> WebhookDispatcher:
    """Return the process-wide dispatcher, creating it on first use."""
    global _dispatcher
    with _dispatcher_lock:
        if _dispatcher is None:
            _dispatcher = WebhookDispatcher()
        return _dispatcher


def shutdown_webhook_dispatcher(wait: bool = True) -> None:
    """Shut down and forget the process-wide dispatcher."""
    global _dispatcher
    with _dispatcher_lock:
        dispatcher, _dispatcher = _dispatcher, None
    if dispatcher is not None:
        dispatcher.shutdown(wait=wait)
