"""
Notification dispatcher.

Fans operator alerts out to the push and email transports without ever
holding up the order flow. Notifications are strictly best-effort:

- each toggle (on-create, on-paid) is checked before anything is rendered
- push and email are independent jobs; one failing never suppresses the other
- failures are logged and dropped, never raised and never retried
- the caller gets futures back but does not have to wait on them

Design decisions:
- A small ThreadPoolExecutor owns the outbound I/O so request handlers return
  immediately
- Settings are read fresh for every notification, so admin edits apply to
  the next order without a restart
"""

import logging
from concurrent.futures import Future, ThreadPoolExecutor
from typing import Optional

from shared.channels import NotificationChannels, NotificationResult
from shared.models import NotificationSettings, OrderSummary
from shared.settings_store import SettingsStore
from shared.templates import (
    NotificationType,
    build_context,
    paid_notification_type,
    render_notification,
)

logger = logging.getLogger("dispatcher")


class NotificationDispatcher:
    """
    Sends order-created and order-paid alerts to the operator.

    Example:
        dispatcher = NotificationDispatcher(SettingsStore(db))
        dispatcher.notify_paid(summary)   # returns immediately
        dispatcher.shutdown()             # on process exit
    """

    def __init__(
        self,
        settings_store: Optional[SettingsStore] = None,
        channels: Optional[NotificationChannels] = None,
        max_workers: int = 4,
        timeout: float = 10.0,
    ):
        self.settings_store = settings_store or SettingsStore()
        self.channels = channels or NotificationChannels(timeout=timeout)
        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="notify")

    def notify_created(self, summary: OrderSummary) -> list[Future]:
        settings = self._load_settings()
        if settings is None or not settings.notify_on_create:
            logger.debug(f"Order-created notification for {summary.order_id} disabled")
            return []
        return self._dispatch(NotificationType.ORDER_CREATED, summary, settings)

    def notify_paid(self, summary: OrderSummary) -> list[Future]:
        settings = self._load_settings()
        if settings is None or not settings.notify_on_paid:
            logger.debug(f"Order-paid notification for {summary.order_id} disabled")
            return []
        return self._dispatch(paid_notification_type(summary), summary, settings)

    def shutdown(self, wait: bool = True) -> None:
        self._executor.shutdown(wait=wait)

    def _load_settings(self) -> Optional[NotificationSettings]:
        try:
            return self.settings_store.get()
        except Exception as e:
            logger.error(f"Could not load notification settings: {e}")
            return None

    def _dispatch(
        self,
        notification_type: NotificationType,
        summary: OrderSummary,
        settings: NotificationSettings,
    ) -> list[Future]:
        context = build_context(summary)
        jobs = []
        if settings.push_enabled():
            jobs.append(("push", self._send_push))
        if settings.email_enabled():
            jobs.append(("email", self._send_email))
        if not jobs:
            logger.info(f"No notification transport configured; {notification_type.value} for {summary.order_id} dropped")

        futures = []
        for transport, send in jobs:
            try:
                futures.append(self._executor.submit(send, notification_type, context, settings))
            except RuntimeError as e:
                logger.error(f"Could not schedule {transport} {notification_type.value} for {summary.order_id}: {e}")
        return futures

    def _send_push(
        self,
        notification_type: NotificationType,
        context: dict[str, str],
        settings: NotificationSettings,
    ) -> Optional[NotificationResult]:
        try:
            title, body = render_notification(notification_type, "push", **context)
            return self.channels.push.send(settings.server_chan_key, title, body)
        except Exception as e:
            logger.error(f"Push notification {notification_type.value} for {context.get('order_id')} failed: {e}")
            return None

    def _send_email(
        self,
        notification_type: NotificationType,
        context: dict[str, str],
        settings: NotificationSettings,
    ) -> Optional[NotificationResult]:
        try:
            subject, body = render_notification(notification_type, "email", **context)
            return self.channels.email.send(
                host=settings.email_host,
                port=settings.email_port,
                user=settings.email_user,
                password=settings.email_pass,
                to=settings.email_to or settings.email_user,
                subject=subject,
                html_body=body,
            )
        except Exception as e:
            logger.error(f"Email notification {notification_type.value} for {context.get('order_id')} failed: {e}")
            return None
