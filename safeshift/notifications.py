"""
Notification Dispatcher.

Turns alert lifecycle events into in-app notifications plus outbound SMS
and email.  In-app records are authoritative and always written; outbound
delivery is best-effort -- a failed or crashing transport is logged and
never fails the enclosing operation.

The escalation chain is addressed by index into the worker's ordered
``assigned_backup_contact_ids``.  ``notify_contact_at_index`` is the single
entry point used both for the initial alert (index 0) and for every
escalation step.
"""

from __future__ import annotations

import logging
from typing import Awaitable, Optional, Union

from safeshift.models import (
    Alert,
    AlertType,
    Notification,
    NotificationType,
    NowFn,
    User,
    utcnow,
)
from safeshift.settings import SystemSettingsService
from safeshift.store import NotificationStore, UserStore
from safeshift.transport import EmailResult, EmailService, SmsResult, SmsService

logger = logging.getLogger(__name__)

BACKUP_ACTION_URL = "/backup"


class NotificationDispatcher:
    """Fans alert events out to workers and their backup contacts."""

    def __init__(
        self,
        users: UserStore,
        notifications: NotificationStore,
        settings: SystemSettingsService,
        sms: SmsService,
        email: EmailService,
        now_fn: NowFn = utcnow,
    ) -> None:
        self._users = users
        self._notifications = notifications
        self._settings = settings
        self._sms = sms
        self._email = email
        self._now = now_fn

    # -- in-app records --

    async def notify(
        self,
        user_id: str,
        title: str,
        message: str,
        type: NotificationType = NotificationType.ALERT,
        action_url: Optional[str] = None,
    ) -> Notification:
        """Persist an in-app notification for ``user_id``."""
        return self._notifications.add(Notification(
            user_id=user_id,
            type=type,
            title=title,
            message=message,
            created_at=self._now(),
            action_url=action_url,
        ))

    async def get_notifications(self, user_id: str) -> list[Notification]:
        return self._notifications.find_by_user(user_id)

    async def count_unread(self, user_id: str) -> int:
        return self._notifications.count_unread(user_id)

    async def mark_as_read(self, notification_id: str) -> Optional[Notification]:
        return self._notifications.mark_as_read(notification_id)

    async def mark_all_as_read(self, user_id: str) -> int:
        return self._notifications.mark_all_as_read(user_id)

    # -- escalation chain --

    async def notify_contact_at_index(
        self,
        alert: Alert,
        worker: Optional[User],
        worker_name: str,
        index: int,
    ) -> bool:
        """Alert the backup contact at ``index`` in the worker's chain.

        Args:
            alert: The alert being escalated.
            worker: The worker the alert concerns.
            worker_name: Display name used in message text.
            index: Position in ``worker.assigned_backup_contact_ids``.

        Returns:
            True if the contact was notified.  False, with no side effects,
            when the chain is exhausted or the contact user does not exist.
        """
        chain = worker.assigned_backup_contact_ids if worker else []
        if index < 0 or index >= len(chain):
            return False

        contact = self._users.get(chain[index])
        if contact is None:
            logger.warning(
                "Backup contact %s (index %d) for worker %s does not exist",
                chain[index], index, alert.worker_id,
            )
            return False

        if alert.type == AlertType.MISSED_CHECK_IN:
            title = "Missed Check-In"
            body = f"{worker_name} has missed a check-in. Please try to contact them immediately."
        else:
            title = "Emergency Alert"
            body = f"{worker_name} triggered an emergency alert: {alert.message}"

        await self.notify(contact.id, title, body, action_url=BACKUP_ACTION_URL)
        await self.notify(
            alert.worker_id,
            "Backup Contact Notified",
            f"{contact.full_name} has been alerted and will try to reach you.",
        )

        if contact.phone and await self._settings.is_notification_enabled("sms"):
            if alert.type == AlertType.EMERGENCY:
                await self._deliver(
                    "SMS", contact.id,
                    self._sms.send_emergency_alert(contact.phone, worker_name, alert.message),
                )
            elif alert.type == AlertType.MISSED_CHECK_IN:
                await self._deliver(
                    "SMS", contact.id,
                    self._sms.send_missed_check_in_alert(contact.phone, worker_name),
                )

        if contact.email and await self._settings.is_notification_enabled("email"):
            if alert.type == AlertType.EMERGENCY:
                await self._deliver(
                    "Email", contact.id,
                    self._email.send_emergency_alert(contact.email, worker_name, alert.message),
                )
            elif alert.type == AlertType.MISSED_CHECK_IN:
                await self._deliver(
                    "Email", contact.id,
                    self._email.send_missed_check_in_alert(contact.email, worker_name),
                )

        logger.info(
            "Notified backup contact %d/%d for alert %s: %s",
            index + 1, len(chain), alert.id, contact.full_name,
        )
        return True

    # -- acknowledge / resolve fan-out --

    async def notify_acknowledged(
        self, alert: Alert, worker: Optional[User], acknowledged_by: str
    ) -> None:
        """Tell the worker and the other contacts that someone responded.

        The acknowledger is excluded.  Contacts that had already been
        alerted also get an SMS so they stop trying to reach the worker.
        """
        acknowledger = self._users.get(acknowledged_by)
        acknowledger_name = acknowledger.full_name if acknowledger else "a backup contact"

        await self.notify(
            alert.worker_id,
            "Alert Acknowledged",
            f"Your alert has been acknowledged by {acknowledger_name}",
        )
        if worker is None:
            return

        sms_enabled = await self._settings.is_notification_enabled("sms")
        for index, contact_id in enumerate(worker.assigned_backup_contact_ids):
            if contact_id == acknowledged_by:
                continue
            await self.notify(
                contact_id,
                "Alert Acknowledged",
                f"Alert for {worker.full_name} was acknowledged by {acknowledger_name}",
            )
            if sms_enabled and index <= alert.escalated_to_index:
                contact = self._users.get(contact_id)
                if contact is not None and contact.phone:
                    await self._deliver(
                        "SMS", contact_id,
                        self._sms.send_alert_acknowledged(
                            contact.phone, worker.full_name, acknowledger_name
                        ),
                    )

    async def notify_resolved(
        self, alert: Alert, worker: Optional[User], resolved_by: str
    ) -> None:
        """Tell the worker and every assigned contact that the alert is closed."""
        await self.notify(alert.worker_id, "Alert Resolved", "Your alert has been resolved")
        if worker is None:
            return

        sms_enabled = await self._settings.is_notification_enabled("sms")
        for index, contact_id in enumerate(worker.assigned_backup_contact_ids):
            await self.notify(
                contact_id,
                "Alert Resolved",
                f"Alert for {worker.full_name} has been resolved",
            )
            if sms_enabled and index <= alert.escalated_to_index and contact_id != resolved_by:
                contact = self._users.get(contact_id)
                if contact is not None and contact.phone:
                    await self._deliver(
                        "SMS", contact_id,
                        self._sms.send_alert_resolved(contact.phone, worker.full_name),
                    )

    # -- helpers --

    async def _deliver(
        self,
        channel: str,
        recipient_id: str,
        send: Awaitable[Union[SmsResult, EmailResult]],
    ) -> bool:
        """Await an outbound send, logging (not raising) any failure."""
        try:
            result = await send
        except Exception:
            logger.exception("%s delivery to %s raised", channel, recipient_id)
            return False
        if not result.success:
            logger.warning("%s delivery to %s failed: %s", channel, recipient_id, result.error)
        return result.success
