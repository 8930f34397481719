"""
Alert Store & State Machine.

This module owns the alert lifecycle:

    ACTIVE -> ACKNOWLEDGED -> RESOLVED
    ACTIVE -> RESOLVED

``RESOLVED`` is terminal.  Acknowledged alerts cannot return to
``ACTIVE``; acknowledgement pauses escalation for good because the
scheduler only scans ``ACTIVE`` alerts.

**Initial fan-out policy:**  creating an alert notifies the worker and the
backup contact at chain index 0 only -- for every alert type and severity,
emergencies included.  The rest of the chain is reached over time by the
escalation scheduler, one contact per escalation delay.

Status changes are written through ``AlertStore.transition``, which
re-checks the stored status in the same call, so a concurrent escalation
step can never overwrite an acknowledgement (and vice versa).
"""

from __future__ import annotations

import logging
from typing import Optional

from safeshift.audit import ActivityEventType, ActivityLog
from safeshift.errors import InvalidStateError, NotFoundError
from safeshift.models import (
    Alert,
    AlertCreate,
    AlertSeverity,
    AlertStatus,
    AlertType,
    CheckIn,
    NowFn,
    User,
    utcnow,
)
from safeshift.notifications import NotificationDispatcher
from safeshift.store import AlertStore, UserStore

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Valid state transitions
# ---------------------------------------------------------------------------

_VALID_TRANSITIONS: dict[AlertStatus, set[AlertStatus]] = {
    AlertStatus.ACTIVE: {AlertStatus.ACKNOWLEDGED, AlertStatus.RESOLVED},
    AlertStatus.ACKNOWLEDGED: {AlertStatus.RESOLVED},
    AlertStatus.RESOLVED: set(),  # terminal
}

_ALERT_TITLES = {
    AlertType.MISSED_CHECK_IN: "Missed Check-In Alert",
    AlertType.EMERGENCY: "Emergency Alert",
    AlertType.SYSTEM_ALERT: "System Alert",
}


def _allowed_from(target: AlertStatus) -> set[AlertStatus]:
    return {src for src, targets in _VALID_TRANSITIONS.items() if target in targets}


# ---------------------------------------------------------------------------
# Alert service
# ---------------------------------------------------------------------------

class AlertService:
    """Creates alerts and drives them through their lifecycle."""

    def __init__(
        self,
        alerts: AlertStore,
        users: UserStore,
        dispatcher: NotificationDispatcher,
        activity_log: ActivityLog,
        now_fn: NowFn = utcnow,
    ) -> None:
        self._alerts = alerts
        self._users = users
        self._dispatcher = dispatcher
        self._activity_log = activity_log
        self._now = now_fn

    # -- helpers --

    def _require(self, alert_id: str) -> Alert:
        alert = self._alerts.get(alert_id)
        if alert is None:
            raise NotFoundError("Alert", alert_id)
        return alert

    def _require_worker(self, worker_id: str) -> User:
        worker = self._users.get(worker_id)
        if worker is None:
            raise NotFoundError("Worker", worker_id)
        return worker

    # -- creation --

    async def create(self, data: AlertCreate) -> Alert:
        """Create an ``ACTIVE`` alert and notify the first backup contact.

        The alert starts at escalation index 0 with ``last_escalated_at``
        set to its creation time, so the scheduler measures the first
        escalation delay from the moment the alert was raised.

        Raises:
            NotFoundError: If the worker, or an explicitly given backup
                contact, does not exist.
        """
        worker = self._require_worker(data.worker_id)
        if data.backup_contact_id and self._users.get(data.backup_contact_id) is None:
            raise NotFoundError("Backup contact", data.backup_contact_id)

        now = self._now()
        alert = self._alerts.add(Alert(
            shift_id=data.shift_id,
            worker_id=data.worker_id,
            backup_contact_id=data.backup_contact_id,
            type=data.type,
            severity=data.severity,
            message=data.message,
            status=AlertStatus.ACTIVE,
            created_at=now,
            escalated_to_index=0,
            last_escalated_at=now,
        ))
        self._activity_log.record(
            ActivityEventType.ALERT_CREATED,
            alert.id,
            now,
            worker_id=alert.worker_id,
            type=alert.type.value,
            severity=alert.severity.value,
        )
        logger.info(
            "Alert %s created for worker %s (%s, %s)",
            alert.id, alert.worker_id, alert.type.value, alert.severity.value,
        )

        await self._dispatcher.notify(
            alert.worker_id, _ALERT_TITLES[alert.type], alert.message
        )
        await self._dispatcher.notify_contact_at_index(
            alert, worker, worker.full_name, alert.escalated_to_index
        )
        return alert

    async def create_missed_check_in_alert(self, check_in: CheckIn) -> Alert:
        """Raise the ``MISSED_CHECK_IN`` alert for a missed check-in."""
        worker = self._require_worker(check_in.worker_id)
        chain = worker.assigned_backup_contact_ids
        return await self.create(AlertCreate(
            shift_id=check_in.shift_id,
            worker_id=worker.id,
            backup_contact_id=chain[0] if chain else None,
            type=AlertType.MISSED_CHECK_IN,
            severity=AlertSeverity.HIGH,
            message=f"{worker.full_name} missed a check-in",
        ))

    async def create_emergency_alert(
        self, worker_id: str, shift_id: str, message: Optional[str] = None
    ) -> Alert:
        """Raise a ``CRITICAL`` emergency alert on the worker's behalf."""
        worker = self._require_worker(worker_id)
        chain = worker.assigned_backup_contact_ids
        return await self.create(AlertCreate(
            shift_id=shift_id,
            worker_id=worker_id,
            backup_contact_id=chain[0] if chain else None,
            type=AlertType.EMERGENCY,
            severity=AlertSeverity.CRITICAL,
            message=message or f"Emergency alert from {worker.full_name}",
        ))

    # -- lifecycle --

    async def acknowledge(self, alert_id: str, acknowledged_by: str) -> Alert:
        """Someone has picked the alert up; stop escalating it.

        Raises:
            NotFoundError: If the alert does not exist.
            InvalidStateError: If the alert is not ``ACTIVE``.
        """
        alert = self._require(alert_id)
        if alert.status != AlertStatus.ACTIVE:
            raise InvalidStateError("Alert is not active")

        now = self._now()
        updated = self._alerts.transition(
            alert_id,
            _allowed_from(AlertStatus.ACKNOWLEDGED),
            AlertStatus.ACKNOWLEDGED,
            acknowledged_at=now,
            acknowledged_by=acknowledged_by,
        )
        if updated is None:
            raise InvalidStateError("Alert is not active")

        self._activity_log.record(
            ActivityEventType.ALERT_ACKNOWLEDGED,
            alert_id,
            now,
            actor_id=acknowledged_by,
            escalated_to_index=updated.escalated_to_index,
        )
        logger.info("Alert %s acknowledged by %s", alert_id, acknowledged_by)

        worker = self._users.get(updated.worker_id)
        await self._dispatcher.notify_acknowledged(updated, worker, acknowledged_by)
        return updated

    async def resolve(self, alert_id: str, resolved_by: str) -> Alert:
        """Close the alert.  Valid from ``ACTIVE`` or ``ACKNOWLEDGED``.

        Raises:
            NotFoundError: If the alert does not exist.
            InvalidStateError: If the alert is already resolved.
        """
        alert = self._require(alert_id)
        if alert.status == AlertStatus.RESOLVED:
            raise InvalidStateError("Alert is already resolved")

        now = self._now()
        updated = self._alerts.transition(
            alert_id,
            _allowed_from(AlertStatus.RESOLVED),
            AlertStatus.RESOLVED,
            resolved_at=now,
            resolved_by=resolved_by,
        )
        if updated is None:
            raise InvalidStateError("Alert is already resolved")

        self._activity_log.record(
            ActivityEventType.ALERT_RESOLVED,
            alert_id,
            now,
            actor_id=resolved_by,
            previous_status=alert.status.value,
        )
        logger.info("Alert %s resolved by %s", alert_id, resolved_by)

        worker = self._users.get(updated.worker_id)
        await self._dispatcher.notify_resolved(updated, worker, resolved_by)
        return updated

    async def advance_escalation(self, alert_id: str, new_index: int) -> Optional[Alert]:
        """Record that the contact at ``new_index`` has been notified.

        Only the escalation scheduler calls this.  Returns None without
        changing anything if the alert has left ``ACTIVE`` in the meantime
        or the index would not move forward.

        Raises:
            NotFoundError: If the alert does not exist.
        """
        self._require(alert_id)
        now = self._now()
        updated = self._alerts.advance_escalation(alert_id, new_index, now)
        if updated is None:
            logger.info(
                "Alert %s: escalation to index %d not recorded (no longer active or stale index)",
                alert_id, new_index,
            )
            return None

        self._activity_log.record(
            ActivityEventType.ALERT_ESCALATED,
            alert_id,
            now,
            escalated_to_index=new_index,
        )
        return updated

    # -- queries --

    async def get_alert(self, alert_id: str) -> Alert:
        return self._require(alert_id)

    async def find_active_alerts(self) -> list[Alert]:
        """``ACTIVE`` alerts only, newest first.  Acknowledged ones are excluded."""
        return self._alerts.find_active()

    async def find_by_worker_id(self, worker_id: str) -> list[Alert]:
        return self._alerts.find_by_worker(worker_id)

    async def find_by_backup_contact_id(self, contact_id: str) -> list[Alert]:
        """Alerts for every worker whose chain includes ``contact_id``.

        Also includes alerts naming the contact in the primary
        ``backup_contact_id`` field, in case a chain was edited afterwards.
        """
        worker_ids = [w.id for w in self._users.find_workers_by_backup_contact(contact_id)]
        by_chain = self._alerts.find_by_workers(worker_ids) if worker_ids else []
        seen = {a.id for a in by_chain}
        extra = [a for a in self._alerts.find_by_backup_contact(contact_id) if a.id not in seen]
        return sorted(by_chain + extra, key=lambda a: a.created_at, reverse=True)

    async def count_pending_alerts(self) -> int:
        return self._alerts.count_active()
