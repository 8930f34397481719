"""
Composition root.

``build_app()`` wires the stores, services and background tasks for one
process from an ``AppConfig``.  Every dependency is constructed here and
passed in explicitly; nothing in the package holds module-level state, so
tests can build as many isolated apps as they like.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Optional

from safeshift.alerts import AlertService
from safeshift.audit import ActivityLog
from safeshift.checkins import CheckInTracker
from safeshift.config import AppConfig
from safeshift.models import NowFn, utcnow
from safeshift.notifications import NotificationDispatcher
from safeshift.scheduler import (
    EscalationScheduler,
    OverdueCheckInMonitor,
    RecurringTask,
    SchedulerStatus,
    SleepFn,
)
from safeshift.settings import InMemorySettingsStore, SystemSettingsService
from safeshift.shifts import ShiftService
from safeshift.store import (
    InMemoryAlertStore,
    InMemoryCheckInStore,
    InMemoryNotificationStore,
    InMemoryShiftStore,
    InMemoryUserStore,
)
from safeshift.transport import (
    ConsoleEmailProvider,
    EmailProvider,
    EmailService,
    SmsProvider,
    SmsService,
    create_sms_provider,
)

logger = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s %(message)s"


def configure_logging(level: str = "INFO") -> None:
    logging.basicConfig(level=getattr(logging, level.upper()), format=LOG_FORMAT)


class SafeShiftApp:
    """Handle on a fully wired process."""

    def __init__(
        self,
        config: AppConfig,
        users: InMemoryUserStore,
        shifts: InMemoryShiftStore,
        check_ins: InMemoryCheckInStore,
        alerts: InMemoryAlertStore,
        notifications: InMemoryNotificationStore,
        activity_log: ActivityLog,
        settings: SystemSettingsService,
        dispatcher: NotificationDispatcher,
        alert_service: AlertService,
        check_in_tracker: CheckInTracker,
        shift_service: ShiftService,
        escalation_scheduler: EscalationScheduler,
        overdue_monitor: Optional[OverdueCheckInMonitor] = None,
    ) -> None:
        self.config = config
        self.users = users
        self.shifts = shifts
        self.check_ins = check_ins
        self.alerts = alerts
        self.notifications = notifications
        self.activity_log = activity_log
        self.settings = settings
        self.dispatcher = dispatcher
        self.alert_service = alert_service
        self.check_in_tracker = check_in_tracker
        self.shift_service = shift_service
        self.escalation_scheduler = escalation_scheduler
        self.overdue_monitor = overdue_monitor

    def _tasks(self) -> list[RecurringTask]:
        tasks: list[RecurringTask] = [self.escalation_scheduler]
        if self.overdue_monitor is not None:
            tasks.append(self.overdue_monitor)
        return tasks

    async def start(self) -> None:
        """Start every background task; each runs once before this returns."""
        for task in self._tasks():
            await task.start()
        logger.info("%s started", self.config.app_name)

    async def stop(self) -> None:
        for task in reversed(self._tasks()):
            await task.stop()
        logger.info("%s stopped", self.config.app_name)

    def status(self) -> dict[str, SchedulerStatus]:
        return {task.name: task.get_status() for task in self._tasks()}


def build_app(
    config: Optional[AppConfig] = None,
    now_fn: Optional[NowFn] = None,
    sms_provider: Optional[SmsProvider] = None,
    email_provider: Optional[EmailProvider] = None,
    sleep_fn: Optional[SleepFn] = None,
) -> SafeShiftApp:
    """Wire a ``SafeShiftApp``.

    Args:
        config: Process configuration.  Defaults to ``AppConfig()``.
        now_fn: Clock shared by every component.  Defaults to UTC wall time.
        sms_provider: Overrides the provider selected by ``config.sms``.
        email_provider: Overrides the console email provider.
        sleep_fn: Sleep used by the background loops.

    Returns:
        The wired app.  Background tasks are not running until ``start()``.
    """
    config = config or AppConfig()
    now_fn = now_fn or utcnow
    sleep_fn = sleep_fn or asyncio.sleep

    users = InMemoryUserStore()
    shifts = InMemoryShiftStore()
    check_ins = InMemoryCheckInStore()
    alerts = InMemoryAlertStore()
    notifications = InMemoryNotificationStore()
    activity_log = ActivityLog()

    settings = SystemSettingsService(
        InMemorySettingsStore(config.initial_settings), activity_log, now_fn=now_fn
    )
    sms = SmsService(sms_provider or create_sms_provider(config.sms), app_name=config.app_name)
    email = EmailService(
        email_provider or ConsoleEmailProvider(),
        from_address=config.email.from_address,
        app_name=config.app_name,
    )
    dispatcher = NotificationDispatcher(
        users, notifications, settings, sms, email, now_fn=now_fn
    )
    alert_service = AlertService(alerts, users, dispatcher, activity_log, now_fn=now_fn)
    tracker = CheckInTracker(
        check_ins, shifts, settings, alert_service, activity_log, now_fn=now_fn
    )
    shift_service = ShiftService(
        shifts, users, settings, tracker, activity_log, now_fn=now_fn
    )
    escalation = EscalationScheduler(
        alert_service,
        users,
        dispatcher,
        settings,
        poll_interval_seconds=config.escalation_poll_interval_seconds,
        now_fn=now_fn,
        sleep_fn=sleep_fn,
    )
    overdue = None
    if config.enable_overdue_monitor:
        overdue = OverdueCheckInMonitor(
            tracker,
            interval_seconds=config.overdue_check_interval_seconds,
            sleep_fn=sleep_fn,
        )

    return SafeShiftApp(
        config=config,
        users=users,
        shifts=shifts,
        check_ins=check_ins,
        alerts=alerts,
        notifications=notifications,
        activity_log=activity_log,
        settings=settings,
        dispatcher=dispatcher,
        alert_service=alert_service,
        check_in_tracker=tracker,
        shift_service=shift_service,
        escalation_scheduler=escalation,
        overdue_monitor=overdue,
    )
