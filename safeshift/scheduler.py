"""
Background tasks: the Escalation Scheduler and the overdue check-in sweep.

Both are ``RecurringTask`` subclasses and share one lifecycle:

* ``start()`` arms the recurring loop *and* awaits one immediate run, so
  nothing waits a full poll interval after boot.  Starting a running task
  is a logged no-op.
* ``stop()`` cancels the loop and waits for it to finish.  Safe to call
  repeatedly.
* ``run_once()`` is single-flight: if a previous run is still executing,
  the new one is skipped, never queued.  The guard is an ``asyncio.Lock``
  checked with ``locked()`` before acquisition.

**Escalation scan** (one tick of ``EscalationScheduler``):

1. Re-read ``escalation_delay_minutes`` from the settings service.
2. For each ``ACTIVE`` alert, independently:
   a. skip if ``last_escalated_at`` is unset;
   b. skip if fewer than ``escalation_delay_minutes`` have elapsed since
      ``last_escalated_at`` (the boundary is inclusive: exactly the delay
      escalates);
   c. skip if the worker has no backup contacts;
   d. if the next chain index is past the end, the chain is exhausted --
      log it and leave the alert ``ACTIVE`` for a human to handle;
   e. otherwise notify the next contact, and only if that succeeded move
      the alert's escalation pointer forward.
3. An exception while handling one alert is logged with the alert id and
   counted; the remaining alerts are still processed.

Deployment assumes a single process.  Running several instances would need
an external lock around the scan.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime
from typing import Awaitable, Callable, Optional

from pydantic import BaseModel

from safeshift.alerts import AlertService
from safeshift.checkins import CheckInTracker
from safeshift.models import Alert, AlertStatus, NowFn, utcnow
from safeshift.notifications import NotificationDispatcher
from safeshift.settings import SystemSettingsService
from safeshift.store import UserStore

logger = logging.getLogger(__name__)

SleepFn = Callable[[float], Awaitable[None]]


# ---------------------------------------------------------------------------
# Result models
# ---------------------------------------------------------------------------

class SchedulerStatus(BaseModel):
    """Health-check view of a background task."""

    name: str
    running: bool
    poll_interval_ms: int


class EscalationScanResult(BaseModel):
    """Summary of one escalation scan."""

    processed: int = 0
    escalated: int = 0
    exhausted: int = 0
    skipped: int = 0
    errors: int = 0


# ---------------------------------------------------------------------------
# Recurring task base
# ---------------------------------------------------------------------------

class RecurringTask:
    """A cancellable periodic job with a single-flight guard.

    Subclasses implement ``tick()``.
    """

    name = "recurring-task"

    def __init__(
        self,
        interval_seconds: float,
        sleep_fn: SleepFn = asyncio.sleep,
    ) -> None:
        if interval_seconds <= 0:
            raise ValueError("interval_seconds must be positive")
        self.interval_seconds = interval_seconds
        self._sleep = sleep_fn
        self._task: Optional[asyncio.Task] = None
        self._tick_lock = asyncio.Lock()

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def tick(self) -> None:
        raise NotImplementedError

    async def run_once(self) -> bool:
        """Run one tick unless one is already in progress.

        Returns:
            True if the tick ran (successfully or not), False if it was
            skipped because another tick held the guard.
        """
        if self._tick_lock.locked():
            logger.info("%s: previous run still in progress, skipping", self.name)
            return False
        async with self._tick_lock:
            try:
                await self.tick()
            except Exception:
                logger.exception("%s: run failed", self.name)
        return True

    async def start(self) -> None:
        if self.running:
            logger.info("%s already running", self.name)
            return
        self._task = asyncio.create_task(self._loop(), name=self.name)
        logger.info("%s started (every %ss)", self.name, self.interval_seconds)
        await self.run_once()

    async def stop(self) -> None:
        task, self._task = self._task, None
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        logger.info("%s stopped", self.name)

    def get_status(self) -> SchedulerStatus:
        return SchedulerStatus(
            name=self.name,
            running=self.running,
            poll_interval_ms=int(self.interval_seconds * 1000),
        )

    async def _loop(self) -> None:
        while True:
            await self._sleep(self.interval_seconds)
            await self.run_once()


# ---------------------------------------------------------------------------
# Escalation scheduler
# ---------------------------------------------------------------------------

class EscalationScheduler(RecurringTask):
    """Walks unacknowledged alerts down their workers' contact chains."""

    name = "escalation-scheduler"

    def __init__(
        self,
        alerts: AlertService,
        users: UserStore,
        dispatcher: NotificationDispatcher,
        settings: SystemSettingsService,
        poll_interval_seconds: float = 60.0,
        now_fn: NowFn = utcnow,
        sleep_fn: SleepFn = asyncio.sleep,
    ) -> None:
        super().__init__(poll_interval_seconds, sleep_fn=sleep_fn)
        self._alerts = alerts
        self._users = users
        self._dispatcher = dispatcher
        self._settings = settings
        self._now = now_fn
        self.last_result: Optional[EscalationScanResult] = None

    async def tick(self) -> None:
        self.last_result = await self.scan()

    async def scan(self) -> EscalationScanResult:
        """Run the escalation pass over every ``ACTIVE`` alert once.

        Prefer ``run_once()`` from background code; ``scan()`` itself has
        no overlap guard.
        """
        result = EscalationScanResult()
        delay_minutes = await self._settings.get_escalation_delay()
        active = await self._alerts.find_active_alerts()
        if not active:
            return result

        now = self._now()
        for alert in active:
            result.processed += 1
            try:
                outcome = await self._escalate(alert, now, delay_minutes)
            except Exception:
                logger.exception("Error escalating alert %s", alert.id)
                result.errors += 1
                continue
            if outcome == "escalated":
                result.escalated += 1
            elif outcome == "exhausted":
                result.exhausted += 1
            else:
                result.skipped += 1

        logger.info(
            "Escalation scan: %d processed, %d escalated, %d exhausted, %d skipped, %d errors",
            result.processed, result.escalated, result.exhausted,
            result.skipped, result.errors,
        )
        return result

    async def _escalate(self, alert: Alert, now: datetime, delay_minutes: int) -> str:
        if alert.last_escalated_at is None:
            return "skipped"

        minutes_since = (now - alert.last_escalated_at).total_seconds() / 60
        if minutes_since < delay_minutes:
            return "skipped"

        worker = self._users.get(alert.worker_id)
        contacts = worker.assigned_backup_contact_ids if worker else []
        if not contacts:
            return "skipped"

        next_index = alert.escalated_to_index + 1
        if next_index >= len(contacts):
            logger.info(
                "Alert %s: all %d backup contacts notified, awaiting acknowledgement",
                alert.id, len(contacts),
            )
            return "exhausted"

        # An earlier alert in this scan may have yielded long enough for a
        # human to acknowledge this one.
        current = await self._alerts.get_alert(alert.id)
        if current.status != AlertStatus.ACTIVE:
            return "skipped"

        notified = await self._dispatcher.notify_contact_at_index(
            current, worker, worker.full_name, next_index
        )
        if not notified:
            return "skipped"

        if await self._alerts.advance_escalation(alert.id, next_index) is None:
            return "skipped"

        logger.info(
            "Escalated alert %s to backup contact %d/%d",
            alert.id, next_index + 1, len(contacts),
        )
        return "escalated"


# ---------------------------------------------------------------------------
# Overdue check-in monitor
# ---------------------------------------------------------------------------

class OverdueCheckInMonitor(RecurringTask):
    """Runs ``CheckInTracker.process_overdue_check_ins`` on a timer."""

    name = "overdue-check-in-monitor"

    def __init__(
        self,
        tracker: CheckInTracker,
        interval_seconds: float = 30.0,
        sleep_fn: SleepFn = asyncio.sleep,
    ) -> None:
        super().__init__(interval_seconds, sleep_fn=sleep_fn)
        self._tracker = tracker
        self.last_processed = 0

    async def tick(self) -> None:
        self.last_processed = await self._tracker.process_overdue_check_ins()
