"""
Check-In Tracker.

Owns the check-in lifecycle for active shifts:

    PENDING -> CONFIRMED   (worker responds)
    PENDING -> MISSED      (response window elapsed, or marked by hand)

Both outcomes are terminal.  Marking a check-in missed is what raises a
``MISSED_CHECK_IN`` alert, which the escalation scheduler then walks
through the worker's backup-contact chain.

``process_overdue_check_ins()`` is the sweep that finds pending check-ins
older than the configured response timeout.  It is safe to call from an
external cron and is also driven in-process by
``safeshift.scheduler.OverdueCheckInMonitor``.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Optional

from safeshift.alerts import AlertService
from safeshift.audit import ActivityEventType, ActivityLog
from safeshift.errors import InvalidStateError, NotFoundError
from safeshift.models import CheckIn, CheckInStatus, NowFn, Shift, ShiftStatus, utcnow
from safeshift.settings import SystemSettingsService
from safeshift.store import CheckInStore, ShiftStore

logger = logging.getLogger(__name__)


class CheckInTracker:
    """Schedules, confirms and times out check-ins."""

    def __init__(
        self,
        check_ins: CheckInStore,
        shifts: ShiftStore,
        settings: SystemSettingsService,
        alerts: AlertService,
        activity_log: ActivityLog,
        now_fn: NowFn = utcnow,
    ) -> None:
        self._check_ins = check_ins
        self._shifts = shifts
        self._settings = settings
        self._alerts = alerts
        self._activity_log = activity_log
        self._now = now_fn

    # -- helpers --

    def _require(self, check_in_id: str) -> CheckIn:
        check_in = self._check_ins.get(check_in_id)
        if check_in is None:
            raise NotFoundError("Check-in", check_in_id)
        return check_in

    def _require_shift(self, shift_id: str) -> Shift:
        shift = self._shifts.get(shift_id)
        if shift is None:
            raise NotFoundError("Shift", shift_id)
        return shift

    def _require_active_shift(self, shift_id: str) -> Shift:
        shift = self._require_shift(shift_id)
        if shift.status != ShiftStatus.ACTIVE:
            raise InvalidStateError("Shift is not active")
        return shift

    def _create(self, shift: Shift, scheduled_time: datetime) -> CheckIn:
        check_in = self._check_ins.add(CheckIn(
            shift_id=shift.id,
            worker_id=shift.worker_id,
            scheduled_time=scheduled_time,
            created_at=self._now(),
        ))
        self._activity_log.record(
            ActivityEventType.CHECK_IN_SCHEDULED,
            check_in.id,
            check_in.created_at,
            shift_id=shift.id,
            scheduled_time=scheduled_time.isoformat(),
        )
        return check_in

    # -- lifecycle --

    async def schedule_check_in(self, shift_id: str) -> CheckIn:
        """Create the next pending check-in for ``shift_id``.

        The due time is ``now + interval``, where the interval is the
        shift's own ``check_in_interval_minutes`` or, if unset, the global
        setting.

        Raises:
            NotFoundError: If the shift does not exist.
        """
        shift = self._require_shift(shift_id)
        interval = shift.check_in_interval_minutes or await self._settings.get_check_in_interval()
        check_in = self._create(shift, self._now() + timedelta(minutes=interval))
        logger.debug(
            "Scheduled check-in %s for shift %s at %s",
            check_in.id, shift_id, check_in.scheduled_time.isoformat(),
        )
        return check_in

    async def confirm_check_in(self, check_in_id: str) -> CheckIn:
        """Record the worker's response.

        ``response_seconds`` is the whole number of seconds between the
        scheduled time and now, floored at zero for early confirmations.

        Raises:
            NotFoundError: If the check-in does not exist.
            InvalidStateError: If the check-in is not pending.
        """
        check_in = self._require(check_in_id)
        if check_in.status != CheckInStatus.PENDING:
            raise InvalidStateError("Check-in is not pending")

        now = self._now()
        elapsed = (now - check_in.scheduled_time).total_seconds()
        confirmed = self._check_ins.resolve_pending(
            check_in_id,
            CheckInStatus.CONFIRMED,
            response_time=now,
            response_seconds=max(0, round(elapsed)),
        )
        if confirmed is None:
            raise InvalidStateError("Check-in is not pending")

        self._activity_log.record(
            ActivityEventType.CHECK_IN_CONFIRMED,
            check_in_id,
            now,
            actor_id=confirmed.worker_id,
            response_seconds=confirmed.response_seconds,
        )
        logger.info(
            "Check-in %s confirmed by worker %s after %ss",
            check_in_id, confirmed.worker_id, confirmed.response_seconds,
        )
        return confirmed

    async def mark_as_missed(self, check_in_id: str) -> CheckIn:
        """Mark a pending check-in missed and raise its alert.

        The check-in's status is written first.  If the alert cannot be
        created (for example the worker record is gone) the failure is
        logged and the missed check-in stands.

        Raises:
            NotFoundError: If the check-in does not exist.
            InvalidStateError: If the check-in is not pending.
        """
        check_in = self._require(check_in_id)
        if check_in.status != CheckInStatus.PENDING:
            raise InvalidStateError("Check-in is not pending")

        missed = self._check_ins.resolve_pending(check_in_id, CheckInStatus.MISSED)
        if missed is None:
            raise InvalidStateError("Check-in is not pending")

        self._activity_log.record(
            ActivityEventType.CHECK_IN_MISSED,
            check_in_id,
            self._now(),
            shift_id=missed.shift_id,
            worker_id=missed.worker_id,
        )
        logger.warning("Check-in %s missed by worker %s", check_in_id, missed.worker_id)

        try:
            await self._alerts.create_missed_check_in_alert(missed)
        except NotFoundError as exc:
            logger.error("No alert raised for missed check-in %s: %s", check_in_id, exc)
        return missed

    async def process_overdue_check_ins(self) -> int:
        """Mark every pending check-in past the response timeout as missed.

        A check-in is overdue when ``now - scheduled_time`` is strictly
        greater than ``response_timeout_seconds``.  Check-ins whose shift is
        no longer ``ACTIVE`` are left alone, as are check-ins resolved
        concurrently while the sweep runs.  A failure on one check-in is
        logged and the sweep moves on to the next.

        Returns:
            The number of check-ins marked missed.
        """
        timeout = timedelta(seconds=await self._settings.get_response_timeout())
        now = self._now()
        processed = 0

        for check_in in self._check_ins.find_pending():
            if now - check_in.scheduled_time <= timeout:
                continue
            shift = self._shifts.get(check_in.shift_id)
            if shift is None or shift.status != ShiftStatus.ACTIVE:
                logger.debug(
                    "Check-in %s skipped: shift %s is not active",
                    check_in.id, check_in.shift_id,
                )
                continue
            try:
                await self.mark_as_missed(check_in.id)
            except InvalidStateError:
                logger.debug("Check-in %s resolved before the sweep reached it", check_in.id)
                continue
            except Exception:
                logger.exception("Error processing overdue check-in %s", check_in.id)
                continue
            processed += 1

        if processed:
            logger.info("Overdue sweep marked %d check-in(s) as missed", processed)
        return processed

    # -- instant actions --

    async def confirm_check_in_for_shift(self, shift_id: str) -> CheckIn:
        """Create a check-in due now and confirm it straight away ("I'm OK")."""
        shift = self._require_active_shift(shift_id)
        check_in = self._create(shift, self._now())
        return await self.confirm_check_in(check_in.id)

    async def mark_check_in_as_missed_for_shift(self, shift_id: str) -> CheckIn:
        """Create a check-in due now and mark it missed straight away."""
        shift = self._require_active_shift(shift_id)
        check_in = self._create(shift, self._now())
        return await self.mark_as_missed(check_in.id)

    # -- queries --

    async def get_check_in(self, check_in_id: str) -> CheckIn:
        return self._require(check_in_id)

    async def get_by_shift(self, shift_id: str) -> list[CheckIn]:
        return self._check_ins.find_by_shift(shift_id)

    async def get_by_worker(self, worker_id: str) -> list[CheckIn]:
        return self._check_ins.find_by_worker(worker_id)

    async def get_pending(self) -> list[CheckIn]:
        return self._check_ins.find_pending()

    async def average_response_seconds(self, worker_id: Optional[str] = None) -> float:
        """Mean ``response_seconds`` over confirmed check-ins; 0 when none."""
        confirmed = [
            c.response_seconds
            for c in self._check_ins.find_confirmed(worker_id)
            if c.response_seconds is not None
        ]
        if not confirmed:
            return 0.0
        return sum(confirmed) / len(confirmed)
