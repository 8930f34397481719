"""
Shift lifecycle.

A shift is a worker's tracked period of lone work.  Starting one is the
only way check-ins come into existence: ``start_shift`` creates the shift
and schedules its first check-in.

A worker may have at most one ``ACTIVE`` shift.  The check-then-create in
``start_shift`` runs under a per-worker ``asyncio.Lock``, so two concurrent
start requests for the same worker cannot both pass the check.  A worker's
lock is dropped once no start request holds or waits on it.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from datetime import timedelta
from typing import AsyncIterator, Optional

from safeshift.audit import ActivityEventType, ActivityLog
from safeshift.checkins import CheckInTracker
from safeshift.errors import InvalidStateError, NotFoundError, ValidationError
from safeshift.models import NowFn, Role, Shift, ShiftStatus, utcnow
from safeshift.settings import SystemSettingsService
from safeshift.store import ShiftStore, UserStore

logger = logging.getLogger(__name__)

MIN_CHECK_IN_INTERVAL_MINUTES = 1
MAX_CHECK_IN_INTERVAL_MINUTES = 120


class ShiftService:
    """Starts, ends, cancels and extends shifts."""

    def __init__(
        self,
        shifts: ShiftStore,
        users: UserStore,
        settings: SystemSettingsService,
        check_ins: CheckInTracker,
        activity_log: ActivityLog,
        now_fn: NowFn = utcnow,
    ) -> None:
        self._shifts = shifts
        self._users = users
        self._settings = settings
        self._check_ins = check_ins
        self._activity_log = activity_log
        self._now = now_fn
        self._worker_locks: dict[str, asyncio.Lock] = {}
        self._lock_holders: dict[str, int] = {}

    @contextlib.asynccontextmanager
    async def _worker_lock(self, worker_id: str) -> AsyncIterator[None]:
        lock = self._worker_locks.setdefault(worker_id, asyncio.Lock())
        self._lock_holders[worker_id] = self._lock_holders.get(worker_id, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._lock_holders[worker_id] -= 1
            if not self._lock_holders[worker_id]:
                del self._lock_holders[worker_id]
                del self._worker_locks[worker_id]

    def _require_active(self, shift_id: str) -> Shift:
        shift = self._shifts.get(shift_id)
        if shift is None:
            raise NotFoundError("Shift", shift_id)
        if shift.status != ShiftStatus.ACTIVE:
            raise InvalidStateError("Shift is not active")
        return shift

    async def start_shift(
        self,
        worker_id: str,
        location_id: str,
        estimated_hours: float,
        notes: str = "",
        check_in_interval_minutes: Optional[int] = None,
    ) -> Shift:
        """Start a shift and schedule its first check-in.

        Args:
            worker_id: The worker going on shift.
            location_id: Where the work takes place.
            estimated_hours: Expected length; sets ``estimated_end_time``.
            notes: Free text shown to backup contacts.
            check_in_interval_minutes: Per-shift interval.  Defaults to the
                global ``check_in_interval_minutes`` setting.

        Raises:
            NotFoundError: If the worker does not exist.
            ValidationError: If the user is inactive, not a worker, the
                estimate is not positive, or the interval is out of range.
            InvalidStateError: If the worker already has an active shift.
        """
        worker = self._users.get(worker_id)
        if worker is None:
            raise NotFoundError("Worker", worker_id)
        if not worker.is_active:
            raise ValidationError("Worker is not active", fields=["worker_id"])
        if worker.role != Role.WORKER:
            raise ValidationError("User is not a worker", fields=["worker_id"])
        if estimated_hours <= 0:
            raise ValidationError("estimated_hours must be positive", fields=["estimated_hours"])
        if check_in_interval_minutes is not None and not (
            MIN_CHECK_IN_INTERVAL_MINUTES
            <= check_in_interval_minutes
            <= MAX_CHECK_IN_INTERVAL_MINUTES
        ):
            raise ValidationError(
                f"check_in_interval_minutes must be between {MIN_CHECK_IN_INTERVAL_MINUTES} "
                f"and {MAX_CHECK_IN_INTERVAL_MINUTES}",
                fields=["check_in_interval_minutes"],
            )

        async with self._worker_lock(worker_id):
            if self._shifts.find_active_by_worker(worker_id) is not None:
                raise InvalidStateError("Worker already has an active shift")

            interval = check_in_interval_minutes or await self._settings.get_check_in_interval()
            now = self._now()
            shift = self._shifts.add(Shift(
                worker_id=worker_id,
                location_id=location_id,
                status=ShiftStatus.ACTIVE,
                start_time=now,
                estimated_end_time=now + timedelta(hours=estimated_hours),
                notes=notes,
                check_in_interval_minutes=interval,
            ))

        self._activity_log.record(
            ActivityEventType.SHIFT_STARTED,
            shift.id,
            now,
            actor_id=worker_id,
            location_id=location_id,
            check_in_interval_minutes=interval,
        )
        logger.info(
            "Shift %s started for worker %s (every %d min)", shift.id, worker_id, interval
        )

        await self._check_ins.schedule_check_in(shift.id)
        return shift

    async def end_shift(self, shift_id: str) -> Shift:
        self._require_active(shift_id)
        now = self._now()
        shift = self._shifts.update(shift_id, status=ShiftStatus.COMPLETED, end_time=now)
        self._activity_log.record(
            ActivityEventType.SHIFT_ENDED, shift_id, now, actor_id=shift.worker_id
        )
        logger.info("Shift %s ended", shift_id)
        return shift

    async def cancel_shift(self, shift_id: str) -> Shift:
        self._require_active(shift_id)
        now = self._now()
        shift = self._shifts.update(shift_id, status=ShiftStatus.CANCELLED, end_time=now)
        self._activity_log.record(
            ActivityEventType.SHIFT_CANCELLED, shift_id, now, actor_id=shift.worker_id
        )
        logger.info("Shift %s cancelled", shift_id)
        return shift

    async def extend_shift(self, shift_id: str, additional_hours: float) -> Shift:
        """Push ``estimated_end_time`` back by ``additional_hours``.

        Raises:
            ValidationError: If ``additional_hours`` is not positive.
            NotFoundError, InvalidStateError: As for ``end_shift``.
        """
        if additional_hours <= 0:
            raise ValidationError(
                "additional_hours must be positive", fields=["additional_hours"]
            )
        current = self._require_active(shift_id)
        new_end = current.estimated_end_time + timedelta(hours=additional_hours)
        shift = self._shifts.update(shift_id, estimated_end_time=new_end)
        self._activity_log.record(
            ActivityEventType.SHIFT_EXTENDED,
            shift_id,
            self._now(),
            actor_id=shift.worker_id,
            estimated_end_time=new_end.isoformat(),
        )
        return shift

    # -- queries --

    async def get_shift(self, shift_id: str) -> Shift:
        shift = self._shifts.get(shift_id)
        if shift is None:
            raise NotFoundError("Shift", shift_id)
        return shift

    async def get_active_shift(self, worker_id: str) -> Optional[Shift]:
        return self._shifts.find_active_by_worker(worker_id)

    async def get_active_shifts(self) -> list[Shift]:
        return self._shifts.find_active()

    async def get_shifts_by_worker(self, worker_id: str) -> list[Shift]:
        return self._shifts.find_by_worker(worker_id)
