"""
Tests for safeshift.shifts -- Shift lifecycle.

Covers: starting a shift (first check-in scheduled, default interval),
worker validation, one active shift per worker including concurrent
starts, end/cancel/extend transitions, and the shift queries.
"""

from __future__ import annotations

import asyncio
from datetime import timedelta

import pytest

from safeshift.errors import InvalidStateError, NotFoundError, ValidationError
from safeshift.models import CheckInStatus, Role, Shift, ShiftStatus, User


# ---------------------------------------------------------------------------
# 1. Start
# ---------------------------------------------------------------------------

class TestStartShift:
    @pytest.mark.asyncio
    async def test_start_schedules_first_check_in(self, app, chain, clock):
        worker, _, _ = chain
        shift = await app.shift_service.start_shift(
            worker.id, "site-1", estimated_hours=6, notes="Night audit"
        )
        assert shift.status == ShiftStatus.ACTIVE
        assert shift.start_time == clock.now
        assert shift.estimated_end_time == clock.now + timedelta(hours=6)
        assert shift.check_in_interval_minutes == 15
        assert shift.notes == "Night audit"

        check_ins = await app.check_in_tracker.get_by_shift(shift.id)
        assert len(check_ins) == 1
        assert check_ins[0].status == CheckInStatus.PENDING
        assert check_ins[0].scheduled_time == clock.now + timedelta(minutes=15)

    @pytest.mark.asyncio
    async def test_explicit_interval(self, app, chain):
        worker, _, _ = chain
        shift = await app.shift_service.start_shift(
            worker.id, "site-1", estimated_hours=2, check_in_interval_minutes=5
        )
        assert shift.check_in_interval_minutes == 5

    @pytest.mark.asyncio
    async def test_unknown_worker(self, app):
        with pytest.raises(NotFoundError):
            await app.shift_service.start_shift("ghost", "site-1", estimated_hours=8)

    @pytest.mark.asyncio
    async def test_inactive_worker_rejected(self, app):
        worker = app.users.add(User(first_name="Off", last_name="Duty", is_active=False))
        with pytest.raises(ValidationError, match="not active"):
            await app.shift_service.start_shift(worker.id, "site-1", estimated_hours=8)

    @pytest.mark.asyncio
    async def test_non_worker_rejected(self, app, chain):
        _, c1, _ = chain
        with pytest.raises(ValidationError, match="not a worker"):
            await app.shift_service.start_shift(c1.id, "site-1", estimated_hours=8)

    @pytest.mark.asyncio
    async def test_non_positive_estimate_rejected(self, app, chain):
        worker, _, _ = chain
        with pytest.raises(ValidationError):
            await app.shift_service.start_shift(worker.id, "site-1", estimated_hours=0)
        assert len(app.shifts) == 0

    @pytest.mark.asyncio
    @pytest.mark.parametrize("interval", [0, -5, 121, 500])
    async def test_out_of_range_interval_rejected(self, app, chain, interval):
        worker, _, _ = chain
        with pytest.raises(ValidationError) as exc_info:
            await app.shift_service.start_shift(
                worker.id, "site-1", estimated_hours=8, check_in_interval_minutes=interval
            )
        assert exc_info.value.fields == ["check_in_interval_minutes"]
        assert len(app.shifts) == 0

    @pytest.mark.asyncio
    @pytest.mark.parametrize("interval", [1, 120])
    async def test_interval_bounds_accepted(self, app, chain, interval):
        worker, _, _ = chain
        shift = await app.shift_service.start_shift(
            worker.id, "site-1", estimated_hours=8, check_in_interval_minutes=interval
        )
        assert shift.check_in_interval_minutes == interval


# ---------------------------------------------------------------------------
# 2. One active shift per worker
# ---------------------------------------------------------------------------

class TestSingleActiveShift:
    @pytest.mark.asyncio
    async def test_second_start_rejected(self, app, chain):
        worker, _, _ = chain
        await app.shift_service.start_shift(worker.id, "site-1", estimated_hours=8)
        with pytest.raises(InvalidStateError, match="already has an active shift"):
            await app.shift_service.start_shift(worker.id, "site-2", estimated_hours=8)

    @pytest.mark.asyncio
    async def test_concurrent_starts_exactly_one_succeeds(self, app, chain):
        worker, _, _ = chain
        results = await asyncio.gather(
            *(
                app.shift_service.start_shift(worker.id, f"site-{i}", estimated_hours=8)
                for i in range(5)
            ),
            return_exceptions=True,
        )
        started = [r for r in results if isinstance(r, Shift)]
        rejected = [r for r in results if isinstance(r, InvalidStateError)]
        assert len(started) == 1
        assert len(rejected) == 4
        assert len(await app.shift_service.get_active_shifts()) == 1

    @pytest.mark.asyncio
    async def test_worker_locks_released_after_start(self, app, chain):
        worker, _, _ = chain
        await asyncio.gather(
            *(
                app.shift_service.start_shift(worker.id, "site-1", estimated_hours=8)
                for _ in range(3)
            ),
            return_exceptions=True,
        )
        with pytest.raises(InvalidStateError):
            await app.shift_service.start_shift(worker.id, "site-1", estimated_hours=8)
        assert app.shift_service._worker_locks == {}
        assert app.shift_service._lock_holders == {}

    @pytest.mark.asyncio
    async def test_different_workers_independent(self, app, chain):
        worker, _, _ = chain
        other = app.users.add(User(first_name="Other", last_name="Worker", role=Role.WORKER))
        await app.shift_service.start_shift(worker.id, "site-1", estimated_hours=8)
        await app.shift_service.start_shift(other.id, "site-1", estimated_hours=8)
        assert len(await app.shift_service.get_active_shifts()) == 2

    @pytest.mark.asyncio
    async def test_new_shift_allowed_after_end(self, app, chain, clock):
        worker, _, _ = chain
        first = await app.shift_service.start_shift(worker.id, "site-1", estimated_hours=8)
        await app.shift_service.end_shift(first.id)
        clock.advance(hours=9)
        second = await app.shift_service.start_shift(worker.id, "site-1", estimated_hours=8)

        assert (await app.shift_service.get_active_shift(worker.id)).id == second.id
        history = await app.shift_service.get_shifts_by_worker(worker.id)
        assert [s.id for s in history] == [second.id, first.id]


# ---------------------------------------------------------------------------
# 3. End / cancel / extend
# ---------------------------------------------------------------------------

class TestShiftTransitions:
    @pytest.mark.asyncio
    async def test_end_shift(self, app, chain, clock):
        worker, _, _ = chain
        shift = await app.shift_service.start_shift(worker.id, "site-1", estimated_hours=8)
        clock.advance(hours=7)
        ended = await app.shift_service.end_shift(shift.id)
        assert ended.status == ShiftStatus.COMPLETED
        assert ended.end_time == clock.now
        assert await app.shift_service.get_active_shift(worker.id) is None

    @pytest.mark.asyncio
    async def test_cancel_shift(self, app, chain):
        worker, _, _ = chain
        shift = await app.shift_service.start_shift(worker.id, "site-1", estimated_hours=8)
        cancelled = await app.shift_service.cancel_shift(shift.id)
        assert cancelled.status == ShiftStatus.CANCELLED
        assert cancelled.end_time is not None

    @pytest.mark.asyncio
    async def test_end_inactive_rejected(self, app, chain):
        worker, _, _ = chain
        shift = await app.shift_service.start_shift(worker.id, "site-1", estimated_hours=8)
        await app.shift_service.cancel_shift(shift.id)
        with pytest.raises(InvalidStateError):
            await app.shift_service.end_shift(shift.id)
        with pytest.raises(InvalidStateError):
            await app.shift_service.extend_shift(shift.id, 1)

    @pytest.mark.asyncio
    async def test_extend_shift(self, app, chain):
        worker, _, _ = chain
        shift = await app.shift_service.start_shift(worker.id, "site-1", estimated_hours=8)
        extended = await app.shift_service.extend_shift(shift.id, 1.5)
        assert extended.estimated_end_time == shift.estimated_end_time + timedelta(hours=1.5)

    @pytest.mark.asyncio
    async def test_extend_requires_positive_hours(self, app, chain):
        worker, _, _ = chain
        shift = await app.shift_service.start_shift(worker.id, "site-1", estimated_hours=8)
        with pytest.raises(ValidationError):
            await app.shift_service.extend_shift(shift.id, 0)

    @pytest.mark.asyncio
    async def test_unknown_shift(self, app):
        with pytest.raises(NotFoundError):
            await app.shift_service.end_shift("missing")
        with pytest.raises(NotFoundError):
            await app.shift_service.get_shift("missing")
