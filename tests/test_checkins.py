"""
Tests for safeshift.checkins -- Check-In Tracker.

Covers: scheduling from the shift or global interval, confirmation and
response time (including early confirmation), missed check-ins raising
exactly one alert, the overdue sweep and its timeout boundary, instant
"I'm OK" / missed actions, and response-time statistics.
"""

from __future__ import annotations

from datetime import timedelta

import pytest

from safeshift.errors import InvalidStateError, NotFoundError
from safeshift.models import (
    AlertSeverity,
    AlertType,
    CheckInStatus,
    Shift,
    ShiftStatus,
)


async def _start(app, worker, **kwargs) -> Shift:
    return await app.shift_service.start_shift(worker.id, "site-1", estimated_hours=8, **kwargs)


async def _first_check_in(app, shift: Shift):
    return (await app.check_in_tracker.get_by_shift(shift.id))[0]


# ---------------------------------------------------------------------------
# 1. Scheduling
# ---------------------------------------------------------------------------

class TestSchedule:
    @pytest.mark.asyncio
    async def test_uses_shift_interval(self, app, chain, clock):
        worker, _, _ = chain
        shift = await _start(app, worker, check_in_interval_minutes=30)
        check_in = await app.check_in_tracker.schedule_check_in(shift.id)
        assert check_in.scheduled_time == clock.now + timedelta(minutes=30)
        assert check_in.status == CheckInStatus.PENDING
        assert check_in.worker_id == worker.id

    @pytest.mark.asyncio
    async def test_falls_back_to_global_interval(self, app, chain, clock):
        worker, _, _ = chain
        shift = app.shifts.add(Shift(
            worker_id=worker.id,
            location_id="site-1",
            start_time=clock.now,
            estimated_end_time=clock.now + timedelta(hours=8),
        ))
        await app.settings.update({"check_in_interval_minutes": 45})
        check_in = await app.check_in_tracker.schedule_check_in(shift.id)
        assert check_in.scheduled_time == clock.now + timedelta(minutes=45)

    @pytest.mark.asyncio
    async def test_unknown_shift(self, app):
        with pytest.raises(NotFoundError):
            await app.check_in_tracker.schedule_check_in("missing")


# ---------------------------------------------------------------------------
# 2. Confirmation
# ---------------------------------------------------------------------------

class TestConfirm:
    @pytest.mark.asyncio
    async def test_confirm_records_response_seconds(self, app, chain, clock):
        worker, _, _ = chain
        check_in = await _first_check_in(app, await _start(app, worker))
        clock.advance(minutes=15, seconds=42)

        confirmed = await app.check_in_tracker.confirm_check_in(check_in.id)
        assert confirmed.status == CheckInStatus.CONFIRMED
        assert confirmed.response_time == clock.now
        assert confirmed.response_seconds == 42

    @pytest.mark.asyncio
    async def test_response_seconds_rounded(self, app, chain, clock):
        worker, _, _ = chain
        check_in = await _first_check_in(app, await _start(app, worker))
        clock.advance(minutes=15, seconds=3, milliseconds=600)
        confirmed = await app.check_in_tracker.confirm_check_in(check_in.id)
        assert confirmed.response_seconds == 4

    @pytest.mark.asyncio
    async def test_early_confirmation_floors_at_zero(self, app, chain, clock):
        worker, _, _ = chain
        check_in = await _first_check_in(app, await _start(app, worker))
        clock.advance(minutes=3)
        confirmed = await app.check_in_tracker.confirm_check_in(check_in.id)
        assert confirmed.response_seconds == 0

    @pytest.mark.asyncio
    async def test_confirm_twice_rejected(self, app, chain):
        worker, _, _ = chain
        check_in = await _first_check_in(app, await _start(app, worker))
        await app.check_in_tracker.confirm_check_in(check_in.id)
        with pytest.raises(InvalidStateError):
            await app.check_in_tracker.confirm_check_in(check_in.id)

    @pytest.mark.asyncio
    async def test_confirm_missed_rejected(self, app, chain):
        worker, _, _ = chain
        check_in = await _first_check_in(app, await _start(app, worker))
        await app.check_in_tracker.mark_as_missed(check_in.id)
        with pytest.raises(InvalidStateError):
            await app.check_in_tracker.confirm_check_in(check_in.id)

    @pytest.mark.asyncio
    async def test_confirm_unknown(self, app):
        with pytest.raises(NotFoundError):
            await app.check_in_tracker.confirm_check_in("missing")


# ---------------------------------------------------------------------------
# 3. Missed check-ins
# ---------------------------------------------------------------------------

class TestMarkAsMissed:
    @pytest.mark.asyncio
    async def test_missed_raises_one_alert(self, app, chain):
        worker, c1, _ = chain
        shift = await _start(app, worker)
        check_in = await _first_check_in(app, shift)

        missed = await app.check_in_tracker.mark_as_missed(check_in.id)
        assert missed.status == CheckInStatus.MISSED

        alerts = await app.alert_service.find_by_worker_id(worker.id)
        assert len(alerts) == 1
        alert = alerts[0]
        assert alert.type == AlertType.MISSED_CHECK_IN
        assert alert.severity == AlertSeverity.HIGH
        assert alert.message == "Wren Test missed a check-in"
        assert alert.shift_id == shift.id
        assert alert.backup_contact_id == c1.id

    @pytest.mark.asyncio
    async def test_missed_twice_rejected(self, app, chain):
        worker, _, _ = chain
        check_in = await _first_check_in(app, await _start(app, worker))
        await app.check_in_tracker.mark_as_missed(check_in.id)
        with pytest.raises(InvalidStateError):
            await app.check_in_tracker.mark_as_missed(check_in.id)
        assert len(app.alerts) == 1

    @pytest.mark.asyncio
    async def test_missing_worker_leaves_check_in_missed(self, app, clock):
        shift = app.shifts.add(Shift(
            worker_id="ghost",
            location_id="site-1",
            start_time=clock.now,
            estimated_end_time=clock.now + timedelta(hours=8),
        ))
        check_in = await app.check_in_tracker.schedule_check_in(shift.id)
        missed = await app.check_in_tracker.mark_as_missed(check_in.id)
        assert missed.status == CheckInStatus.MISSED
        assert len(app.alerts) == 0


# ---------------------------------------------------------------------------
# 4. Overdue sweep
# ---------------------------------------------------------------------------

class TestProcessOverdue:
    @pytest.mark.asyncio
    async def test_timeout_boundary(self, app, chain, clock):
        """61s past due is missed; 59s past due is left pending."""
        worker, c1, c2 = chain
        late_shift = await _start(app, worker)
        late = await _first_check_in(app, late_shift)

        other = app.users.add(worker.model_copy(update={"id": "worker_2"}))
        clock.advance(seconds=2)
        recent = await _first_check_in(app, await _start(app, other))

        clock.advance(minutes=15, seconds=59)
        assert clock.now - late.scheduled_time == timedelta(seconds=61)
        assert clock.now - recent.scheduled_time == timedelta(seconds=59)

        assert await app.check_in_tracker.process_overdue_check_ins() == 1
        assert (await app.check_in_tracker.get_check_in(late.id)).status == CheckInStatus.MISSED
        assert (await app.check_in_tracker.get_check_in(recent.id)).status == CheckInStatus.PENDING
        assert len(app.alerts) == 1

    @pytest.mark.asyncio
    async def test_exactly_timeout_not_missed(self, app, chain, clock):
        worker, _, _ = chain
        await _start(app, worker)
        clock.advance(minutes=16)
        assert await app.check_in_tracker.process_overdue_check_ins() == 0

    @pytest.mark.asyncio
    async def test_sweep_is_idempotent(self, app, chain, clock):
        worker, _, _ = chain
        await _start(app, worker)
        clock.advance(minutes=20)
        assert await app.check_in_tracker.process_overdue_check_ins() == 1
        assert await app.check_in_tracker.process_overdue_check_ins() == 0
        assert len(app.alerts) == 1

    @pytest.mark.asyncio
    async def test_sweep_reads_current_timeout(self, app, chain, clock):
        worker, _, _ = chain
        await _start(app, worker)
        await app.settings.update({"response_timeout_seconds": 300})
        clock.advance(minutes=19)
        assert await app.check_in_tracker.process_overdue_check_ins() == 0
        clock.advance(minutes=1, seconds=1)
        assert await app.check_in_tracker.process_overdue_check_ins() == 1

    @pytest.mark.asyncio
    async def test_confirmed_check_ins_ignored(self, app, chain, clock):
        worker, _, _ = chain
        check_in = await _first_check_in(app, await _start(app, worker))
        clock.advance(minutes=15, seconds=10)
        await app.check_in_tracker.confirm_check_in(check_in.id)
        clock.advance(minutes=10)
        assert await app.check_in_tracker.process_overdue_check_ins() == 0

    @pytest.mark.asyncio
    @pytest.mark.parametrize("close", ["end_shift", "cancel_shift"])
    async def test_closed_shift_check_ins_not_missed(self, app, chain, clock, close):
        worker, _, _ = chain
        shift = await _start(app, worker)
        check_in = await _first_check_in(app, shift)
        clock.advance(minutes=5)
        await getattr(app.shift_service, close)(shift.id)
        clock.advance(minutes=20)

        assert await app.check_in_tracker.process_overdue_check_ins() == 0
        assert (await app.check_in_tracker.get_check_in(check_in.id)).status == CheckInStatus.PENDING
        assert await app.alert_service.find_active_alerts() == []
        assert len(app.alerts) == 0

    @pytest.mark.asyncio
    async def test_one_failing_check_in_does_not_abort_sweep(self, app, chain, clock, monkeypatch, caplog):
        worker, _, _ = chain
        other = app.users.add(worker.model_copy(update={"id": "worker_2"}))
        broken = await _first_check_in(app, await _start(app, worker))
        healthy = await _first_check_in(app, await _start(app, other))

        create_alert = app.alert_service.create_missed_check_in_alert

        async def flaky_create(check_in):
            if check_in.worker_id == worker.id:
                raise RuntimeError("alert store unavailable")
            return await create_alert(check_in)

        monkeypatch.setattr(app.alert_service, "create_missed_check_in_alert", flaky_create)
        clock.advance(minutes=20)

        assert await app.check_in_tracker.process_overdue_check_ins() == 1
        assert (await app.check_in_tracker.get_check_in(healthy.id)).status == CheckInStatus.MISSED
        assert [a.worker_id for a in await app.alert_service.find_active_alerts()] == ["worker_2"]
        assert broken.id in caplog.text


# ---------------------------------------------------------------------------
# 5. Instant actions
# ---------------------------------------------------------------------------

class TestInstantActions:
    @pytest.mark.asyncio
    async def test_confirm_for_shift(self, app, chain, clock):
        worker, _, _ = chain
        shift = await _start(app, worker)
        clock.advance(minutes=4)
        confirmed = await app.check_in_tracker.confirm_check_in_for_shift(shift.id)
        assert confirmed.status == CheckInStatus.CONFIRMED
        assert confirmed.scheduled_time == clock.now
        assert confirmed.response_seconds == 0

    @pytest.mark.asyncio
    async def test_mark_missed_for_shift_raises_alert(self, app, chain):
        worker, _, _ = chain
        shift = await _start(app, worker)
        missed = await app.check_in_tracker.mark_check_in_as_missed_for_shift(shift.id)
        assert missed.status == CheckInStatus.MISSED
        assert await app.alert_service.count_pending_alerts() == 1

    @pytest.mark.asyncio
    async def test_requires_active_shift(self, app, chain):
        worker, _, _ = chain
        shift = await _start(app, worker)
        await app.shift_service.end_shift(shift.id)
        assert (await app.shift_service.get_shift(shift.id)).status == ShiftStatus.COMPLETED
        with pytest.raises(InvalidStateError, match="Shift is not active"):
            await app.check_in_tracker.confirm_check_in_for_shift(shift.id)
        with pytest.raises(InvalidStateError):
            await app.check_in_tracker.mark_check_in_as_missed_for_shift(shift.id)


# ---------------------------------------------------------------------------
# 6. Queries and statistics
# ---------------------------------------------------------------------------

class TestQueries:
    @pytest.mark.asyncio
    async def test_average_response_seconds(self, app, chain, clock):
        worker, _, _ = chain
        shift = await _start(app, worker, check_in_interval_minutes=10)
        first = await _first_check_in(app, shift)
        clock.advance(minutes=10, seconds=20)
        await app.check_in_tracker.confirm_check_in(first.id)

        second = await app.check_in_tracker.schedule_check_in(shift.id)
        clock.advance(minutes=10, seconds=40)
        await app.check_in_tracker.confirm_check_in(second.id)

        assert await app.check_in_tracker.average_response_seconds(worker.id) == 30
        assert await app.check_in_tracker.average_response_seconds() == 30
        assert await app.check_in_tracker.average_response_seconds("nobody") == 0

    @pytest.mark.asyncio
    async def test_pending_and_by_worker(self, app, chain):
        worker, _, _ = chain
        shift = await _start(app, worker)
        await app.check_in_tracker.schedule_check_in(shift.id)
        assert len(await app.check_in_tracker.get_pending()) == 2
        assert len(await app.check_in_tracker.get_by_worker(worker.id)) == 2
