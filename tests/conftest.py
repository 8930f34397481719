"""Shared fixtures: a manual clock and a fully wired app with mocked senders."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock

import pytest

from safeshift.app import SafeShiftApp, build_app
from safeshift.config import AppConfig
from safeshift.models import Role, User
from safeshift.transport import EmailResult, SmsResult

T0 = datetime(2026, 1, 5, 21, 0, tzinfo=timezone.utc)


class ManualClock:
    """Clock that only moves when a test advances it."""

    def __init__(self, start: datetime = T0) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now


@pytest.fixture
def clock() -> ManualClock:
    return ManualClock()


@pytest.fixture
def sms_provider() -> AsyncMock:
    provider = AsyncMock()
    provider.send.return_value = SmsResult(success=True, message_id="SM-test")
    return provider


@pytest.fixture
def email_provider() -> AsyncMock:
    provider = AsyncMock()
    provider.send.return_value = EmailResult(success=True, message_id="EM-test")
    return provider


@pytest.fixture
def app(clock, sms_provider, email_provider) -> SafeShiftApp:
    config = AppConfig(enable_overdue_monitor=False)
    return build_app(
        config,
        now_fn=clock,
        sms_provider=sms_provider,
        email_provider=email_provider,
    )


def _make_user(app: SafeShiftApp, first_name: str, role: Role = Role.WORKER, **kwargs) -> User:
    return app.users.add(User(first_name=first_name, last_name="Test", role=role, **kwargs))


@pytest.fixture
def chain(app):
    """A worker with two backup contacts, C1 then C2.  Only C1 and C2 have phones."""
    c1 = _make_user(app, "Casey", Role.BACKUP_CONTACT, phone="555-010-0001")
    c2 = _make_user(app, "Jordan", Role.BACKUP_CONTACT, phone="555-010-0002")
    worker = _make_user(
        app, "Wren", Role.WORKER, assigned_backup_contact_ids=[c1.id, c2.id]
    )
    return worker, c1, c2
