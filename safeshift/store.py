"""
Persistence interfaces and in-memory implementations.

Each entity has its own store protocol so a database-backed implementation
can be swapped in without touching the services.  The in-memory stores
keep entities in a dict keyed by id and always return deep copies, so
callers cannot mutate stored state by accident.

Every method is synchronous and touches a single entity (or performs a
read-only scan).  Under asyncio that makes each call atomic with respect
to other coroutines, which is what the conditional updates below rely on:
``AlertStore.transition`` and ``AlertStore.advance_escalation`` re-check
their preconditions against the stored record and apply the change in the
same call.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any, Generic, Iterable, Optional, Protocol, TypeVar

from pydantic import BaseModel

from safeshift.models import (
    Alert,
    AlertStatus,
    CheckIn,
    CheckInStatus,
    Notification,
    Shift,
    ShiftStatus,
    User,
)

T = TypeVar("T", bound=BaseModel)


# ---------------------------------------------------------------------------
# Store protocols
# ---------------------------------------------------------------------------

class UserStore(Protocol):
    def add(self, user: User) -> User: ...
    def get(self, user_id: str) -> Optional[User]: ...
    def find_workers_by_backup_contact(self, contact_id: str) -> list[User]: ...


class ShiftStore(Protocol):
    def add(self, shift: Shift) -> Shift: ...
    def get(self, shift_id: str) -> Optional[Shift]: ...
    def update(self, shift_id: str, **changes: Any) -> Optional[Shift]: ...
    def find_active_by_worker(self, worker_id: str) -> Optional[Shift]: ...
    def find_active(self) -> list[Shift]: ...
    def find_by_worker(self, worker_id: str) -> list[Shift]: ...


class CheckInStore(Protocol):
    def add(self, check_in: CheckIn) -> CheckIn: ...
    def get(self, check_in_id: str) -> Optional[CheckIn]: ...
    def resolve_pending(
        self, check_in_id: str, status: CheckInStatus, **changes: Any
    ) -> Optional[CheckIn]: ...
    def find_pending(self) -> list[CheckIn]: ...
    def find_by_shift(self, shift_id: str) -> list[CheckIn]: ...
    def find_by_worker(self, worker_id: str) -> list[CheckIn]: ...
    def find_confirmed(self, worker_id: Optional[str] = None) -> list[CheckIn]: ...


class AlertStore(Protocol):
    def add(self, alert: Alert) -> Alert: ...
    def get(self, alert_id: str) -> Optional[Alert]: ...
    def transition(
        self,
        alert_id: str,
        allowed_from: Iterable[AlertStatus],
        status: AlertStatus,
        **changes: Any,
    ) -> Optional[Alert]: ...
    def advance_escalation(
        self, alert_id: str, new_index: int, at: datetime
    ) -> Optional[Alert]: ...
    def find_active(self) -> list[Alert]: ...
    def find_by_worker(self, worker_id: str) -> list[Alert]: ...
    def find_by_workers(self, worker_ids: Iterable[str]) -> list[Alert]: ...
    def find_by_backup_contact(self, contact_id: str) -> list[Alert]: ...
    def count_active(self) -> int: ...


class NotificationStore(Protocol):
    def add(self, notification: Notification) -> Notification: ...
    def find_by_user(self, user_id: str) -> list[Notification]: ...
    def mark_as_read(self, notification_id: str) -> Optional[Notification]: ...
    def mark_all_as_read(self, user_id: str) -> int: ...
    def count_unread(self, user_id: str) -> int: ...


# ---------------------------------------------------------------------------
# In-memory base
# ---------------------------------------------------------------------------

class InMemoryStore(Generic[T]):
    """Dict-backed store of pydantic models keyed by ``id``."""

    def __init__(self) -> None:
        self._items: dict[str, T] = {}

    def add(self, item: T) -> T:
        self._items[item.id] = item.model_copy(deep=True)
        return item.model_copy(deep=True)

    def get(self, item_id: str) -> Optional[T]:
        item = self._items.get(item_id)
        return item.model_copy(deep=True) if item is not None else None

    def all(self) -> list[T]:
        return [item.model_copy(deep=True) for item in self._items.values()]

    def _apply(self, item_id: str, **changes: Any) -> Optional[T]:
        item = self._items.get(item_id)
        if item is None:
            return None
        updated = item.model_copy(update=changes, deep=True)
        self._items[item_id] = updated
        return updated.model_copy(deep=True)

    def _select(self, predicate) -> list[T]:
        return [
            item.model_copy(deep=True)
            for item in self._items.values()
            if predicate(item)
        ]

    def clear(self) -> None:
        self._items.clear()

    def __len__(self) -> int:
        return len(self._items)

    def __contains__(self, item_id: str) -> bool:
        return item_id in self._items


# ---------------------------------------------------------------------------
# Entity stores
# ---------------------------------------------------------------------------

class InMemoryUserStore(InMemoryStore[User]):
    def find_workers_by_backup_contact(self, contact_id: str) -> list[User]:
        return self._select(lambda u: contact_id in u.assigned_backup_contact_ids)


class InMemoryShiftStore(InMemoryStore[Shift]):
    def update(self, shift_id: str, **changes: Any) -> Optional[Shift]:
        return self._apply(shift_id, **changes)

    def find_active_by_worker(self, worker_id: str) -> Optional[Shift]:
        matches = self._select(
            lambda s: s.worker_id == worker_id and s.status == ShiftStatus.ACTIVE
        )
        return matches[0] if matches else None

    def find_active(self) -> list[Shift]:
        return self._select(lambda s: s.status == ShiftStatus.ACTIVE)

    def find_by_worker(self, worker_id: str) -> list[Shift]:
        shifts = self._select(lambda s: s.worker_id == worker_id)
        return sorted(shifts, key=lambda s: s.start_time, reverse=True)


class InMemoryCheckInStore(InMemoryStore[CheckIn]):
    def resolve_pending(
        self, check_in_id: str, status: CheckInStatus, **changes: Any
    ) -> Optional[CheckIn]:
        """Move a pending check-in to a terminal status.

        Returns None when the check-in is missing or no longer pending.
        """
        current = self._items.get(check_in_id)
        if current is None or current.status != CheckInStatus.PENDING:
            return None
        return self._apply(check_in_id, status=status, **changes)

    def find_pending(self) -> list[CheckIn]:
        pending = self._select(lambda c: c.status == CheckInStatus.PENDING)
        return sorted(pending, key=lambda c: c.scheduled_time)

    def find_by_shift(self, shift_id: str) -> list[CheckIn]:
        found = self._select(lambda c: c.shift_id == shift_id)
        return sorted(found, key=lambda c: c.scheduled_time)

    def find_by_worker(self, worker_id: str) -> list[CheckIn]:
        found = self._select(lambda c: c.worker_id == worker_id)
        return sorted(found, key=lambda c: c.scheduled_time)

    def find_confirmed(self, worker_id: Optional[str] = None) -> list[CheckIn]:
        return self._select(
            lambda c: c.status == CheckInStatus.CONFIRMED
            and (worker_id is None or c.worker_id == worker_id)
        )


class InMemoryAlertStore(InMemoryStore[Alert]):
    def transition(
        self,
        alert_id: str,
        allowed_from: Iterable[AlertStatus],
        status: AlertStatus,
        **changes: Any,
    ) -> Optional[Alert]:
        """Apply a status change only if the stored status is in ``allowed_from``."""
        current = self._items.get(alert_id)
        if current is None or current.status not in set(allowed_from):
            return None
        return self._apply(alert_id, status=status, **changes)

    def advance_escalation(
        self, alert_id: str, new_index: int, at: datetime
    ) -> Optional[Alert]:
        """Move the escalation pointer forward.

        No-op (returns None) unless the alert is still ``ACTIVE`` and
        ``new_index`` is strictly greater than the stored index.
        """
        current = self._items.get(alert_id)
        if (
            current is None
            or current.status != AlertStatus.ACTIVE
            or new_index <= current.escalated_to_index
        ):
            return None
        return self._apply(
            alert_id, escalated_to_index=new_index, last_escalated_at=at
        )

    def _newest_first(self, alerts: list[Alert]) -> list[Alert]:
        return sorted(alerts, key=lambda a: a.created_at, reverse=True)

    def find_active(self) -> list[Alert]:
        return self._newest_first(
            self._select(lambda a: a.status == AlertStatus.ACTIVE)
        )

    def find_by_worker(self, worker_id: str) -> list[Alert]:
        return self._newest_first(self._select(lambda a: a.worker_id == worker_id))

    def find_by_workers(self, worker_ids: Iterable[str]) -> list[Alert]:
        ids = set(worker_ids)
        return self._newest_first(self._select(lambda a: a.worker_id in ids))

    def find_by_backup_contact(self, contact_id: str) -> list[Alert]:
        return self._newest_first(
            self._select(lambda a: a.backup_contact_id == contact_id)
        )

    def count_active(self) -> int:
        return sum(1 for a in self._items.values() if a.status == AlertStatus.ACTIVE)


class InMemoryNotificationStore(InMemoryStore[Notification]):
    def find_by_user(self, user_id: str) -> list[Notification]:
        found = self._select(lambda n: n.user_id == user_id)
        return sorted(found, key=lambda n: n.created_at, reverse=True)

    def mark_as_read(self, notification_id: str) -> Optional[Notification]:
        return self._apply(notification_id, is_read=True)

    def mark_all_as_read(self, user_id: str) -> int:
        unread = [
            n.id for n in self._items.values()
            if n.user_id == user_id and not n.is_read
        ]
        for notification_id in unread:
            self._apply(notification_id, is_read=True)
        return len(unread)

    def count_unread(self, user_id: str) -> int:
        return sum(
            1 for n in self._items.values()
            if n.user_id == user_id and not n.is_read
        )
