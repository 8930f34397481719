"""
Core data models for the Safe on Shift check-in engine.

Entities are plain pydantic models.  Stores hand out copies, so mutating a
model returned by a query never changes persisted state; services write
back through the store's targeted update methods.

Timestamps are timezone-aware UTC datetimes.  Services never call
``datetime.now()`` directly -- they read time through an injected ``NowFn``
so that timing behaviour is deterministic under test.
"""

from __future__ import annotations

import enum
import uuid
from datetime import datetime, timezone
from typing import Callable, Optional

from pydantic import BaseModel, Field


NowFn = Callable[[], datetime]


def utcnow() -> datetime:
    """Default clock: the current time in UTC."""
    return datetime.now(timezone.utc)


def _new_id(prefix: str) -> Callable[[], str]:
    return lambda: f"{prefix}-{uuid.uuid4()}"


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------

class Role(str, enum.Enum):
    """User roles relevant to check-in and escalation."""

    WORKER = "Worker"
    BACKUP_CONTACT = "BackupContact"
    SUPERVISOR = "Supervisor"
    ADMINISTRATOR = "Administrator"


class ShiftStatus(str, enum.Enum):
    ACTIVE = "Active"
    COMPLETED = "Completed"
    CANCELLED = "Cancelled"


class CheckInStatus(str, enum.Enum):
    """Check-in lifecycle.  ``CONFIRMED`` and ``MISSED`` are terminal."""

    PENDING = "Pending"
    CONFIRMED = "Confirmed"
    MISSED = "Missed"


class AlertStatus(str, enum.Enum):
    """Alert lifecycle.

    ``ACTIVE -> ACKNOWLEDGED -> RESOLVED`` or ``ACTIVE -> RESOLVED``.
    ``RESOLVED`` is terminal; acknowledged alerts are never re-opened.
    """

    ACTIVE = "Active"
    ACKNOWLEDGED = "Acknowledged"
    RESOLVED = "Resolved"


class AlertType(str, enum.Enum):
    MISSED_CHECK_IN = "MissedCheckIn"
    EMERGENCY = "Emergency"
    SYSTEM_ALERT = "SystemAlert"


class AlertSeverity(str, enum.Enum):
    LOW = "Low"
    MEDIUM = "Medium"
    HIGH = "High"
    CRITICAL = "Critical"


class NotificationType(str, enum.Enum):
    ALERT = "Alert"
    CHECK_IN = "CheckIn"
    SYSTEM = "System"
    SHIFT = "Shift"


# ---------------------------------------------------------------------------
# Entities
# ---------------------------------------------------------------------------

class User(BaseModel):
    """A worker, backup contact, supervisor or administrator.

    ``assigned_backup_contact_ids`` is the worker's escalation chain in
    priority order: index 0 is the primary contact and is alerted first.
    ``assigned_worker_ids`` is the inverse relation kept on contact users.
    """

    id: str = Field(default_factory=_new_id("user"))
    email: str = ""
    first_name: str
    last_name: str
    role: Role = Role.WORKER
    phone: str = ""
    is_active: bool = True
    assigned_backup_contact_ids: list[str] = Field(
        default_factory=list,
        description="Ordered escalation chain; first entry is notified first.",
    )
    assigned_worker_ids: list[str] = Field(default_factory=list)

    @property
    def full_name(self) -> str:
        return f"{self.first_name} {self.last_name}"


class Shift(BaseModel):
    """A worker's tracked period of lone work at a location."""

    id: str = Field(default_factory=_new_id("shift"))
    worker_id: str
    location_id: str
    status: ShiftStatus = ShiftStatus.ACTIVE
    start_time: datetime = Field(default_factory=utcnow)
    end_time: Optional[datetime] = None
    estimated_end_time: datetime
    notes: str = ""
    check_in_interval_minutes: Optional[int] = Field(
        default=None,
        ge=1,
        le=120,
        description="Per-shift interval; falls back to the global setting when unset.",
    )


class CheckIn(BaseModel):
    """A scheduled liveness confirmation within a shift."""

    id: str = Field(default_factory=_new_id("checkin"))
    shift_id: str
    worker_id: str
    scheduled_time: datetime
    response_time: Optional[datetime] = None
    status: CheckInStatus = CheckInStatus.PENDING
    response_seconds: Optional[int] = Field(default=None, ge=0)
    created_at: datetime = Field(default_factory=utcnow)


class Alert(BaseModel):
    """A safety alert driving the escalation chain.

    ``escalated_to_index`` is the chain index most recently notified and
    ``last_escalated_at`` is when that happened.  Both only ever move
    forward, and only while the alert is ``ACTIVE``.
    """

    id: str = Field(default_factory=_new_id("alert"))
    shift_id: str
    worker_id: str
    backup_contact_id: Optional[str] = Field(
        default=None,
        description="Primary contact at creation time (first chain entry).",
    )
    type: AlertType
    severity: AlertSeverity
    status: AlertStatus = AlertStatus.ACTIVE
    message: str
    created_at: datetime = Field(default_factory=utcnow)
    acknowledged_at: Optional[datetime] = None
    acknowledged_by: Optional[str] = None
    resolved_at: Optional[datetime] = None
    resolved_by: Optional[str] = None
    escalated_to_index: int = Field(default=0, ge=0)
    last_escalated_at: Optional[datetime] = None


class Notification(BaseModel):
    """In-app notification record produced by the dispatcher."""

    id: str = Field(default_factory=_new_id("notification"))
    user_id: str
    type: NotificationType
    title: str
    message: str
    is_read: bool = False
    created_at: datetime = Field(default_factory=utcnow)
    action_url: Optional[str] = None


class AlertCreate(BaseModel):
    """Input for creating an alert."""

    shift_id: str
    worker_id: str
    backup_contact_id: Optional[str] = None
    type: AlertType
    severity: AlertSeverity
    message: str = Field(..., min_length=1)
