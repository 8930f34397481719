"""
System Settings -- process-wide, admin-mutable configuration.

A single ``SystemSettings`` record governs check-in cadence, the response
window before a check-in counts as missed, the delay between escalation
steps, and which outbound channels are enabled.  It is created at boot,
changed through ``SystemSettingsService.update()``, and never deleted;
``reset()`` restores the documented defaults.

Bounds live on the model as pydantic constraints.  ``update()`` validates
the *merged* record before storing it, so an out-of-range field rejects
the whole request and nothing is applied.

Components read settings lazily on every operation, so a change is visible
to the next check-in, overdue sweep or escalation scan.
"""

from __future__ import annotations

import copy
import logging
from datetime import datetime
from typing import Any, Optional, Protocol

import pydantic
from pydantic import BaseModel, Field

from safeshift.audit import ActivityEventType, ActivityLog
from safeshift.errors import ValidationError
from safeshift.models import NowFn, utcnow

logger = logging.getLogger(__name__)

SETTINGS_ID = "settings-001"


# ---------------------------------------------------------------------------
# Settings model
# ---------------------------------------------------------------------------

class SystemSettings(BaseModel):
    """The settings singleton."""

    model_config = pydantic.ConfigDict(validate_assignment=True)

    id: str = SETTINGS_ID
    check_in_interval_minutes: int = Field(
        default=15,
        ge=1,
        le=120,
        description="Minutes between scheduled check-ins when a shift has no own interval.",
    )
    response_timeout_seconds: int = Field(
        default=60,
        ge=30,
        le=600,
        description="Seconds a pending check-in may stay unanswered before it is missed.",
    )
    escalation_delay_minutes: int = Field(
        default=5,
        ge=1,
        le=60,
        description="Minutes without acknowledgement before the next backup contact is alerted.",
    )
    enable_sms_notifications: bool = True
    enable_email_notifications: bool = True
    enable_push_notifications: bool = True
    updated_at: Optional[datetime] = None
    updated_by: Optional[str] = None


MUTABLE_FIELDS = frozenset({
    "check_in_interval_minutes",
    "response_timeout_seconds",
    "escalation_delay_minutes",
    "enable_sms_notifications",
    "enable_email_notifications",
    "enable_push_notifications",
})

NOTIFICATION_CHANNELS = {
    "sms": "enable_sms_notifications",
    "email": "enable_email_notifications",
    "push": "enable_push_notifications",
}


# ---------------------------------------------------------------------------
# Settings store
# ---------------------------------------------------------------------------

class SettingsStore(Protocol):
    def load(self) -> SystemSettings: ...
    def save(self, settings: SystemSettings) -> SystemSettings: ...


class InMemorySettingsStore:
    """Holds the singleton; returns copies so callers cannot mutate it."""

    def __init__(self, initial: Optional[SystemSettings] = None) -> None:
        self._settings = copy.deepcopy(initial) if initial else SystemSettings()

    def load(self) -> SystemSettings:
        return self._settings.model_copy(deep=True)

    def save(self, settings: SystemSettings) -> SystemSettings:
        self._settings = settings.model_copy(deep=True)
        return self._settings.model_copy(deep=True)


# ---------------------------------------------------------------------------
# Service
# ---------------------------------------------------------------------------

class SystemSettingsService:
    """Validated access to the settings singleton."""

    def __init__(
        self,
        store: SettingsStore,
        activity_log: ActivityLog,
        now_fn: NowFn = utcnow,
    ) -> None:
        self._store = store
        self._activity_log = activity_log
        self._now = now_fn

    async def get(self) -> SystemSettings:
        return self._store.load()

    async def update(
        self, changes: dict[str, Any], updated_by: Optional[str] = None
    ) -> SystemSettings:
        """Apply a partial update atomically.

        Args:
            changes: Mapping of setting name to new value.  Only the
                channel toggles and the three timing fields may be set.
            updated_by: Id of the administrator making the change.

        Returns:
            The stored settings after the update.

        Raises:
            ValidationError: If a field is unknown or out of range.  No
                field is applied in that case.
        """
        unknown = sorted(set(changes) - MUTABLE_FIELDS)
        if unknown:
            raise ValidationError(
                f"Unknown or read-only settings: {', '.join(unknown)}",
                fields=unknown,
            )

        current = self._store.load()
        merged = current.model_dump()
        merged.update(changes)
        merged["updated_at"] = self._now()
        merged["updated_by"] = updated_by
        try:
            candidate = SystemSettings.model_validate(merged)
        except pydantic.ValidationError as exc:
            fields = [".".join(str(p) for p in err["loc"]) for err in exc.errors()]
            raise ValidationError(
                f"Invalid settings: {'; '.join(_describe(err) for err in exc.errors())}",
                fields=fields,
            ) from exc

        saved = self._store.save(candidate)
        self._activity_log.record(
            ActivityEventType.SETTINGS_UPDATED,
            saved.id,
            saved.updated_at,
            actor_id=updated_by,
            changes=dict(changes),
        )
        logger.info("System settings updated by %s: %s", updated_by or "system", changes)
        return saved

    async def reset(self, reset_by: Optional[str] = None) -> SystemSettings:
        """Restore the default values (15 / 60 / 5, all channels enabled)."""
        defaults = SystemSettings(updated_at=self._now(), updated_by=reset_by)
        saved = self._store.save(defaults)
        self._activity_log.record(
            ActivityEventType.SETTINGS_RESET,
            saved.id,
            saved.updated_at,
            actor_id=reset_by,
        )
        logger.info("System settings reset to defaults by %s", reset_by or "system")
        return saved

    async def get_check_in_interval(self) -> int:
        return (await self.get()).check_in_interval_minutes

    async def get_response_timeout(self) -> int:
        return (await self.get()).response_timeout_seconds

    async def get_escalation_delay(self) -> int:
        return (await self.get()).escalation_delay_minutes

    async def is_notification_enabled(self, channel: str) -> bool:
        """Whether an outbound channel ('sms', 'email' or 'push') is on."""
        field = NOTIFICATION_CHANNELS.get(channel)
        if field is None:
            return False
        return bool(getattr(await self.get(), field))


def _describe(err: dict) -> str:
    loc = ".".join(str(p) for p in err["loc"])
    return f"{loc}: {err['msg']}"
