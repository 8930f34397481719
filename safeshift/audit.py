"""
Append-Only Activity Log (Hash-Chained).

Every lifecycle transition in the check-in engine -- shifts starting and
ending, check-ins confirmed or missed, alerts created, escalated,
acknowledged and resolved, settings changed -- is recorded as a structured
entry.  Entries are linked through a SHA-256 hash chain: modifying any
entry after the fact breaks ``verify_chain()`` at that position.

The log is an operational record for supervisors reviewing an incident
("who was alerted, when, and who picked it up").  It is not the source of
truth for entity state; the stores are.
"""

from __future__ import annotations

import enum
import hashlib
import json
import uuid
from datetime import datetime, timezone
from typing import Any, Optional

from pydantic import BaseModel, Field


SYSTEM_ACTOR = "SYSTEM"


# ---------------------------------------------------------------------------
# Event types
# ---------------------------------------------------------------------------

class ActivityEventType(str, enum.Enum):
    """Every recordable transition."""

    # Shifts
    SHIFT_STARTED = "SHIFT_STARTED"
    SHIFT_ENDED = "SHIFT_ENDED"
    SHIFT_CANCELLED = "SHIFT_CANCELLED"
    SHIFT_EXTENDED = "SHIFT_EXTENDED"

    # Check-ins
    CHECK_IN_SCHEDULED = "CHECK_IN_SCHEDULED"
    CHECK_IN_CONFIRMED = "CHECK_IN_CONFIRMED"
    CHECK_IN_MISSED = "CHECK_IN_MISSED"

    # Alerts
    ALERT_CREATED = "ALERT_CREATED"
    ALERT_ESCALATED = "ALERT_ESCALATED"
    ALERT_ACKNOWLEDGED = "ALERT_ACKNOWLEDGED"
    ALERT_RESOLVED = "ALERT_RESOLVED"

    # Settings
    SETTINGS_UPDATED = "SETTINGS_UPDATED"
    SETTINGS_RESET = "SETTINGS_RESET"


# ---------------------------------------------------------------------------
# Entry model
# ---------------------------------------------------------------------------

class ActivityEntry(BaseModel):
    """A single log entry: who did what to which entity, and when."""

    entry_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    timestamp: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc),
        description="When the transition happened (service clock).",
    )
    actor_id: str = Field(
        default=SYSTEM_ACTOR,
        description="User id of the actor, or SYSTEM for background work.",
    )
    event_type: ActivityEventType
    target_entity: str = Field(
        default="",
        description="Id of the shift, check-in, alert or settings record affected.",
    )
    metadata: dict[str, Any] = Field(default_factory=dict)
    previous_hash: str = ""

    def canonical_bytes(self) -> bytes:
        """Deterministic byte form used for hashing (sorted JSON)."""
        data = {
            "entry_id": self.entry_id,
            "timestamp": self.timestamp.isoformat(),
            "actor_id": self.actor_id,
            "event_type": self.event_type.value,
            "target_entity": self.target_entity,
            "metadata": self.metadata,
            "previous_hash": self.previous_hash,
        }
        return json.dumps(data, sort_keys=True, default=str).encode("utf-8")

    def compute_hash(self) -> str:
        return hashlib.sha256(self.canonical_bytes()).hexdigest()


# ---------------------------------------------------------------------------
# Log
# ---------------------------------------------------------------------------

class ActivityLog:
    """Append-only log with SHA-256 hash chaining.

    There is no update or delete.  ``append()`` links each entry to the
    hash of the one before it; ``verify_chain()`` walks the whole log and
    reports the first broken link.
    """

    def __init__(self) -> None:
        self._entries: list[ActivityEntry] = []
        self._hashes: list[str] = []

    def append(self, entry: ActivityEntry) -> ActivityEntry:
        """Append ``entry``, filling in its ``previous_hash``."""
        entry.previous_hash = self._hashes[-1] if self._hashes else ""
        self._entries.append(entry)
        self._hashes.append(entry.compute_hash())
        return entry

    def record(
        self,
        event_type: ActivityEventType,
        target_entity: str,
        timestamp: datetime,
        actor_id: Optional[str] = None,
        **metadata: Any,
    ) -> ActivityEntry:
        """Build and append an entry in one call."""
        return self.append(ActivityEntry(
            timestamp=timestamp,
            actor_id=actor_id or SYSTEM_ACTOR,
            event_type=event_type,
            target_entity=target_entity,
            metadata=metadata,
        ))

    def verify_chain(self) -> tuple[bool, Optional[int]]:
        """Validate every hash link.

        Returns:
            ``(valid, broken_at)`` -- ``broken_at`` is the index of the first
            entry whose link or stored hash does not match, else None.
        """
        for i, entry in enumerate(self._entries):
            expected_prev = self._entries[i - 1].compute_hash() if i else ""
            if entry.previous_hash != expected_prev:
                return (False, i)
            if self._hashes[i] != entry.compute_hash():
                return (False, i)
        return (True, None)

    def query(
        self,
        target_entity: Optional[str] = None,
        event_type: Optional[ActivityEventType] = None,
        actor_id: Optional[str] = None,
    ) -> list[ActivityEntry]:
        """Return copies of matching entries, oldest first."""
        results = []
        for entry in self._entries:
            if target_entity is not None and entry.target_entity != target_entity:
                continue
            if event_type is not None and entry.event_type != event_type:
                continue
            if actor_id is not None and entry.actor_id != actor_id:
                continue
            results.append(entry.model_copy(deep=True))
        return results

    def __len__(self) -> int:
        return len(self._entries)
