"""
Lone Worker Scenario: Missed Check-In Escalation Walkthrough
============================================================

This script walks one night shift through the check-in and escalation
engine using synthetic users and a manual clock, so the whole scenario
runs instantly.

Steps demonstrated:
  1. Load process configuration from YAML
  2. Register a worker and two backup contacts
  3. Start a shift (first check-in is scheduled)
  4. Confirm a check-in on time
  5. Miss the next check-in; the overdue sweep raises an alert
  6. Escalate to the second contact after the escalation delay
  7. Acknowledge and resolve the alert
  8. Verify the activity log

SMS and email go to the console providers, so every outbound message
appears in the log output.

Usage:
    python -m examples.lone_worker_scenario
    # or: python examples/lone_worker_scenario.py
"""

from __future__ import annotations

import asyncio
import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path

# Ensure the project root is on the path
sys.path.insert(0, str(Path(__file__).parent.parent))

from safeshift.app import build_app, configure_logging
from safeshift.config import AppConfig, load_config_from_yaml
from safeshift.models import Role, User


class ManualClock:
    def __init__(self, start: datetime) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)
        print(f"[clock] +{timedelta(**kwargs)} -> {self.now.isoformat()}")


def _banner(text: str) -> None:
    print(f"\n{'=' * 60}")
    print(f"  {text}")
    print(f"{'=' * 60}\n")


async def main() -> None:
    _banner("Safe on Shift: Lone Worker Scenario")

    # ------------------------------------------------------------------
    # Step 1: Configuration
    # ------------------------------------------------------------------
    _banner("Step 1: Load Configuration")

    sample_yaml = Path(__file__).parent / "safeshift.yaml"
    if sample_yaml.exists():
        config = load_config_from_yaml(sample_yaml)
        print(f"Loaded config from {sample_yaml.name}")
    else:
        config = AppConfig()
        print("Using default configuration")
    config = config.model_copy(update={"enable_overdue_monitor": False})
    configure_logging(config.log_level)

    clock = ManualClock(datetime(2026, 3, 14, 22, 0, tzinfo=timezone.utc))
    app = build_app(config, now_fn=clock)

    # ------------------------------------------------------------------
    # Step 2: Users
    # ------------------------------------------------------------------
    _banner("Step 2: Register Worker and Backup Contacts")

    primary = app.users.add(User(
        first_name="Priya", last_name="Contact", role=Role.BACKUP_CONTACT,
        phone="(555) 010-2001", email="priya@example.com",
    ))
    secondary = app.users.add(User(
        first_name="Sam", last_name="Contact", role=Role.BACKUP_CONTACT,
        phone="555-010-2002",
    ))
    worker = app.users.add(User(
        first_name="Alex", last_name="Worker", role=Role.WORKER,
        phone="5550102000",
        assigned_backup_contact_ids=[primary.id, secondary.id],
    ))
    print(f"Worker: {worker.full_name}")
    print(f"Escalation chain: {primary.full_name} -> {secondary.full_name}")

    # ------------------------------------------------------------------
    # Step 3: Shift
    # ------------------------------------------------------------------
    _banner("Step 3: Start Shift")

    shift = await app.shift_service.start_shift(
        worker.id, "warehouse-7", estimated_hours=8, check_in_interval_minutes=30,
    )
    first = (await app.check_in_tracker.get_by_shift(shift.id))[0]
    print(f"Shift {shift.id} active until {shift.estimated_end_time.isoformat()}")
    print(f"First check-in due at {first.scheduled_time.isoformat()}")

    # ------------------------------------------------------------------
    # Step 4: On-time check-in
    # ------------------------------------------------------------------
    _banner("Step 4: Confirm Check-In")

    clock.advance(minutes=30, seconds=12)
    confirmed = await app.check_in_tracker.confirm_check_in(first.id)
    print(f"Confirmed after {confirmed.response_seconds}s")

    # ------------------------------------------------------------------
    # Step 5: Missed check-in
    # ------------------------------------------------------------------
    _banner("Step 5: Miss the Next Check-In")

    second = await app.check_in_tracker.schedule_check_in(shift.id)
    clock.advance(minutes=31, seconds=1)
    missed = await app.check_in_tracker.process_overdue_check_ins()
    print(f"Overdue sweep marked {missed} check-in(s) missed")

    alert = (await app.alert_service.find_active_alerts())[0]
    print(f"Alert {alert.id}: {alert.message}")
    print(f"  Severity: {alert.severity.value}, notified index: {alert.escalated_to_index}")

    # ------------------------------------------------------------------
    # Step 6: Escalation
    # ------------------------------------------------------------------
    _banner("Step 6: Escalate")

    result = await app.escalation_scheduler.scan()
    print(f"Immediate scan: {result}")
    clock.advance(minutes=5)
    result = await app.escalation_scheduler.scan()
    print(f"After escalation delay: {result}")
    alert = await app.alert_service.get_alert(alert.id)
    print(f"  Notified index now: {alert.escalated_to_index}")
    clock.advance(minutes=5)
    result = await app.escalation_scheduler.scan()
    print(f"Chain exhausted: {result}")

    # ------------------------------------------------------------------
    # Step 7: Acknowledge and resolve
    # ------------------------------------------------------------------
    _banner("Step 7: Acknowledge and Resolve")

    clock.advance(minutes=2)
    alert = await app.alert_service.acknowledge(alert.id, secondary.id)
    print(f"Acknowledged by {secondary.full_name}. Status: {alert.status.value}")
    clock.advance(minutes=20)
    alert = await app.alert_service.resolve(alert.id, secondary.id)
    print(f"Resolved. Status: {alert.status.value}")
    await app.shift_service.end_shift(shift.id)

    for user in (worker, primary, secondary):
        notes = await app.dispatcher.get_notifications(user.id)
        print(f"\n{user.full_name}: {len(notes)} notification(s)")
        for note in reversed(notes):
            print(f"  - {note.title}: {note.message}")

    # ------------------------------------------------------------------
    # Step 8: Activity log
    # ------------------------------------------------------------------
    _banner("Step 8: Activity Log")

    valid, broken_at = app.activity_log.verify_chain()
    print(f"{len(app.activity_log)} entries, chain valid: {valid}")
    for entry in app.activity_log.query(target_entity=alert.id):
        print(f"  {entry.timestamp.isoformat()} {entry.event_type.value} by {entry.actor_id}")

    _banner("Scenario Complete")


if __name__ == "__main__":
    asyncio.run(main())
