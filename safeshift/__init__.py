"""
Safe on Shift -- Lone Worker Check-In & Escalation Engine
=========================================================

A Python service core for lone-worker safety: workers start shifts and
confirm periodic check-ins; a missed check-in (or an emergency trigger)
raises an alert that is walked through the worker's ordered list of backup
contacts until somebody acknowledges it.

The package provides the check-in lifecycle, the alert state machine, the
notification dispatcher, the background escalation scheduler, and the
admin-mutable system settings they all read.  Persistence, SMS and email
transports, and the clock are injected collaborators.
"""

__version__ = "0.1.0"
