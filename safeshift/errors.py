"""
Error taxonomy shared by every Safe on Shift component.

Entity-transition failures (``NotFoundError``, ``InvalidStateError``,
``ValidationError``) propagate synchronously to the caller of a public
operation.  ``TransportError`` never leaves the transport layer: SMS and
email services turn it into a failed result that callers log.
"""

from __future__ import annotations


class SafeShiftError(Exception):
    """Base class for all domain errors raised by this package."""
    pass


class NotFoundError(SafeShiftError):
    """Raised when a referenced shift, worker, check-in or alert does not exist."""

    def __init__(self, entity: str, entity_id: str) -> None:
        self.entity = entity
        self.entity_id = entity_id
        super().__init__(f"{entity} '{entity_id}' not found")


class InvalidStateError(SafeShiftError):
    """Raised when an entity exists but is in the wrong lifecycle state."""
    pass


class ValidationError(SafeShiftError):
    """Raised when input is out of range or malformed.

    Validation always happens before any mutation, so a rejected request
    leaves stored state untouched.
    """

    def __init__(self, message: str, fields: list[str] | None = None) -> None:
        self.fields = fields or []
        super().__init__(message)


class TransportError(SafeShiftError):
    """Raised by an SMS or email provider when delivery fails."""
    pass
