"""Exceptions raised by the queue service layer.

Every error the core surfaces derives from :class:`QueueError`.  The HTTP
layer in ``main.py`` maps each kind to a status code; callers using the
service functions directly can inspect ``transient`` to decide whether a
retry (after re-reading state) makes sense.
"""

from __future__ import annotations

from typing import Iterable, Optional


class QueueError(Exception):
    """Base class for queue errors."""

    transient = False


class NotFound(QueueError):
    """Raised when a clinic, patient or turn id is unknown."""

    def __init__(self, kind: str, ident: str) -> None:
        self.kind = kind
        self.ident = ident
        super().__init__(f"{kind} '{ident}' not found")


class InvalidTransition(QueueError):
    """Raised when a status change is not an edge of the turn state machine."""

    def __init__(self, from_status: str, to_status: str, reason: Optional[str] = None) -> None:
        self.from_status = from_status
        self.to_status = to_status
        self.reason = reason or f"Cannot transition from '{from_status}' to '{to_status}'"
        super().__init__(self.reason)


class ActiveSlotOccupied(InvalidTransition):
    """Raised when calling a turn while another one is in consultation."""

    def __init__(self, from_status: str, to_status: str, occupant_id: str) -> None:
        self.occupant_id = occupant_id
        super().__init__(
            from_status,
            to_status,
            f"Turn '{occupant_id}' is in consultation; finish it before calling another patient",
        )


class ScopeMismatch(QueueError):
    """Raised when a turn or patient does not belong to the requested clinic-day."""


class ReorderSetMismatch(QueueError):
    """Raised when a reorder list differs from the open turns of the clinic-day."""

    def __init__(self, missing: Iterable[str] = (), unexpected: Iterable[str] = (), duplicated: Iterable[str] = ()) -> None:
        self.missing = sorted(missing)
        self.unexpected = sorted(unexpected)
        self.duplicated = sorted(duplicated)
        parts = []
        if self.missing:
            parts.append(f"missing: {', '.join(self.missing)}")
        if self.unexpected:
            parts.append(f"not open in this clinic-day: {', '.join(self.unexpected)}")
        if self.duplicated:
            parts.append(f"duplicated: {', '.join(self.duplicated)}")
        super().__init__("Reorder list does not match open turns (" + "; ".join(parts) + ")")


class ConcurrencyConflict(QueueError):
    """Raised when a concurrent write won the race; re-read and retry."""

    transient = True
