"""Pure queue rules: the turn state machine, ordering policy and stats.

Nothing in this module touches the database.  The service layer loads the
turns of a clinic-day and asks these functions what is allowed, who is next
and how the day adds up.
"""

from __future__ import annotations

from dataclasses import dataclass, asdict
from datetime import datetime, timezone
from typing import Dict, Iterable, List, Optional, Tuple

from errors import InvalidTransition
from models import Turn, TurnStatus

# Stand-in for a missing timestamp in sort keys.
_NEVER = datetime.min.replace(tzinfo=timezone.utc)


TRANSITIONS: Dict[TurnStatus, Tuple[TurnStatus, ...]] = {
    TurnStatus.SCHEDULED: (TurnStatus.WAITING, TurnStatus.CANCELLED),
    TurnStatus.WAITING: (TurnStatus.NEXT, TurnStatus.SKIPPED, TurnStatus.CANCELLED),
    TurnStatus.NEXT: (
        TurnStatus.IN_CONSULTATION,
        TurnStatus.WAITING,
        TurnStatus.SKIPPED,
        TurnStatus.CANCELLED,
    ),
    TurnStatus.IN_CONSULTATION: (TurnStatus.DONE, TurnStatus.CANCELLED),
    TurnStatus.SKIPPED: (TurnStatus.WAITING, TurnStatus.CANCELLED),
    TurnStatus.DONE: (),
    TurnStatus.CANCELLED: (),
}

TERMINAL_STATUSES = frozenset({TurnStatus.DONE, TurnStatus.CANCELLED})
ACTIVE_STATUSES = frozenset({TurnStatus.NEXT, TurnStatus.IN_CONSULTATION})

# Targets after which the active slot may be free again.
VACATING_TARGETS = frozenset(
    {TurnStatus.WAITING, TurnStatus.DONE, TurnStatus.CANCELLED, TurnStatus.SKIPPED}
)

# Timestamp fields stamped on first entry into a status.
TIMESTAMP_FIELDS: Dict[TurnStatus, Tuple[str, ...]] = {
    TurnStatus.WAITING: ("checked_in_at",),
    TurnStatus.NEXT: ("called_at",),
    TurnStatus.IN_CONSULTATION: ("consultation_start_at",),
    TurnStatus.DONE: ("consultation_end_at", "completed_at"),
}


def allowed_transitions(status: TurnStatus) -> Tuple[TurnStatus, ...]:
    return TRANSITIONS.get(status, ())


def is_open(turn: Turn) -> bool:
    return turn.status not in TERMINAL_STATUSES


def validate_transition(current: TurnStatus, target: TurnStatus) -> None:
    """Raise :class:`InvalidTransition` unless ``current -> target`` is an edge."""
    current, target = TurnStatus(current), TurnStatus(target)
    if target in allowed_transitions(current):
        return
    if current in TERMINAL_STATUSES:
        raise InvalidTransition(
            current.value, target.value, f"Cannot transition from terminal status '{current.value}'"
        )
    raise InvalidTransition(current.value, target.value)


def apply_transition(
    turn: Turn,
    target: TurnStatus,
    actor_id: str,
    now: datetime,
    notes: Optional[str] = None,
) -> TurnStatus:
    """Move ``turn`` to ``target`` in place and return the previous status.

    Timestamps for the target status are only filled when still empty, so a
    turn demoted and called again keeps its first ``called_at``.  The note is
    kept only when the turn is marked done.
    """
    previous = TurnStatus(turn.status)
    target = TurnStatus(target)
    validate_transition(previous, target)
    turn.status = target
    for field in TIMESTAMP_FIELDS.get(target, ()):
        if getattr(turn, field) is None:
            setattr(turn, field, now)
    if target == TurnStatus.DONE and notes:
        turn.service_notes = notes
    turn.updated_by = actor_id
    turn.updated_at = now
    return previous


def candidate_sort_key(turn: Turn):
    """Urgent first, then lowest position, then earliest check-in.

    Missing positions and check-in times sort last.  ``created_at`` and the
    id close any remaining tie so the order is total.
    """
    return (
        not turn.is_urgent,
        turn.queue_position is None,
        turn.queue_position if turn.queue_position is not None else 0,
        turn.checked_in_at is None,
        turn.checked_in_at or _NEVER,
        turn.created_at or _NEVER,
        turn.id or "",
    )


def pick_next_candidate(turns: Iterable[Turn]) -> Optional[Turn]:
    """Return the WAITING turn that should be called next, if any."""
    waiting = [t for t in turns if t.status == TurnStatus.WAITING]
    if not waiting:
        return None
    return min(waiting, key=candidate_sort_key)


def display_sort_key(turn: Turn):
    # Board order: urgent first, then position, then arrival.
    return (
        not turn.is_urgent,
        turn.queue_position is None,
        turn.queue_position if turn.queue_position is not None else 0,
        turn.created_at or _NEVER,
        turn.id or "",
    )


def order_for_display(turns: Iterable[Turn]) -> List[Turn]:
    return sorted(turns, key=display_sort_key)


@dataclass
class QueueStats:
    total: int = 0
    scheduled: int = 0
    waiting: int = 0
    next: int = 0
    in_consultation: int = 0
    done: int = 0
    cancelled: int = 0
    skipped: int = 0
    active: int = 0
    urgent: int = 0

    def as_dict(self) -> Dict[str, int]:
        return asdict(self)


_STATUS_COUNTERS = {
    TurnStatus.SCHEDULED: "scheduled",
    TurnStatus.WAITING: "waiting",
    TurnStatus.NEXT: "next",
    TurnStatus.IN_CONSULTATION: "in_consultation",
    TurnStatus.DONE: "done",
    TurnStatus.CANCELLED: "cancelled",
    TurnStatus.SKIPPED: "skipped",
}


def compute_stats(turns: Iterable[Turn]) -> QueueStats:
    """Count a clinic-day from scratch."""
    stats = QueueStats()
    for turn in turns:
        stats.total += 1
        counter = _STATUS_COUNTERS[TurnStatus(turn.status)]
        setattr(stats, counter, getattr(stats, counter) + 1)
        if turn.status in ACTIVE_STATUSES:
            stats.active += 1
        if turn.is_urgent:
            stats.urgent += 1
    return stats
