"""Database and business logic for the clinic turn queue.

All operations accept a SQLModel ``Session``.  Every mutation runs as one
transaction that first locks the ``QueueScope`` row of its clinic-day, so
position assignment, demote-then-promote and reorder are serial per
clinic-day.  Audit rows are written in the same transaction; notifications
are collected while it runs and dispatched only after it commits.

Actors are plain ids passed on every call.  There is no notion of a current
user inside this module.
"""

from __future__ import annotations

import logging
from contextlib import contextmanager
from datetime import date, datetime
from typing import Iterable, Iterator, List, Optional, Sequence
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from sqlalchemy import func, or_
from sqlalchemy.exc import DBAPIError, IntegrityError
from sqlmodel import Session, col, select

from database import begin_write
from errors import (
    ActiveSlotOccupied,
    ConcurrencyConflict,
    NotFound,
    ReorderSetMismatch,
    ScopeMismatch,
)
from models import (
    Clinic,
    Gender,
    NotificationChannel,
    NotificationEventType,
    Patient,
    QueueScope,
    Turn,
    TurnEvent,
    TurnStatus,
    as_utc,
    utcnow,
)
from notifications import STATUS_EVENTS, Notifier, TurnNotification, dispatch, notification_for
from queue_rules import (
    ACTIVE_STATUSES,
    VACATING_TARGETS,
    QueueStats,
    apply_transition,
    compute_stats,
    is_open,
    order_for_display,
    pick_next_candidate,
    validate_transition,
)

logger = logging.getLogger(__name__)

_CONFLICT_MARKERS = (
    "database is locked",
    "deadlock detected",
    "could not serialize",
    "could not obtain lock",
)


@contextmanager
def _mutation(session: Session) -> Iterator[None]:
    """Commit on success, roll back on any failure.

    Any read transaction already open on the session is closed first so
    the write starts from fresh state and, on SQLite, takes the write lock
    up front.

    Lost races reported by the database (unique violations, lock timeouts,
    serialization failures) become :class:`ConcurrencyConflict`.
    """
    try:
        begin_write(session)
        yield
        session.commit()
    except DBAPIError as exc:
        session.rollback()
        message = str(exc.orig).lower()
        if isinstance(exc, IntegrityError) or any(m in message for m in _CONFLICT_MARKERS):
            raise ConcurrencyConflict(
                "A concurrent update touched this clinic-day; re-read the queue and retry"
            ) from exc
        raise
    except Exception:
        session.rollback()
        raise


# ===== CLINICS AND PATIENTS =====

PATIENT_FIELDS = (
    "name",
    "phone_number",
    "email",
    "date_of_birth",
    "gender",
    "address",
    "notes",
    "channel",
    "is_active",
)


def create_clinic(session: Session, name: str, timezone_name: str = "UTC") -> Clinic:
    try:
        ZoneInfo(timezone_name)
    except (ZoneInfoNotFoundError, ValueError):
        raise ValueError(f"Unknown timezone '{timezone_name}'") from None
    clinic = Clinic(name=name, timezone=timezone_name)
    with _mutation(session):
        session.add(clinic)
    return clinic


def list_clinics(session: Session) -> List[Clinic]:
    """Active clinics by name."""
    stmt = select(Clinic).where(Clinic.is_active == True).order_by(Clinic.name)  # noqa: E712
    return list(session.exec(stmt).all())


def get_clinic(session: Session, clinic_id: str) -> Clinic:
    clinic = session.get(Clinic, clinic_id)
    if clinic is None or not clinic.is_active:
        raise NotFound("Clinic", clinic_id)
    return clinic


def clinic_today(clinic: Clinic) -> date:
    """Calendar day in the clinic's own timezone."""
    return datetime.now(ZoneInfo(clinic.timezone)).date()


def clinic_day_of(clinic: Clinic, moment: datetime) -> date:
    return as_utc(moment).astimezone(ZoneInfo(clinic.timezone)).date()


def create_patient(
    session: Session,
    clinic_id: str,
    name: str,
    phone_number: str,
    email: Optional[str] = None,
    channel: NotificationChannel = NotificationChannel.WHATSAPP,
    date_of_birth: Optional[date] = None,
    gender: Optional[Gender] = None,
    address: Optional[str] = None,
    notes: Optional[str] = None,
) -> Patient:
    with _mutation(session):
        get_clinic(session, clinic_id)
        patient = Patient(
            clinic_id=clinic_id,
            name=name,
            phone_number=phone_number,
            email=email,
            channel=channel,
            date_of_birth=date_of_birth,
            gender=gender,
            address=address,
            notes=notes,
        )
        session.add(patient)
    return patient


def update_patient(
    session: Session, patient_id: str, clinic_id: Optional[str] = None, **changes
) -> Patient:
    """Edit a patient's details; ``is_active=False`` deactivates the record.

    Deactivated patients drop out of searches and can no longer be admitted,
    but their past turns are kept.
    """
    unknown = sorted(set(changes) - set(PATIENT_FIELDS))
    if unknown:
        raise ValueError(f"Cannot update patient field(s): {', '.join(unknown)}")
    with _mutation(session):
        patient = session.get(Patient, patient_id)
        if patient is None:
            raise NotFound("Patient", patient_id)
        if clinic_id is not None and patient.clinic_id != clinic_id:
            raise ScopeMismatch(f"Patient {patient_id} is not registered at clinic {clinic_id}")
        for field, value in changes.items():
            setattr(patient, field, value)
        patient.updated_at = utcnow()
        session.add(patient)
    logger.info("Updated patient %s (%s)", patient_id, ", ".join(sorted(changes)) or "no changes")
    return patient


def find_or_create_patient(session: Session, clinic_id: str, phone_number: str, name: str) -> Patient:
    get_clinic(session, clinic_id)
    existing = session.exec(
        select(Patient).where(
            Patient.clinic_id == clinic_id,
            Patient.phone_number == phone_number,
            Patient.is_active == True,  # noqa: E712
        )
    ).first()
    if existing is not None:
        return existing
    return create_patient(session, clinic_id, name, phone_number)


def list_patients(session: Session, clinic_id: str, search: Optional[str] = None) -> List[Patient]:
    get_clinic(session, clinic_id)
    stmt = select(Patient).where(Patient.clinic_id == clinic_id, Patient.is_active == True)  # noqa: E712
    if search:
        pattern = f"%{search}%"
        stmt = stmt.where(
            or_(
                col(Patient.name).ilike(pattern),
                col(Patient.phone_number).ilike(pattern),
                col(Patient.email).ilike(pattern),
            )
        )
    return list(session.exec(stmt.order_by(Patient.name)).all())


def get_patient(session: Session, patient_id: str) -> Patient:
    patient = session.get(Patient, patient_id)
    if patient is None or not patient.is_active:
        raise NotFound("Patient", patient_id)
    return patient


# ===== SCOPE LOCKING =====

def lock_scope(session: Session, clinic_id: str, turn_date: date) -> QueueScope:
    """Lock the clinic-day row, creating it on first use.

    Two sessions racing to create the same row make the loser fail with an
    integrity error, which surfaces as a concurrency conflict.
    """
    scope = session.get(
        QueueScope, (clinic_id, turn_date), with_for_update=True, populate_existing=True
    )
    if scope is None:
        scope = QueueScope(clinic_id=clinic_id, turn_date=turn_date)
        session.add(scope)
        session.flush()
    return scope


def _bump(scope: QueueScope, now: datetime) -> None:
    scope.revision += 1
    scope.updated_at = now


def get_scope_revision(session: Session, clinic_id: str, turn_date: date) -> int:
    scope = session.get(QueueScope, (clinic_id, turn_date), populate_existing=True)
    return scope.revision if scope is not None else 0


def _scope_turns(session: Session, clinic_id: str, turn_date: date) -> List[Turn]:
    stmt = (
        select(Turn)
        .where(Turn.clinic_id == clinic_id, Turn.turn_date == turn_date)
        .execution_options(populate_existing=True)
    )
    return list(session.exec(stmt).all())


def get_turn(session: Session, turn_id: str) -> Turn:
    turn = session.get(Turn, turn_id, populate_existing=True)
    if turn is None:
        raise NotFound("Turn", turn_id)
    return turn


# ===== AUDIT TRAIL =====

def _record_event(
    session: Session,
    turn: Turn,
    actor_id: str,
    action: str,
    old_status: Optional[TurnStatus] = None,
    new_status: Optional[TurnStatus] = None,
    old_position: Optional[int] = None,
    new_position: Optional[int] = None,
    notes: Optional[str] = None,
    at: Optional[datetime] = None,
) -> None:
    session.add(
        TurnEvent(
            turn_id=turn.id,
            clinic_id=turn.clinic_id,
            actor_id=actor_id,
            action=action,
            old_status=old_status,
            new_status=new_status,
            old_position=old_position,
            new_position=new_position,
            notes=notes,
            at=at or utcnow(),
        )
    )


def get_turn_events(session: Session, turn_id: str) -> List[TurnEvent]:
    get_turn(session, turn_id)
    stmt = select(TurnEvent).where(TurnEvent.turn_id == turn_id).order_by(TurnEvent.at, TurnEvent.id)
    return list(session.exec(stmt).all())


def get_audit_log(session: Session, clinic_id: str, limit: int = 100) -> List[TurnEvent]:
    """Most recent events of a clinic, newest first."""
    get_clinic(session, clinic_id)
    stmt = (
        select(TurnEvent)
        .where(TurnEvent.clinic_id == clinic_id)
        .order_by(col(TurnEvent.at).desc(), col(TurnEvent.id).desc())
        .limit(limit)
    )
    return list(session.exec(stmt).all())


# ===== NOTIFICATION OUTBOX =====

def _status_notification(
    session: Session, turn: Turn, previous: Optional[TurnStatus]
) -> Optional[TurnNotification]:
    status = TurnStatus(turn.status)
    if status == TurnStatus.WAITING and previous != TurnStatus.SCHEDULED:
        # Returning to the pool is not news for the patient.
        return None
    event_type = STATUS_EVENTS.get(status)
    if event_type is None:
        return None
    return notification_for(turn, session.get(Patient, turn.patient_id), event_type)


def _flush_outbox(notifier: Optional[Notifier], outbox: Iterable[Optional[TurnNotification]]) -> None:
    for notification in outbox:
        if notification is not None:
            dispatch(notifier, notification)


# ===== POSITION ASSIGNER =====

def next_queue_position(session: Session, clinic_id: str, turn_date: date) -> int:
    """Max position of the clinic-day plus one; call with the scope locked."""
    current = session.exec(
        select(func.max(Turn.queue_position)).where(
            Turn.clinic_id == clinic_id, Turn.turn_date == turn_date
        )
    ).one()
    return (current or 0) + 1


def reorder(
    session: Session,
    clinic_id: str,
    turn_date: date,
    ordered_turn_ids: Sequence[str],
    actor_id: str,
) -> None:
    """Give the open turns of a clinic-day positions 1..N in the given order.

    The list must name every open turn exactly once.  Closed turns keep
    their relative order and are renumbered after the open ones so
    positions stay unique across the whole day.
    """
    ids = list(ordered_turn_ids)
    with _mutation(session):
        get_clinic(session, clinic_id)
        scope = lock_scope(session, clinic_id, turn_date)
        turns = _scope_turns(session, clinic_id, turn_date)
        by_id = {t.id: t for t in turns}

        foreign = [turn_id for turn_id in ids if turn_id not in by_id]
        for turn_id in foreign:
            get_turn(session, turn_id)
        if foreign:
            raise ScopeMismatch(
                f"Turns {', '.join(foreign)} do not belong to clinic {clinic_id} on {turn_date.isoformat()}"
            )

        open_ids = {t.id for t in turns if is_open(t)}
        given = set(ids)
        duplicated = {turn_id for turn_id in given if ids.count(turn_id) > 1}
        if duplicated or given != open_ids:
            raise ReorderSetMismatch(
                missing=open_ids - given, unexpected=given - open_ids, duplicated=duplicated
            )

        closed = sorted(
            (t for t in turns if not is_open(t)),
            key=lambda t: (t.queue_position is None, t.queue_position or 0, t.created_at, t.id),
        )
        final_order = [by_id[turn_id] for turn_id in ids] + closed
        old_positions = {t.id: t.queue_position for t in final_order}

        # Park every row on a negative slot first so the unique index never
        # sees two turns on the same position mid-update.
        for index, turn in enumerate(final_order, start=1):
            turn.queue_position = -index
        session.flush()

        now = utcnow()
        for index, turn in enumerate(final_order, start=1):
            turn.queue_position = index
            if old_positions[turn.id] != index:
                turn.updated_by = actor_id
                turn.updated_at = now
                _record_event(
                    session,
                    turn,
                    actor_id,
                    "reordered",
                    old_position=old_positions[turn.id],
                    new_position=index,
                    at=now,
                )
        _bump(scope, now)
    logger.info("Reordered %d open turns for clinic %s on %s", len(ids), clinic_id, turn_date)


# ===== PROMOTION ENGINE =====

def ensure_single_active(
    session: Session,
    turn: Turn,
    actor_id: str,
    now: Optional[datetime] = None,
    turns: Optional[List[Turn]] = None,
) -> List[Turn]:
    """Clear the active slot for ``turn`` before it is called.

    Any other NEXT turn of the clinic-day goes back to WAITING.  A turn in
    consultation cannot be demoted, so calling while one is in progress
    raises :class:`ActiveSlotOccupied`.
    """
    now = now or utcnow()
    if turns is None:
        turns = _scope_turns(session, turn.clinic_id, turn.turn_date)
    for other in turns:
        if other.id != turn.id and other.status == TurnStatus.IN_CONSULTATION:
            raise ActiveSlotOccupied(TurnStatus(turn.status).value, TurnStatus.NEXT.value, other.id)

    demoted = []
    for other in turns:
        if other.id != turn.id and other.status == TurnStatus.NEXT:
            previous = apply_transition(other, TurnStatus.WAITING, actor_id, now)
            _record_event(session, other, actor_id, "demoted", previous, TurnStatus.WAITING, at=now)
            logger.info("Demoted turn %s to WAITING to call turn %s", other.id, turn.id)
            demoted.append(other)
    return demoted


def _promote_candidate(
    session: Session,
    clinic_id: str,
    turn_date: date,
    actor_id: str,
    now: datetime,
    turns: Optional[List[Turn]] = None,
) -> Optional[Turn]:
    if turns is None:
        turns = _scope_turns(session, clinic_id, turn_date)
    if any(t.status in ACTIVE_STATUSES for t in turns):
        return None
    candidate = pick_next_candidate(turns)
    if candidate is None:
        return None
    previous = apply_transition(candidate, TurnStatus.NEXT, actor_id, now)
    _record_event(session, candidate, actor_id, "promoted", previous, TurnStatus.NEXT, at=now)
    logger.info(
        "Promoted turn %s (position %s, urgent=%s) for clinic %s",
        candidate.id,
        candidate.queue_position,
        candidate.is_urgent,
        clinic_id,
    )
    return candidate


def promote_if_idle(
    session: Session,
    clinic_id: str,
    turn_date: date,
    actor_id: str,
    notifier: Optional[Notifier] = None,
) -> Optional[Turn]:
    """Call the best WAITING turn if nobody is NEXT or in consultation.

    Running it again without any change in between does nothing, because
    the first run leaves the active slot occupied.
    """
    outbox = []
    with _mutation(session):
        get_clinic(session, clinic_id)
        scope = lock_scope(session, clinic_id, turn_date)
        now = utcnow()
        promoted = _promote_candidate(session, clinic_id, turn_date, actor_id, now)
        if promoted is not None:
            outbox.append(_status_notification(session, promoted, TurnStatus.WAITING))
            _bump(scope, now)
    _flush_outbox(notifier, outbox)
    return promoted


# ===== TURN OPERATIONS =====

def create_turn(
    session: Session,
    clinic_id: str,
    patient_id: str,
    created_by: str,
    is_urgent: bool = False,
    scheduled_time: Optional[datetime] = None,
    service_type: Optional[str] = None,
    notifier: Optional[Notifier] = None,
) -> Turn:
    """Admit a patient to today's queue of a clinic.

    A turn whose ``scheduled_time`` is still in the future starts SCHEDULED
    and must be checked in; every other turn starts WAITING, checked in at
    admission.  The position is the day's highest plus one.  The active slot
    is filled afterwards if it was idle.
    A ``scheduled_time`` has to fall on the clinic's current day.
    """
    scheduled_time = as_utc(scheduled_time)
    outbox: List[Optional[TurnNotification]] = []
    with _mutation(session):
        clinic = get_clinic(session, clinic_id)
        patient = get_patient(session, patient_id)
        if patient.clinic_id != clinic.id:
            raise ScopeMismatch(f"Patient {patient_id} is not registered at clinic {clinic_id}")

        turn_date = clinic_today(clinic)
        if scheduled_time is not None and clinic_day_of(clinic, scheduled_time) != turn_date:
            raise ScopeMismatch(
                f"Scheduled time {scheduled_time.isoformat()} is not on today's queue "
                f"({turn_date.isoformat()}) of clinic {clinic_id}"
            )
        scope = lock_scope(session, clinic.id, turn_date)
        now = utcnow()
        status = (
            TurnStatus.SCHEDULED
            if scheduled_time is not None and scheduled_time > now
            else TurnStatus.WAITING
        )
        turn = Turn(
            clinic_id=clinic.id,
            patient_id=patient.id,
            turn_date=turn_date,
            status=status,
            is_urgent=is_urgent,
            queue_position=next_queue_position(session, clinic.id, turn_date),
            scheduled_time=scheduled_time,
            service_type=service_type,
            checked_in_at=now if status == TurnStatus.WAITING else None,
            created_by=created_by,
            created_at=now,
            updated_at=now,
        )
        session.add(turn)
        session.flush()
        _record_event(session, turn, created_by, "created", None, status, None, turn.queue_position, at=now)
        outbox.append(notification_for(turn, patient, NotificationEventType.TURN_REGISTERED))

        promoted = _promote_candidate(session, clinic.id, turn_date, created_by, now)
        if promoted is not None:
            outbox.append(_status_notification(session, promoted, TurnStatus.WAITING))
        _bump(scope, now)

    logger.info(
        "Created turn %s for patient %s at clinic %s (position %s, %s)",
        turn.id,
        patient_id,
        clinic_id,
        turn.queue_position,
        turn.status.value,
    )
    _flush_outbox(notifier, outbox)
    return turn


def transition(
    session: Session,
    turn_id: str,
    target_status: TurnStatus,
    actor_id: str,
    notes: Optional[str] = None,
    clinic_id: Optional[str] = None,
    notifier: Optional[Notifier] = None,
) -> Turn:
    """Move a turn along the state machine.

    Calling a turn (target NEXT) first clears the active slot.  Targets that
    can leave the slot empty (WAITING, DONE, CANCELLED, SKIPPED) are followed
    by a promotion check.  An illegal edge raises before anything changes.
    """
    target = TurnStatus(target_status)
    outbox: List[Optional[TurnNotification]] = []
    with _mutation(session):
        turn = get_turn(session, turn_id)
        if clinic_id is not None and turn.clinic_id != clinic_id:
            raise ScopeMismatch(f"Turn {turn_id} does not belong to clinic {clinic_id}")

        scope = lock_scope(session, turn.clinic_id, turn.turn_date)
        # Reload the whole day under the lock; ``turn`` is refreshed with it.
        turns = _scope_turns(session, turn.clinic_id, turn.turn_date)
        validate_transition(turn.status, target)
        now = utcnow()

        if target == TurnStatus.NEXT:
            ensure_single_active(session, turn, actor_id, now, turns)
        previous = apply_transition(turn, target, actor_id, now, notes)
        _record_event(
            session,
            turn,
            actor_id,
            target.value.lower(),
            previous,
            target,
            notes=notes if target == TurnStatus.DONE else None,
            at=now,
        )
        outbox.append(_status_notification(session, turn, previous))

        if target in VACATING_TARGETS:
            promoted = _promote_candidate(session, turn.clinic_id, turn.turn_date, actor_id, now, turns)
            if promoted is not None:
                outbox.append(_status_notification(session, promoted, TurnStatus.WAITING))
        _bump(scope, now)

    logger.info("Turn %s: %s -> %s by %s", turn.id, previous.value, target.value, actor_id)
    _flush_outbox(notifier, outbox)
    return turn


# ===== READS =====

def get_queue(session: Session, clinic_id: str, turn_date: date) -> List[Turn]:
    """Turns of a clinic-day: urgent first, then position, then arrival."""
    get_clinic(session, clinic_id)
    return order_for_display(_scope_turns(session, clinic_id, turn_date))


def get_stats(session: Session, clinic_id: str, turn_date: date) -> QueueStats:
    get_clinic(session, clinic_id)
    return compute_stats(_scope_turns(session, clinic_id, turn_date))


def get_next_candidate(session: Session, clinic_id: str, turn_date: date) -> Optional[Turn]:
    """Who the promotion engine would call next; changes nothing."""
    get_clinic(session, clinic_id)
    return pick_next_candidate(_scope_turns(session, clinic_id, turn_date))
