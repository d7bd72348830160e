"""Database models for the clinic turn queue.

We use SQLModel to define the schema.  Clinics and patients are the
reference data a turn points at.  A turn is one patient's place in a
clinic-day queue and carries its own lifecycle timestamps.  Queue scopes
are the per clinic-day rows that mutations lock, and turn events are
stored to provide an audit trail.

All timestamps are timezone aware UTC, in Python and in the database.
"""

from __future__ import annotations

from datetime import date, datetime, timezone
from enum import Enum
from typing import Optional
from uuid import uuid4

from sqlalchemy import DateTime, UniqueConstraint
from sqlalchemy.types import TypeDecorator
from sqlmodel import Field, SQLModel


def utcnow() -> datetime:
    """Return a timezone aware UTC timestamp."""
    return datetime.now(timezone.utc)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Convert to aware UTC; naive values are taken to be UTC already."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class UTCDateTime(TypeDecorator):
    """``DateTime(timezone=True)`` that always hands back aware UTC.

    SQLite keeps no offset, so values are written as UTC and re-tagged as
    UTC when read.
    """

    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value, dialect):
        return as_utc(value)

    def process_result_value(self, value, dialect):
        return as_utc(value)


def new_id() -> str:
    return uuid4().hex


def timestamp_field(**kwargs):
    """Field for a timestamp column stored as :class:`UTCDateTime`."""
    return Field(sa_type=UTCDateTime, **kwargs)


class TurnStatus(str, Enum):
    """Possible statuses for a turn."""

    SCHEDULED = "SCHEDULED"
    WAITING = "WAITING"
    NEXT = "NEXT"
    IN_CONSULTATION = "IN_CONSULTATION"
    DONE = "DONE"
    CANCELLED = "CANCELLED"
    SKIPPED = "SKIPPED"


class NotificationChannel(str, Enum):
    WHATSAPP = "WHATSAPP"
    SMS = "SMS"


class Gender(str, Enum):
    MALE = "MALE"
    FEMALE = "FEMALE"
    OTHER = "OTHER"


class NotificationEventType(str, Enum):
    TURN_REGISTERED = "TURN_REGISTERED"
    TURN_CHECKED_IN = "TURN_CHECKED_IN"
    TURN_NEXT = "TURN_NEXT"
    TURN_IN_CONSULTATION = "TURN_IN_CONSULTATION"
    TURN_DONE = "TURN_DONE"
    TURN_CANCELLED = "TURN_CANCELLED"
    TURN_SKIPPED = "TURN_SKIPPED"


class Clinic(SQLModel, table=True):
    id: str = Field(default_factory=new_id, primary_key=True)
    name: str
    timezone: str = Field(default="UTC")
    is_active: bool = Field(default=True)
    created_at: datetime = timestamp_field(default_factory=utcnow)


class Patient(SQLModel, table=True):
    id: str = Field(default_factory=new_id, primary_key=True)
    clinic_id: str = Field(foreign_key="clinic.id", index=True)
    name: str
    phone_number: str = Field(index=True)
    email: Optional[str] = None
    date_of_birth: Optional[date] = None
    gender: Optional[Gender] = None
    address: Optional[str] = None
    notes: Optional[str] = None
    channel: NotificationChannel = Field(default=NotificationChannel.WHATSAPP)
    is_active: bool = Field(default=True)
    created_at: datetime = timestamp_field(default_factory=utcnow)
    updated_at: datetime = timestamp_field(default_factory=utcnow)


class Turn(SQLModel, table=True):
    __table_args__ = (
        UniqueConstraint("clinic_id", "turn_date", "queue_position", name="uq_turn_scope_position"),
    )

    id: str = Field(default_factory=new_id, primary_key=True)
    clinic_id: str = Field(foreign_key="clinic.id", index=True)
    patient_id: str = Field(foreign_key="patient.id", index=True)
    turn_date: date = Field(index=True)
    status: TurnStatus = Field(default=TurnStatus.WAITING, index=True)
    is_urgent: bool = Field(default=False)
    queue_position: Optional[int] = Field(default=None)
    scheduled_time: Optional[datetime] = timestamp_field(default=None)
    service_type: Optional[str] = None
    service_notes: Optional[str] = None
    checked_in_at: Optional[datetime] = timestamp_field(default=None)
    called_at: Optional[datetime] = timestamp_field(default=None)
    consultation_start_at: Optional[datetime] = timestamp_field(default=None)
    consultation_end_at: Optional[datetime] = timestamp_field(default=None)
    completed_at: Optional[datetime] = timestamp_field(default=None)
    created_by: str
    updated_by: Optional[str] = None
    created_at: datetime = timestamp_field(default_factory=utcnow)
    updated_at: datetime = timestamp_field(default_factory=utcnow)


class QueueScope(SQLModel, table=True):
    """Lock row for one clinic-day; ``revision`` bumps on every mutation."""

    clinic_id: str = Field(foreign_key="clinic.id", primary_key=True)
    turn_date: date = Field(primary_key=True)
    revision: int = Field(default=0)
    updated_at: datetime = timestamp_field(default_factory=utcnow)


class TurnEvent(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    turn_id: str = Field(foreign_key="turn.id", index=True)
    clinic_id: str = Field(index=True)
    actor_id: str
    action: str
    old_status: Optional[TurnStatus] = None
    new_status: Optional[TurnStatus] = None
    old_position: Optional[int] = None
    new_position: Optional[int] = None
    notes: Optional[str] = None
    at: datetime = timestamp_field(default_factory=utcnow, index=True)
