"""Pydantic schemas for requests.

We define only request bodies here.  Responses are returned as plain dicts
built in ``main.py``.  Status and action strings coming from front-desk
clients are matched case-insensitively and turned into ``TurnStatus``
before they reach the service layer.
"""
from datetime import date, datetime
from typing import List, Optional

from pydantic import BaseModel, Field, field_validator

from models import Gender, NotificationChannel, TurnStatus

ACTION_STATUS_MAP = {
    "check_in": TurnStatus.WAITING,
    "call": TurnStatus.NEXT,
    "start": TurnStatus.IN_CONSULTATION,
    "done": TurnStatus.DONE,
    "skip": TurnStatus.SKIPPED,
    "cancel": TurnStatus.CANCELLED,
    "return": TurnStatus.WAITING,
}


def normalize_status(value) -> TurnStatus:
    if isinstance(value, TurnStatus):
        return value
    key = str(value).strip().upper().replace("-", "_").replace(" ", "_")
    try:
        return TurnStatus(key)
    except ValueError:
        raise ValueError(f"Unknown status '{value}'") from None


class ClinicCreate(BaseModel):
    name: str = Field(min_length=1)
    timezone: str = "UTC"


class PatientCreate(BaseModel):
    name: str = Field(min_length=1)
    phone_number: str = Field(min_length=3)
    email: Optional[str] = None
    channel: NotificationChannel = NotificationChannel.WHATSAPP
    date_of_birth: Optional[date] = None
    gender: Optional[Gender] = None
    address: Optional[str] = None
    notes: Optional[str] = None

    @field_validator("channel", "gender", mode="before")
    @classmethod
    def _upper_enum(cls, value):
        return value.upper() if isinstance(value, str) else value


class PatientUpdate(BaseModel):
    """Partial update; only the fields sent are changed."""

    name: Optional[str] = Field(default=None, min_length=1)
    phone_number: Optional[str] = Field(default=None, min_length=3)
    email: Optional[str] = None
    channel: Optional[NotificationChannel] = None
    date_of_birth: Optional[date] = None
    gender: Optional[Gender] = None
    address: Optional[str] = None
    notes: Optional[str] = None
    is_active: Optional[bool] = None

    @field_validator("channel", "gender", mode="before")
    @classmethod
    def _upper_enum(cls, value):
        return value.upper() if isinstance(value, str) else value


class TurnCreate(BaseModel):
    patient_id: str
    created_by: str
    is_urgent: bool = False
    scheduled_time: Optional[datetime] = None
    service_type: Optional[str] = None


class TransitionRequest(BaseModel):
    status: TurnStatus
    actor_id: str
    notes: Optional[str] = None

    @field_validator("status", mode="before")
    @classmethod
    def _normalize(cls, value):
        return normalize_status(value)


class ActionRequest(BaseModel):
    action: str
    actor_id: str
    notes: Optional[str] = None

    @field_validator("action", mode="before")
    @classmethod
    def _known_action(cls, value):
        key = str(value).strip().lower().replace("-", "_").replace(" ", "_")
        if key not in ACTION_STATUS_MAP:
            raise ValueError(f"Invalid action '{value}'")
        return key

    @property
    def target_status(self) -> TurnStatus:
        return ACTION_STATUS_MAP[self.action]


class ReorderRequest(BaseModel):
    turn_date: date
    turn_ids: List[str]
    actor_id: str


class PromoteRequest(BaseModel):
    turn_date: Optional[date] = None
    actor_id: str
