"""Shared fixtures: an in-memory database, a clinic, patients and a notifier spy."""

from datetime import timedelta

import pytest
from sqlmodel import Session

import services
from database import create_db_engine, init_db
from models import utcnow
from notifications import Notifier


class RecordingNotifier(Notifier):
    """Collects notifications instead of sending them."""

    def __init__(self):
        self.sent = []

    def notify(self, notification):
        self.sent.append(notification)

    @property
    def event_types(self):
        return [n.event_type.value for n in self.sent]


@pytest.fixture
def engine():
    engine = create_db_engine("sqlite://")
    init_db(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def file_engine(tmp_path):
    """File-backed engine so several threads get their own connections."""
    engine = create_db_engine(f"sqlite:///{tmp_path / 'queue.db'}")
    init_db(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session(engine):
    with Session(engine, expire_on_commit=False) as session:
        yield session


@pytest.fixture
def clinic(session):
    return services.create_clinic(session, "RimMed Clinic")


@pytest.fixture
def other_clinic(session):
    return services.create_clinic(session, "Second Clinic")


@pytest.fixture
def make_patient(session, clinic):
    counter = {"n": 0}

    def _make(name=None, clinic_id=None):
        counter["n"] += 1
        n = counter["n"]
        return services.create_patient(
            session, clinic_id or clinic.id, name or f"Patient {n}", f"+22200000{n:03d}"
        )

    return _make


@pytest.fixture
def admit(session, clinic, make_patient):
    """Create a turn for a fresh patient at ``clinic``."""

    def _admit(is_urgent=False, notifier=None, **kwargs):
        patient = make_patient()
        return services.create_turn(
            session, clinic.id, patient.id, "desk-1", is_urgent=is_urgent, notifier=notifier, **kwargs
        )

    return _admit


@pytest.fixture
def notifier():
    return RecordingNotifier()


def _day_bounds():
    now = utcnow()
    midnight = now.replace(hour=0, minute=0, second=0, microsecond=0)
    return now, midnight, midnight + timedelta(days=1)


@pytest.fixture
def later_today():
    """A UTC moment after now that is still on today's date."""
    now, _, tomorrow = _day_bounds()
    return now + (tomorrow - now) / 2


@pytest.fixture
def earlier_today():
    now, midnight, _ = _day_bounds()
    return midnight + (now - midnight) / 2
