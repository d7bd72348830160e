"""FastAPI application for the clinic turn queue.

Front-desk terminals admit patients, move turns through their lifecycle and
poll the queue board.  Configuration comes from environment variables; the
database is reached through SQLModel (SQLite locally, PostgreSQL when
``DATABASE_URL`` points at one) and Redis is optional, used only to hand
notifications to ``notification_worker.py``.

Every mutating endpoint takes the acting staff member's id in the request
body.  Authentication is expected to happen in front of this service.
"""

from __future__ import annotations

import logging
import os
import sys
from datetime import date
from typing import Any, Dict, List, Optional

from fastapi import Depends, FastAPI, HTTPException, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlmodel import Session, col, select

from database import get_engine, get_session
from errors import (
    ActiveSlotOccupied,
    ConcurrencyConflict,
    InvalidTransition,
    NotFound,
    QueueError,
    ReorderSetMismatch,
    ScopeMismatch,
)
from models import Patient, Turn, TurnEvent
from notifications import Notifier, describe_backend, get_notifier
from schemas import (
    ActionRequest,
    ClinicCreate,
    PatientCreate,
    PatientUpdate,
    PromoteRequest,
    ReorderRequest,
    TransitionRequest,
    TurnCreate,
)
import services

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
PORT = int(os.getenv("PORT", 8000))

logging.basicConfig(
    level=LOG_LEVEL,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    handlers=[logging.StreamHandler(sys.stdout)],
)
logger = logging.getLogger(__name__)

app = FastAPI(
    title="Clinic Turn Queue",
    description="Same-day patient queue with urgent priority and automatic promotion",
    version="1.0.0",
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

ERROR_STATUS_CODES = (
    (NotFound, 404),
    (ActiveSlotOccupied, 409),
    (ConcurrencyConflict, 409),
    (InvalidTransition, 400),
    (ScopeMismatch, 400),
    (ReorderSetMismatch, 400),
)


@app.on_event("startup")
def on_startup() -> None:
    # Create tables up front so the first request does not pay for it.
    engine = get_engine()
    logger.info("Clinic Turn Queue started (database: %s)", engine.url.get_backend_name())


@app.exception_handler(QueueError)
async def queue_error_handler(request: Request, exc: QueueError) -> JSONResponse:
    status_code = next((code for kind, code in ERROR_STATUS_CODES if isinstance(exc, kind)), 400)
    logger.info("%s %s -> %s: %s", request.method, request.url.path, type(exc).__name__, exc)
    return JSONResponse(
        status_code=status_code,
        content={
            "error": type(exc).__name__,
            "message": str(exc),
            "retryable": exc.transient,
        },
    )


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Log anything the queue layer did not classify."""
    logger.error("Unhandled error on %s %s", request.method, request.url, exc_info=exc)
    return JSONResponse(
        status_code=500,
        content={"error": "Internal server error", "message": str(exc), "type": type(exc).__name__},
    )


def turn_to_dict(turn: Turn, patient: Optional[Patient] = None) -> Dict[str, Any]:
    data = turn.model_dump(mode="json")
    if patient is not None:
        data["patient"] = {
            "id": patient.id,
            "name": patient.name,
            "phone_number": patient.phone_number,
        }
    return data


def patients_by_id(session: Session, turns: List[Turn]) -> Dict[str, Patient]:
    ids = {t.patient_id for t in turns}
    if not ids:
        return {}
    rows = session.exec(select(Patient).where(col(Patient.id).in_(ids))).all()
    return {p.id: p for p in rows}


def resolve_day(session: Session, clinic_id: str, day: Optional[date]) -> date:
    if day is not None:
        return day
    return services.clinic_today(services.get_clinic(session, clinic_id))


@app.get("/")
def root() -> Dict[str, Any]:
    return {
        "service": "Clinic Turn Queue",
        "status": "running",
        "endpoints": {
            "clinics": "/clinics",
            "queue": "/clinics/{clinic_id}/queue",
            "stats": "/clinics/{clinic_id}/stats",
            "next": "/clinics/{clinic_id}/next",
            "events": "/clinics/{clinic_id}/events",
        },
    }


@app.get("/health")
def health(session: Session = Depends(get_session)) -> Dict[str, Any]:
    try:
        session.exec(select(Turn.id).limit(1)).all()
    except Exception as exc:
        logger.error("Health check failed: %s", exc)
        raise HTTPException(status_code=503, detail=f"Service unhealthy: {exc}")
    return {"status": "healthy", "database": "connected", "notifications": describe_backend()}


# ===== CLINICS AND PATIENTS =====

@app.post("/clinics", status_code=201)
def create_clinic(body: ClinicCreate, session: Session = Depends(get_session)) -> Dict[str, Any]:
    try:
        clinic = services.create_clinic(session, body.name, body.timezone)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc))
    return clinic.model_dump(mode="json")


@app.get("/clinics")
def list_clinics(session: Session = Depends(get_session)) -> Dict[str, Any]:
    return {"clinics": [c.model_dump(mode="json") for c in services.list_clinics(session)]}


@app.post("/clinics/{clinic_id}/patients", status_code=201)
def create_patient(
    clinic_id: str, body: PatientCreate, session: Session = Depends(get_session)
) -> Dict[str, Any]:
    patient = services.create_patient(session, clinic_id, **body.model_dump())
    return patient.model_dump(mode="json")


@app.get("/clinics/{clinic_id}/patients")
def list_patients(
    clinic_id: str, search: Optional[str] = None, session: Session = Depends(get_session)
) -> Dict[str, Any]:
    patients = services.list_patients(session, clinic_id, search)
    return {"patients": [p.model_dump(mode="json") for p in patients]}


@app.patch("/clinics/{clinic_id}/patients/{patient_id}")
def update_patient(
    clinic_id: str, patient_id: str, body: PatientUpdate, session: Session = Depends(get_session)
) -> Dict[str, Any]:
    changes = body.model_dump(exclude_unset=True)
    for required in ("name", "phone_number", "channel", "is_active"):
        if required in changes and changes[required] is None:
            raise HTTPException(status_code=400, detail=f"'{required}' cannot be null")
    patient = services.update_patient(session, patient_id, clinic_id=clinic_id, **changes)
    return patient.model_dump(mode="json")


@app.get("/clinics/{clinic_id}/events")
def clinic_events(
    clinic_id: str,
    limit: int = Query(default=100, ge=1, le=1000),
    session: Session = Depends(get_session),
) -> Dict[str, Any]:
    """Audit trail of a clinic, newest first."""
    events = services.get_audit_log(session, clinic_id, limit)
    return {"clinic_id": clinic_id, "events": [e.model_dump(mode="json") for e in events]}


# ===== QUEUE =====

@app.post("/clinics/{clinic_id}/turns", status_code=201)
def create_turn(
    clinic_id: str,
    body: TurnCreate,
    session: Session = Depends(get_session),
    notifier: Notifier = Depends(get_notifier),
) -> Dict[str, Any]:
    turn = services.create_turn(
        session,
        clinic_id,
        body.patient_id,
        body.created_by,
        is_urgent=body.is_urgent,
        scheduled_time=body.scheduled_time,
        service_type=body.service_type,
        notifier=notifier,
    )
    return turn_to_dict(turn, session.get(Patient, turn.patient_id))


@app.get("/clinics/{clinic_id}/queue")
def get_queue(
    clinic_id: str,
    day: Optional[date] = Query(default=None, alias="date"),
    session: Session = Depends(get_session),
) -> Dict[str, Any]:
    """Board for one clinic-day.

    Clients poll this endpoint; ``revision`` changes whenever the day is
    mutated, so a poller can skip re-rendering an unchanged board.
    """
    clinic = services.get_clinic(session, clinic_id)
    turn_date = resolve_day(session, clinic_id, day)
    turns = services.get_queue(session, clinic_id, turn_date)
    patients = patients_by_id(session, turns)
    return {
        "clinic": {"id": clinic.id, "name": clinic.name, "timezone": clinic.timezone},
        "date": turn_date.isoformat(),
        "revision": services.get_scope_revision(session, clinic_id, turn_date),
        "stats": services.get_stats(session, clinic_id, turn_date).as_dict(),
        "turns": [turn_to_dict(t, patients.get(t.patient_id)) for t in turns],
    }


@app.get("/clinics/{clinic_id}/stats")
def get_stats(
    clinic_id: str,
    day: Optional[date] = Query(default=None, alias="date"),
    session: Session = Depends(get_session),
) -> Dict[str, Any]:
    turn_date = resolve_day(session, clinic_id, day)
    return {
        "date": turn_date.isoformat(),
        "stats": services.get_stats(session, clinic_id, turn_date).as_dict(),
    }


@app.get("/clinics/{clinic_id}/next")
def get_next(
    clinic_id: str,
    day: Optional[date] = Query(default=None, alias="date"),
    session: Session = Depends(get_session),
) -> Dict[str, Any]:
    turn_date = resolve_day(session, clinic_id, day)
    candidate = services.get_next_candidate(session, clinic_id, turn_date)
    if candidate is None:
        return {"date": turn_date.isoformat(), "candidate": None}
    return {
        "date": turn_date.isoformat(),
        "candidate": turn_to_dict(candidate, session.get(Patient, candidate.patient_id)),
    }


@app.post("/clinics/{clinic_id}/turns/{turn_id}/status")
def change_status(
    clinic_id: str,
    turn_id: str,
    body: TransitionRequest,
    session: Session = Depends(get_session),
    notifier: Notifier = Depends(get_notifier),
) -> Dict[str, Any]:
    turn = services.transition(
        session,
        turn_id,
        body.status,
        body.actor_id,
        notes=body.notes,
        clinic_id=clinic_id,
        notifier=notifier,
    )
    return turn_to_dict(turn)


@app.post("/clinics/{clinic_id}/turns/{turn_id}/action")
def turn_action(
    clinic_id: str,
    turn_id: str,
    body: ActionRequest,
    session: Session = Depends(get_session),
    notifier: Notifier = Depends(get_notifier),
) -> Dict[str, Any]:
    """Named front-desk actions (check_in, call, start, done, skip, cancel, return)."""
    turn = services.transition(
        session,
        turn_id,
        body.target_status,
        body.actor_id,
        notes=body.notes,
        clinic_id=clinic_id,
        notifier=notifier,
    )
    return turn_to_dict(turn)


@app.post("/clinics/{clinic_id}/promote")
def promote(
    clinic_id: str,
    body: PromoteRequest,
    session: Session = Depends(get_session),
    notifier: Notifier = Depends(get_notifier),
) -> Dict[str, Any]:
    turn_date = resolve_day(session, clinic_id, body.turn_date)
    promoted = services.promote_if_idle(session, clinic_id, turn_date, body.actor_id, notifier=notifier)
    return {"date": turn_date.isoformat(), "promoted": turn_to_dict(promoted) if promoted else None}


@app.post("/clinics/{clinic_id}/reorder")
def reorder(clinic_id: str, body: ReorderRequest, session: Session = Depends(get_session)) -> Dict[str, Any]:
    services.reorder(session, clinic_id, body.turn_date, body.turn_ids, body.actor_id)
    turns = services.get_queue(session, clinic_id, body.turn_date)
    return {
        "date": body.turn_date.isoformat(),
        "turns": [turn_to_dict(t) for t in turns],
    }


@app.get("/clinics/{clinic_id}/turns/{turn_id}/events")
def turn_events(clinic_id: str, turn_id: str, session: Session = Depends(get_session)) -> Dict[str, Any]:
    turn = services.get_turn(session, turn_id)
    if turn.clinic_id != clinic_id:
        raise ScopeMismatch(f"Turn {turn_id} does not belong to clinic {clinic_id}")
    events: List[TurnEvent] = services.get_turn_events(session, turn_id)
    return {"turn_id": turn_id, "events": [e.model_dump(mode="json") for e in events]}


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host="0.0.0.0", port=PORT)
