from __future__ import annotations

from datetime import datetime, timezone
from typing import Callable, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from sqlalchemy.orm import Session

from app.core.authorization import Role, require_role
from app.database import SessionLocal
from app.deps.auth import require_auth
from app.models.time_clock_session import TimeClockSession
from app.schemas.time_clock import (
    ApprovalRequest,
    ClockInRequest,
    ClockOutRequest,
    TimeClockSessionResponse,
    TransitionRequest,
    session_response,
)
from app.services import time_engine
from app.services.session_clock import SessionStatus, TimeClockError

router = APIRouter(
    prefix="/api/time-clock",
    tags=["Time Clock"],
)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _time_clock_http_error(exc: TimeClockError) -> HTTPException:
    return HTTPException(status_code=409, detail={"code": exc.code, "message": str(exc)})


def _run_transition(
    fn: Callable[[Session], TimeClockSession],
    now: datetime,
) -> TimeClockSessionResponse:
    db = SessionLocal()
    try:
        row = fn(db)
        db.commit()
        return session_response(row, now)
    except TimeClockError as exc:
        db.rollback()
        raise _time_clock_http_error(exc) from exc
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()


def _require_session(db: Session, organization_id: int, session_id: str) -> TimeClockSession:
    row = time_engine.get_session(organization_id, session_id, db=db)
    if row is None:
        raise HTTPException(status_code=404, detail="Time clock session not found")
    return row


@router.post("/clock-in", response_model=TimeClockSessionResponse, status_code=201)
def clock_in_endpoint(
    payload: ClockInRequest,
    request: Request,
    _auth: tuple[str, int] = Depends(require_auth),
):
    organization_id = int(request.state.organization_id)
    now = payload.at or _utcnow()

    return _run_transition(
        lambda db: time_engine.clock_in(
            organization_id,
            int(payload.employee_id),
            now,
            location=payload.location,
            db=db,
        ),
        now,
    )


@router.post("/sessions/{session_id}/start-break", response_model=TimeClockSessionResponse)
def start_break_endpoint(
    session_id: str,
    request: Request,
    payload: Optional[TransitionRequest] = None,
    _auth: tuple[str, int] = Depends(require_auth),
):
    organization_id = int(request.state.organization_id)
    now = (payload.at if payload else None) or _utcnow()

    return _run_transition(
        lambda db: time_engine.start_break(organization_id, session_id, now, db=db),
        now,
    )


@router.post("/sessions/{session_id}/end-break", response_model=TimeClockSessionResponse)
def end_break_endpoint(
    session_id: str,
    request: Request,
    payload: Optional[TransitionRequest] = None,
    _auth: tuple[str, int] = Depends(require_auth),
):
    organization_id = int(request.state.organization_id)
    now = (payload.at if payload else None) or _utcnow()

    return _run_transition(
        lambda db: time_engine.end_break(organization_id, session_id, now, db=db),
        now,
    )


@router.post("/sessions/{session_id}/clock-out", response_model=TimeClockSessionResponse)
def clock_out_endpoint(
    session_id: str,
    request: Request,
    payload: Optional[ClockOutRequest] = None,
    _auth: tuple[str, int] = Depends(require_auth),
):
    organization_id = int(request.state.organization_id)
    payload = payload or ClockOutRequest()
    now = payload.at or _utcnow()

    return _run_transition(
        lambda db: time_engine.clock_out(
            organization_id,
            session_id,
            now,
            notes=payload.notes,
            location=payload.location,
            db=db,
        ),
        now,
    )


@router.put("/sessions/{session_id}/approval", response_model=TimeClockSessionResponse)
def approval_endpoint(
    session_id: str,
    payload: ApprovalRequest,
    request: Request,
    _role: Role = Depends(require_role(Role.MANAGER)),
):
    organization_id = int(request.state.organization_id)
    now = _utcnow()

    db = SessionLocal()
    try:
        _require_session(db, organization_id, session_id)
        row = time_engine.set_supervisor_approval(
            organization_id,
            session_id,
            payload.approved,
            reviewer_id=str(request.state.user_id),
            now=now,
            db=db,
        )
        db.commit()
        return session_response(row, now)
    except TimeClockError as exc:
        db.rollback()
        raise _time_clock_http_error(exc) from exc
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()


@router.get("/current", response_model=TimeClockSessionResponse)
def get_current_session(
    employee_id: int,
    request: Request,
    _auth: tuple[str, int] = Depends(require_auth),
):
    organization_id = int(request.state.organization_id)
    row = time_engine.get_open_session(organization_id, employee_id)
    if row is None:
        raise HTTPException(status_code=404, detail="No open time clock session")
    return session_response(row, _utcnow())


@router.get("/sessions/{session_id}", response_model=TimeClockSessionResponse)
def get_session_endpoint(
    session_id: str,
    request: Request,
    _auth: tuple[str, int] = Depends(require_auth),
):
    db = SessionLocal()
    try:
        row = _require_session(db, int(request.state.organization_id), session_id)
        return session_response(row, _utcnow())
    finally:
        db.close()


@router.get("/entries", response_model=list[TimeClockSessionResponse])
def list_entries(
    request: Request,
    _auth: tuple[str, int] = Depends(require_auth),
    employee_id: Optional[int] = None,
    status: Optional[SessionStatus] = None,
    clock_in_from: Optional[datetime] = None,
    clock_in_to: Optional[datetime] = None,
    limit: int = Query(default=50, ge=1, le=100),
    offset: int = Query(default=0, ge=0),
):
    rows = time_engine.list_sessions(
        int(request.state.organization_id),
        employee_id=employee_id,
        status=None if status is None else status.value,
        clock_in_from=clock_in_from,
        clock_in_to=clock_in_to,
        limit=limit,
        offset=offset,
    )
    now = _utcnow()
    return [session_response(r, now) for r in rows]
