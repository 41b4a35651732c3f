import logging
from datetime import datetime
from typing import Callable, List, Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.database import SessionLocal
from app.models.time_clock_session import SessionBreak, TimeClockSession
from app.services import session_clock
from app.services.outbox_processor import enqueue_event
from app.services.session_clock import (
    AlreadyClockedIn,
    BreakInterval,
    Location,
    SessionState,
    SessionStatus,
    to_utc,
)

logger = logging.getLogger(__name__)

EVENT_CLOCK_IN = "clock_in"
EVENT_BREAK_START = "break_start"
EVENT_BREAK_END = "break_end"
EVENT_CLOCK_OUT = "clock_out"

OUTBOX_EVENT_TYPES = {
    EVENT_CLOCK_IN: "TIME_CLOCK_CLOCK_IN",
    EVENT_BREAK_START: "TIME_CLOCK_BREAK_START",
    EVENT_BREAK_END: "TIME_CLOCK_BREAK_END",
    EVENT_CLOCK_OUT: "TIME_CLOCK_CLOCK_OUT",
}


# --- row <-> state ---


def to_state(row: TimeClockSession) -> SessionState:
    return SessionState(
        id=row.id,
        employee_id=int(row.employee_id),
        clock_in_at=to_utc(row.clock_in_at),
        clock_out_at=None if row.clock_out_at is None else to_utc(row.clock_out_at),
        breaks=tuple(
            BreakInterval(
                start_at=to_utc(b.start_at),
                end_at=None if b.end_at is None else to_utc(b.end_at),
            )
            for b in sorted(row.breaks, key=lambda b: b.position)
        ),
        clock_in_location=Location.parse(row.clock_in_location),
        clock_out_location=Location.parse(row.clock_out_location),
        notes=row.notes,
        supervisor_approved=bool(row.supervisor_approved),
    )


def _apply_state(row: TimeClockSession, state: SessionState) -> None:
    row.status = state.status.value
    row.clock_out_at = state.clock_out_at
    row.clock_out_location = None if state.clock_out_location is None else str(state.clock_out_location)
    row.notes = state.notes
    row.supervisor_approved = state.supervisor_approved

    existing = sorted(row.breaks, key=lambda b: b.position)
    for position, interval in enumerate(state.breaks):
        if position < len(existing):
            existing[position].start_at = interval.start_at
            existing[position].end_at = interval.end_at
        else:
            row.breaks.append(
                SessionBreak(position=position, start_at=interval.start_at, end_at=interval.end_at)
            )


# --- queries ---


def _get_open_row(db: Session, organization_id: int, employee_id: int) -> Optional[TimeClockSession]:
    return (
        db.query(TimeClockSession)
        .filter(
            TimeClockSession.organization_id == int(organization_id),
            TimeClockSession.employee_id == int(employee_id),
            TimeClockSession.status != SessionStatus.CLOCKED_OUT.value,
        )
        .first()
    )


def _get_row(db: Session, organization_id: int, session_id: str, *, for_update: bool = False) -> Optional[TimeClockSession]:
    q = db.query(TimeClockSession).filter(
        TimeClockSession.organization_id == int(organization_id),
        TimeClockSession.id == str(session_id),
    )
    if for_update:
        q = q.with_for_update()
    return q.first()


def get_session(organization_id: int, session_id: str, *, db: Optional[Session] = None) -> Optional[TimeClockSession]:
    return _with_db(db, lambda s: _get_row(s, organization_id, session_id), writes=False)


def get_open_session(organization_id: int, employee_id: int, *, db: Optional[Session] = None) -> Optional[TimeClockSession]:
    return _with_db(db, lambda s: _get_open_row(s, organization_id, employee_id), writes=False)


def list_sessions(
    organization_id: int,
    *,
    employee_id: Optional[int] = None,
    status: Optional[str] = None,
    clock_in_from: Optional[datetime] = None,
    clock_in_to: Optional[datetime] = None,
    limit: int = 50,
    offset: int = 0,
    db: Optional[Session] = None,
) -> List[TimeClockSession]:
    def _query(s: Session) -> List[TimeClockSession]:
        q = s.query(TimeClockSession).filter(TimeClockSession.organization_id == int(organization_id))
        if employee_id is not None:
            q = q.filter(TimeClockSession.employee_id == int(employee_id))
        if status is not None:
            q = q.filter(TimeClockSession.status == str(status))
        if clock_in_from is not None:
            q = q.filter(TimeClockSession.clock_in_at >= to_utc(clock_in_from))
        if clock_in_to is not None:
            q = q.filter(TimeClockSession.clock_in_at <= to_utc(clock_in_to))
        return (
            q.order_by(TimeClockSession.clock_in_at.desc(), TimeClockSession.id.asc())
            .offset(int(offset))
            .limit(int(limit))
            .all()
        )

    return _with_db(db, _query, writes=False)


# --- transaction plumbing ---


def _with_db(db: Optional[Session], fn: Callable[[Session], object], *, writes: bool = True):
    """
    If db is provided, this function will NOT commit/close. Caller owns the transaction.
    If db is None, this function manages its own session + commit.
    """
    owns_db = db is None
    if owns_db:
        db = SessionLocal()

    try:
        result = fn(db)
        if owns_db and writes:
            db.commit()
        return result
    except Exception:
        if owns_db:
            db.rollback()
        raise
    finally:
        if owns_db:
            db.close()


def _record_transition(db: Session, organization_id: int, state: SessionState, event: str, now: datetime) -> None:
    ordinal = len(state.breaks)
    key = f"time_clock_session:{state.id}:{event}"
    if event in (EVENT_BREAK_START, EVENT_BREAK_END):
        key = f"{key}:{ordinal}"

    enqueue_event(
        db,
        organization_id=organization_id,
        event_type=OUTBOX_EVENT_TYPES[event],
        idempotency_key=key,
        payload={
            "session_id": state.id,
            "employee_id": state.employee_id,
            "event": event,
            "occurred_at": to_utc(now).isoformat(),
        },
        now=now,
    )
    logger.info(
        "Time clock transition",
        extra={
            "organization_id": int(organization_id),
            "session_id": state.id,
            "employee_id": state.employee_id,
            "event": event,
            "status": state.status.value,
        },
    )


# --- transitions ---


def clock_in(
    organization_id: int,
    employee_id: int,
    now: datetime,
    *,
    location: Optional[str] = None,
    db: Optional[Session] = None,
) -> TimeClockSession:
    def _clock_in(s: Session) -> TimeClockSession:
        existing = _get_open_row(s, organization_id, employee_id)
        state = session_clock.clock_in(
            employee_id,
            now,
            open_session=None if existing is None else to_state(existing),
            location=location,
        )

        row = TimeClockSession(
            id=state.id,
            organization_id=int(organization_id),
            employee_id=state.employee_id,
            status=state.status.value,
            clock_in_at=state.clock_in_at,
            clock_in_location=None if state.clock_in_location is None else str(state.clock_in_location),
            supervisor_approved=False,
        )
        s.add(row)
        try:
            # partial unique index is the real guard against a concurrent clock-in
            s.flush()
        except IntegrityError as exc:
            raise AlreadyClockedIn(f"Employee {employee_id} already has an open session") from exc

        _record_transition(s, organization_id, state, EVENT_CLOCK_IN, now)
        return row

    return _with_db(db, _clock_in)


def _transition(
    organization_id: int,
    session_id: str,
    event: str,
    apply: Callable[[SessionState], SessionState],
    now: datetime,
    db: Optional[Session],
    after: Optional[Callable[[Session, TimeClockSession], None]] = None,
) -> TimeClockSession:
    def _run(s: Session) -> TimeClockSession:
        row = _get_row(s, organization_id, session_id, for_update=True)
        state = apply(None if row is None else to_state(row))

        _apply_state(row, state)
        s.flush()
        _record_transition(s, organization_id, state, event, now)
        if after is not None:
            after(s, row)
        return row

    return _with_db(db, _run)


def start_break(organization_id: int, session_id: str, now: datetime, *, db: Optional[Session] = None) -> TimeClockSession:
    return _transition(
        organization_id,
        session_id,
        EVENT_BREAK_START,
        lambda state: session_clock.start_break(state, now),
        now,
        db,
    )


def end_break(organization_id: int, session_id: str, now: datetime, *, db: Optional[Session] = None) -> TimeClockSession:
    return _transition(
        organization_id,
        session_id,
        EVENT_BREAK_END,
        lambda state: session_clock.end_break(state, now),
        now,
        db,
    )


def clock_out(
    organization_id: int,
    session_id: str,
    now: datetime,
    *,
    notes: Optional[str] = None,
    location: Optional[str] = None,
    db: Optional[Session] = None,
) -> TimeClockSession:
    from app.services.task_triggers import cancel_pending_for_session

    def _cancel(s: Session, row: TimeClockSession) -> None:
        cancel_pending_for_session(s, organization_id=organization_id, session_id=row.id)

    return _transition(
        organization_id,
        session_id,
        EVENT_CLOCK_OUT,
        lambda state: session_clock.clock_out(state, now, notes=notes, location=location),
        now,
        db,
        after=_cancel,
    )


def set_supervisor_approval(
    organization_id: int,
    session_id: str,
    approved: bool,
    reviewer_id: str,
    now: datetime,
    *,
    db: Optional[Session] = None,
) -> TimeClockSession:
    def _approve(s: Session) -> TimeClockSession:
        row = _get_row(s, organization_id, session_id, for_update=True)
        if row is None:
            raise session_clock.SessionNotOpen("Session not found")

        state = session_clock.set_approval(to_state(row), approved)
        row.supervisor_approved = state.supervisor_approved
        row.approved_by = str(reviewer_id)
        row.approved_at = to_utc(now)
        s.flush()

        logger.info(
            "Time clock session approval updated",
            extra={
                "organization_id": int(organization_id),
                "session_id": row.id,
                "approved": bool(approved),
                "reviewer_id": str(reviewer_id),
            },
        )
        return row

    return _with_db(db, _approve)
