"""
Time-clock session state machine.

Pure functions over immutable session values. Every transition and derived
query takes the current instant explicitly; nothing here reads the wall clock
or touches the database (see time_engine for persistence).
"""
from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Dict, Optional, Tuple
from uuid import uuid4

ZERO = timedelta(0)


class SessionStatus(str, Enum):
    CLOCKED_IN = "clocked_in"
    ON_BREAK = "on_break"
    CLOCKED_OUT = "clocked_out"


class TimeClockError(ValueError):
    code = "TimeClockError"


class AlreadyClockedIn(TimeClockError):
    code = "AlreadyClockedIn"


class SessionNotOpen(TimeClockError):
    code = "SessionNotOpen"


class BreakAlreadyActive(TimeClockError):
    code = "BreakAlreadyActive"


class NoActiveBreak(TimeClockError):
    code = "NoActiveBreak"


class InvalidTransitionTime(TimeClockError):
    code = "InvalidTransitionTime"


class ApprovalNotAllowed(TimeClockError):
    code = "ApprovalNotAllowed"


def to_utc(dt: datetime) -> datetime:
    """Naive datetimes are treated as UTC."""
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def _opt_utc(dt: Optional[datetime]) -> Optional[datetime]:
    return None if dt is None else to_utc(dt)


def _clamp(delta: timedelta) -> timedelta:
    return delta if delta > ZERO else ZERO


@dataclass(frozen=True)
class Location:
    latitude: float
    longitude: float

    @classmethod
    def parse(cls, raw: Any) -> Optional["Location"]:
        """Best-effort "lat,lng" parsing; anything unusable is treated as absent."""
        if raw is None:
            return None
        if isinstance(raw, Location):
            return raw
        if isinstance(raw, dict):
            lat, lng = raw.get("latitude", raw.get("lat")), raw.get("longitude", raw.get("lng"))
        else:
            parts = str(raw).split(",")
            if len(parts) != 2:
                return None
            lat, lng = parts
        try:
            lat_f = float(str(lat).strip())
            lng_f = float(str(lng).strip())
        except (TypeError, ValueError):
            return None
        if not (-90.0 <= lat_f <= 90.0 and -180.0 <= lng_f <= 180.0):
            return None
        return cls(latitude=lat_f, longitude=lng_f)

    def __str__(self) -> str:
        return f"{self.latitude},{self.longitude}"


@dataclass(frozen=True)
class BreakInterval:
    start_at: datetime
    end_at: Optional[datetime] = None

    @property
    def is_open(self) -> bool:
        return self.end_at is None

    def duration(self, now: datetime) -> timedelta:
        end = self.end_at if self.end_at is not None else now
        return _clamp(to_utc(end) - to_utc(self.start_at))


@dataclass(frozen=True)
class SessionState:
    id: str
    employee_id: int
    clock_in_at: datetime
    clock_out_at: Optional[datetime] = None
    breaks: Tuple[BreakInterval, ...] = field(default_factory=tuple)
    clock_in_location: Optional[Location] = None
    clock_out_location: Optional[Location] = None
    notes: Optional[str] = None
    supervisor_approved: bool = False

    @property
    def status(self) -> SessionStatus:
        return current_status(self)

    @property
    def is_open(self) -> bool:
        return self.clock_out_at is None

    @property
    def open_break(self) -> Optional[BreakInterval]:
        if self.breaks and self.breaks[-1].is_open:
            return self.breaks[-1]
        return None

    def latest_instant(self) -> datetime:
        latest = to_utc(self.clock_in_at)
        for b in self.breaks:
            latest = max(latest, to_utc(b.start_at))
            if b.end_at is not None:
                latest = max(latest, to_utc(b.end_at))
        return latest


# --- derived queries ---


def current_status(session: SessionState) -> SessionStatus:
    if session.clock_out_at is not None:
        return SessionStatus.CLOCKED_OUT
    if session.breaks and session.breaks[-1].end_at is None:
        return SessionStatus.ON_BREAK
    return SessionStatus.CLOCKED_IN


def elapsed_since_clock_in(session: SessionState, now: datetime) -> timedelta:
    end = session.clock_out_at if session.clock_out_at is not None else now
    return _clamp(to_utc(end) - to_utc(session.clock_in_at))


def total_break_duration(session: SessionState, now: datetime) -> timedelta:
    total = ZERO
    for b in session.breaks:
        total += b.duration(now)
    return total


def worked_duration(session: SessionState, now: datetime) -> timedelta:
    return _clamp(elapsed_since_clock_in(session, now) - total_break_duration(session, now))


# --- transitions ---


def clock_in(
    employee_id: int,
    now: datetime,
    *,
    open_session: Optional[SessionState] = None,
    location: Any = None,
    session_id: Optional[str] = None,
) -> SessionState:
    if open_session is not None and open_session.is_open:
        raise AlreadyClockedIn(
            f"Employee {employee_id} already has an open session ({open_session.id})"
        )

    return SessionState(
        id=session_id or str(uuid4()),
        employee_id=int(employee_id),
        clock_in_at=to_utc(now),
        clock_in_location=Location.parse(location),
    )


def _require_open(session: Optional[SessionState]) -> SessionState:
    if session is None:
        raise SessionNotOpen("Session not found")
    if not session.is_open:
        raise SessionNotOpen(f"Session {session.id} is already clocked out")
    return session


def start_break(session: Optional[SessionState], now: datetime) -> SessionState:
    session = _require_open(session)
    if session.open_break is not None:
        raise BreakAlreadyActive(f"Session {session.id} is already on break")

    now = to_utc(now)
    if now < session.latest_instant():
        raise InvalidTransitionTime("Break cannot start before the session's latest recorded time")

    return replace(session, breaks=session.breaks + (BreakInterval(start_at=now),))


def end_break(session: Optional[SessionState], now: datetime) -> SessionState:
    session = _require_open(session)
    open_break = session.open_break
    if open_break is None:
        raise NoActiveBreak(f"Session {session.id} has no active break")

    now = to_utc(now)
    if now <= to_utc(open_break.start_at):
        raise InvalidTransitionTime("Break must end after it started")

    closed = replace(open_break, end_at=now)
    return replace(session, breaks=session.breaks[:-1] + (closed,))


def clock_out(
    session: Optional[SessionState],
    now: datetime,
    *,
    notes: Optional[str] = None,
    location: Any = None,
) -> SessionState:
    session = _require_open(session)

    now = to_utc(now)
    if now <= to_utc(session.clock_in_at):
        raise InvalidTransitionTime("Clock-out must be after clock-in")

    breaks = session.breaks
    open_break = session.open_break
    if open_break is not None:
        if now <= to_utc(open_break.start_at):
            raise InvalidTransitionTime("Clock-out must be after the open break started")
        # an open break closes at the clock-out instant
        breaks = breaks[:-1] + (replace(open_break, end_at=now),)
    elif now < session.latest_instant():
        raise InvalidTransitionTime("Clock-out cannot precede the end of a break")

    return replace(
        session,
        clock_out_at=now,
        breaks=breaks,
        notes=notes,
        clock_out_location=Location.parse(location),
    )


def set_approval(session: SessionState, approved: bool) -> SessionState:
    if session.is_open:
        raise ApprovalNotAllowed(f"Session {session.id} must be clocked out before approval")
    return replace(session, supervisor_approved=bool(approved))


# --- serialization ---


def _iso(dt: Optional[datetime]) -> Optional[str]:
    return None if dt is None else to_utc(dt).isoformat()


def _parse_dt(raw: Any) -> Optional[datetime]:
    if raw is None or raw == "":
        return None
    if isinstance(raw, datetime):
        return to_utc(raw)
    return to_utc(datetime.fromisoformat(str(raw).replace("Z", "+00:00")))


def session_to_dict(session: SessionState) -> Dict[str, Any]:
    return {
        "id": session.id,
        "employee_id": session.employee_id,
        "status": current_status(session).value,
        "clock_in_at": _iso(session.clock_in_at),
        "clock_out_at": _iso(session.clock_out_at),
        "breaks": [
            {"start_at": _iso(b.start_at), "end_at": _iso(b.end_at)} for b in session.breaks
        ],
        "clock_in_location": None if session.clock_in_location is None else str(session.clock_in_location),
        "clock_out_location": None if session.clock_out_location is None else str(session.clock_out_location),
        "notes": session.notes,
        "supervisor_approved": session.supervisor_approved,
    }


def session_from_dict(data: Dict[str, Any]) -> SessionState:
    # status is derived from the timestamps, never read back
    return SessionState(
        id=str(data["id"]),
        employee_id=int(data["employee_id"]),
        clock_in_at=_parse_dt(data["clock_in_at"]),
        clock_out_at=_parse_dt(data.get("clock_out_at")),
        breaks=tuple(
            BreakInterval(start_at=_parse_dt(b["start_at"]), end_at=_parse_dt(b.get("end_at")))
            for b in data.get("breaks") or []
        ),
        clock_in_location=Location.parse(data.get("clock_in_location")),
        clock_out_location=Location.parse(data.get("clock_out_location")),
        notes=data.get("notes"),
        supervisor_approved=bool(data.get("supervisor_approved", False)),
    )
