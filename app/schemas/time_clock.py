from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, Field

from app.models.time_clock_session import TimeClockSession
from app.services import session_clock
from app.services.time_engine import to_state


class ClockInRequest(BaseModel):
    employee_id: int
    location: Optional[str] = Field(default=None, description='Best-effort "latitude,longitude".')
    at: Optional[datetime] = Field(
        default=None,
        description="If omitted, server uses current UTC time.",
    )


class TransitionRequest(BaseModel):
    at: Optional[datetime] = Field(
        default=None,
        description="If omitted, server uses current UTC time.",
    )


class ClockOutRequest(TransitionRequest):
    notes: Optional[str] = None
    location: Optional[str] = Field(default=None, description='Best-effort "latitude,longitude".')


class ApprovalRequest(BaseModel):
    approved: bool = True


class BreakIntervalResponse(BaseModel):
    start_at: datetime
    end_at: Optional[datetime]


class TimeClockSessionResponse(BaseModel):
    id: str
    organization_id: int
    employee_id: int
    status: str
    clock_in_at: datetime
    clock_out_at: Optional[datetime]
    breaks: List[BreakIntervalResponse]
    clock_in_location: Optional[str]
    clock_out_location: Optional[str]
    notes: Optional[str]
    supervisor_approved: bool
    approved_by: Optional[str]
    approved_at: Optional[datetime]

    elapsed_seconds: int
    break_seconds: int
    worked_seconds: int


def session_response(row: TimeClockSession, now: datetime) -> TimeClockSessionResponse:
    state = to_state(row)
    return TimeClockSessionResponse(
        id=state.id,
        organization_id=row.organization_id,
        employee_id=state.employee_id,
        status=state.status.value,
        clock_in_at=state.clock_in_at,
        clock_out_at=state.clock_out_at,
        breaks=[BreakIntervalResponse(start_at=b.start_at, end_at=b.end_at) for b in state.breaks],
        clock_in_location=None if state.clock_in_location is None else str(state.clock_in_location),
        clock_out_location=None if state.clock_out_location is None else str(state.clock_out_location),
        notes=state.notes,
        supervisor_approved=state.supervisor_approved,
        approved_by=row.approved_by,
        approved_at=None if row.approved_at is None else session_clock.to_utc(row.approved_at),
        elapsed_seconds=int(session_clock.elapsed_since_clock_in(state, now).total_seconds()),
        break_seconds=int(session_clock.total_break_duration(state, now).total_seconds()),
        worked_seconds=int(session_clock.worked_duration(state, now).total_seconds()),
    )
