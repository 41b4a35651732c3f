from datetime import datetime
from typing import List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from app.services.task_triggers import WEEKDAYS, parse_hhmm, validate_message_template

TriggerEvent = Literal["clock_in", "clock_out", "break_start", "break_end", "manual"]

_FULL_DAY_NAMES = ("monday", "tuesday", "wednesday", "thursday", "friday", "saturday", "sunday")
DAY_ALIASES = {**{d: d for d in WEEKDAYS}, **dict(zip(_FULL_DAY_NAMES, WEEKDAYS))}


class TaskTriggerConfig(BaseModel):
    """Trigger configuration; combinations that cannot be presented are rejected."""

    name: str = Field(min_length=1, max_length=200)
    on_event: TriggerEvent

    days_of_week: Optional[List[str]] = None
    window_start: Optional[str] = None
    window_end: Optional[str] = None

    assigned_user_id: Optional[int] = None
    max_fires: Optional[int] = Field(default=None, ge=1)
    delay_minutes: int = Field(default=0, ge=0, le=7 * 24 * 60)
    cancel_on_clock_out: bool = False
    is_active: bool = True

    message: Optional[str] = Field(default=None, max_length=2000)
    show_alert: bool = True
    play_sound: bool = False
    sound_type: Optional[str] = None
    has_text_field: bool = False
    text_field_label: Optional[str] = None
    text_field_required: bool = False

    @field_validator("days_of_week")
    @classmethod
    def _validate_days(cls, v: Optional[List[str]]) -> Optional[List[str]]:
        if v is None:
            return None
        if not v:
            raise ValueError("days_of_week must not be empty; omit it to allow every day")
        names = [str(d).strip().lower() for d in v]
        unknown = [d for d in names if d not in DAY_ALIASES]
        if unknown:
            raise ValueError(f"Unknown weekday(s): {unknown}")
        days = {DAY_ALIASES[d] for d in names}
        return [d for d in WEEKDAYS if d in days]

    @field_validator("message")
    @classmethod
    def _validate_message(cls, v: Optional[str]) -> Optional[str]:
        if v is None:
            return None
        return validate_message_template(v)

    @field_validator("window_start", "window_end")
    @classmethod
    def _validate_time(cls, v: Optional[str]) -> Optional[str]:
        if v is None:
            return None
        return parse_hhmm(v).strftime("%H:%M")

    @model_validator(mode="after")
    def _validate_combinations(self) -> "TaskTriggerConfig":
        if (self.window_start is None) != (self.window_end is None):
            raise ValueError("window_start and window_end must be set together")
        if self.text_field_required and not self.has_text_field:
            raise ValueError("text_field_required requires has_text_field")
        if self.text_field_label and not self.has_text_field:
            raise ValueError("text_field_label requires has_text_field")
        if self.sound_type and not self.play_sound:
            raise ValueError("sound_type requires play_sound")
        if self.cancel_on_clock_out and self.on_event in ("clock_out", "manual"):
            raise ValueError("cancel_on_clock_out only applies to triggers fired within an open session")
        return self


class TaskTriggerResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    organization_id: int
    name: str
    on_event: str
    days_of_week: Optional[List[str]]
    window_start: Optional[str]
    window_end: Optional[str]
    assigned_user_id: Optional[int]
    max_fires: Optional[int]
    fire_count: int
    delay_minutes: int
    cancel_on_clock_out: bool
    is_active: bool
    message: Optional[str]
    show_alert: bool
    play_sound: bool
    sound_type: Optional[str]
    has_text_field: bool
    text_field_label: Optional[str]
    text_field_required: bool
    created_at: datetime


class ManualFireRequest(BaseModel):
    employee_id: int
    at: Optional[datetime] = Field(
        default=None,
        description="If omitted, server uses current UTC time.",
    )


class ScheduledNotificationResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    organization_id: int
    trigger_id: int
    session_id: Optional[str]
    employee_id: int
    event: str
    scheduled_for: datetime
    status: str
    message: Optional[str]
    sent_at: Optional[datetime]
    failure_reason: Optional[str]
