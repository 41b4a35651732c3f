from datetime import datetime, timezone

from sqlalchemy import Boolean, CheckConstraint, Column, DateTime, ForeignKey, Integer, String, Text, UniqueConstraint

from app.database import Base, JsonType


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class TaskTrigger(Base):
    __tablename__ = "task_triggers"

    id = Column(Integer, primary_key=True, index=True)
    organization_id = Column(Integer, nullable=False, index=True)

    name = Column(String, nullable=False)
    on_event = Column(String, nullable=False, index=True)  # clock_in|clock_out|break_start|break_end|manual

    days_of_week = Column(JsonType, nullable=True)  # ["mon", "tue", ...]; null = every day
    window_start = Column(String, nullable=True)  # "HH:MM"
    window_end = Column(String, nullable=True)

    assigned_user_id = Column(Integer, nullable=True, index=True)

    max_fires = Column(Integer, nullable=True)
    fire_count = Column(Integer, nullable=False, default=0)

    delay_minutes = Column(Integer, nullable=False, default=0)
    cancel_on_clock_out = Column(Boolean, nullable=False, default=False)
    is_active = Column(Boolean, nullable=False, default=True)

    message = Column(Text, nullable=True)
    show_alert = Column(Boolean, nullable=False, default=True)
    play_sound = Column(Boolean, nullable=False, default=False)
    sound_type = Column(String, nullable=True)
    has_text_field = Column(Boolean, nullable=False, default=False)
    text_field_label = Column(String, nullable=True)
    text_field_required = Column(Boolean, nullable=False, default=False)

    created_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow, onupdate=_utcnow)

    __table_args__ = (
        CheckConstraint(
            "on_event IN ('clock_in', 'clock_out', 'break_start', 'break_end', 'manual')",
            name="ck_task_triggers_on_event",
        ),
        CheckConstraint("delay_minutes >= 0", name="ck_task_triggers_delay_nonnegative"),
        CheckConstraint("max_fires IS NULL OR max_fires >= 1", name="ck_task_triggers_max_fires_positive"),
    )


class ScheduledNotification(Base):
    __tablename__ = "scheduled_notifications"

    id = Column(Integer, primary_key=True, index=True)
    organization_id = Column(Integer, nullable=False, index=True)

    trigger_id = Column(Integer, ForeignKey("task_triggers.id"), nullable=False, index=True)
    session_id = Column(String, nullable=True, index=True)
    employee_id = Column(Integer, nullable=False, index=True)
    event = Column(String, nullable=False)
    idempotency_key = Column(String, nullable=False)

    scheduled_for = Column(DateTime(timezone=True), nullable=False, index=True)
    status = Column(String, nullable=False, default="pending", index=True)  # pending|sent|cancelled|failed
    message = Column(Text, nullable=True)

    sent_at = Column(DateTime(timezone=True), nullable=True)
    failure_reason = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)

    __table_args__ = (
        UniqueConstraint("trigger_id", "idempotency_key", name="uq_scheduled_notifications_trigger_key"),
        CheckConstraint(
            "status IN ('pending', 'sent', 'cancelled', 'failed')",
            name="ck_scheduled_notifications_status",
        ),
    )
