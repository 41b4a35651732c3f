from datetime import datetime, timezone

from sqlalchemy import Boolean, CheckConstraint, Column, DateTime, ForeignKey, Index, Integer, String, Text, text
from sqlalchemy.orm import relationship

from app.database import Base


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class TimeClockSession(Base):
    __tablename__ = "time_clock_sessions"

    id = Column(String, primary_key=True, index=True)

    organization_id = Column(Integer, nullable=False, index=True)
    employee_id = Column(Integer, nullable=False, index=True)

    status = Column(String, nullable=False, index=True)  # clocked_in|on_break|clocked_out

    clock_in_at = Column(DateTime(timezone=True), nullable=False)
    clock_out_at = Column(DateTime(timezone=True), nullable=True)

    clock_in_location = Column(String, nullable=True)
    clock_out_location = Column(String, nullable=True)
    notes = Column(Text, nullable=True)

    supervisor_approved = Column(Boolean, nullable=False, default=False)
    approved_by = Column(String, nullable=True)
    approved_at = Column(DateTime(timezone=True), nullable=True)

    created_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow, onupdate=_utcnow)

    breaks = relationship(
        "SessionBreak",
        order_by="SessionBreak.position",
        cascade="all, delete-orphan",
        lazy="selectin",
    )

    __table_args__ = (
        # one open session per employee per organization
        Index(
            "uq_time_clock_sessions_open",
            "organization_id",
            "employee_id",
            unique=True,
            postgresql_where=text("status <> 'clocked_out'"),
            sqlite_where=text("status <> 'clocked_out'"),
        ),
        Index("ix_time_clock_sessions_org_employee_clock_in", "organization_id", "employee_id", "clock_in_at"),
        CheckConstraint(
            "status IN ('clocked_in', 'on_break', 'clocked_out')",
            name="ck_time_clock_sessions_status",
        ),
        CheckConstraint(
            "(status = 'clocked_out') = (clock_out_at IS NOT NULL)",
            name="ck_time_clock_sessions_clock_out_matches_status",
        ),
    )


class SessionBreak(Base):
    __tablename__ = "time_clock_breaks"

    id = Column(Integer, primary_key=True)
    session_id = Column(
        String,
        ForeignKey("time_clock_sessions.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    position = Column(Integer, nullable=False)

    start_at = Column(DateTime(timezone=True), nullable=False)
    end_at = Column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        Index("uq_time_clock_breaks_position", "session_id", "position", unique=True),
        CheckConstraint("end_at IS NULL OR end_at > start_at", name="ck_time_clock_breaks_end_after_start"),
    )
