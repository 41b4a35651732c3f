"""time clock sessions, breaks and event outbox

Revision ID: 3c1f9a7d2b10
Revises:
Create Date: 2026-10-19 09:12:44.301822

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql


revision: str = "3c1f9a7d2b10"
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

_json = sa.JSON().with_variant(postgresql.JSONB(astext_type=sa.Text()), "postgresql")


def upgrade() -> None:
    """Upgrade schema."""
    op.create_table(
        "time_clock_sessions",
        sa.Column("id", sa.String(), primary_key=True, nullable=False),
        sa.Column("organization_id", sa.Integer(), nullable=False),
        sa.Column("employee_id", sa.Integer(), nullable=False),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("clock_in_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("clock_out_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("clock_in_location", sa.String(), nullable=True),
        sa.Column("clock_out_location", sa.String(), nullable=True),
        sa.Column("notes", sa.Text(), nullable=True),
        sa.Column("supervisor_approved", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("approved_by", sa.String(), nullable=True),
        sa.Column("approved_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.CheckConstraint(
            "status IN ('clocked_in', 'on_break', 'clocked_out')",
            name="ck_time_clock_sessions_status",
        ),
        sa.CheckConstraint(
            "(status = 'clocked_out') = (clock_out_at IS NOT NULL)",
            name="ck_time_clock_sessions_clock_out_matches_status",
        ),
    )
    op.create_index(op.f("ix_time_clock_sessions_id"), "time_clock_sessions", ["id"], unique=False)
    op.create_index(op.f("ix_time_clock_sessions_organization_id"), "time_clock_sessions", ["organization_id"], unique=False)
    op.create_index(op.f("ix_time_clock_sessions_employee_id"), "time_clock_sessions", ["employee_id"], unique=False)
    op.create_index(op.f("ix_time_clock_sessions_status"), "time_clock_sessions", ["status"], unique=False)
    op.create_index(
        "ix_time_clock_sessions_org_employee_clock_in",
        "time_clock_sessions",
        ["organization_id", "employee_id", "clock_in_at"],
        unique=False,
    )
    op.create_index(
        "uq_time_clock_sessions_open",
        "time_clock_sessions",
        ["organization_id", "employee_id"],
        unique=True,
        postgresql_where=sa.text("status <> 'clocked_out'"),
        sqlite_where=sa.text("status <> 'clocked_out'"),
    )

    op.create_table(
        "time_clock_breaks",
        sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
        sa.Column(
            "session_id",
            sa.String(),
            sa.ForeignKey("time_clock_sessions.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("position", sa.Integer(), nullable=False),
        sa.Column("start_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("end_at", sa.DateTime(timezone=True), nullable=True),
        sa.CheckConstraint("end_at IS NULL OR end_at > start_at", name="ck_time_clock_breaks_end_after_start"),
    )
    op.create_index(op.f("ix_time_clock_breaks_session_id"), "time_clock_breaks", ["session_id"], unique=False)
    op.create_index("uq_time_clock_breaks_position", "time_clock_breaks", ["session_id", "position"], unique=True)

    op.create_table(
        "event_outbox",
        sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
        sa.Column("organization_id", sa.Integer(), nullable=False),
        sa.Column("event_type", sa.String(), nullable=False),
        sa.Column("idempotency_key", sa.String(), nullable=False),
        sa.Column("payload", _json, nullable=False),
        sa.Column("processed", sa.Boolean(), server_default=sa.false(), nullable=False),
        sa.Column("processed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("retry_count", sa.Integer(), server_default=sa.text("0"), nullable=False),
        sa.Column("available_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.UniqueConstraint("organization_id", "event_type", "idempotency_key", name="uq_event_outbox_idempotency"),
    )
    op.create_index("ix_event_outbox_organization_event", "event_outbox", ["organization_id", "event_type"], unique=False)
    op.create_index("ix_event_outbox_pending", "event_outbox", ["processed", "available_at"], unique=False)
    op.create_index(op.f("ix_event_outbox_organization_id"), "event_outbox", ["organization_id"], unique=False)
    op.create_index(op.f("ix_event_outbox_event_type"), "event_outbox", ["event_type"], unique=False)

    op.create_table(
        "task_triggers",
        sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
        sa.Column("organization_id", sa.Integer(), nullable=False),
        sa.Column("name", sa.String(), nullable=False),
        sa.Column("on_event", sa.String(), nullable=False),
        sa.Column("days_of_week", _json, nullable=True),
        sa.Column("window_start", sa.String(), nullable=True),
        sa.Column("window_end", sa.String(), nullable=True),
        sa.Column("assigned_user_id", sa.Integer(), nullable=True),
        sa.Column("max_fires", sa.Integer(), nullable=True),
        sa.Column("fire_count", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("delay_minutes", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("cancel_on_clock_out", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("message", sa.Text(), nullable=True),
        sa.Column("show_alert", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("play_sound", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("sound_type", sa.String(), nullable=True),
        sa.Column("has_text_field", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("text_field_label", sa.String(), nullable=True),
        sa.Column("text_field_required", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.CheckConstraint(
            "on_event IN ('clock_in', 'clock_out', 'break_start', 'break_end', 'manual')",
            name="ck_task_triggers_on_event",
        ),
        sa.CheckConstraint("delay_minutes >= 0", name="ck_task_triggers_delay_nonnegative"),
        sa.CheckConstraint("max_fires IS NULL OR max_fires >= 1", name="ck_task_triggers_max_fires_positive"),
    )
    op.create_index(op.f("ix_task_triggers_id"), "task_triggers", ["id"], unique=False)
    op.create_index(op.f("ix_task_triggers_organization_id"), "task_triggers", ["organization_id"], unique=False)
    op.create_index(op.f("ix_task_triggers_on_event"), "task_triggers", ["on_event"], unique=False)
    op.create_index(op.f("ix_task_triggers_assigned_user_id"), "task_triggers", ["assigned_user_id"], unique=False)

    op.create_table(
        "scheduled_notifications",
        sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
        sa.Column("organization_id", sa.Integer(), nullable=False),
        sa.Column("trigger_id", sa.Integer(), sa.ForeignKey("task_triggers.id"), nullable=False),
        sa.Column("session_id", sa.String(), nullable=True),
        sa.Column("employee_id", sa.Integer(), nullable=False),
        sa.Column("event", sa.String(), nullable=False),
        sa.Column("idempotency_key", sa.String(), nullable=False),
        sa.Column("scheduled_for", sa.DateTime(timezone=True), nullable=False),
        sa.Column("status", sa.String(), nullable=False, server_default="pending"),
        sa.Column("message", sa.Text(), nullable=True),
        sa.Column("sent_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("failure_reason", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.UniqueConstraint("trigger_id", "idempotency_key", name="uq_scheduled_notifications_trigger_key"),
        sa.CheckConstraint(
            "status IN ('pending', 'sent', 'cancelled', 'failed')",
            name="ck_scheduled_notifications_status",
        ),
    )
    op.create_index(op.f("ix_scheduled_notifications_id"), "scheduled_notifications", ["id"], unique=False)
    op.create_index(op.f("ix_scheduled_notifications_organization_id"), "scheduled_notifications", ["organization_id"], unique=False)
    op.create_index(op.f("ix_scheduled_notifications_trigger_id"), "scheduled_notifications", ["trigger_id"], unique=False)
    op.create_index(op.f("ix_scheduled_notifications_session_id"), "scheduled_notifications", ["session_id"], unique=False)
    op.create_index(op.f("ix_scheduled_notifications_employee_id"), "scheduled_notifications", ["employee_id"], unique=False)
    op.create_index(op.f("ix_scheduled_notifications_scheduled_for"), "scheduled_notifications", ["scheduled_for"], unique=False)
    op.create_index(op.f("ix_scheduled_notifications_status"), "scheduled_notifications", ["status"], unique=False)


def downgrade() -> None:
    """Downgrade schema."""
    op.drop_table("scheduled_notifications")
    op.drop_table("task_triggers")
    op.drop_table("event_outbox")
    op.drop_table("time_clock_breaks")
    op.drop_table("time_clock_sessions")
