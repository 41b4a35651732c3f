"""
Task-trigger scheduling policy.

A trigger fires when a time-clock transition matches its event, assignee,
day-of-week allow-list, time-of-day window and firing cap, in that order.
Firing schedules a ScheduledNotification ``delay_minutes`` after the event.
"""
import logging
from dataclasses import dataclass
from datetime import datetime, time, timedelta, timezone
from string import Formatter
from typing import Callable, FrozenSet, List, Optional
from zoneinfo import ZoneInfo

from sqlalchemy.orm import Session

from app.core.config import trigger_timezone
from app.database import SessionLocal
from app.models.task_trigger import ScheduledNotification, TaskTrigger
from app.models.time_clock_session import TimeClockSession
from app.services.session_clock import SessionStatus, to_utc

logger = logging.getLogger(__name__)

TRIGGER_EVENTS = ("clock_in", "clock_out", "break_start", "break_end", "manual")
WEEKDAYS = ("mon", "tue", "wed", "thu", "fri", "sat", "sun")

DEFAULT_MESSAGE = "Task trigger activated: {trigger}"
TEMPLATE_FIELDS = ("minutes", "employee_id", "event", "trigger")

STATUS_PENDING = "pending"
STATUS_SENT = "sent"
STATUS_CANCELLED = "cancelled"
STATUS_FAILED = "failed"


def parse_hhmm(value: str) -> time:
    parts = str(value).strip().split(":")
    if len(parts) != 2 or not all(p.isdigit() for p in parts):
        raise ValueError(f"Invalid time of day: {value!r} (expected HH:MM)")
    hour, minute = int(parts[0]), int(parts[1])
    if not (0 <= hour <= 23 and 0 <= minute <= 59):
        raise ValueError(f"Invalid time of day: {value!r} (expected HH:MM)")
    return time(hour=hour, minute=minute)


@dataclass(frozen=True)
class TriggerRule:
    on_event: str
    days_of_week: Optional[FrozenSet[str]] = None
    window_start: Optional[time] = None
    window_end: Optional[time] = None
    assigned_user_id: Optional[int] = None
    max_fires: Optional[int] = None
    fire_count: int = 0
    delay_minutes: int = 0

    @classmethod
    def from_row(cls, row: TaskTrigger) -> "TriggerRule":
        return cls(
            on_event=row.on_event,
            days_of_week=frozenset(row.days_of_week) if row.days_of_week else None,
            window_start=parse_hhmm(row.window_start) if row.window_start else None,
            window_end=parse_hhmm(row.window_end) if row.window_end else None,
            assigned_user_id=row.assigned_user_id,
            max_fires=row.max_fires,
            fire_count=int(row.fire_count or 0),
            delay_minutes=int(row.delay_minutes or 0),
        )


def in_window(local_time: time, start: Optional[time], end: Optional[time]) -> bool:
    """Start inclusive, end exclusive; start > end wraps past midnight."""
    if start is None or end is None:
        return True
    if start == end:
        return True
    if start < end:
        return start <= local_time < end
    return local_time >= start or local_time < end


def matches(
    rule: TriggerRule,
    event: str,
    employee_id: int,
    at: datetime,
    tz: Optional[ZoneInfo] = None,
) -> bool:
    if rule.on_event != event:
        return False

    if rule.assigned_user_id is not None and int(rule.assigned_user_id) != int(employee_id):
        return False

    local = to_utc(at).astimezone(tz or timezone.utc)

    if rule.days_of_week is not None and WEEKDAYS[local.weekday()] not in rule.days_of_week:
        return False

    if not in_window(local.time().replace(second=0, microsecond=0), rule.window_start, rule.window_end):
        return False

    if rule.max_fires is not None and rule.fire_count >= rule.max_fires:
        return False

    return True


def validate_message_template(template: str) -> str:
    """Only bare ``{minutes}``, ``{employee_id}``, ``{event}`` and ``{trigger}`` fields are allowed."""
    try:
        parsed = list(Formatter().parse(template))
    except ValueError as exc:
        raise ValueError(f"Invalid message template: {exc}") from exc

    for _literal, field_name, format_spec, conversion in parsed:
        if field_name is None:
            continue
        if field_name not in TEMPLATE_FIELDS:
            raise ValueError(
                f"Unknown message placeholder {{{field_name}}}; allowed: {', '.join(TEMPLATE_FIELDS)}"
            )
        if format_spec or conversion:
            raise ValueError(f"Message placeholder {{{field_name}}} must not carry a conversion or format spec")
    return template


def render_message(trigger: TaskTrigger, event: str, employee_id: int) -> str:
    template = trigger.message or DEFAULT_MESSAGE
    try:
        validate_message_template(template)
    except ValueError:
        # stored rows may predate template validation
        logger.warning(
            "Task trigger message template is invalid; using default",
            extra={"trigger_id": trigger.id, "organization_id": trigger.organization_id},
        )
        template = DEFAULT_MESSAGE

    return template.format(
        minutes=int(trigger.delay_minutes or 0),
        employee_id=employee_id,
        event=event,
        trigger=trigger.name,
    )


def _schedule(
    db: Session,
    trigger: TaskTrigger,
    *,
    event: str,
    employee_id: int,
    session_id: Optional[str],
    at: datetime,
    idempotency_key: str,
) -> Optional[ScheduledNotification]:
    existing = (
        db.query(ScheduledNotification)
        .filter(
            ScheduledNotification.trigger_id == trigger.id,
            ScheduledNotification.idempotency_key == idempotency_key,
        )
        .first()
    )
    if existing is not None:
        return None

    trigger.fire_count = int(trigger.fire_count or 0) + 1
    notification = ScheduledNotification(
        organization_id=trigger.organization_id,
        trigger_id=trigger.id,
        session_id=session_id,
        employee_id=int(employee_id),
        event=event,
        idempotency_key=idempotency_key,
        scheduled_for=to_utc(at) + timedelta(minutes=int(trigger.delay_minutes or 0)),
        status=STATUS_PENDING,
        message=render_message(trigger, event, employee_id),
    )
    db.add(notification)
    db.flush()

    logger.info(
        "Task trigger fired",
        extra={
            "organization_id": trigger.organization_id,
            "trigger_id": trigger.id,
            "event": event,
            "employee_id": int(employee_id),
            "session_id": session_id,
            "scheduled_for": notification.scheduled_for.isoformat(),
            "fire_count": trigger.fire_count,
        },
    )
    return notification


def schedule_for_event(
    db: Session,
    *,
    organization_id: int,
    event: str,
    employee_id: int,
    session_id: Optional[str],
    at: datetime,
    event_key: str,
    tz: Optional[ZoneInfo] = None,
) -> List[ScheduledNotification]:
    """Evaluate every active trigger of the organization against one transition event."""
    if event not in TRIGGER_EVENTS:
        raise ValueError(f"Unknown trigger event: {event}")

    tz = tz or trigger_timezone()
    triggers = (
        db.query(TaskTrigger)
        .filter(
            TaskTrigger.organization_id == int(organization_id),
            TaskTrigger.is_active.is_(True),
            TaskTrigger.on_event == event,
        )
        .order_by(TaskTrigger.id.asc())
        .with_for_update()
        .all()
    )

    scheduled: List[ScheduledNotification] = []
    for trigger in triggers:
        if not matches(TriggerRule.from_row(trigger), event, employee_id, at, tz):
            continue
        notification = _schedule(
            db,
            trigger,
            event=event,
            employee_id=employee_id,
            session_id=session_id,
            at=at,
            idempotency_key=event_key,
        )
        if notification is not None:
            scheduled.append(notification)
    return scheduled


def fire_manual(
    db: Session,
    trigger: TaskTrigger,
    *,
    employee_id: int,
    at: datetime,
    request_key: str,
    tz: Optional[ZoneInfo] = None,
) -> Optional[ScheduledNotification]:
    """Fire a ``manual`` trigger for one employee. Returns None when the policy does not match."""
    if trigger.on_event != "manual":
        raise ValueError("Only manual triggers can be fired on demand")
    if not trigger.is_active:
        raise ValueError("Trigger is inactive")

    if not matches(TriggerRule.from_row(trigger), "manual", employee_id, at, tz or trigger_timezone()):
        return None

    return _schedule(
        db,
        trigger,
        event="manual",
        employee_id=employee_id,
        session_id=None,
        at=at,
        idempotency_key=f"manual:{request_key}",
    )


def cancel_pending_for_session(db: Session, *, organization_id: int, session_id: str) -> int:
    rows = (
        db.query(ScheduledNotification)
        .join(TaskTrigger, TaskTrigger.id == ScheduledNotification.trigger_id)
        .filter(
            ScheduledNotification.organization_id == int(organization_id),
            ScheduledNotification.session_id == str(session_id),
            ScheduledNotification.status == STATUS_PENDING,
            TaskTrigger.cancel_on_clock_out.is_(True),
        )
        .all()
    )
    for row in rows:
        row.status = STATUS_CANCELLED
    if rows:
        db.flush()
        logger.info(
            "Cancelled pending task notifications on clock-out",
            extra={"organization_id": int(organization_id), "session_id": str(session_id), "count": len(rows)},
        )
    return len(rows)


@dataclass(frozen=True)
class DispatchResult:
    sent: int
    cancelled: int
    failed: int


NotificationSender = Callable[[ScheduledNotification], None]


def log_sender(notification: ScheduledNotification) -> None:
    logger.info(
        "Task notification delivered",
        extra={
            "notification_id": notification.id,
            "organization_id": notification.organization_id,
            "trigger_id": notification.trigger_id,
            "employee_id": notification.employee_id,
            "notification_message": notification.message,
        },
    )


def _session_closed(db: Session, notification: ScheduledNotification) -> bool:
    if notification.session_id is None:
        return False
    row = (
        db.query(TimeClockSession.status)
        .filter(
            TimeClockSession.organization_id == notification.organization_id,
            TimeClockSession.id == notification.session_id,
        )
        .first()
    )
    return row is None or row[0] == SessionStatus.CLOCKED_OUT.value


def dispatch_due_notifications(
    *,
    db: Optional[Session] = None,
    now: Optional[datetime] = None,
    batch_size: int = 100,
    sender: Optional[NotificationSender] = None,
) -> DispatchResult:
    owns_db = db is None
    if owns_db:
        db = SessionLocal()

    now = datetime.now(timezone.utc) if now is None else to_utc(now)
    sender = sender or log_sender

    sent = cancelled = failed = 0
    try:
        rows = (
            db.query(ScheduledNotification, TaskTrigger)
            .join(TaskTrigger, TaskTrigger.id == ScheduledNotification.trigger_id)
            .filter(
                ScheduledNotification.status == STATUS_PENDING,
                ScheduledNotification.scheduled_for <= now,
            )
            .order_by(ScheduledNotification.scheduled_for.asc(), ScheduledNotification.id.asc())
            .with_for_update(skip_locked=True, of=ScheduledNotification)
            .limit(int(batch_size))
            .all()
        )

        for notification, trigger in rows:
            if trigger.cancel_on_clock_out and _session_closed(db, notification):
                notification.status = STATUS_CANCELLED
                cancelled += 1
                continue

            try:
                sender(notification)
                notification.status = STATUS_SENT
                notification.sent_at = now
                sent += 1
            except Exception as exc:
                notification.status = STATUS_FAILED
                notification.failure_reason = str(exc) or exc.__class__.__name__
                failed += 1
                logger.exception(
                    "Task notification delivery failed",
                    extra={"notification_id": notification.id, "trigger_id": notification.trigger_id},
                )

        db.flush()
        if owns_db:
            db.commit()

        return DispatchResult(sent=sent, cancelled=cancelled, failed=failed)
    except Exception:
        if owns_db:
            db.rollback()
        raise
    finally:
        if owns_db:
            db.close()
