import logging
from datetime import datetime
from typing import Any

from sqlalchemy.orm import Session

from app.models.event_outbox import EventOutbox
from app.services.task_triggers import schedule_for_event
from app.services.time_engine import OUTBOX_EVENT_TYPES

logger = logging.getLogger(__name__)

TIME_CLOCK_EVENT_TYPES = tuple(OUTBOX_EVENT_TYPES.values())


def handle_time_clock_transition(row: EventOutbox, db: Session) -> None:
    payload: Any = row.payload or {}
    if not isinstance(payload, dict):
        raise ValueError(f"Malformed payload for {row.event_type}")

    event = payload.get("event")
    employee_id = payload.get("employee_id")
    occurred_at = payload.get("occurred_at")
    if not event or employee_id is None or not occurred_at:
        raise ValueError(f"{row.event_type} payload missing event/employee_id/occurred_at")

    scheduled = schedule_for_event(
        db,
        organization_id=int(row.organization_id),
        event=str(event),
        employee_id=int(employee_id),
        session_id=payload.get("session_id"),
        at=datetime.fromisoformat(str(occurred_at)),
        event_key=row.idempotency_key,
    )

    if scheduled:
        logger.info(
            "Scheduled task notifications for transition",
            extra={
                "event_outbox_id": row.id,
                "event_type": row.event_type,
                "count": len(scheduled),
            },
        )
