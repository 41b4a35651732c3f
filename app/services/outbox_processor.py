"""
Transactional outbox for time-clock transitions.

Rows are written by ``enqueue_event`` inside the transaction that changes a
session, then claimed oldest-first by ``process_outbox_batch`` and handed to a
handler keyed by ``event_type``. A failing row is retried after
``created_at + backoff(retry_count)`` and dead-lettered once ``max_retries`` is
reached.
"""
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional

from sqlalchemy import text
from sqlalchemy.orm import Session

from app.database import SessionLocal
from app.models.event_outbox import EventOutbox
from app.services.session_clock import to_utc

logger = logging.getLogger(__name__)

MAX_BACKOFF_SECONDS = 60

OutboxHandler = Callable[[EventOutbox, Session], None]


@dataclass(frozen=True)
class OutboxProcessResult:
    processed: int
    failed: int
    dead_lettered: int = 0


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _retry_wait(retry_count: int) -> timedelta:
    """0s before the first failure, then 2s, 4s, 8s ... capped at 60s."""
    attempts = int(retry_count or 0)
    if attempts <= 0:
        return timedelta(0)
    return timedelta(seconds=min(2**attempts, MAX_BACKOFF_SECONDS))


def next_available_at(row: EventOutbox) -> datetime:
    return to_utc(row.created_at) + _retry_wait(row.retry_count)


def enqueue_event(
    db: Session,
    *,
    organization_id: int,
    event_type: str,
    idempotency_key: str,
    payload: Dict[str, Any],
    now: Optional[datetime] = None,
) -> EventOutbox:
    """Add an outbox row to the caller's transaction. Never commits."""
    created_at = _utcnow() if now is None else to_utc(now)
    row = EventOutbox(
        organization_id=int(organization_id),
        event_type=event_type,
        idempotency_key=idempotency_key,
        payload=payload,
        processed=False,
        retry_count=0,
        created_at=created_at,
        available_at=created_at,
    )
    db.add(row)
    db.flush()
    return row


def requeue_event(db: Session, row: EventOutbox, *, now: Optional[datetime] = None) -> EventOutbox:
    """Put a dead-lettered (or stuck) row back in line with a fresh retry budget."""
    now = _utcnow() if now is None else to_utc(now)
    row.processed = False
    row.processed_at = None
    row.retry_count = 0
    row.created_at = now
    row.available_at = now
    db.flush()

    logger.info(
        "Outbox row requeued",
        extra={"event_outbox_id": row.id, "event_type": row.event_type, "organization_id": row.organization_id},
    )
    return row


def _default_handlers() -> Dict[str, OutboxHandler]:
    from app.services.outbox_handlers import TIME_CLOCK_EVENT_TYPES, handle_time_clock_transition

    return {event_type: handle_time_clock_transition for event_type in TIME_CLOCK_EVENT_TYPES}


def _claim_due_rows(db: Session, now: datetime, batch_size: int) -> List[EventOutbox]:
    # due filter runs before LIMIT so rows in backoff can't starve due rows
    return (
        db.query(EventOutbox)
        .filter(EventOutbox.processed.is_(False))
        .filter(EventOutbox.available_at <= now)
        .order_by(EventOutbox.id.asc())
        .with_for_update(skip_locked=True)
        .limit(int(batch_size))
        .all()
    )


def _record_failure(db: Session, row: EventOutbox, now: datetime, max_retries: int) -> bool:
    """Bump the retry counter; returns True when the row is now dead-lettered."""
    row.retry_count = int(row.retry_count or 0) + 1
    row.available_at = next_available_at(row)

    exhausted = int(row.retry_count) >= int(max_retries)
    if exhausted:
        row.processed = True
        row.processed_at = now
    db.flush()

    logger.exception(
        "Outbox row dead-lettered" if exhausted else "Outbox row processing failed",
        extra={
            "event_outbox_id": row.id,
            "organization_id": row.organization_id,
            "event_type": row.event_type,
            "retry_count": int(row.retry_count),
            "max_retries": int(max_retries),
        },
    )
    return exhausted


def process_outbox_batch(
    *,
    db: Optional[Session] = None,
    now: Optional[datetime] = None,
    batch_size: int = 50,
    max_retries: int = 10,
    handlers: Optional[Dict[str, OutboxHandler]] = None,
) -> OutboxProcessResult:
    owns_db = db is None
    if owns_db:
        db = SessionLocal()

    now = _utcnow() if now is None else to_utc(now)
    handlers = _default_handlers() if handlers is None else handlers

    processed = failed = dead_lettered = 0

    try:
        for row in _claim_due_rows(db, now, batch_size):
            if next_available_at(row) > now:
                continue

            try:
                handler = handlers.get(row.event_type)
                if handler is None:
                    raise ValueError(f"No handler registered for event_type {row.event_type}")

                # a retried row carries the same payload; handlers must tolerate replays.
                # a failed handler's writes roll back with its savepoint
                with db.begin_nested():
                    handler(row, db)
            except Exception:
                failed += 1
                if _record_failure(db, row, now, max_retries):
                    dead_lettered += 1
                continue

            row.processed = True
            row.processed_at = now
            db.flush()
            processed += 1

        if owns_db:
            db.commit()

        return OutboxProcessResult(processed=processed, failed=failed, dead_lettered=dead_lettered)

    except Exception:
        if owns_db:
            db.rollback()
        raise
    finally:
        if owns_db:
            db.close()


# pg_try_advisory_lock key pair reserved for the outbox worker
_LOCK_KEYS = {"a": 7101, "b": 7102}


def _supports_advisory_locks(db: Session) -> bool:
    return db.get_bind().dialect.name == "postgresql"


def try_acquire_outbox_lock(db: Session) -> bool:
    """Session-level advisory lock on PostgreSQL. Other backends run a single worker anyway."""
    if not _supports_advisory_locks(db):
        return True
    return bool(db.execute(text("select pg_try_advisory_lock(:a, :b)"), _LOCK_KEYS).scalar())


def release_outbox_lock(db: Session) -> None:
    if _supports_advisory_locks(db):
        db.execute(text("select pg_advisory_unlock(:a, :b)"), _LOCK_KEYS)
