from datetime import timedelta

import pytest

from app import database
from app.database import SessionLocal
from app.models.event_outbox import EventOutbox
from app.services.outbox_processor import process_outbox_batch, release_outbox_lock, try_acquire_outbox_lock
from app.services.session_clock import to_utc


@pytest.mark.skipif(not database.is_postgres(), reason="SKIP LOCKED needs PostgreSQL")
def test_outbox_skip_locked_prevents_double_processing():
    """
    Two separate DB sessions attempt to process the same row.
    With SKIP LOCKED, only one session should process it.
    """

    db1 = SessionLocal()
    db2 = SessionLocal()

    try:
        row = EventOutbox(
            organization_id=1,
            event_type="TIME_CLOCK_CLOCK_OUT",
            idempotency_key="concurrency-test",
            payload={},
            processed=False,
            retry_count=0,
        )
        db1.add(row)
        db1.commit()

        db1.refresh(row)
        now = to_utc(row.available_at) + timedelta(seconds=1)

        def _noop(_row, _db):
            return None

        handlers = {"TIME_CLOCK_CLOCK_OUT": _noop}

        result1 = process_outbox_batch(db=db1, now=now, batch_size=10, max_retries=10, handlers=handlers)
        result2 = process_outbox_batch(db=db2, now=now, batch_size=10, max_retries=10, handlers=handlers)

        db1.commit()
        db2.commit()

        assert result1.processed + result2.processed == 1
        assert result1.failed + result2.failed == 0

    finally:
        db1.close()
        db2.close()


def test_outbox_lock_is_exclusive_on_postgres_and_noop_elsewhere():
    db1 = SessionLocal()
    db2 = SessionLocal()
    try:
        assert try_acquire_outbox_lock(db1) is True
        if database.is_postgres():
            assert try_acquire_outbox_lock(db2) is False
        else:
            assert try_acquire_outbox_lock(db2) is True
    finally:
        release_outbox_lock(db1)
        db1.close()
        db2.close()
