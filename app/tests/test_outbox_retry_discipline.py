from datetime import timedelta

from app.database import SessionLocal
from app.models.event_outbox import EventOutbox
from app.services.outbox_processor import _retry_wait, process_outbox_batch
from app.services.session_clock import to_utc


def test_retry_wait_is_exponential_and_capped():
    assert _retry_wait(0) == timedelta(0)
    assert _retry_wait(1) == timedelta(seconds=2)
    assert _retry_wait(3) == timedelta(seconds=8)
    assert _retry_wait(6) == timedelta(seconds=60)
    assert _retry_wait(20) == timedelta(seconds=60)


def test_outbox_retry_increments_and_then_processes():
    db = SessionLocal()
    try:
        # Insert a row that will FAIL first (unknown event_type)
        row = EventOutbox(
            organization_id=1,
            event_type="UNKNOWN_EVENT",
            idempotency_key="k-retry-1",
            payload={"x": 1},
            processed=False,
            retry_count=0,
        )
        db.add(row)
        db.commit()
        db.refresh(row)

        created_at = to_utc(row.created_at)

        # 'now' must be >= available_at or the row is skipped.
        now0 = created_at + timedelta(seconds=1)

        # First pass: should fail and increment retry_count (unknown event_type)
        r1 = process_outbox_batch(db=db, now=now0, batch_size=10, max_retries=10, handlers={})
        db.refresh(row)
        assert r1.processed == 0
        assert r1.failed == 1
        assert row.processed is False
        assert row.retry_count == 1
        assert to_utc(row.available_at) == created_at + timedelta(seconds=2)

        # retry_count=1 => backoff 2 seconds, but now0 is only +1s
        r2 = process_outbox_batch(db=db, now=now0, batch_size=10, max_retries=10, handlers={})
        db.refresh(row)
        assert r2.processed == 0
        assert r2.failed == 0
        assert row.retry_count == 1

        # Advance time past backoff (2s for retry_count=1) -> should fail again -> retry_count=2
        now2 = created_at + timedelta(seconds=3)
        r3 = process_outbox_batch(db=db, now=now2, batch_size=10, max_retries=10, handlers={})
        db.refresh(row)
        assert r3.processed == 0
        assert r3.failed == 1
        assert row.retry_count == 2

        # Handler registered now: next due pass (4s backoff) succeeds
        now3 = created_at + timedelta(seconds=5)
        r4 = process_outbox_batch(
            db=db,
            now=now3,
            batch_size=10,
            max_retries=10,
            handlers={"UNKNOWN_EVENT": lambda _row, _db: None},
        )
        db.refresh(row)
        assert r4.processed == 1
        assert row.processed is True

    finally:
        db.rollback()
        db.close()
