import asyncio
import logging
import os
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy.exc import DBAPIError
from sqlalchemy.orm import Session

from app.core.config import env_bool, env_float, env_int
from app.database import SessionLocal
from app.services.outbox_processor import (
    OutboxProcessResult,
    process_outbox_batch,
    release_outbox_lock,
    try_acquire_outbox_lock,
)
from app.services.task_triggers import DispatchResult, dispatch_due_notifications

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class WorkerSettings:
    poll_seconds: float = 1.0
    batch_size: int = 50
    max_retries: int = 10

    @classmethod
    def from_env(cls) -> "WorkerSettings":
        return cls(
            poll_seconds=env_float("OUTBOX_POLL_SECONDS", 1.0),
            batch_size=env_int("OUTBOX_BATCH_SIZE", 50),
            max_retries=env_int("OUTBOX_MAX_RETRIES", 10),
        )


@dataclass(frozen=True)
class TickResult:
    outbox: OutboxProcessResult
    notifications: DispatchResult

    @property
    def idle(self) -> bool:
        n = self.notifications
        return not (self.outbox.processed or self.outbox.failed or n.sent or n.cancelled or n.failed)


def outbox_worker_enabled() -> bool:
    # never under pytest; tests drive run_tick directly
    if os.getenv("PYTEST_CURRENT_TEST"):
        return False
    return env_bool("OUTBOX_WORKER_ENABLED", True)


def run_tick(*, batch_size: int = 50, max_retries: int = 10, now: Optional[datetime] = None) -> TickResult:
    """Deliver due transition events to the trigger policy, then send due notifications.

    The two steps commit separately so notifications scheduled by this tick are
    visible to the dispatch step.
    """
    now = now or datetime.now(timezone.utc)
    db: Session = SessionLocal()
    try:
        outbox = process_outbox_batch(db=db, now=now, batch_size=batch_size, max_retries=max_retries)
        db.commit()

        notifications = dispatch_due_notifications(db=db, now=now)
        db.commit()
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()

    result = TickResult(outbox=outbox, notifications=notifications)
    if not result.idle:
        logger.info(
            "Outbox worker tick",
            extra={
                "outbox_processed": outbox.processed,
                "outbox_failed": outbox.failed,
                "outbox_dead_lettered": outbox.dead_lettered,
                "notifications_sent": notifications.sent,
                "notifications_cancelled": notifications.cancelled,
                "notifications_failed": notifications.failed,
            },
        )
    return result


def _dispose_bind(db: Session) -> None:
    try:
        bind = db.get_bind()
        if bind is not None and hasattr(bind, "dispose"):
            bind.dispose()
    except Exception:
        logger.debug("Engine dispose failed", exc_info=True)


async def _work_while_locked(settings: WorkerSettings, lock_db: Session) -> None:
    while True:
        try:
            await asyncio.to_thread(run_tick, batch_size=settings.batch_size, max_retries=settings.max_retries)
        except DBAPIError:
            # database restarted or connection killed; fresh connections next tick
            _dispose_bind(lock_db)
            logger.exception("Outbox worker tick failed", extra={"component": "outbox_worker", "reason": "dbapi_error"})
        except Exception:
            logger.exception("Outbox worker tick failed", extra={"component": "outbox_worker", "reason": "unexpected"})

        await asyncio.sleep(settings.poll_seconds)


async def outbox_worker_loop(settings: Optional[WorkerSettings] = None) -> None:
    """
    Runs until cancelled. On PostgreSQL only the process holding the advisory
    lock does work; the others poll for the lock. Failures are logged and the
    loop carries on.
    """
    settings = settings or WorkerSettings()
    logger.info(
        "Outbox worker started",
        extra={"poll_seconds": settings.poll_seconds, "batch_size": settings.batch_size},
    )

    while True:
        lock_db: Session = SessionLocal()
        have_lock = False
        try:
            have_lock = try_acquire_outbox_lock(lock_db)
            if have_lock:
                await _work_while_locked(settings, lock_db)
            await asyncio.sleep(settings.poll_seconds)

        except asyncio.CancelledError:
            logger.info("Outbox worker cancelled; shutting down")
            raise

        except DBAPIError:
            logger.exception(
                "Outbox worker lock connection failed",
                extra={"component": "outbox_worker", "reason": "lock_dbapi_error"},
            )
            _dispose_bind(lock_db)
            await asyncio.sleep(settings.poll_seconds)

        except Exception:
            logger.exception("Outbox worker crashed", extra={"component": "outbox_worker", "reason": "outer_unexpected"})
            await asyncio.sleep(settings.poll_seconds)

        finally:
            if have_lock:
                try:
                    release_outbox_lock(lock_db)
                except Exception:
                    logger.warning("Outbox lock release failed", exc_info=True)
            lock_db.close()


def start_outbox_worker_task() -> Optional[asyncio.Task]:
    if not outbox_worker_enabled():
        logger.info("Outbox worker disabled")
        return None
    return asyncio.create_task(outbox_worker_loop(WorkerSettings.from_env()))
