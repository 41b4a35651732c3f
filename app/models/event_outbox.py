from __future__ import annotations

from datetime import datetime, timezone

from sqlalchemy import Boolean, Column, DateTime, Integer, String, false, func
from sqlalchemy.schema import Index, UniqueConstraint

from app.database import Base, JsonType


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class EventOutbox(Base):
    __tablename__ = "event_outbox"

    id = Column(Integer, primary_key=True)

    organization_id = Column(Integer, nullable=False, index=True)

    event_type = Column(String, nullable=False, index=True)
    idempotency_key = Column(String, nullable=False)

    payload = Column(JsonType, nullable=False)

    processed = Column(Boolean, nullable=False, default=False, server_default=false())
    processed_at = Column(DateTime(timezone=True), nullable=True)

    retry_count = Column(Integer, nullable=False, default=0, server_default="0")

    # created_at + backoff(retry_count); rows are picked up once this has passed
    available_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow, server_default=func.now())
    created_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow, server_default=func.now())

    __table_args__ = (
        UniqueConstraint(
            "organization_id",
            "event_type",
            "idempotency_key",
            name="uq_event_outbox_idempotency",
        ),
        Index("ix_event_outbox_organization_event", "organization_id", "event_type"),
        Index("ix_event_outbox_pending", "processed", "available_at"),
    )
