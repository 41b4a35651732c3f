from datetime import datetime
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from pydantic import BaseModel, ConfigDict

from app.core.authorization import Role, require_role
from app.database import SessionLocal
from app.models.event_outbox import EventOutbox
from app.services.outbox_processor import requeue_event

router = APIRouter(prefix="/outbox", tags=["Outbox"])


class OutboxRow(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    organization_id: int
    event_type: str
    idempotency_key: str
    payload: Dict[str, Any]
    processed: bool
    retry_count: int
    available_at: datetime
    created_at: datetime
    processed_at: Optional[datetime]


class OutboxListResponse(BaseModel):
    limit: int
    offset: int
    rows: List[OutboxRow]


@router.get("", response_model=OutboxListResponse)
def list_outbox(
    request: Request,
    processed: Optional[bool] = None,
    event_type: Optional[str] = None,
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0, le=1_000_000),
    _role: Role = Depends(require_role(Role.MANAGER)),
):
    filters = [EventOutbox.organization_id == int(request.state.organization_id)]
    if processed is not None:
        filters.append(EventOutbox.processed.is_(bool(processed)))
    if event_type is not None:
        filters.append(EventOutbox.event_type == event_type)

    db = SessionLocal()
    try:
        rows = (
            db.query(EventOutbox)
            .filter(*filters)
            .order_by(EventOutbox.id.asc())
            .limit(int(limit))
            .offset(int(offset))
            .all()
        )
        return OutboxListResponse(limit=limit, offset=offset, rows=[OutboxRow.model_validate(r) for r in rows])
    finally:
        db.close()


@router.post("/{event_id}/requeue", response_model=OutboxRow)
def requeue_outbox_row(
    event_id: int,
    request: Request,
    _role: Role = Depends(require_role(Role.MANAGER)),
):
    db = SessionLocal()
    try:
        row = (
            db.query(EventOutbox)
            .filter(
                EventOutbox.id == int(event_id),
                EventOutbox.organization_id == int(request.state.organization_id),
            )
            .with_for_update()
            .first()
        )
        if row is None:
            raise HTTPException(status_code=404, detail="Outbox row not found")

        requeue_event(db, row)
        db.commit()
        return OutboxRow.model_validate(row)
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()
