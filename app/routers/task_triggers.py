from __future__ import annotations

import uuid
from datetime import datetime, timezone
from typing import List, Literal, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from sqlalchemy.orm import Session

from app.core.authorization import Role, require_role
from app.database import SessionLocal
from app.deps.auth import require_auth
from app.models.task_trigger import ScheduledNotification, TaskTrigger
from app.schemas.task_trigger import (
    ManualFireRequest,
    ScheduledNotificationResponse,
    TaskTriggerConfig,
    TaskTriggerResponse,
)
from app.services.task_triggers import fire_manual

router = APIRouter(prefix="/api/task-triggers", tags=["Task Triggers"])


def _get_trigger(db: Session, organization_id: int, trigger_id: int, *, for_update: bool = False) -> TaskTrigger:
    q = db.query(TaskTrigger).filter(
        TaskTrigger.id == int(trigger_id),
        TaskTrigger.organization_id == int(organization_id),
    )
    if for_update:
        # serializes fire_count against concurrent fires
        q = q.with_for_update()
    row = q.first()
    if row is None:
        raise HTTPException(status_code=404, detail="Task trigger not found")
    return row


@router.post("", response_model=TaskTriggerResponse, status_code=201)
def create_trigger(
    payload: TaskTriggerConfig,
    request: Request,
    _role: Role = Depends(require_role(Role.MANAGER)),
):
    db = SessionLocal()
    try:
        row = TaskTrigger(
            organization_id=int(request.state.organization_id),
            fire_count=0,
            **payload.model_dump(),
        )
        db.add(row)
        db.commit()
        db.refresh(row)
        return row
    finally:
        db.close()


@router.get("", response_model=List[TaskTriggerResponse])
def list_triggers(
    request: Request,
    _auth: tuple[str, int] = Depends(require_auth),
    on_event: Optional[str] = None,
    include_inactive: bool = False,
):
    db = SessionLocal()
    try:
        q = db.query(TaskTrigger).filter(TaskTrigger.organization_id == int(request.state.organization_id))
        if on_event is not None:
            q = q.filter(TaskTrigger.on_event == on_event)
        if not include_inactive:
            q = q.filter(TaskTrigger.is_active.is_(True))
        return q.order_by(TaskTrigger.id.asc()).all()
    finally:
        db.close()


@router.get("/notifications", response_model=List[ScheduledNotificationResponse])
def list_notifications(
    request: Request,
    _auth: tuple[str, int] = Depends(require_auth),
    status: Optional[Literal["pending", "sent", "cancelled", "failed"]] = None,
    employee_id: Optional[int] = None,
    trigger_id: Optional[int] = None,
    limit: int = Query(default=50, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
):
    db = SessionLocal()
    try:
        q = db.query(ScheduledNotification).filter(
            ScheduledNotification.organization_id == int(request.state.organization_id)
        )
        if status is not None:
            q = q.filter(ScheduledNotification.status == status)
        if employee_id is not None:
            q = q.filter(ScheduledNotification.employee_id == int(employee_id))
        if trigger_id is not None:
            q = q.filter(ScheduledNotification.trigger_id == int(trigger_id))
        return (
            q.order_by(ScheduledNotification.scheduled_for.asc(), ScheduledNotification.id.asc())
            .offset(int(offset))
            .limit(int(limit))
            .all()
        )
    finally:
        db.close()


@router.get("/{trigger_id}", response_model=TaskTriggerResponse)
def get_trigger(
    trigger_id: int,
    request: Request,
    _auth: tuple[str, int] = Depends(require_auth),
):
    db = SessionLocal()
    try:
        return _get_trigger(db, int(request.state.organization_id), trigger_id)
    finally:
        db.close()


@router.put("/{trigger_id}", response_model=TaskTriggerResponse)
def update_trigger(
    trigger_id: int,
    payload: TaskTriggerConfig,
    request: Request,
    _role: Role = Depends(require_role(Role.MANAGER)),
):
    db = SessionLocal()
    try:
        row = _get_trigger(db, int(request.state.organization_id), trigger_id)
        for field, value in payload.model_dump().items():
            setattr(row, field, value)
        db.commit()
        db.refresh(row)
        return row
    finally:
        db.close()


@router.delete("/{trigger_id}", response_model=TaskTriggerResponse)
def deactivate_trigger(
    trigger_id: int,
    request: Request,
    _role: Role = Depends(require_role(Role.MANAGER)),
):
    db = SessionLocal()
    try:
        row = _get_trigger(db, int(request.state.organization_id), trigger_id)
        row.is_active = False
        db.commit()
        db.refresh(row)
        return row
    finally:
        db.close()


@router.post("/{trigger_id}/fire", response_model=Optional[ScheduledNotificationResponse])
def fire_trigger(
    trigger_id: int,
    payload: ManualFireRequest,
    request: Request,
    _auth: tuple[str, int] = Depends(require_auth),
):
    at = payload.at or datetime.now(timezone.utc)

    db = SessionLocal()
    try:
        row = _get_trigger(db, int(request.state.organization_id), trigger_id, for_update=True)
        notification = fire_manual(
            db,
            row,
            employee_id=int(payload.employee_id),
            at=at,
            request_key=str(uuid.uuid4()),
        )
        db.commit()
        return notification
    except ValueError as exc:
        db.rollback()
        raise HTTPException(status_code=409, detail=str(exc)) from exc
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()
