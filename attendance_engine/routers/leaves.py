from __future__ import annotations

from datetime import date

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from attendance_engine.core.errors import DOMAIN_ERRORS, to_http_exception
from attendance_engine.core.router_guard import require_admin, require_staff
from attendance_engine.db import get_db
from attendance_engine.route_logging import EndpointNameRoute
from attendance_engine.services.leave_service import (
    LeaveFilter,
    cancel_leave_grant,
    create_leave_grant,
    list_leave_grants,
    resync_leave_grant,
    serialize_leave,
)


router = APIRouter(prefix='/api/leaves', tags=['Leaves'], route_class=EndpointNameRoute)


class LeavePayload(BaseModel):
    student_id: int = Field(gt=0)
    from_date: date
    to_date: date
    reason: str = ''


@router.get('')
def list_leaves(
    student_id: int | None = Query(default=None),
    status: str | None = Query(default=None),
    active_on: date | None = Query(default=None),
    _: dict = Depends(require_staff),
    db: Session = Depends(get_db),
):
    try:
        rows = list_leave_grants(db, LeaveFilter(student_id=student_id, status=status, active_on=active_on))
    except DOMAIN_ERRORS as exc:
        raise to_http_exception(exc) from exc
    return {'leaves': [serialize_leave(row) for row in rows]}


@router.post('')
def create(
    payload: LeavePayload,
    user: dict = Depends(require_admin),
    db: Session = Depends(get_db),
):
    try:
        grant, summary = create_leave_grant(
            db,
            student_id=payload.student_id,
            from_date=payload.from_date,
            to_date=payload.to_date,
            reason=payload.reason,
            actor_id=user['user_id'],
        )
    except DOMAIN_ERRORS as exc:
        raise to_http_exception(exc) from exc
    return {'leave': serialize_leave(grant), 'sync': summary}


@router.post('/{leave_id}/cancel')
def cancel(
    leave_id: int,
    user: dict = Depends(require_admin),
    db: Session = Depends(get_db),
):
    try:
        grant, removed = cancel_leave_grant(db, leave_id, actor_id=user['user_id'])
    except DOMAIN_ERRORS as exc:
        raise to_http_exception(exc) from exc
    return {'leave': serialize_leave(grant), 'records_removed': removed}


@router.post('/{leave_id}/sync')
def sync(
    leave_id: int,
    _: dict = Depends(require_admin),
    db: Session = Depends(get_db),
):
    try:
        return resync_leave_grant(db, leave_id)
    except DOMAIN_ERRORS as exc:
        raise to_http_exception(exc) from exc
