from __future__ import annotations

from datetime import date

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel
from sqlalchemy.orm import Session

from attendance_engine.core.class_identity import ClassIdentity
from attendance_engine.core.errors import DOMAIN_ERRORS, to_http_exception
from attendance_engine.core.router_guard import require_staff
from attendance_engine.db import get_db
from attendance_engine.route_logging import EndpointNameRoute
from attendance_engine.routers.common import ClassPayload, class_identity_query, optional_class_identity_query
from attendance_engine.services.calendar_override_service import serialize_override
from attendance_engine.services.emergency_leave_service import (
    check_emergency_leave,
    deactivate_emergency_leave,
    declare_emergency_leave,
    list_emergency_leaves,
)


router = APIRouter(prefix='/api/emergency-leave', tags=['Emergency Leave'], route_class=EndpointNameRoute)


class DeclarePayload(ClassPayload):
    date: date
    reason: str = ''
    periods: list[int] | None = None


@router.get('/check')
def check(
    date: date = Query(...),
    class_identity: ClassIdentity = Depends(class_identity_query),
    _: dict = Depends(require_staff),
    db: Session = Depends(get_db),
):
    row = check_emergency_leave(db, date, class_identity)
    return {'emergency_leave': serialize_override(row) if row else None}


@router.post('/declare')
def declare(
    payload: DeclarePayload,
    user: dict = Depends(require_staff),
    db: Session = Depends(get_db),
):
    try:
        return declare_emergency_leave(
            db,
            class_identity=payload.identity(),
            target_date=payload.date,
            reason=payload.reason,
            actor_id=user['user_id'],
            periods=payload.periods,
        )
    except DOMAIN_ERRORS as exc:
        raise to_http_exception(exc) from exc


@router.get('')
def list_declarations(
    date: date | None = Query(default=None),
    include_deleted: bool = Query(default=False),
    class_identity: ClassIdentity | None = Depends(optional_class_identity_query),
    _: dict = Depends(require_staff),
    db: Session = Depends(get_db),
):
    rows = list_emergency_leaves(db, on_date=date, class_identity=class_identity, include_deleted=include_deleted)
    return {'emergency_leaves': [serialize_override(row) for row in rows]}


@router.patch('/{override_id}/deactivate')
def deactivate(
    override_id: int,
    user: dict = Depends(require_staff),
    db: Session = Depends(get_db),
):
    try:
        return deactivate_emergency_leave(db, override_id, actor_id=user['user_id'])
    except DOMAIN_ERRORS as exc:
        raise to_http_exception(exc) from exc
