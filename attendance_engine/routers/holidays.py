from __future__ import annotations

from datetime import date

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel
from sqlalchemy.orm import Session

from attendance_engine.core.errors import DOMAIN_ERRORS, to_http_exception
from attendance_engine.core.router_guard import require_admin, require_staff
from attendance_engine.db import get_db
from attendance_engine.route_logging import EndpointNameRoute
from attendance_engine.services.calendar_override_service import (
    OverrideFilter,
    create_holiday,
    list_overrides,
    restore_override,
    serialize_override,
    soft_delete_override,
    update_override,
)


router = APIRouter(prefix='/api/holidays', tags=['Holidays'], route_class=EndpointNameRoute)


class HolidayPayload(BaseModel):
    date: date
    name: str
    kind: str = 'academic'
    reason: str = ''
    affected_scope: list[str] | None = None


class HolidayUpdatePayload(BaseModel):
    name: str | None = None
    reason: str | None = None
    affected_scope: list[str] | None = None


@router.get('')
def list_holidays(
    start: date | None = Query(default=None),
    end: date | None = Query(default=None),
    kind: str | None = Query(default=None),
    include_deleted: bool = Query(default=False),
    _: dict = Depends(require_staff),
    db: Session = Depends(get_db),
):
    try:
        rows = list_overrides(db, OverrideFilter(start_date=start, end_date=end, kind=kind, include_deleted=include_deleted))
    except DOMAIN_ERRORS as exc:
        raise to_http_exception(exc) from exc
    return {'holidays': [serialize_override(row) for row in rows]}


@router.post('')
def create(
    payload: HolidayPayload,
    user: dict = Depends(require_admin),
    db: Session = Depends(get_db),
):
    try:
        row = create_holiday(
            db,
            holiday_date=payload.date,
            name=payload.name,
            kind=payload.kind,
            reason=payload.reason,
            affected_scope=payload.affected_scope,
            actor_id=user['user_id'],
        )
    except DOMAIN_ERRORS as exc:
        raise to_http_exception(exc) from exc
    return serialize_override(row)


@router.patch('/{override_id}')
def update(
    override_id: int,
    payload: HolidayUpdatePayload,
    _: dict = Depends(require_admin),
    db: Session = Depends(get_db),
):
    try:
        row = update_override(
            db,
            override_id,
            name=payload.name,
            reason=payload.reason,
            affected_scope=payload.affected_scope,
        )
    except DOMAIN_ERRORS as exc:
        raise to_http_exception(exc) from exc
    return serialize_override(row)


@router.delete('/{override_id}')
def delete(
    override_id: int,
    user: dict = Depends(require_admin),
    db: Session = Depends(get_db),
):
    try:
        row = soft_delete_override(db, override_id, actor_id=user['user_id'])
    except DOMAIN_ERRORS as exc:
        raise to_http_exception(exc) from exc
    return serialize_override(row)


@router.post('/{override_id}/restore')
def restore(
    override_id: int,
    _: dict = Depends(require_admin),
    db: Session = Depends(get_db),
):
    try:
        row = restore_override(db, override_id)
    except DOMAIN_ERRORS as exc:
        raise to_http_exception(exc) from exc
    return serialize_override(row)
