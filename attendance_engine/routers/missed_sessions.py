from __future__ import annotations

from datetime import date

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, ConfigDict, Field
from sqlalchemy.orm import Session

from attendance_engine.config import settings
from attendance_engine.core.class_identity import normalize_course_type
from attendance_engine.core.errors import DOMAIN_ERRORS, to_http_exception
from attendance_engine.core.router_guard import require_admin, require_staff
from attendance_engine.core.time_provider import default_time_provider
from attendance_engine.db import get_db
from attendance_engine.route_logging import EndpointNameRoute
from attendance_engine.routers.common import MarkPayload, marks_from
from attendance_engine.services.makeup_service import complete_missed_session
from attendance_engine.services.missed_session_service import (
    MissedSessionFilter,
    get_missed_session,
    list_missed_sessions,
    missed_session_stats,
    run_daily_detection,
    serialize_missed_session,
)


router = APIRouter(prefix='/api/missed-sessions', tags=['Missed Sessions'], route_class=EndpointNameRoute)


class DetectPayload(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    target_date: date | None = Field(default=None, alias='date')


class CompletePayload(BaseModel):
    makeup_date: date
    makeup_period: int = Field(ge=1)
    records: list[MarkPayload] | None = None
    remarks: str | None = None


@router.get('')
def list_entries(
    course_type: str | None = Query(default=None),
    year: int | None = Query(default=None, ge=1),
    stream: str | None = Query(default=None),
    section: str | None = Query(default=None),
    priority: str | None = Query(default=None),
    urgency: str | None = Query(default=None),
    days_since: int = Query(default=settings.missed_default_days_since, ge=0),
    status: str = Query(default='pending'),
    _: dict = Depends(require_staff),
    db: Session = Depends(get_db),
):
    try:
        filters = MissedSessionFilter(
            course_type=normalize_course_type(course_type) if course_type else None,
            year=year,
            stream=stream.strip().lower() if stream is not None else None,
            section=section.strip().upper() if section else None,
            priority=priority,
            urgency=urgency,
            days_since=days_since,
            status=status,
        )
        return list_missed_sessions(db, filters)
    except DOMAIN_ERRORS as exc:
        raise to_http_exception(exc) from exc


@router.get('/stats')
def stats(
    _: dict = Depends(require_staff),
    db: Session = Depends(get_db),
):
    return missed_session_stats(db)


@router.post('/detect')
def detect(
    payload: DetectPayload | None = None,
    user: dict = Depends(require_admin),
    db: Session = Depends(get_db),
):
    target = payload.target_date if payload else None
    try:
        return run_daily_detection(db, target_date=target, trigger='manual', triggered_by=user['user_id'])
    except DOMAIN_ERRORS as exc:
        raise to_http_exception(exc) from exc


@router.get('/{entry_id}')
def get_entry(
    entry_id: int,
    _: dict = Depends(require_staff),
    db: Session = Depends(get_db),
):
    try:
        row = get_missed_session(db, entry_id)
    except DOMAIN_ERRORS as exc:
        raise to_http_exception(exc) from exc
    return serialize_missed_session(row, default_time_provider.today())


@router.put('/{entry_id}/complete')
def complete_entry(
    entry_id: int,
    payload: CompletePayload,
    user: dict = Depends(require_staff),
    db: Session = Depends(get_db),
):
    try:
        return complete_missed_session(
            db,
            entry_id,
            makeup_date=payload.makeup_date,
            makeup_period=payload.makeup_period,
            records=marks_from(payload.records) or None,
            actor_id=user['user_id'],
            remarks=payload.remarks,
        )
    except DOMAIN_ERRORS as exc:
        raise to_http_exception(exc) from exc
