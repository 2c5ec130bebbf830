from __future__ import annotations

from datetime import date

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from attendance_engine.core.class_identity import ClassIdentity
from attendance_engine.core.errors import DOMAIN_ERRORS, to_http_exception
from attendance_engine.core.router_guard import require_staff
from attendance_engine.db import get_db
from attendance_engine.models import UnitKind
from attendance_engine.route_logging import EndpointNameRoute
from attendance_engine.routers.common import ClassPayload, MarkPayload, class_identity_query, marks_from
from attendance_engine.services.attendance_lock_service import get_lock, serialize_lock
from attendance_engine.services.submission_ledger import period_unit, records_for_slot, serialize_record
from attendance_engine.services.submission_service import submit_period_attendance, submit_prayer_attendance


router = APIRouter(tags=['Attendance'], route_class=EndpointNameRoute)


class PeriodAttendancePayload(ClassPayload):
    date: date
    period_number: int = Field(ge=1)
    records: list[MarkPayload]
    override_leave: bool = False


class PrayerAttendancePayload(BaseModel):
    date: date
    prayer: str
    records: list[MarkPayload]


@router.post('/api/attendance/period')
def submit_period(
    payload: PeriodAttendancePayload,
    user: dict = Depends(require_staff),
    db: Session = Depends(get_db),
):
    try:
        return submit_period_attendance(
            db,
            class_identity=payload.identity(),
            attendance_date=payload.date,
            period_number=payload.period_number,
            records=marks_from(payload.records),
            actor_id=user['user_id'],
            override_leave=payload.override_leave,
        )
    except DOMAIN_ERRORS as exc:
        raise to_http_exception(exc) from exc


@router.get('/api/attendance/period')
def period_records(
    date: date = Query(...),
    period_number: int = Query(..., ge=1),
    class_identity: ClassIdentity = Depends(class_identity_query),
    _: dict = Depends(require_staff),
    db: Session = Depends(get_db),
):
    unit = period_unit(period_number)
    rows = records_for_slot(db, date, UnitKind.PERIOD.value, unit, class_identity)
    marker = get_lock(db, date, UnitKind.PERIOD.value, unit, class_identity)
    return {
        'class_label': class_identity.label,
        'date': date.isoformat(),
        'period_number': period_number,
        'locked': marker is not None,
        'lock': serialize_lock(marker) if marker else None,
        'records': [serialize_record(row) for row in rows],
    }


@router.post('/api/prayer-attendance')
def submit_prayer(
    payload: PrayerAttendancePayload,
    user: dict = Depends(require_staff),
    db: Session = Depends(get_db),
):
    try:
        return submit_prayer_attendance(
            db,
            attendance_date=payload.date,
            prayer=payload.prayer,
            records=marks_from(payload.records),
            actor_id=user['user_id'],
        )
    except DOMAIN_ERRORS as exc:
        raise to_http_exception(exc) from exc
