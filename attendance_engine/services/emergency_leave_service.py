from __future__ import annotations

import logging
from datetime import date, datetime
from typing import Iterable

from sqlalchemy.orm import Session

from attendance_engine.core.class_identity import ClassIdentity
from attendance_engine.core.errors import ConflictError, NotFoundError, ValidationError
from attendance_engine.core.time_provider import TimeProvider, default_time_provider
from attendance_engine.metrics import timed_service
from attendance_engine.models import (
    AttendanceRecord,
    AttendanceStatus,
    CalendarOverride,
    OverrideKind,
    RecordSource,
    Student,
    UnitKind,
)
from attendance_engine.services.calendar_override_service import OverrideFilter, list_overrides, serialize_override
from attendance_engine.services.read_cache import invalidate_missed_session_views
from attendance_engine.services.schedule_service import day_of_week_for, slots_for
from attendance_engine.services.submission_ledger import IF_ABSENT, SubmissionEntry, period_unit, record_submissions


logger = logging.getLogger(__name__)

# Fallback bell schedule for classes without a timetable entry that day.
_PU_PERIOD_STARTS = ((1, 9, 0), (2, 10, 15), (3, 11, 30))
_LONG_DAY_YEARS = {6, 7}


def _default_remaining_periods(class_identity: ClassIdentity, moment: datetime) -> list[int]:
    if class_identity.course_type == 'pu':
        return [
            period
            for period, hour, minute in _PU_PERIOD_STARTS
            if (moment.hour, moment.minute) < (hour, minute)
        ]
    total = 8 if class_identity.year in _LONG_DAY_YEARS else 6
    current_period = max(1, moment.hour - 8)
    return list(range(1, total + 1))[current_period:]


def remaining_periods(
    db: Session,
    class_identity: ClassIdentity,
    target_date: date,
    *,
    time_provider: TimeProvider = default_time_provider,
) -> list[int]:
    """Periods of ``target_date`` that have not started yet for the class."""
    today = time_provider.today()
    if target_date < today:
        return []
    slots = slots_for(db, class_identity, day_of_week_for(target_date))
    if target_date > today:
        return [slot.period_number for slot in slots]

    now = time_provider.now()
    timed = [slot for slot in slots if slot.start_time]
    if timed:
        current = now.strftime('%H:%M')
        return [slot.period_number for slot in timed if slot.start_time > current]
    return _default_remaining_periods(class_identity, now)


def _class_students(db: Session, class_identity: ClassIdentity) -> list[Student]:
    rows = (
        db.query(Student)
        .filter(
            Student.active.is_(True),
            Student.course_type == class_identity.course_type,
            Student.year == class_identity.year,
        )
        .order_by(Student.id.asc())
        .all()
    )
    return [row for row in rows if class_identity.matches(row)]


def check_emergency_leave(db: Session, target_date: date, class_identity: ClassIdentity) -> CalendarOverride | None:
    rows = (
        db.query(CalendarOverride)
        .filter(
            CalendarOverride.override_date == target_date,
            CalendarOverride.kind == OverrideKind.EMERGENCY.value,
            CalendarOverride.is_deleted.is_(False),
            CalendarOverride.course_type == class_identity.course_type,
            CalendarOverride.year == class_identity.year,
        )
        .order_by(CalendarOverride.id.asc())
        .all()
    )
    for row in rows:
        if ClassIdentity.from_row(row) == class_identity:
            return row
    return None


@timed_service('declare_emergency_leave')
def declare_emergency_leave(
    db: Session,
    *,
    class_identity: ClassIdentity,
    target_date: date | None,
    reason: str = '',
    actor_id: int | None = None,
    periods: Iterable[int] | None = None,
    time_provider: TimeProvider = default_time_provider,
) -> dict:
    if target_date is None:
        raise ValidationError('date is required')
    if periods is not None:
        affected = sorted({int(item) for item in periods})
        if any(item <= 0 for item in affected):
            raise ValidationError('periods must be positive period numbers')
    else:
        if target_date < time_provider.today():
            raise ValidationError('periods are required when declaring for a past date')
        affected = remaining_periods(db, class_identity, target_date, time_provider=time_provider)
    if not affected:
        raise ValidationError(f'No remaining periods for {class_identity.label} on {target_date.isoformat()}')

    existing = check_emergency_leave(db, target_date, class_identity)
    if existing is not None:
        raise ConflictError('Emergency leave already declared for this class', existing=serialize_override(existing))

    now = time_provider.naive_now()
    row = CalendarOverride(
        override_date=target_date,
        name='Emergency Leave',
        kind=OverrideKind.EMERGENCY.value,
        reason=str(reason or '').strip(),
        affected_scope=[class_identity.course_type],
        course_type=class_identity.course_type,
        year=class_identity.year,
        stream=class_identity.stream,
        section=class_identity.section,
        affected_periods=affected,
        triggered_at=time_provider.now().strftime('%H:%M'),
        is_deleted=False,
        created_by=actor_id,
    )
    db.add(row)
    db.flush()

    subjects = {slot.period_number: slot.subject_id for slot in slots_for(db, class_identity, day_of_week_for(target_date))}
    students = _class_students(db, class_identity)
    entries = [
        SubmissionEntry(
            student_id=student.id,
            record_date=target_date,
            unit_kind=UnitKind.PERIOD.value,
            unit=period_unit(period),
            status=AttendanceStatus.EMERGENCY.value,
            recorded_at=now,
            recorded_by=actor_id,
            subject_id=subjects.get(period),
            course_type=class_identity.course_type,
            year=class_identity.year,
            stream=class_identity.stream,
            section=class_identity.section,
            source=RecordSource.EMERGENCY.value,
            override_id=row.id,
        )
        for student in students
        for period in affected
    ]
    written = record_submissions(db, entries, mode=IF_ABSENT)
    db.commit()
    db.refresh(row)
    invalidate_missed_session_views()
    logger.info(
        'emergency_leave_declared id=%s class=%s date=%s periods=%s students=%s actor_id=%s',
        row.id,
        class_identity.key,
        target_date,
        affected,
        len(students),
        actor_id,
    )
    return {
        'emergency_leave': serialize_override(row),
        'affected_periods': affected,
        'affected_students': len(students),
        'records_written': written,
    }


def list_emergency_leaves(
    db: Session,
    *,
    on_date: date | None = None,
    class_identity: ClassIdentity | None = None,
    include_deleted: bool = False,
) -> list[CalendarOverride]:
    rows = list_overrides(
        db,
        OverrideFilter(
            start_date=on_date,
            end_date=on_date,
            kind=OverrideKind.EMERGENCY.value,
            include_deleted=include_deleted,
        ),
    )
    if class_identity is not None:
        rows = [row for row in rows if ClassIdentity.from_row(row) == class_identity]
    return rows


def deactivate_emergency_leave(
    db: Session,
    override_id: int,
    *,
    actor_id: int | None = None,
    time_provider: TimeProvider = default_time_provider,
) -> dict:
    row = (
        db.query(CalendarOverride)
        .filter(
            CalendarOverride.id == int(override_id),
            CalendarOverride.kind == OverrideKind.EMERGENCY.value,
        )
        .with_for_update()
        .first()
    )
    if row is None or row.is_deleted:
        raise NotFoundError('Active emergency leave not found')

    row.is_deleted = True
    row.deleted_at = time_provider.naive_now()
    row.deleted_by = actor_id
    removed = (
        db.query(AttendanceRecord)
        .filter(
            AttendanceRecord.override_id == row.id,
            AttendanceRecord.source == RecordSource.EMERGENCY.value,
        )
        .delete(synchronize_session=False)
    )
    db.commit()
    db.refresh(row)
    invalidate_missed_session_views()
    logger.info('emergency_leave_deactivated id=%s removed_records=%s actor_id=%s', row.id, removed, actor_id)
    return {'emergency_leave': serialize_override(row), 'records_removed': int(removed or 0)}
