from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date, datetime
from typing import Any, Iterable

from sqlalchemy.orm import Session

from attendance_engine.core.class_identity import ClassIdentity
from attendance_engine.core.errors import ConflictError, ValidationError
from attendance_engine.core.time_provider import APP_ZONEINFO, TimeProvider, default_time_provider
from attendance_engine.metrics import timed_service
from attendance_engine.models import AttendanceLock, AttendanceStatus, RecordSource, Student, UnitKind
from attendance_engine.services.attendance_lock_service import lock, serialize_lock
from attendance_engine.services.calendar_override_service import is_closed_for, serialize_override
from attendance_engine.services.leave_service import students_on_leave
from attendance_engine.services.read_cache import invalidate_missed_session_views
from attendance_engine.services.schedule_service import day_of_week_for, normalize_prayer, slot_at
from attendance_engine.services.submission_ledger import LATEST_WINS, SubmissionEntry, normalize_status, period_unit, record_submissions


logger = logging.getLogger(__name__)

_PRAYER_STATUSES = {AttendanceStatus.PRESENT.value, AttendanceStatus.ABSENT.value, AttendanceStatus.ON_LEAVE.value}


@dataclass(frozen=True)
class StudentMark:
    student_id: int
    status: str
    recorded_at: datetime | None = None


def coerce_marks(records: Iterable[StudentMark | dict[str, Any]]) -> list[StudentMark]:
    marks: list[StudentMark] = []
    seen: set[int] = set()
    for item in records or []:
        if isinstance(item, StudentMark):
            mark = item
        else:
            student_id = int(item.get('student_id') or 0)
            if student_id <= 0:
                raise ValidationError('student_id is required for every record')
            mark = StudentMark(
                student_id=student_id,
                status=normalize_status(item.get('status')),
                recorded_at=item.get('recorded_at'),
            )
        if mark.student_id in seen:
            raise ValidationError(f'Duplicate record for student_id={mark.student_id}')
        seen.add(mark.student_id)
        marks.append(mark)
    if not marks:
        raise ValidationError('records are required')
    return marks


def _naive(value: datetime | None, fallback: datetime) -> datetime:
    if value is None:
        return fallback
    if value.tzinfo is not None:
        return value.astimezone(APP_ZONEINFO).replace(tzinfo=None)
    return value


def _load_students(db: Session, marks: list[StudentMark]) -> dict[int, Student]:
    ids = [mark.student_id for mark in marks]
    rows = db.query(Student).filter(Student.id.in_(ids)).all()
    found = {row.id: row for row in rows}
    missing = sorted(set(ids) - set(found))
    if missing:
        raise ValidationError(f'Unknown student ids: {missing}')
    return found


def reject_future(attendance_date: date | None, time_provider: TimeProvider) -> None:
    if attendance_date is None:
        raise ValidationError('date is required')
    if attendance_date > time_provider.today():
        raise ValidationError('Cannot record attendance for a future date')


def write_class_batch(
    db: Session,
    *,
    class_identity: ClassIdentity,
    attendance_date: date,
    period_number: int,
    marks: list[StudentMark],
    subject_id: int | None,
    source: str,
    actor_id: int | None,
    override_leave: bool = False,
    time_provider: TimeProvider = default_time_provider,
) -> tuple[AttendanceLock, int, set[int]]:
    """Lock the class period and stage its records; the caller commits."""
    students = _load_students(db, marks)
    outside_class = sorted(sid for sid, row in students.items() if not class_identity.matches(row))
    if outside_class:
        raise ValidationError(f'Students not in {class_identity.label}: {outside_class}')

    excused = set() if override_leave else students_on_leave(db, list(students), attendance_date)
    now = time_provider.naive_now()
    unit = period_unit(period_number)
    marker = lock(db, attendance_date, UnitKind.PERIOD.value, unit, class_identity, actor_id=actor_id, time_provider=time_provider)
    entries = [
        SubmissionEntry(
            student_id=mark.student_id,
            record_date=attendance_date,
            unit_kind=UnitKind.PERIOD.value,
            unit=unit,
            status=mark.status,
            recorded_at=_naive(mark.recorded_at, now),
            recorded_by=actor_id,
            subject_id=subject_id,
            course_type=class_identity.course_type,
            year=class_identity.year,
            stream=class_identity.stream,
            section=class_identity.section,
            source=source,
            lock_id=marker.id,
        )
        for mark in marks
        if mark.student_id not in excused
    ]
    record_submissions(db, entries, mode=LATEST_WINS)
    marker.record_count = len(entries)
    return marker, len(entries), excused


@timed_service('submit_period_attendance')
def submit_period_attendance(
    db: Session,
    *,
    class_identity: ClassIdentity,
    attendance_date: date,
    period_number: int,
    records: Iterable[StudentMark | dict[str, Any]],
    actor_id: int | None = None,
    override_leave: bool = False,
    time_provider: TimeProvider = default_time_provider,
) -> dict:
    reject_future(attendance_date, time_provider)
    marks = coerce_marks(records)
    day = day_of_week_for(attendance_date)
    slot = slot_at(db, class_identity, day, period_number)
    if slot is None:
        raise ValidationError(f'{class_identity.label} has no scheduled period {period_number} on {day}')
    closure = is_closed_for(db, attendance_date, class_identity, period_number=period_number)
    if closure is not None:
        raise ConflictError('Class is closed for this period', existing={'override': serialize_override(closure)})

    marker, recorded, excused = write_class_batch(
        db,
        class_identity=class_identity,
        attendance_date=attendance_date,
        period_number=period_number,
        marks=marks,
        subject_id=slot.subject_id,
        source=RecordSource.TEACHER.value,
        actor_id=actor_id,
        override_leave=override_leave,
        time_provider=time_provider,
    )
    db.commit()
    db.refresh(marker)
    invalidate_missed_session_views()
    logger.info(
        'period_attendance_recorded class=%s date=%s period=%s records=%s excused=%s actor_id=%s',
        class_identity.key,
        attendance_date,
        period_number,
        recorded,
        len(excused),
        actor_id,
    )
    return {
        'class_label': class_identity.label,
        'date': attendance_date.isoformat(),
        'period_number': int(period_number),
        'subject_id': slot.subject_id,
        'recorded': recorded,
        'excused_student_ids': sorted(excused),
        'lock': serialize_lock(marker),
    }


@timed_service('submit_prayer_attendance')
def submit_prayer_attendance(
    db: Session,
    *,
    attendance_date: date,
    prayer: str,
    records: Iterable[StudentMark | dict[str, Any]],
    actor_id: int | None = None,
    time_provider: TimeProvider = default_time_provider,
) -> dict:
    reject_future(attendance_date, time_provider)
    prayer_name = normalize_prayer(prayer)
    marks = coerce_marks(records)
    invalid = sorted(mark.student_id for mark in marks if mark.status not in _PRAYER_STATUSES)
    if invalid:
        raise ValidationError(f'Prayer status must be present, absent or on_leave (student ids {invalid})')

    students = _load_students(db, marks)
    excused = students_on_leave(db, list(students), attendance_date)
    now = time_provider.naive_now()
    marker = lock(db, attendance_date, UnitKind.PRAYER.value, prayer_name, None, actor_id=actor_id, time_provider=time_provider)
    entries = []
    for mark in marks:
        if mark.student_id in excused:
            continue
        student = students[mark.student_id]
        entries.append(
            SubmissionEntry(
                student_id=mark.student_id,
                record_date=attendance_date,
                unit_kind=UnitKind.PRAYER.value,
                unit=prayer_name,
                status=mark.status,
                recorded_at=_naive(mark.recorded_at, now),
                recorded_by=actor_id,
                course_type=student.course_type,
                year=student.year,
                stream=student.stream or '',
                section=student.section,
                source=RecordSource.TEACHER.value,
                lock_id=marker.id,
            )
        )
    record_submissions(db, entries, mode=LATEST_WINS)
    marker.record_count = len(entries)
    db.commit()
    db.refresh(marker)
    logger.info(
        'prayer_attendance_recorded date=%s prayer=%s records=%s excused=%s actor_id=%s',
        attendance_date,
        prayer_name,
        len(entries),
        len(excused),
        actor_id,
    )
    return {
        'date': attendance_date.isoformat(),
        'prayer': prayer_name,
        'recorded': len(entries),
        'excused_student_ids': sorted(excused),
        'lock': serialize_lock(marker),
    }
