from __future__ import annotations

import logging
from datetime import date, timedelta
from typing import Iterator

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from attendance_engine.config import settings
from attendance_engine.core.class_identity import ClassIdentity
from attendance_engine.core.errors import NotFoundError, ValidationError
from attendance_engine.core.time_provider import TimeProvider, default_time_provider
from attendance_engine.metrics import timed_service
from attendance_engine.models import AttendanceRecord, AttendanceStatus, LeaveGrant, LeaveStatus, RecordSource, Student, UnitKind
from attendance_engine.services.reconciliation_events import LEAVE_SYNC_BATCH_FAILED, record_event
from attendance_engine.services.schedule_service import WEEKDAYS, day_of_week_for, prayer_units, slots_for
from attendance_engine.services.submission_ledger import LEAVE_SYNC, SubmissionEntry, record_submissions


logger = logging.getLogger(__name__)


def date_sequence(start: date, end: date) -> Iterator[date]:
    current = start
    while current <= end:
        yield current
        current += timedelta(days=1)


def _units_by_weekday(db: Session, class_identity: ClassIdentity) -> dict[str, list[tuple[str, str, int | None]]]:
    prayers = [(UnitKind.PRAYER.value, prayer, None) for prayer in prayer_units()]
    units: dict[str, list[tuple[str, str, int | None]]] = {}
    for day in WEEKDAYS:
        periods = [
            (UnitKind.PERIOD.value, str(slot.period_number), slot.subject_id)
            for slot in slots_for(db, class_identity, day)
        ]
        units[day] = periods + prayers
    return units


def iter_leave_entries(
    db: Session,
    grant: LeaveGrant,
    student: Student,
    *,
    start: date | None = None,
    end: date | None = None,
    time_provider: TimeProvider = default_time_provider,
) -> Iterator[SubmissionEntry]:
    class_identity = ClassIdentity.from_row(student)
    units = _units_by_weekday(db, class_identity)
    recorded_at = time_provider.naive_now()
    first_day = max(grant.from_date, start) if start else grant.from_date
    last_day = min(grant.to_date, end) if end else grant.to_date
    for current in date_sequence(first_day, last_day):
        for unit_kind, unit, subject_id in units[day_of_week_for(current)]:
            yield SubmissionEntry(
                student_id=student.id,
                record_date=current,
                unit_kind=unit_kind,
                unit=unit,
                status=AttendanceStatus.ON_LEAVE.value,
                recorded_at=recorded_at,
                recorded_by=grant.created_by,
                subject_id=subject_id,
                course_type=class_identity.course_type,
                year=class_identity.year,
                stream=class_identity.stream,
                section=class_identity.section,
                source=RecordSource.LEAVE_SYNC.value,
                leave_grant_id=grant.id,
            )


def _batches(entries: Iterator[SubmissionEntry], size: int) -> Iterator[list[SubmissionEntry]]:
    batch: list[SubmissionEntry] = []
    for entry in entries:
        batch.append(entry)
        if len(batch) >= size:
            yield batch
            batch = []
    if batch:
        yield batch


@timed_service('leave_sync_materialize')
def materialize_leave_records(
    db: Session,
    grant: LeaveGrant,
    *,
    start: date | None = None,
    end: date | None = None,
    time_provider: TimeProvider = default_time_provider,
) -> dict:
    """Write one ``on_leave`` row per scheduled period and prayer in the grant's span.

    Rows are committed batch by batch; a failed batch is recorded and the
    rest continue. Re-running fills whatever an interrupted run missed.
    """
    if grant.status != LeaveStatus.ACTIVE.value:
        raise ValidationError('Only active leave grants can be synchronized')
    student = db.query(Student).filter(Student.id == grant.student_id).first()
    if student is None:
        raise NotFoundError('Student not found')

    size = max(1, int(settings.ledger_batch_size))
    written = 0
    failures: list[dict] = []
    entries = iter_leave_entries(db, grant, student, start=start, end=end, time_provider=time_provider)
    for index, batch in enumerate(_batches(entries, size)):
        try:
            written += record_submissions(db, batch, mode=LEAVE_SYNC, batch_size=size)
            db.commit()
        except SQLAlchemyError as exc:
            db.rollback()
            logger.exception('leave_sync_batch_failed grant_id=%s batch=%s', grant.id, index)
            record_event(LEAVE_SYNC_BATCH_FAILED)
            failures.append(
                {
                    'batch': index,
                    'from_date': batch[0].record_date.isoformat(),
                    'to_date': batch[-1].record_date.isoformat(),
                    'error': exc.__class__.__name__,
                }
            )

    if not failures:
        grant.last_synced_at = time_provider.naive_now()
        db.commit()
    logger.info(
        'leave_sync_materialized grant_id=%s student_id=%s units_processed=%s failed_batches=%s',
        grant.id,
        grant.student_id,
        written,
        len(failures),
    )
    return {
        'leave_id': grant.id,
        'days': (grant.to_date - grant.from_date).days + 1,
        'units_processed': written,
        'failed_batches': len(failures),
        'failures': failures,
    }


def retract_leave_records(db: Session, grant: LeaveGrant) -> int:
    """Delete rows this grant materialized; the caller commits."""
    query = db.query(AttendanceRecord).filter(
        AttendanceRecord.leave_grant_id == grant.id,
        AttendanceRecord.source == RecordSource.LEAVE_SYNC.value,
    )
    removed = query.delete(synchronize_session=False)
    logger.info('leave_sync_retracted grant_id=%s removed=%s', grant.id, removed)
    return int(removed or 0)
