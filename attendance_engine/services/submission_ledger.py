from __future__ import annotations

import logging
from dataclasses import asdict, dataclass
from datetime import date, datetime
from typing import Iterable

from sqlalchemy import or_
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.orm import Session

from attendance_engine.config import settings
from attendance_engine.core.class_identity import ClassIdentity
from attendance_engine.core.errors import ValidationError
from attendance_engine.models import AttendanceRecord, AttendanceStatus, RecordSource, UnitKind


logger = logging.getLogger(__name__)

_KEY_COLUMNS = ('student_id', 'record_date', 'unit_kind', 'unit')
_VALID_STATUSES = {item.value for item in AttendanceStatus}

LATEST_WINS = 'latest_wins'
IF_ABSENT = 'if_absent'
LEAVE_SYNC = 'leave_sync'


@dataclass(frozen=True)
class SubmissionEntry:
    student_id: int
    record_date: date
    unit_kind: str
    unit: str
    status: str
    recorded_at: datetime
    recorded_by: int | None = None
    subject_id: int | None = None
    course_type: str = ''
    year: int = 0
    stream: str = ''
    section: str = 'A'
    source: str = RecordSource.TEACHER.value
    leave_grant_id: int | None = None
    override_id: int | None = None
    lock_id: int | None = None


def normalize_status(value: str | None) -> str:
    status = str(value or '').strip().lower().replace('-', '_')
    if status in ('onleave', 'leave'):
        status = AttendanceStatus.ON_LEAVE.value
    if status not in _VALID_STATUSES:
        raise ValidationError(f'Invalid attendance status: {value}')
    return status


def period_unit(period_number: int) -> str:
    return str(int(period_number))


def _insert_for(db: Session):
    dialect = db.get_bind().dialect.name
    if dialect == 'sqlite':
        return sqlite.insert
    if dialect == 'postgresql':
        return postgresql.insert
    raise RuntimeError(f'Upsert not supported for dialect {dialect}')


def _row(entry: SubmissionEntry) -> dict:
    row = asdict(entry)
    row['updated_at'] = entry.recorded_at
    return row


def _upsert_statement(db: Session, rows: list[dict], mode: str):
    table = AttendanceRecord.__table__
    stmt = _insert_for(db)(table).values(rows)
    if mode == IF_ABSENT:
        return stmt.on_conflict_do_nothing(index_elements=list(_KEY_COLUMNS))

    updatable = [column for column in rows[0].keys() if column not in _KEY_COLUMNS]
    set_ = {column: stmt.excluded[column] for column in updatable}
    if mode == LATEST_WINS:
        # Materialized leave rows always yield to a direct mark.
        where = or_(
            table.c.source == RecordSource.LEAVE_SYNC.value,
            table.c.recorded_at <= stmt.excluded.recorded_at,
        )
    elif mode == LEAVE_SYNC:
        where = table.c.source == RecordSource.LEAVE_SYNC.value
    else:
        raise ValueError(f'Unknown upsert mode: {mode}')
    return stmt.on_conflict_do_update(index_elements=list(_KEY_COLUMNS), set_=set_, where=where)


def record_submissions(
    db: Session,
    entries: Iterable[SubmissionEntry],
    *,
    mode: str = LATEST_WINS,
    batch_size: int | None = None,
) -> int:
    """Write entries keyed by (student, date, unit) in bulk.

    ``latest_wins`` keeps whichever write carries the newest ``recorded_at``,
    so retried or reordered requests converge on the same row. A row
    materialized from a leave grant is replaced regardless of its
    timestamp. ``if_absent`` never touches an existing row. ``leave_sync`` only replaces rows that
    were themselves materialized from a leave grant.

    The caller owns the transaction; nothing is committed here.
    """
    size = max(1, int(batch_size or settings.ledger_batch_size))
    pending: list[dict] = []
    written = 0
    for entry in entries:
        pending.append(_row(entry))
        if len(pending) >= size:
            db.execute(_upsert_statement(db, pending, mode))
            written += len(pending)
            pending = []
    if pending:
        db.execute(_upsert_statement(db, pending, mode))
        written += len(pending)
    return written


def _class_slot_query(db: Session, class_identity: ClassIdentity, record_date: date, unit_kind: str, unit: str):
    return db.query(AttendanceRecord).filter(
        AttendanceRecord.record_date == record_date,
        AttendanceRecord.unit_kind == unit_kind,
        AttendanceRecord.unit == unit,
        AttendanceRecord.course_type == class_identity.course_type,
        AttendanceRecord.year == class_identity.year,
        AttendanceRecord.stream == class_identity.stream,
        AttendanceRecord.section == class_identity.section,
    )


def conducted_slot_exists(db: Session, class_identity: ClassIdentity, record_date: date, period_number: int) -> bool:
    # Materialized leave rows are override-equivalents, not evidence that the class met.
    row = (
        _class_slot_query(db, class_identity, record_date, UnitKind.PERIOD.value, period_unit(period_number))
        .filter(AttendanceRecord.source != RecordSource.LEAVE_SYNC.value)
        .with_entities(AttendanceRecord.id)
        .first()
    )
    return row is not None


def records_for_slot(
    db: Session,
    record_date: date,
    unit_kind: str,
    unit: str,
    class_identity: ClassIdentity | None = None,
) -> list[AttendanceRecord]:
    if class_identity is None:
        query = db.query(AttendanceRecord).filter(
            AttendanceRecord.record_date == record_date,
            AttendanceRecord.unit_kind == unit_kind,
            AttendanceRecord.unit == unit,
        )
    else:
        query = _class_slot_query(db, class_identity, record_date, unit_kind, unit)
    return query.order_by(AttendanceRecord.student_id.asc()).all()


def records_for_student(db: Session, student_id: int, record_date: date) -> list[AttendanceRecord]:
    return (
        db.query(AttendanceRecord)
        .filter(
            AttendanceRecord.student_id == int(student_id),
            AttendanceRecord.record_date == record_date,
        )
        .order_by(AttendanceRecord.unit_kind.asc(), AttendanceRecord.unit.asc())
        .all()
    )


def serialize_record(row: AttendanceRecord) -> dict:
    return {
        'id': row.id,
        'student_id': row.student_id,
        'date': row.record_date.isoformat(),
        'unit_kind': row.unit_kind,
        'unit': row.unit,
        'status': row.status,
        'subject_id': row.subject_id,
        'course_type': row.course_type,
        'year': row.year,
        'stream': row.stream,
        'section': row.section,
        'source': row.source,
        'leave_grant_id': row.leave_grant_id,
        'override_id': row.override_id,
        'recorded_at': row.recorded_at.isoformat() if row.recorded_at else None,
        'recorded_by': row.recorded_by,
    }
