from __future__ import annotations

import logging
from datetime import date

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from attendance_engine.core.class_identity import ClassIdentity, scope_key
from attendance_engine.core.errors import ConflictError, NotFoundError, ValidationError
from attendance_engine.core.time_provider import TimeProvider, default_time_provider
from attendance_engine.models import (
    AttendanceLock,
    AttendanceLockAudit,
    AttendanceRecord,
    DetectionRun,
    LeaveGrant,
    LeaveStatus,
    MissedSession,
    RecordSource,
    Student,
    UnitKind,
)
from attendance_engine.services.leave_sync_service import iter_leave_entries
from attendance_engine.services.missed_session_service import days_pending_for, natural_key
from attendance_engine.services.read_cache import invalidate_missed_session_views
from attendance_engine.services.submission_ledger import LEAVE_SYNC, record_submissions


logger = logging.getLogger(__name__)


def normalize_unit_kind(value: str) -> str:
    unit_kind = str(value or '').strip().lower()
    if unit_kind not in {item.value for item in UnitKind}:
        raise ValidationError(f'unit_kind must be one of {", ".join(item.value for item in UnitKind)}')
    return unit_kind


def serialize_lock(row: AttendanceLock) -> dict:
    return {
        'id': row.id,
        'date': row.lock_date.isoformat(),
        'unit_kind': row.unit_kind,
        'unit': row.unit,
        'scope': row.scope_key,
        'record_count': row.record_count,
        'locked_by': row.locked_by,
        'locked_at': row.locked_at.isoformat() if row.locked_at else None,
    }


def _lock_query(db: Session, lock_date: date, unit_kind: str, unit: str, scope: ClassIdentity | None):
    return db.query(AttendanceLock).filter(
        AttendanceLock.lock_date == lock_date,
        AttendanceLock.unit_kind == normalize_unit_kind(unit_kind),
        AttendanceLock.unit == str(unit),
        AttendanceLock.scope_key == scope_key(scope),
    )


def get_lock(db: Session, lock_date: date, unit_kind: str, unit: str, scope: ClassIdentity | None = None) -> AttendanceLock | None:
    return _lock_query(db, lock_date, unit_kind, unit, scope).first()


def is_locked(db: Session, lock_date: date, unit_kind: str, unit: str, scope: ClassIdentity | None = None) -> bool:
    return get_lock(db, lock_date, unit_kind, unit, scope) is not None


def _audit(
    db: Session,
    action: str,
    marker: AttendanceLock,
    *,
    record_count: int,
    actor_id: int | None,
    reason: str = '',
    time_provider: TimeProvider = default_time_provider,
) -> None:
    db.add(
        AttendanceLockAudit(
            action=action,
            lock_date=marker.lock_date,
            unit_kind=marker.unit_kind,
            unit=marker.unit,
            scope_key=marker.scope_key,
            record_count=int(record_count or 0),
            actor_id=actor_id,
            reason=reason,
            created_at=time_provider.naive_now(),
        )
    )


def lock(
    db: Session,
    lock_date: date,
    unit_kind: str,
    unit: str,
    scope: ClassIdentity | None = None,
    *,
    record_count: int = 0,
    actor_id: int | None = None,
    time_provider: TimeProvider = default_time_provider,
) -> AttendanceLock:
    """Claim the slot with a single INSERT against the unique constraint.

    Runs inside the caller's transaction; on conflict the transaction is
    rolled back and ConflictError carries the lock that won.
    """
    marker = AttendanceLock(
        lock_date=lock_date,
        unit_kind=normalize_unit_kind(unit_kind),
        unit=str(unit),
        scope_key=scope_key(scope),
        record_count=int(record_count or 0),
        locked_by=actor_id,
        locked_at=time_provider.naive_now(),
    )
    db.add(marker)
    try:
        db.flush()
    except IntegrityError:
        db.rollback()
        existing = get_lock(db, lock_date, unit_kind, unit, scope)
        logger.info(
            'attendance_lock_conflict date=%s unit_kind=%s unit=%s scope=%s',
            lock_date,
            unit_kind,
            unit,
            scope_key(scope),
        )
        raise ConflictError(
            'Attendance already recorded for this slot',
            existing=serialize_lock(existing) if existing else {'date': lock_date.isoformat(), 'unit': str(unit), 'scope': scope_key(scope)},
        ) from None
    _audit(db, 'lock', marker, record_count=record_count, actor_id=actor_id, time_provider=time_provider)
    return marker


def _restore_leave_rows(
    db: Session,
    lock_date: date,
    unit_kind: str,
    unit: str,
    student_ids: list[int],
    *,
    time_provider: TimeProvider,
) -> int:
    if not student_ids:
        return 0
    grants = (
        db.query(LeaveGrant)
        .filter(
            LeaveGrant.student_id.in_(student_ids),
            LeaveGrant.status == LeaveStatus.ACTIVE.value,
            LeaveGrant.from_date <= lock_date,
            LeaveGrant.to_date >= lock_date,
        )
        .all()
    )
    restored = 0
    for grant in grants:
        student = db.query(Student).filter(Student.id == grant.student_id).first()
        if student is None:
            continue
        entries = [
            entry
            for entry in iter_leave_entries(db, grant, student, start=lock_date, end=lock_date, time_provider=time_provider)
            if entry.unit_kind == unit_kind and entry.unit == unit
        ]
        if entries:
            restored += record_submissions(db, entries, mode=LEAVE_SYNC)
    return restored


def _reopen_makeup_entries(db: Session, marker: AttendanceLock, scope: ClassIdentity, *, time_provider: TimeProvider) -> list[int]:
    """Put entries closed by the makeup session behind this lock back in the queue."""
    entries = (
        db.query(MissedSession)
        .filter(
            MissedSession.is_completed.is_(True),
            MissedSession.makeup_date == marker.lock_date,
            MissedSession.makeup_period == int(marker.unit),
            MissedSession.course_type == scope.course_type,
            MissedSession.year == scope.year,
            MissedSession.stream == scope.stream,
            MissedSession.section == scope.section,
        )
        .all()
    )
    now = time_provider.naive_now()
    today = time_provider.today()
    for entry in entries:
        entry.is_completed = False
        entry.completed_at = None
        entry.makeup_date = None
        entry.makeup_period = None
        entry.completed_by = None
        entry.remarks = None
        entry.open_key = natural_key(scope, entry.subject_id, entry.missed_date, entry.period_number)
        entry.days_pending = days_pending_for(entry.missed_date, today)
        entry.updated_at = now
    return [entry.id for entry in entries]


def unlock(
    db: Session,
    lock_date: date,
    unit_kind: str,
    unit: str,
    scope: ClassIdentity | None = None,
    *,
    actor_id: int | None = None,
    reason: str = '',
    time_provider: TimeProvider = default_time_provider,
) -> dict:
    marker = _lock_query(db, lock_date, unit_kind, unit, scope).with_for_update().first()
    if marker is None:
        raise NotFoundError('No attendance lock for this slot')

    held = db.query(AttendanceRecord.student_id, AttendanceRecord.source).filter(AttendanceRecord.lock_id == marker.id).all()
    student_ids = [int(student_id) for student_id, _ in held]
    held_makeup = any(source == RecordSource.MAKEUP.value for _, source in held)
    removed = (
        db.query(AttendanceRecord)
        .filter(AttendanceRecord.lock_id == marker.id)
        .delete(synchronize_session=False)
    )
    restored = _restore_leave_rows(db, marker.lock_date, marker.unit_kind, marker.unit, student_ids, time_provider=time_provider)
    reopened: list[int] = []
    if held_makeup and scope is not None and marker.unit_kind == UnitKind.PERIOD.value:
        reopened = _reopen_makeup_entries(db, marker, scope, time_provider=time_provider)

    stale_runs = 0
    if marker.unit_kind == UnitKind.PERIOD.value and marker.lock_date < time_provider.today():
        stale_runs = (
            db.query(DetectionRun)
            .filter(DetectionRun.target_date == marker.lock_date)
            .update({DetectionRun.stale: True}, synchronize_session=False)
        )

    payload = serialize_lock(marker)
    _audit(db, 'unlock', marker, record_count=removed, actor_id=actor_id, reason=str(reason or ''), time_provider=time_provider)
    db.delete(marker)
    db.commit()
    invalidate_missed_session_views()
    logger.info(
        'attendance_lock_reset date=%s unit_kind=%s unit=%s scope=%s removed=%s restored_leave=%s reopened=%s actor_id=%s',
        payload['date'],
        payload['unit_kind'],
        payload['unit'],
        payload['scope'],
        removed,
        restored,
        len(reopened),
        actor_id,
    )
    return {
        'lock': payload,
        'records_removed': int(removed or 0),
        'leave_records_restored': restored,
        'detection_runs_marked_stale': int(stale_runs or 0),
        'missed_sessions_reopened': reopened,
    }


def lock_history(db: Session, lock_date: date, unit_kind: str, unit: str, scope: ClassIdentity | None = None) -> list[AttendanceLockAudit]:
    return (
        db.query(AttendanceLockAudit)
        .filter(
            AttendanceLockAudit.lock_date == lock_date,
            AttendanceLockAudit.unit_kind == normalize_unit_kind(unit_kind),
            AttendanceLockAudit.unit == str(unit),
            AttendanceLockAudit.scope_key == scope_key(scope),
        )
        .order_by(AttendanceLockAudit.id.asc())
        .all()
    )
