from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date

from sqlalchemy.orm import Session

from attendance_engine.core.errors import ConflictError, NotFoundError, ValidationError
from attendance_engine.core.time_provider import TimeProvider, default_time_provider
from attendance_engine.models import LeaveGrant, LeaveStatus, Student
from attendance_engine.services.leave_sync_service import materialize_leave_records, retract_leave_records


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class LeaveFilter:
    student_id: int | None = None
    status: str | None = None
    active_on: date | None = None


def _normalize_status(value: str) -> str:
    status = str(value or '').strip().lower()
    if status not in {item.value for item in LeaveStatus}:
        raise ValidationError(f'status must be one of {", ".join(item.value for item in LeaveStatus)}')
    return status


def serialize_leave(row: LeaveGrant) -> dict:
    return {
        'id': row.id,
        'student_id': row.student_id,
        'from_date': row.from_date.isoformat(),
        'to_date': row.to_date.isoformat(),
        'reason': row.reason or '',
        'status': row.status,
        'created_by': row.created_by,
        'cancelled_by': row.cancelled_by,
        'cancelled_at': row.cancelled_at.isoformat() if row.cancelled_at else None,
        'last_synced_at': row.last_synced_at.isoformat() if row.last_synced_at else None,
        'created_at': row.created_at.isoformat() if row.created_at else None,
    }


def find_overlapping_grant(db: Session, student_id: int, from_date: date, to_date: date) -> LeaveGrant | None:
    return (
        db.query(LeaveGrant)
        .filter(
            LeaveGrant.student_id == int(student_id),
            LeaveGrant.status == LeaveStatus.ACTIVE.value,
            LeaveGrant.from_date <= to_date,
            LeaveGrant.to_date >= from_date,
        )
        .order_by(LeaveGrant.from_date.asc(), LeaveGrant.id.asc())
        .first()
    )


def _overlap_conflict(existing: LeaveGrant) -> ConflictError:
    return ConflictError(
        'Student already has an active leave overlapping these dates',
        existing={
            'leave_id': existing.id,
            'from_date': existing.from_date.isoformat(),
            'to_date': existing.to_date.isoformat(),
        },
    )


def leave_status_for(db: Session, student_id: int, target_date: date) -> LeaveGrant | None:
    return find_overlapping_grant(db, student_id, target_date, target_date)


def students_on_leave(db: Session, student_ids: list[int], target_date: date) -> set[int]:
    if not student_ids:
        return set()
    rows = (
        db.query(LeaveGrant.student_id)
        .filter(
            LeaveGrant.student_id.in_([int(item) for item in student_ids]),
            LeaveGrant.status == LeaveStatus.ACTIVE.value,
            LeaveGrant.from_date <= target_date,
            LeaveGrant.to_date >= target_date,
        )
        .all()
    )
    return {int(student_id) for (student_id,) in rows}


def create_leave_grant(
    db: Session,
    *,
    student_id: int | None,
    from_date: date | None,
    to_date: date | None,
    reason: str = '',
    actor_id: int | None = None,
    time_provider: TimeProvider = default_time_provider,
) -> tuple[LeaveGrant, dict]:
    if not student_id:
        raise ValidationError('student_id is required')
    if from_date is None or to_date is None:
        raise ValidationError('from_date and to_date are required')
    if from_date > to_date:
        raise ValidationError('from_date must be on or before to_date')

    # Row lock on the student serializes concurrent grant creation where the backend supports it.
    student = db.query(Student).filter(Student.id == int(student_id)).with_for_update().first()
    if student is None:
        raise NotFoundError('Student not found')

    existing = find_overlapping_grant(db, student.id, from_date, to_date)
    if existing is not None:
        db.rollback()
        raise _overlap_conflict(existing)

    grant = LeaveGrant(
        student_id=student.id,
        from_date=from_date,
        to_date=to_date,
        reason=str(reason or '').strip(),
        status=LeaveStatus.ACTIVE.value,
        created_by=actor_id,
    )
    db.add(grant)
    db.flush()
    # The flushed insert holds the write lock, so a competing grant committed first is visible here.
    rival = (
        db.query(LeaveGrant)
        .filter(
            LeaveGrant.student_id == student.id,
            LeaveGrant.id != grant.id,
            LeaveGrant.status == LeaveStatus.ACTIVE.value,
            LeaveGrant.from_date <= to_date,
            LeaveGrant.to_date >= from_date,
        )
        .order_by(LeaveGrant.from_date.asc(), LeaveGrant.id.asc())
        .first()
    )
    if rival is not None:
        conflict = _overlap_conflict(rival)
        db.rollback()
        logger.info('leave_grant_race_lost student_id=%s leave_id=%s', student_id, conflict.existing['leave_id'])
        raise conflict
    db.commit()
    db.refresh(grant)
    logger.info('leave_grant_created id=%s student_id=%s from=%s to=%s', grant.id, grant.student_id, from_date, to_date)

    summary = materialize_leave_records(db, grant, time_provider=time_provider)
    db.refresh(grant)
    return grant, summary


def get_leave_grant(db: Session, leave_id: int) -> LeaveGrant:
    row = db.query(LeaveGrant).filter(LeaveGrant.id == int(leave_id)).first()
    if row is None:
        raise NotFoundError('Leave grant not found')
    return row


def cancel_leave_grant(
    db: Session,
    leave_id: int,
    *,
    actor_id: int | None = None,
    time_provider: TimeProvider = default_time_provider,
) -> tuple[LeaveGrant, int]:
    grant = db.query(LeaveGrant).filter(LeaveGrant.id == int(leave_id)).with_for_update().first()
    if grant is None:
        raise NotFoundError('Leave grant not found')
    if grant.status != LeaveStatus.ACTIVE.value:
        raise NotFoundError(f'Leave grant is already {grant.status}')

    grant.status = LeaveStatus.CANCELLED.value
    grant.cancelled_by = actor_id
    grant.cancelled_at = time_provider.naive_now()
    removed = retract_leave_records(db, grant)
    db.commit()
    db.refresh(grant)
    logger.info('leave_grant_cancelled id=%s removed_records=%s actor_id=%s', grant.id, removed, actor_id)
    return grant, removed


def resync_leave_grant(db: Session, leave_id: int, *, time_provider: TimeProvider = default_time_provider) -> dict:
    grant = get_leave_grant(db, leave_id)
    if grant.status != LeaveStatus.ACTIVE.value:
        raise NotFoundError(f'Leave grant is already {grant.status}')
    return materialize_leave_records(db, grant, time_provider=time_provider)


def complete_expired_leave_grants(db: Session, *, time_provider: TimeProvider = default_time_provider) -> dict:
    today = time_provider.today()
    rows = (
        db.query(LeaveGrant)
        .filter(
            LeaveGrant.status == LeaveStatus.ACTIVE.value,
            LeaveGrant.to_date < today,
        )
        .all()
    )
    for row in rows:
        row.status = LeaveStatus.COMPLETED.value
    db.commit()
    logger.info('leave_grants_completed count=%s as_of=%s', len(rows), today)
    return {'completed': len(rows), 'as_of': today.isoformat()}


def list_leave_grants(db: Session, filters: LeaveFilter) -> list[LeaveGrant]:
    query = db.query(LeaveGrant)
    if filters.student_id:
        query = query.filter(LeaveGrant.student_id == int(filters.student_id))
    if filters.status:
        query = query.filter(LeaveGrant.status == _normalize_status(filters.status))
    if filters.active_on is not None:
        query = query.filter(
            LeaveGrant.status == LeaveStatus.ACTIVE.value,
            LeaveGrant.from_date <= filters.active_on,
            LeaveGrant.to_date >= filters.active_on,
        )
    return query.order_by(LeaveGrant.from_date.desc(), LeaveGrant.id.desc()).all()
