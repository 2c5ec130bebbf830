from __future__ import annotations

import logging
from datetime import date
from typing import Any, Iterable

from sqlalchemy import update
from sqlalchemy.orm import Session

from attendance_engine.core.class_identity import ClassIdentity
from attendance_engine.core.errors import AlreadyCompletedError, ConflictError, NotFoundError, ValidationError
from attendance_engine.core.time_provider import TimeProvider, default_time_provider
from attendance_engine.metrics import timed_service
from attendance_engine.models import MissedSession, RecordSource
from attendance_engine.services.attendance_lock_service import serialize_lock
from attendance_engine.services.missed_session_service import serialize_missed_session
from attendance_engine.services.read_cache import invalidate_missed_session_views
from attendance_engine.services.submission_service import StudentMark, coerce_marks, reject_future, write_class_batch


logger = logging.getLogger(__name__)


@timed_service('complete_missed_session')
def complete_missed_session(
    db: Session,
    entry_id: int,
    *,
    makeup_date: date | None,
    makeup_period: int | None,
    records: Iterable[StudentMark | dict[str, Any]] | None = None,
    actor_id: int | None = None,
    remarks: str | None = None,
    time_provider: TimeProvider = default_time_provider,
) -> dict:
    """Close a queued entry, optionally recording the makeup session's attendance.

    The pending check and the completion are one conditional UPDATE, so two
    concurrent completions cannot both succeed.
    """
    if makeup_date is None:
        raise ValidationError('makeup_date is required')
    if not makeup_period or int(makeup_period) <= 0:
        raise ValidationError('makeup_period must be a positive period number')

    current = db.query(MissedSession).filter(MissedSession.id == int(entry_id)).first()
    if current is None:
        raise NotFoundError('Missed session not found')
    if current.is_completed:
        raise AlreadyCompletedError('Missed session is already completed')
    reject_future(makeup_date, time_provider)
    if makeup_date < current.missed_date:
        raise ValidationError('makeup_date cannot be before the missed date')
    marks = coerce_marks(records) if records else []

    now = time_provider.naive_now()
    result = db.execute(
        update(MissedSession)
        .where(MissedSession.id == int(entry_id), MissedSession.is_completed.is_(False))
        .values(
            is_completed=True,
            completed_at=now,
            makeup_date=makeup_date,
            makeup_period=int(makeup_period),
            completed_by=actor_id,
            remarks=(str(remarks).strip() if remarks else f'Makeup completed on {makeup_date.isoformat()}'),
            open_key=None,
            updated_at=now,
        )
        .execution_options(synchronize_session=False)
    )
    if result.rowcount == 0:
        db.rollback()
        existing = db.query(MissedSession).filter(MissedSession.id == int(entry_id)).first()
        if existing is None:
            raise NotFoundError('Missed session not found')
        raise AlreadyCompletedError('Missed session is already completed')

    entry = db.query(MissedSession).filter(MissedSession.id == int(entry_id)).one()
    marker = None
    recorded = 0
    excused: set[int] = set()
    if marks:
        class_identity = ClassIdentity.from_row(entry)
        # Makeup sessions are held outside the timetable; subject comes from the missed slot.
        try:
            marker, recorded, excused = write_class_batch(
                db,
                class_identity=class_identity,
                attendance_date=makeup_date,
                period_number=int(makeup_period),
                marks=marks,
                subject_id=entry.subject_id,
                source=RecordSource.MAKEUP.value,
                actor_id=actor_id,
                time_provider=time_provider,
            )
        except (ValidationError, ConflictError):
            db.rollback()
            raise
    db.commit()
    db.refresh(entry)
    invalidate_missed_session_views()
    logger.info(
        'missed_session_completed id=%s makeup_date=%s makeup_period=%s records=%s actor_id=%s',
        entry.id,
        makeup_date,
        makeup_period,
        recorded,
        actor_id,
    )
    return {
        'missed_session': serialize_missed_session(entry, time_provider.today()),
        'recorded': recorded,
        'excused_student_ids': sorted(excused),
        'lock': serialize_lock(marker) if marker is not None else None,
    }
