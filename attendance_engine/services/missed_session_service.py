from __future__ import annotations

import logging
from collections import Counter
from dataclasses import asdict, dataclass
from datetime import date, datetime, timedelta

from sqlalchemy import func
from sqlalchemy.exc import IntegrityError, OperationalError, SQLAlchemyError
from sqlalchemy.orm import Session

from attendance_engine.cache import cache
from attendance_engine.config import settings
from attendance_engine.core.class_identity import ClassIdentity
from attendance_engine.core.errors import NotFoundError, StoreUnavailable, ValidationError
from attendance_engine.core.time_provider import TimeProvider, default_time_provider
from attendance_engine.metrics import timed_service
from attendance_engine.models import CalendarOverride, DetectionRun, MissedSession, TimetableSlot
from attendance_engine.services.calendar_override_service import active_overrides_on, first_covering
from attendance_engine.services.read_cache import invalidate_missed_session_views, missed_sessions_key
from attendance_engine.services.reconciliation_events import DETECTION_PARTIAL, record_event
from attendance_engine.services.schedule_service import day_of_week_for, is_weekly_holiday, slots_for_weekday
from attendance_engine.services.submission_ledger import conducted_slot_exists


logger = logging.getLogger(__name__)

PENDING = 'pending'
COMPLETED = 'completed'
ALL = 'all'
_STATUSES = (PENDING, COMPLETED, ALL)
_PRIORITIES = ('low', 'normal', 'high')
_URGENCIES = ('low', 'medium', 'high')
NOT_TAKEN_REASON = 'Attendance not taken'


@dataclass(frozen=True)
class MissedSessionFilter:
    course_type: str | None = None
    year: int | None = None
    stream: str | None = None
    section: str | None = None
    priority: str | None = None
    urgency: str | None = None
    days_since: int | None = None
    status: str = PENDING

    def validated(self) -> 'MissedSessionFilter':
        if self.status not in _STATUSES:
            raise ValidationError(f'status must be one of {", ".join(_STATUSES)}')
        if self.priority and self.priority not in _PRIORITIES:
            raise ValidationError(f'priority must be one of {", ".join(_PRIORITIES)}')
        if self.urgency and self.urgency not in _URGENCIES:
            raise ValidationError(f'urgency must be one of {", ".join(_URGENCIES)}')
        if self.days_since is not None and int(self.days_since) < 0:
            raise ValidationError('days_since cannot be negative')
        return self

    def cache_identity(self) -> str:
        return ':'.join(f'{key}={value}' for key, value in sorted(asdict(self).items()))


def natural_key(class_identity: ClassIdentity, subject_id: int | None, missed_date: date, period_number: int) -> str:
    return f'{class_identity.key}|{int(subject_id or 0)}|{missed_date.isoformat()}|{int(period_number)}'


def days_pending_for(missed_date: date, today: date) -> int:
    return max(0, (today - missed_date).days)


def urgency_for(days_pending: int) -> str:
    if days_pending > settings.missed_urgent_days:
        return 'high'
    if days_pending > settings.missed_medium_days:
        return 'medium'
    return 'low'


def serialize_missed_session(row: MissedSession, today: date) -> dict:
    class_identity = ClassIdentity.from_row(row)
    days_pending = days_pending_for(row.missed_date, today) if not row.is_completed else int(row.days_pending or 0)
    return {
        'id': row.id,
        'class': class_identity.as_dict(),
        'class_label': class_identity.label,
        'subject_id': row.subject_id,
        'subject': row.subject_code,
        'subject_name': row.subject_name,
        'missed_date': row.missed_date.isoformat(),
        'period_number': row.period_number,
        'day_of_week': row.day_of_week,
        'scheduled_start_time': row.scheduled_start_time,
        'scheduled_end_time': row.scheduled_end_time,
        'detected_at': row.detected_at.isoformat() if row.detected_at else None,
        'reason': row.reason,
        'priority': row.priority,
        'days_pending': days_pending,
        'urgency': urgency_for(days_pending),
        'auto_detected': bool(row.auto_detected),
        'is_completed': bool(row.is_completed),
        'completed_at': row.completed_at.isoformat() if row.completed_at else None,
        'makeup_date': row.makeup_date.isoformat() if row.makeup_date else None,
        'makeup_period': row.makeup_period,
        'completed_by': row.completed_by,
        'remarks': row.remarks,
    }


def serialize_detection_run(row: DetectionRun | None) -> dict | None:
    if row is None:
        return None
    return {
        'id': row.id,
        'date': row.target_date.isoformat(),
        'trigger': row.trigger,
        'triggered_by': row.triggered_by,
        'status': row.status,
        'scanned': row.scanned,
        'newly_missed': row.newly_missed,
        'already_queued': row.already_queued,
        'conducted': row.conducted,
        'closed': row.closed,
        'failures': row.failures,
        'started_at': row.started_at.isoformat() if row.started_at else None,
        'finished_at': row.finished_at.isoformat() if row.finished_at else None,
        'stale': bool(row.stale),
    }


def _existing_entry(db: Session, class_identity: ClassIdentity, subject_id: int | None, missed_date: date, period_number: int) -> MissedSession | None:
    return (
        db.query(MissedSession)
        .filter(
            MissedSession.course_type == class_identity.course_type,
            MissedSession.year == class_identity.year,
            MissedSession.stream == class_identity.stream,
            MissedSession.section == class_identity.section,
            MissedSession.subject_id == subject_id,
            MissedSession.missed_date == missed_date,
            MissedSession.period_number == int(period_number),
        )
        .first()
    )


def _detect_slot(
    db: Session,
    slot: TimetableSlot,
    target_date: date,
    overrides: list[CalendarOverride],
    *,
    detected_at: datetime,
    today: date,
) -> str:
    class_identity = ClassIdentity.from_row(slot)
    if first_covering(overrides, target_date, class_identity, period_number=slot.period_number) is not None:
        return 'closed'
    if conducted_slot_exists(db, class_identity, target_date, slot.period_number):
        return 'conducted'
    # Completed entries count too: a made-up session must not be queued again.
    if _existing_entry(db, class_identity, slot.subject_id, target_date, slot.period_number) is not None:
        return 'already_queued'

    subject = slot.subject
    entry = MissedSession(
        course_type=class_identity.course_type,
        year=class_identity.year,
        stream=class_identity.stream,
        section=class_identity.section,
        subject_id=slot.subject_id,
        subject_code=str(subject.subject_code or '') if subject else '',
        subject_name=subject.name if subject else '',
        missed_date=target_date,
        period_number=slot.period_number,
        day_of_week=day_of_week_for(target_date),
        scheduled_start_time=slot.start_time or '',
        scheduled_end_time=slot.end_time or '',
        detected_at=detected_at,
        reason=NOT_TAKEN_REASON,
        priority='normal',
        days_pending=days_pending_for(target_date, today),
        auto_detected=True,
        is_completed=False,
        open_key=natural_key(class_identity, slot.subject_id, target_date, slot.period_number),
    )
    db.add(entry)
    try:
        db.commit()
    except IntegrityError:
        db.rollback()
        return 'already_queued'
    return 'newly_missed'


def recompute_days_pending(db: Session, *, time_provider: TimeProvider = default_time_provider) -> int:
    today = time_provider.today()
    rows = db.query(MissedSession).filter(MissedSession.is_completed.is_(False)).all()
    changed = 0
    for row in rows:
        value = days_pending_for(row.missed_date, today)
        if row.days_pending != value:
            row.days_pending = value
            changed += 1
    db.commit()
    return changed


def _resolve_target(as_of_date: date | None, target_date: date | None, today: date) -> date:
    if target_date is None:
        target_date = (as_of_date or today) - timedelta(days=1)
    if target_date >= today:
        raise ValidationError('Detection only runs for dates that are fully in the past')
    return target_date


@timed_service('missed_session_detection')
def run_daily_detection(
    db: Session,
    as_of_date: date | None = None,
    *,
    target_date: date | None = None,
    trigger: str = 'scheduler',
    triggered_by: int | None = None,
    time_provider: TimeProvider = default_time_provider,
) -> dict:
    """Queue every scheduled, unclosed, unrecorded period of the target date.

    The target is the day before ``as_of_date`` (today by default) unless
    given explicitly; it must lie fully in the past. Safe to repeat for the
    same date: existing entries, open or completed, are never duplicated.
    """
    today = time_provider.today()
    target = _resolve_target(as_of_date, target_date, today)
    started_at = time_provider.naive_now()
    counts = Counter({'scanned': 0, 'newly_missed': 0, 'already_queued': 0, 'conducted': 0, 'closed': 0})
    failures: list[dict] = []
    status = 'ok'
    override_id = None

    day = day_of_week_for(target)
    try:
        if is_weekly_holiday(day):
            status = 'skipped_weekly_holiday'
            slots: list[TimetableSlot] = []
            overrides: list[CalendarOverride] = []
        else:
            overrides = active_overrides_on(db, target)
            school_closure = first_covering(overrides, target, None)
            if school_closure is not None:
                status = 'skipped_closed'
                override_id = school_closure.id
                slots = []
            else:
                slots = slots_for_weekday(db, day)
    except OperationalError as exc:
        db.rollback()
        raise StoreUnavailable('Attendance store unavailable during detection') from exc

    for slot in slots:
        counts['scanned'] += 1
        try:
            outcome = _detect_slot(db, slot, target, overrides, detected_at=started_at, today=today)
        except SQLAlchemyError as exc:
            db.rollback()
            logger.exception('missed_detection_slot_failed date=%s slot_id=%s', target, slot.id)
            failures.append({'slot_id': slot.id, 'period_number': slot.period_number, 'error': exc.__class__.__name__})
            continue
        counts[outcome] += 1

    if failures:
        status = 'partial'
        record_event(DETECTION_PARTIAL)

    try:
        recomputed = recompute_days_pending(db, time_provider=time_provider)
        db.query(DetectionRun).filter(DetectionRun.target_date == target, DetectionRun.stale.is_(True)).update(
            {DetectionRun.stale: False}, synchronize_session=False
        )
        run = DetectionRun(
            target_date=target,
            trigger=trigger,
            triggered_by=triggered_by,
            status=status,
            scanned=counts['scanned'],
            newly_missed=counts['newly_missed'],
            already_queued=counts['already_queued'],
            conducted=counts['conducted'],
            closed=counts['closed'],
            failures=len(failures),
            started_at=started_at,
            finished_at=time_provider.naive_now(),
            stale=False,
        )
        db.add(run)
        db.commit()
    except OperationalError as exc:
        db.rollback()
        raise StoreUnavailable('Attendance store unavailable while saving detection results') from exc
    invalidate_missed_session_views()

    logger.info(
        'missed_detection_done date=%s status=%s scanned=%s newly_missed=%s already_queued=%s conducted=%s closed=%s failures=%s',
        target,
        status,
        counts['scanned'],
        counts['newly_missed'],
        counts['already_queued'],
        counts['conducted'],
        counts['closed'],
        len(failures),
    )
    return {
        'run_id': run.id,
        'date': target.isoformat(),
        'status': status,
        'override_id': override_id,
        'scanned': counts['scanned'],
        'newly_missed': counts['newly_missed'],
        'already_queued': counts['already_queued'],
        'conducted': counts['conducted'],
        'closed': counts['closed'],
        'recomputed': recomputed,
        'failures': failures,
    }


def stale_detection_dates(db: Session) -> list[date]:
    rows = (
        db.query(DetectionRun.target_date)
        .filter(DetectionRun.stale.is_(True))
        .distinct()
        .order_by(DetectionRun.target_date.asc())
        .all()
    )
    return [target for (target,) in rows]


def run_scheduled_detection(db: Session, *, time_provider: TimeProvider = default_time_provider) -> dict:
    yesterday = time_provider.today() - timedelta(days=1)
    runs = [run_daily_detection(db, target_date=yesterday, trigger='scheduler', time_provider=time_provider)]
    for target in stale_detection_dates(db):
        if target == yesterday:
            continue
        runs.append(run_daily_detection(db, target_date=target, trigger='scheduler', time_provider=time_provider))
    return {'runs': runs}


def get_missed_session(db: Session, entry_id: int) -> MissedSession:
    row = db.query(MissedSession).filter(MissedSession.id == int(entry_id)).first()
    if row is None:
        raise NotFoundError('Missed session not found')
    return row


def _filtered_query(db: Session, filters: MissedSessionFilter, today: date):
    query = db.query(MissedSession)
    if filters.status == PENDING:
        query = query.filter(MissedSession.is_completed.is_(False))
    elif filters.status == COMPLETED:
        query = query.filter(MissedSession.is_completed.is_(True))
    if filters.course_type:
        query = query.filter(MissedSession.course_type == filters.course_type)
    if filters.year:
        query = query.filter(MissedSession.year == int(filters.year))
    if filters.stream is not None:
        query = query.filter(MissedSession.stream == filters.stream)
    if filters.section:
        query = query.filter(MissedSession.section == filters.section)
    if filters.priority:
        query = query.filter(MissedSession.priority == filters.priority)
    if filters.days_since is not None:
        query = query.filter(MissedSession.missed_date >= today - timedelta(days=int(filters.days_since)))
    return query.order_by(MissedSession.missed_date.asc(), MissedSession.period_number.asc(), MissedSession.id.asc())


def list_missed_sessions(
    db: Session,
    filters: MissedSessionFilter | None = None,
    *,
    time_provider: TimeProvider = default_time_provider,
) -> dict:
    filters = (filters or MissedSessionFilter()).validated()
    today = time_provider.today()
    key = missed_sessions_key(f'list:{today.isoformat()}:{filters.cache_identity()}')
    cached = cache.get_cached(key)
    if cached is not None:
        return cached

    items = [serialize_missed_session(row, today) for row in _filtered_query(db, filters, today).all()]
    if filters.urgency:
        items = [item for item in items if item['urgency'] == filters.urgency]
    pending = [item for item in items if not item['is_completed']]
    urgency_counts = Counter(item['urgency'] for item in pending)
    result = {
        'items': items,
        'summary': {
            'total': len(items),
            'pending': len(pending),
            'completed': len(items) - len(pending),
            'high_urgency': urgency_counts.get('high', 0),
            'medium_urgency': urgency_counts.get('medium', 0),
            'low_urgency': urgency_counts.get('low', 0),
            'high_priority': sum(1 for item in pending if item['priority'] == 'high'),
            'normal_priority': sum(1 for item in pending if item['priority'] == 'normal'),
            'urgent_pending': sum(1 for item in pending if item['days_pending'] > settings.missed_urgent_days),
            'auto_detected': sum(1 for item in items if item['auto_detected']),
        },
    }
    cache.set_cached(key, result, ttl=settings.missed_cache_ttl)
    return result


def missed_session_stats(db: Session, *, time_provider: TimeProvider = default_time_provider) -> dict:
    today = time_provider.today()
    key = missed_sessions_key(f'stats:{today.isoformat()}')
    cached = cache.get_cached(key)
    if cached is not None:
        return cached

    pending = db.query(MissedSession).filter(MissedSession.is_completed.is_(False)).all()
    by_class: Counter = Counter()
    high = 0
    overdue = 0
    for row in pending:
        days = days_pending_for(row.missed_date, today)
        by_class[ClassIdentity.from_row(row).label] += 1
        if urgency_for(days) == 'high':
            high += 1
        if days > settings.missed_urgent_days:
            overdue += 1
    completed_total = db.query(func.count(MissedSession.id)).filter(MissedSession.is_completed.is_(True)).scalar() or 0
    last_run = db.query(DetectionRun).order_by(DetectionRun.started_at.desc(), DetectionRun.id.desc()).first()
    result = {
        'total_pending': len(pending),
        'total_completed': int(completed_total),
        'high_priority': high,
        'overdue': overdue,
        'by_class': dict(sorted(by_class.items())),
        'last_detection_run': serialize_detection_run(last_run),
    }
    cache.set_cached(key, result, ttl=settings.missed_cache_ttl)
    return result
