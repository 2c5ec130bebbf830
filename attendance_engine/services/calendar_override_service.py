from __future__ import annotations

import logging
import warnings
from dataclasses import dataclass
from datetime import date

from sqlalchemy.orm import Session

from attendance_engine.core.class_identity import ClassIdentity, normalize_course_type
from attendance_engine.core.errors import IntegrityWarning, NotFoundError, ValidationError
from attendance_engine.core.time_provider import TimeProvider, default_time_provider
from attendance_engine.models import CalendarOverride, OverrideKind
from attendance_engine.services.read_cache import invalidate_missed_session_views
from attendance_engine.services.reconciliation_events import OVERRIDE_INTEGRITY, record_event


logger = logging.getLogger(__name__)

ALL_SCOPE = 'all'


@dataclass(frozen=True)
class OverrideFilter:
    start_date: date | None = None
    end_date: date | None = None
    kind: str | None = None
    include_deleted: bool = False
    class_identity: ClassIdentity | None = None


def normalize_scope(values: list[str] | str | None) -> list[str]:
    if values is None or values == '' or values == []:
        return [ALL_SCOPE]
    raw = [values] if isinstance(values, str) else list(values)
    cleaned = [str(item).strip().lower() for item in raw if str(item).strip()]
    if not cleaned or ALL_SCOPE in cleaned:
        return [ALL_SCOPE]
    return sorted({normalize_course_type(item) for item in cleaned})


def _normalize_kind(kind: str | None) -> str:
    value = str(kind or OverrideKind.ACADEMIC.value).strip().lower()
    if value not in {item.value for item in OverrideKind}:
        raise ValidationError(f'kind must be one of {", ".join(item.value for item in OverrideKind)}')
    return value


def is_class_scoped(row: CalendarOverride) -> bool:
    return bool(row.course_type)


def override_periods(row: CalendarOverride) -> set[int]:
    return {int(item) for item in (row.affected_periods or [])}


def covers(row: CalendarOverride, class_identity: ClassIdentity | None, period_number: int | None = None) -> bool:
    if class_identity is None:
        return not is_class_scoped(row) and not row.affected_periods and ALL_SCOPE in (row.affected_scope or [ALL_SCOPE])

    if is_class_scoped(row):
        if row.course_type != class_identity.course_type or int(row.year or 0) != class_identity.year:
            return False
        if row.stream and row.stream != class_identity.stream:
            return False
        if row.section and row.section != class_identity.section:
            return False
    else:
        scope = row.affected_scope or [ALL_SCOPE]
        if ALL_SCOPE not in scope and class_identity.course_type not in scope:
            return False

    periods = override_periods(row)
    if periods and period_number is not None and int(period_number) not in periods:
        return False
    return True


def active_overrides_on(db: Session, target_date: date) -> list[CalendarOverride]:
    return (
        db.query(CalendarOverride)
        .filter(
            CalendarOverride.override_date == target_date,
            CalendarOverride.is_deleted.is_(False),
        )
        .order_by(CalendarOverride.id.asc())
        .all()
    )


def first_covering(
    rows: list[CalendarOverride],
    target_date: date,
    class_identity: ClassIdentity | None,
    *,
    period_number: int | None = None,
) -> CalendarOverride | None:
    matches = [row for row in rows if covers(row, class_identity, period_number)]
    if not matches:
        return None
    if len(matches) > 1:
        scope_label = class_identity.key if class_identity else ALL_SCOPE
        message = (
            f'{len(matches)} active calendar overrides match {target_date.isoformat()} scope={scope_label}; '
            f'using override_id={matches[0].id}'
        )
        logger.warning(
            'calendar_override_integrity date=%s scope=%s override_ids=%s',
            target_date.isoformat(),
            scope_label,
            [row.id for row in matches],
        )
        record_event(OVERRIDE_INTEGRITY)
        warnings.warn(message, IntegrityWarning, stacklevel=3)
    return matches[0]


def is_closed_for(
    db: Session,
    target_date: date,
    class_identity: ClassIdentity | None = None,
    *,
    period_number: int | None = None,
) -> CalendarOverride | None:
    return first_covering(active_overrides_on(db, target_date), target_date, class_identity, period_number=period_number)


def serialize_override(row: CalendarOverride) -> dict:
    class_scope = None
    if is_class_scoped(row):
        class_scope = {
            'course_type': row.course_type,
            'year': row.year,
            'stream': row.stream or '',
            'section': row.section,
        }
    return {
        'id': row.id,
        'date': row.override_date.isoformat(),
        'name': row.name,
        'kind': row.kind,
        'reason': row.reason or '',
        'affected_scope': list(row.affected_scope or [ALL_SCOPE]),
        'class_scope': class_scope,
        'affected_periods': sorted(override_periods(row)),
        'triggered_at': row.triggered_at,
        'is_deleted': bool(row.is_deleted),
        'created_by': row.created_by,
        'created_at': row.created_at.isoformat() if row.created_at else None,
    }


def create_holiday(
    db: Session,
    *,
    holiday_date: date | None,
    name: str,
    kind: str | None = None,
    reason: str = '',
    affected_scope: list[str] | str | None = None,
    actor_id: int | None = None,
    time_provider: TimeProvider = default_time_provider,
) -> CalendarOverride:
    if holiday_date is None:
        raise ValidationError('date is required')
    clean_name = str(name or '').strip()
    if not clean_name:
        raise ValidationError('name is required')
    scope = normalize_scope(affected_scope)
    row = CalendarOverride(
        override_date=holiday_date,
        name=clean_name,
        kind=_normalize_kind(kind),
        reason=str(reason or '').strip(),
        affected_scope=scope,
        affected_periods=[],
        triggered_at=time_provider.now().strftime('%H:%M'),
        is_deleted=False,
        created_by=actor_id,
    )
    db.add(row)
    db.commit()
    db.refresh(row)
    invalidate_missed_session_views()
    logger.info('calendar_override_created id=%s date=%s kind=%s scope=%s', row.id, row.override_date, row.kind, scope)
    return row


def get_override(db: Session, override_id: int) -> CalendarOverride:
    row = db.query(CalendarOverride).filter(CalendarOverride.id == int(override_id)).first()
    if row is None:
        raise NotFoundError('Calendar override not found')
    return row


def update_override(
    db: Session,
    override_id: int,
    *,
    name: str | None = None,
    reason: str | None = None,
    affected_scope: list[str] | str | None = None,
) -> CalendarOverride:
    row = get_override(db, override_id)
    if row.is_deleted:
        raise NotFoundError('Calendar override is deleted')
    if name is not None:
        clean_name = str(name).strip()
        if not clean_name:
            raise ValidationError('name cannot be empty')
        row.name = clean_name
    if reason is not None:
        row.reason = str(reason).strip()
    if affected_scope is not None and not is_class_scoped(row):
        row.affected_scope = normalize_scope(affected_scope)
    db.commit()
    db.refresh(row)
    invalidate_missed_session_views()
    return row


def soft_delete_override(
    db: Session,
    override_id: int,
    *,
    actor_id: int | None = None,
    time_provider: TimeProvider = default_time_provider,
) -> CalendarOverride:
    row = get_override(db, override_id)
    if row.is_deleted:
        raise NotFoundError('Calendar override already deleted')
    row.is_deleted = True
    row.deleted_at = time_provider.naive_now()
    row.deleted_by = actor_id
    db.commit()
    db.refresh(row)
    invalidate_missed_session_views()
    logger.info('calendar_override_deleted id=%s date=%s actor_id=%s', row.id, row.override_date, actor_id)
    return row


def restore_override(db: Session, override_id: int) -> CalendarOverride:
    row = get_override(db, override_id)
    if not row.is_deleted:
        raise ValidationError('Calendar override is not deleted')
    row.is_deleted = False
    row.deleted_at = None
    row.deleted_by = None
    db.commit()
    db.refresh(row)
    invalidate_missed_session_views()
    logger.info('calendar_override_restored id=%s date=%s', row.id, row.override_date)
    return row


def list_overrides(db: Session, filters: OverrideFilter) -> list[CalendarOverride]:
    query = db.query(CalendarOverride)
    if not filters.include_deleted:
        query = query.filter(CalendarOverride.is_deleted.is_(False))
    if filters.start_date is not None:
        query = query.filter(CalendarOverride.override_date >= filters.start_date)
    if filters.end_date is not None:
        query = query.filter(CalendarOverride.override_date <= filters.end_date)
    if filters.kind:
        query = query.filter(CalendarOverride.kind == _normalize_kind(filters.kind))
    rows = query.order_by(CalendarOverride.override_date.asc(), CalendarOverride.id.asc()).all()
    if filters.class_identity is not None:
        rows = [row for row in rows if covers(row, filters.class_identity)]
    return rows


