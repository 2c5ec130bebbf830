from __future__ import annotations

from datetime import date

from sqlalchemy.orm import Session, joinedload

from attendance_engine.config import settings
from attendance_engine.core.class_identity import ClassIdentity
from attendance_engine.core.errors import ValidationError
from attendance_engine.models import Subject, TimetableSlot


WEEKDAYS = ('monday', 'tuesday', 'wednesday', 'thursday', 'friday', 'saturday', 'sunday')


def day_of_week_for(target_date: date) -> str:
    return WEEKDAYS[target_date.weekday()]


def normalize_day_of_week(value: str) -> str:
    day = str(value or '').strip().lower()
    for name in WEEKDAYS:
        if day == name or day == name[:3]:
            return name
    raise ValidationError(f'Unknown day_of_week: {value}')


def is_weekly_holiday(day_of_week: str) -> bool:
    return normalize_day_of_week(day_of_week) == normalize_day_of_week(settings.weekly_holiday)


def is_free_period(subject: Subject | None) -> bool:
    if subject is None:
        return True
    code = str(subject.subject_code or '').strip().lower()
    return code in {str(item).strip().lower() for item in settings.free_period_codes}


def _class_filter(query, class_identity: ClassIdentity):
    return query.filter(
        TimetableSlot.course_type == class_identity.course_type,
        TimetableSlot.year == class_identity.year,
        TimetableSlot.stream == class_identity.stream,
        TimetableSlot.section == class_identity.section,
    )


def _eligible(rows: list[TimetableSlot]) -> list[TimetableSlot]:
    return [row for row in rows if not is_free_period(row.subject)]


def slots_for(db: Session, class_identity: ClassIdentity, day_of_week: str) -> list[TimetableSlot]:
    day = normalize_day_of_week(day_of_week)
    if is_weekly_holiday(day):
        return []
    rows = (
        _class_filter(db.query(TimetableSlot).options(joinedload(TimetableSlot.subject)), class_identity)
        .filter(TimetableSlot.day_of_week == day)
        .order_by(TimetableSlot.period_number.asc())
        .all()
    )
    return _eligible(rows)


def slot_at(db: Session, class_identity: ClassIdentity, day_of_week: str, period_number: int) -> TimetableSlot | None:
    day = normalize_day_of_week(day_of_week)
    if is_weekly_holiday(day):
        return None
    row = (
        _class_filter(db.query(TimetableSlot).options(joinedload(TimetableSlot.subject)), class_identity)
        .filter(
            TimetableSlot.day_of_week == day,
            TimetableSlot.period_number == int(period_number),
        )
        .first()
    )
    if row is None or is_free_period(row.subject):
        return None
    return row


def slots_for_weekday(db: Session, day_of_week: str) -> list[TimetableSlot]:
    day = normalize_day_of_week(day_of_week)
    if is_weekly_holiday(day):
        return []
    rows = (
        db.query(TimetableSlot)
        .options(joinedload(TimetableSlot.subject))
        .filter(TimetableSlot.day_of_week == day)
        .order_by(
            TimetableSlot.course_type.asc(),
            TimetableSlot.year.asc(),
            TimetableSlot.stream.asc(),
            TimetableSlot.section.asc(),
            TimetableSlot.period_number.asc(),
        )
        .all()
    )
    return _eligible(rows)


def prayer_units() -> list[str]:
    return [str(item).strip().lower() for item in settings.prayer_units if str(item).strip()]


def normalize_prayer(value: str) -> str:
    prayer = str(value or '').strip().lower()
    if prayer not in prayer_units():
        raise ValidationError(f'Unknown prayer: {value}')
    return prayer
