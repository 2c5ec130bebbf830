from __future__ import annotations

from dataclasses import dataclass

from attendance_engine.config import settings
from attendance_engine.core.errors import ValidationError


COURSE_TYPES = ('pu', 'post-pu')


def normalize_course_type(value: str | None) -> str:
    course_type = str(value or '').strip().lower().replace('_', '-')
    if course_type == 'postpu':
        course_type = 'post-pu'
    if course_type not in COURSE_TYPES:
        raise ValidationError(f'course_type must be one of {", ".join(COURSE_TYPES)}')
    return course_type


@dataclass(frozen=True)
class ClassIdentity:
    course_type: str
    year: int
    stream: str = ''
    section: str = 'A'

    @classmethod
    def build(cls, course_type: str | None, year: int | str | None, stream: str | None = None, section: str | None = None) -> 'ClassIdentity':
        try:
            year_value = int(year or 0)
        except (TypeError, ValueError):
            raise ValidationError('year must be a number') from None
        if year_value <= 0:
            raise ValidationError('year is required')
        return cls(
            course_type=normalize_course_type(course_type),
            year=year_value,
            stream=str(stream or '').strip().lower(),
            section=(str(section or '').strip() or settings.default_section).upper(),
        )

    @classmethod
    def from_row(cls, row) -> 'ClassIdentity':
        return cls(
            course_type=row.course_type,
            year=int(row.year),
            stream=row.stream or '',
            section=row.section or settings.default_section,
        )

    @property
    def key(self) -> str:
        return f'{self.course_type}:{self.year}:{self.stream or "-"}:{self.section}'

    @property
    def label(self) -> str:
        parts = [self.course_type.upper(), str(self.year)]
        if self.stream:
            parts.append(self.stream.upper())
        parts.append(f'Section {self.section}')
        return ' '.join(parts)

    def as_dict(self) -> dict:
        return {
            'course_type': self.course_type,
            'year': self.year,
            'stream': self.stream,
            'section': self.section,
        }

    def matches(self, row) -> bool:
        return (
            row.course_type == self.course_type
            and int(row.year or 0) == self.year
            and (row.stream or '') == self.stream
            and (row.section or settings.default_section) == self.section
        )


GLOBAL_SCOPE = 'global'


def scope_key(class_identity: ClassIdentity | None) -> str:
    return class_identity.key if class_identity is not None else GLOBAL_SCOPE
