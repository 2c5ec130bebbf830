from __future__ import annotations

from datetime import datetime

from fastapi import Query
from pydantic import BaseModel, Field

from attendance_engine.core.class_identity import ClassIdentity
from attendance_engine.core.errors import ValidationError, to_http_exception


class MarkPayload(BaseModel):
    student_id: int = Field(gt=0)
    status: str
    recorded_at: datetime | None = None


class ClassPayload(BaseModel):
    course_type: str
    year: int = Field(ge=1)
    stream: str = ''
    section: str = ''

    def identity(self) -> ClassIdentity:
        return _build(self.course_type, self.year, self.stream, self.section)


def _build(course_type, year, stream, section) -> ClassIdentity:
    try:
        return ClassIdentity.build(course_type, year, stream, section)
    except ValidationError as exc:
        raise to_http_exception(exc) from exc


def class_identity_query(
    course_type: str = Query(...),
    year: int = Query(..., ge=1),
    stream: str | None = Query(default=None),
    section: str | None = Query(default=None),
) -> ClassIdentity:
    return _build(course_type, year, stream, section)


def optional_class_identity_query(
    course_type: str | None = Query(default=None),
    year: int | None = Query(default=None, ge=1),
    stream: str | None = Query(default=None),
    section: str | None = Query(default=None),
) -> ClassIdentity | None:
    if not course_type and not year:
        return None
    return _build(course_type, year, stream, section)


def marks_from(records: list[MarkPayload] | None) -> list[dict]:
    return [item.model_dump() for item in records or []]
