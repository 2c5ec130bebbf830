from __future__ import annotations

from datetime import date

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from attendance_engine.core.class_identity import ClassIdentity
from attendance_engine.core.errors import DOMAIN_ERRORS, to_http_exception
from attendance_engine.core.router_guard import require_admin, require_staff
from attendance_engine.db import get_db
from attendance_engine.route_logging import EndpointNameRoute
from attendance_engine.routers.common import optional_class_identity_query
from attendance_engine.services.attendance_lock_service import get_lock, lock_history, normalize_unit_kind, serialize_lock, unlock


router = APIRouter(prefix='/api/attendance-locks', tags=['Attendance Locks'], route_class=EndpointNameRoute)


def _serialize_audit(row) -> dict:
    return {
        'action': row.action,
        'record_count': row.record_count,
        'actor_id': row.actor_id,
        'reason': row.reason or '',
        'created_at': row.created_at.isoformat() if row.created_at else None,
    }


@router.get('')
def inspect(
    date: date = Query(...),
    unit_kind: str = Query(default='period'),
    unit: str = Query(...),
    class_identity: ClassIdentity | None = Depends(optional_class_identity_query),
    _: dict = Depends(require_staff),
    db: Session = Depends(get_db),
):
    try:
        kind = normalize_unit_kind(unit_kind)
        marker = get_lock(db, date, kind, unit, class_identity)
        history = lock_history(db, date, kind, unit, class_identity)
    except DOMAIN_ERRORS as exc:
        raise to_http_exception(exc) from exc
    return {
        'locked': marker is not None,
        'lock': serialize_lock(marker) if marker else None,
        'history': [_serialize_audit(row) for row in history],
    }


@router.delete('')
def reset(
    date: date = Query(...),
    unit_kind: str = Query(default='period'),
    unit: str = Query(...),
    reason: str = Query(default=''),
    class_identity: ClassIdentity | None = Depends(optional_class_identity_query),
    user: dict = Depends(require_admin),
    db: Session = Depends(get_db),
):
    try:
        return unlock(db, date, unit_kind, unit, class_identity, actor_id=user['user_id'], reason=reason)
    except DOMAIN_ERRORS as exc:
        raise to_http_exception(exc) from exc
