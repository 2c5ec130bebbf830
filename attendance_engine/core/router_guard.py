from __future__ import annotations

from typing import Iterable

from fastapi import HTTPException, Request

from attendance_engine.services.auth_service import validate_session_token


def _resolve_token(request: Request) -> str | None:
    token = request.cookies.get('auth_session')
    if token:
        return token
    authorization = request.headers.get('authorization', '')
    if authorization.lower().startswith('bearer '):
        return authorization[7:].strip()
    return None


def require_auth_user(request: Request) -> dict:
    session = validate_session_token(_resolve_token(request))
    if not session:
        raise HTTPException(status_code=401, detail='Unauthorized')
    user_id = int(session.get('user_id') or 0)
    if user_id <= 0:
        raise HTTPException(status_code=401, detail='Unauthorized')
    return {
        'user_id': user_id,
        'role': str(session.get('role') or '').strip().lower(),
    }


def require_role(user: dict, allowed_roles: set[str] | Iterable[str]) -> None:
    normalized = {str(role).strip().lower() for role in allowed_roles}
    if str(user.get('role') or '').strip().lower() not in normalized:
        raise HTTPException(status_code=403, detail='Forbidden')


def require_admin(request: Request) -> dict:
    user = require_auth_user(request)
    require_role(user, {'admin'})
    return user


def require_staff(request: Request) -> dict:
    user = require_auth_user(request)
    require_role(user, {'admin', 'teacher'})
    return user
