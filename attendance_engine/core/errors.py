from __future__ import annotations

from typing import Any

from fastapi import HTTPException


class ValidationError(ValueError):
    pass


class ConflictError(ValueError):
    def __init__(self, message: str, *, existing: dict[str, Any] | None = None) -> None:
        super().__init__(message)
        self.existing = existing or {}


class NotFoundError(LookupError):
    pass


class AlreadyCompletedError(NotFoundError):
    pass


class StoreUnavailable(RuntimeError):
    pass


class IntegrityWarning(UserWarning):
    pass


DOMAIN_ERRORS = (ValueError, LookupError, PermissionError, StoreUnavailable)


def to_http_exception(exc: Exception) -> HTTPException:
    if isinstance(exc, AlreadyCompletedError):
        return HTTPException(status_code=409, detail={'error': 'already_completed', 'message': str(exc)})
    if isinstance(exc, NotFoundError):
        return HTTPException(status_code=404, detail=str(exc) or 'Not found')
    if isinstance(exc, ConflictError):
        return HTTPException(status_code=409, detail={'error': 'conflict', 'message': str(exc), 'existing': exc.existing})
    if isinstance(exc, StoreUnavailable):
        return HTTPException(status_code=503, detail=str(exc) or 'Store unavailable', headers={'Retry-After': '5'})
    if isinstance(exc, PermissionError):
        return HTTPException(status_code=403, detail=str(exc) or 'Forbidden')
    if isinstance(exc, ValueError):
        return HTTPException(status_code=400, detail=str(exc))
    return HTTPException(status_code=500, detail='Internal error')
