from __future__ import annotations

import logging
import threading
import uuid

from attendance_engine.cache import cache, cache_key
from attendance_engine.config import settings


logger = logging.getLogger(__name__)
_lock = threading.RLock()
_KEY_PREFIX = 'job_lock'


def _lock_key(job_label: str) -> str:
    return cache_key(_KEY_PREFIX, job_label)


def acquire_job_lock(job_label: str, *, ttl_seconds: int | None = None) -> str | None:
    key = _lock_key(job_label)
    token = uuid.uuid4().hex
    ttl = max(1, int(ttl_seconds or settings.job_lock_ttl_seconds))
    with _lock:
        if cache.backend.set_if_absent(key, token, ttl):
            return token
    return None


def release_job_lock(job_label: str, token: str) -> None:
    if not token:
        return
    key = _lock_key(job_label)
    with _lock:
        current = cache.backend.get(key)
        if current is None:
            return
        if str(current) == str(token):
            cache.backend.delete(key)
