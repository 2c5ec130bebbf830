from __future__ import annotations

from attendance_engine.cache import cache, cache_key


MISSED_SESSIONS_PREFIX = 'missed_sessions'


def missed_sessions_key(identifier: str) -> str:
    return cache_key(MISSED_SESSIONS_PREFIX, identifier)


def invalidate_missed_session_views() -> None:
    cache.invalidate_prefix(MISSED_SESSIONS_PREFIX)
