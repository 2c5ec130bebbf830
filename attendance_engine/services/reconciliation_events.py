from __future__ import annotations

import threading
from collections import defaultdict, deque
from datetime import datetime, timedelta

from attendance_engine.core.time_provider import default_time_provider


DETECTION_PARTIAL = 'detection_partial'
OVERRIDE_INTEGRITY = 'override_integrity'
LEAVE_SYNC_BATCH_FAILED = 'leave_sync_batch_failed'

JOB_SUCCEEDED = 'succeeded'
JOB_FAILED = 'failed'
JOB_SKIPPED = 'skipped_locked'
JOB_OUTCOMES = (JOB_SUCCEEDED, JOB_FAILED, JOB_SKIPPED)

# Timestamps older than this are pruned on write; reads never span more than a day.
_RETENTION = timedelta(hours=25)

_lock = threading.Lock()
_events: dict[str, deque[datetime]] = defaultdict(deque)


def job_event(job_name: str, outcome: str) -> str:
    if outcome not in JOB_OUTCOMES:
        raise ValueError(f'Unknown job outcome: {outcome}')
    return f'job:{job_name}:{outcome}'


def _prune(bucket: deque[datetime], cutoff: datetime) -> None:
    while bucket and bucket[0] < cutoff:
        bucket.popleft()


def record_event(name: str, *, at: datetime | None = None) -> None:
    now = at or default_time_provider.naive_now()
    with _lock:
        bucket = _events[name]
        bucket.append(now)
        _prune(bucket, now - _RETENTION)


def record_job_outcome(job_name: str, outcome: str) -> None:
    record_event(job_event(job_name, outcome))


def count_events(name: str, *, window_hours: int = 24, now: datetime | None = None) -> int:
    current = now or default_time_provider.naive_now()
    cutoff = current - timedelta(hours=min(24, max(1, int(window_hours or 24))))
    with _lock:
        bucket = _events.get(name)
        if not bucket:
            return 0
        return sum(1 for stamp in bucket if stamp >= cutoff)


def job_outcome_counts(job_name: str, *, window_hours: int = 24, now: datetime | None = None) -> dict[str, int]:
    return {
        outcome: count_events(job_event(job_name, outcome), window_hours=window_hours, now=now)
        for outcome in JOB_OUTCOMES
    }


def events_snapshot(*, window_hours: int = 24, now: datetime | None = None) -> dict[str, int]:
    """Non-zero counts per event over the window, for the health endpoint."""
    with _lock:
        names = sorted(_events)
    counts = {name: count_events(name, window_hours=window_hours, now=now) for name in names}
    return {name: value for name, value in counts.items() if value}


def reset_events() -> None:
    with _lock:
        _events.clear()
