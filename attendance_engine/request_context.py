from __future__ import annotations

from contextlib import contextmanager
from contextvars import ContextVar
from typing import Iterator


BACKGROUND = 'background'

# Slow-query logs read this: "GET /api/..." inside a request, "job:<name>" inside a scheduled job.
current_endpoint: ContextVar[str] = ContextVar('current_endpoint', default=BACKGROUND)


def job_tag(job_name: str) -> str:
    return f'job:{job_name}'


@contextmanager
def tagged(label: str) -> Iterator[str]:
    value = str(label or '').strip() or BACKGROUND
    token = current_endpoint.set(value)
    try:
        yield value
    finally:
        current_endpoint.reset(token)
