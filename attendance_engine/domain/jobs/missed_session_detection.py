from __future__ import annotations

from attendance_engine.domain.jobs.runtime import run_job
from attendance_engine.services.missed_session_service import run_scheduled_detection


def execute():
    return run_job('missed_session_detection', lambda db: run_scheduled_detection(db))
