from __future__ import annotations

from attendance_engine.domain.jobs.runtime import run_job
from attendance_engine.services.leave_service import complete_expired_leave_grants


def execute():
    return run_job('leave_rollover', lambda db: complete_expired_leave_grants(db))
