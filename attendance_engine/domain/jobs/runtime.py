from __future__ import annotations

import logging

from sqlalchemy.orm import Session

from attendance_engine.db import SessionLocal
from attendance_engine.domain.jobs.job_lock import acquire_job_lock, release_job_lock
from attendance_engine.metrics import run_timed_job
from attendance_engine.request_context import job_tag, tagged
from attendance_engine.services.reconciliation_events import JOB_FAILED, JOB_SKIPPED, JOB_SUCCEEDED, record_job_outcome


logger = logging.getLogger(__name__)


def with_db(task, *, job_label: str, session_factory=SessionLocal):
    lock_token = acquire_job_lock(job_label)
    if not lock_token:
        logger.info('job_lock_skipped_concurrent job=%s', job_label)
        record_job_outcome(job_label, JOB_SKIPPED)
        return None
    logger.info('job_lock_acquired job=%s', job_label)
    db: Session = session_factory()
    try:
        with tagged(job_tag(job_label)):
            result = task(db)
        record_job_outcome(job_label, JOB_SUCCEEDED)
        return result
    except Exception:
        db.rollback()
        logger.exception('job_failure job=%s', job_label)
        record_job_outcome(job_label, JOB_FAILED)
        return None
    finally:
        db.close()
        release_job_lock(job_label, lock_token)


def run_job(label: str, task, *, session_factory=SessionLocal):
    return run_timed_job(label, lambda: with_db(task, job_label=label, session_factory=session_factory))
