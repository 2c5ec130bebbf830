import sys

import httpx
from alembic.config import Config
from alembic.runtime.migration import MigrationContext
from alembic.script import ScriptDirectory
from sqlalchemy import text

from attendance_engine.config import settings
from attendance_engine.db import SessionLocal, engine
from attendance_engine.domain.jobs.job_lock import acquire_job_lock, release_job_lock
from attendance_engine.models import AttendanceLock, DetectionRun, MissedSession
from attendance_engine.scheduler import scheduler, start_scheduler, stop_scheduler
from attendance_engine.services.missed_session_service import serialize_detection_run


EXPECTED_SCHEDULER_JOBS = {
    'missed_session_detection',
    'leave_rollover',
}

GREEN = '\033[32m'
RED = '\033[31m'
RESET = '\033[0m'


def run_check(name, fn):
    try:
        message = fn() or ''
        suffix = f' - {message}' if message else ''
        print(f'{GREEN}PASS{RESET} {name}{suffix}')
        return True
    except Exception as exc:
        print(f'{RED}FAIL{RESET} {name} - {exc}')
        return False


def check_db_connectivity_and_write():
    with engine.begin() as conn:
        conn.execute(text('SELECT 1'))
        conn.execute(text('CREATE TABLE IF NOT EXISTS _healthcheck_probe (id INTEGER PRIMARY KEY, note TEXT)'))
        conn.execute(text("INSERT INTO _healthcheck_probe (note) VALUES ('probe')"))
        conn.execute(text("DELETE FROM _healthcheck_probe WHERE note='probe'"))
        conn.execute(text('DROP TABLE IF EXISTS _healthcheck_probe'))
    return 'connect + write ok'


def check_alembic_head():
    cfg = Config('alembic.ini')
    script = ScriptDirectory.from_config(cfg)
    heads = set(script.get_heads())
    if not heads:
        raise RuntimeError('No alembic heads found in repository')

    with engine.connect() as conn:
        current = MigrationContext.configure(conn).get_current_revision()

    if current is None:
        raise RuntimeError('No migration version in DB (run alembic upgrade head)')
    if current not in heads:
        raise RuntimeError(f'DB revision {current} is not at head {sorted(heads)}')
    return f'current={current}'


def check_api_reachable():
    res = httpx.get(f'{settings.app_base_url.rstrip("/")}/health', timeout=8)
    if res.status_code != 200:
        raise RuntimeError(f'HTTP {res.status_code} from /health')
    return f'{settings.app_base_url} ok'


def check_scheduler_jobs_registered():
    start_scheduler()
    try:
        registered = {job.id for job in scheduler.get_jobs()}
        missing = sorted(EXPECTED_SCHEDULER_JOBS - registered)
        if missing:
            raise RuntimeError(f'Missing jobs: {missing}')
        return f'jobs={sorted(registered)}'
    finally:
        stop_scheduler()


def check_job_lock_round_trip():
    token = acquire_job_lock('healthcheck_probe', ttl_seconds=5)
    if not token:
        raise RuntimeError('Could not acquire probe job lock')
    try:
        if acquire_job_lock('healthcheck_probe', ttl_seconds=5):
            raise RuntimeError('Job lock acquired twice')
    finally:
        release_job_lock('healthcheck_probe', token)
    return f'backend={settings.cache_backend}'


def check_reconciliation_tables_accessible():
    db = SessionLocal()
    try:
        pending = db.query(MissedSession).filter(MissedSession.is_completed.is_(False)).count()
        locks = db.query(AttendanceLock).count()
        last_run = db.query(DetectionRun).order_by(DetectionRun.id.desc()).first()
        summary = serialize_detection_run(last_run)
        last = f"{summary['date']}:{summary['status']}" if summary else 'never'
        return f'pending_missed={pending} locks={locks} last_detection={last}'
    finally:
        db.close()


def main():
    checks = [
        ('Database connectivity and write access', check_db_connectivity_and_write),
        ('Alembic migration status at head', check_alembic_head),
        ('API reachable', check_api_reachable),
        ('Scheduler jobs registered', check_scheduler_jobs_registered),
        ('Job lock acquire/release', check_job_lock_round_trip),
        ('Reconciliation tables accessible', check_reconciliation_tables_accessible),
    ]

    all_ok = True
    for name, fn in checks:
        all_ok = run_check(name, fn) and all_ok

    if not all_ok:
        sys.exit(1)
    sys.exit(0)


if __name__ == '__main__':
    main()
