import unittest
from datetime import datetime, timedelta

from fastapi.testclient import TestClient

from attendance_engine.main import app
from attendance_engine.services.reconciliation_events import (
    DETECTION_PARTIAL,
    JOB_FAILED,
    JOB_SKIPPED,
    JOB_SUCCEEDED,
    LEAVE_SYNC_BATCH_FAILED,
    count_events,
    events_snapshot,
    job_event,
    job_outcome_counts,
    record_event,
    record_job_outcome,
    reset_events,
)


NOON = datetime(2026, 3, 10, 12, 0)


class ReconciliationEventTests(unittest.TestCase):
    def setUp(self):
        reset_events()
        self.addCleanup(reset_events)

    def test_counts_respect_the_window(self):
        record_event(DETECTION_PARTIAL, at=NOON - timedelta(hours=30))
        record_event(DETECTION_PARTIAL, at=NOON - timedelta(hours=5))
        record_event(DETECTION_PARTIAL, at=NOON - timedelta(minutes=10))
        self.assertEqual(count_events(DETECTION_PARTIAL, now=NOON), 2)
        self.assertEqual(count_events(DETECTION_PARTIAL, window_hours=1, now=NOON), 1)
        self.assertEqual(count_events(LEAVE_SYNC_BATCH_FAILED, now=NOON), 0)

    def test_job_outcomes_are_counted_per_job(self):
        record_job_outcome('leave_rollover', JOB_SUCCEEDED)
        record_job_outcome('leave_rollover', JOB_SUCCEEDED)
        record_job_outcome('missed_session_detection', JOB_FAILED)
        self.assertEqual(
            job_outcome_counts('leave_rollover'),
            {JOB_SUCCEEDED: 2, JOB_FAILED: 0, JOB_SKIPPED: 0},
        )
        self.assertEqual(job_outcome_counts('missed_session_detection')[JOB_FAILED], 1)
        with self.assertRaises(ValueError):
            job_event('leave_rollover', 'timed_out')

    def test_snapshot_lists_only_recent_events(self):
        record_event(LEAVE_SYNC_BATCH_FAILED, at=NOON - timedelta(hours=2))
        record_event(DETECTION_PARTIAL, at=NOON - timedelta(hours=26))
        self.assertEqual(events_snapshot(now=NOON), {LEAVE_SYNC_BATCH_FAILED: 1})

    def test_health_reports_recent_events(self):
        record_job_outcome('missed_session_detection', JOB_SKIPPED)
        client = TestClient(app)
        try:
            res = client.get('/health')
        finally:
            client.close()
        self.assertEqual(res.status_code, 200)
        self.assertEqual(res.json(), {'status': 'ok', 'events_24h': {'job:missed_session_detection:skipped_locked': 1}})


if __name__ == '__main__':
    unittest.main()
