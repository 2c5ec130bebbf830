import threading
import unittest
from datetime import timedelta

from attendance_engine.core.errors import AlreadyCompletedError, ConflictError, NotFoundError, ValidationError
from attendance_engine.models import AttendanceLock, AttendanceRecord, MissedSession, RecordSource
from attendance_engine.services.attendance_lock_service import unlock
from attendance_engine.services.makeup_service import complete_missed_session
from attendance_engine.services.missed_session_service import list_missed_sessions, run_daily_detection
from attendance_engine.services.submission_service import submit_period_attendance
from reconciliation_seed import MONDAY, PU1, TODAY, SqliteTestCase, clock


class MakeupWorkflowTests(SqliteTestCase):
    db_name = 'test_makeup_workflow.db'

    def setUp(self):
        super().setUp()
        run_daily_detection(self.db, target_date=MONDAY, time_provider=clock())
        self.entry = (
            self.db.query(MissedSession)
            .filter(MissedSession.course_type == 'pu', MissedSession.period_number == 1)
            .one()
        )

    def _complete(self, entry_id=None, db=None, **kwargs):
        kwargs.setdefault('makeup_date', TODAY)
        kwargs.setdefault('makeup_period', 5)
        return complete_missed_session(
            db or self.db,
            self.entry.id if entry_id is None else entry_id,
            actor_id=4,
            time_provider=clock(hour=16),
            **kwargs,
        )

    def test_completion_closes_the_entry_with_default_remarks(self):
        result = self._complete()
        payload = result['missed_session']
        self.assertTrue(payload['is_completed'])
        self.assertEqual(payload['makeup_date'], TODAY.isoformat())
        self.assertEqual(payload['makeup_period'], 5)
        self.assertEqual(payload['completed_by'], 4)
        self.assertEqual(payload['remarks'], 'Makeup completed on 2026-03-10')
        self.assertIsNone(result['lock'])

        self.db.refresh(self.entry)
        self.assertIsNone(self.entry.open_key)
        pending = list_missed_sessions(self.db, time_provider=clock())
        self.assertEqual(pending['summary']['pending'], 4)

    def test_second_completion_is_rejected(self):
        self._complete(remarks='Covered in extra class')
        with self.assertRaises(AlreadyCompletedError):
            self._complete(makeup_period=6)
        self.db.refresh(self.entry)
        self.assertEqual(self.entry.makeup_period, 5)
        self.assertEqual(self.entry.remarks, 'Covered in extra class')

    def test_completed_entry_reports_completion_before_date_checks(self):
        self._complete()
        with self.assertRaises(AlreadyCompletedError):
            self._complete(makeup_date=TODAY + timedelta(days=2))

    def test_unknown_entry_is_not_found(self):
        with self.assertRaises(NotFoundError):
            self._complete(entry_id=9999)

    def test_invalid_makeup_details_are_rejected(self):
        with self.assertRaises(ValidationError):
            self._complete(makeup_date=TODAY.replace(day=12))
        with self.assertRaises(ValidationError):
            self._complete(makeup_period=0)
        with self.assertRaises(ValidationError):
            self._complete(makeup_date=None)
        with self.assertRaises(ValidationError):
            self._complete(makeup_date=MONDAY - timedelta(days=1))
        self.db.refresh(self.entry)
        self.assertFalse(self.entry.is_completed)

    def test_makeup_attendance_is_recorded_under_the_missed_subject(self):
        result = self._complete(
            records=[
                {'student_id': self.ids['aarav'], 'status': 'present'},
                {'student_id': self.ids['diya'], 'status': 'absent'},
            ]
        )
        self.assertEqual(result['recorded'], 2)
        self.assertEqual(result['lock']['unit'], '5')
        rows = self.db.query(AttendanceRecord).filter(AttendanceRecord.record_date == TODAY).all()
        self.assertEqual({row.source for row in rows}, {RecordSource.MAKEUP.value})
        self.assertEqual({row.subject_id for row in rows}, {self.ids['subjects']['PHY']})

    def test_resetting_the_makeup_lock_reopens_the_entry(self):
        self._complete(records=[{'student_id': self.ids['aarav'], 'status': 'present'}])
        result = unlock(self.db, TODAY, 'period', '5', PU1, actor_id=9, reason='wrong session', time_provider=clock(hour=17))
        self.assertEqual(result['records_removed'], 1)
        self.assertEqual(result['missed_sessions_reopened'], [self.entry.id])

        self.db.refresh(self.entry)
        self.assertFalse(self.entry.is_completed)
        self.assertIsNone(self.entry.makeup_date)
        self.assertIsNone(self.entry.makeup_period)
        self.assertIsNone(self.entry.completed_at)
        self.assertIsNotNone(self.entry.open_key)
        self.assertEqual(self.db.query(AttendanceRecord).filter(AttendanceRecord.record_date == TODAY).count(), 0)
        pending = list_missed_sessions(self.db, time_provider=clock())
        self.assertEqual(pending['summary']['pending'], 5)

        again = self._complete(makeup_period=6)
        self.assertTrue(again['missed_session']['is_completed'])

    def test_resetting_a_regular_lock_leaves_completed_entries_alone(self):
        self._complete(makeup_period=1)
        submit_period_attendance(
            self.db,
            class_identity=PU1,
            attendance_date=TODAY,
            period_number=1,
            records=[{'student_id': self.ids['aarav'], 'status': 'present'}],
            actor_id=3,
            time_provider=clock(),
        )
        result = unlock(self.db, TODAY, 'period', '1', PU1, actor_id=9, time_provider=clock(hour=17))
        self.assertEqual(result['missed_sessions_reopened'], [])
        self.db.refresh(self.entry)
        self.assertTrue(self.entry.is_completed)
        self.assertEqual(self.entry.makeup_period, 1)

    def test_lock_conflict_leaves_entry_pending(self):
        submit_period_attendance(
            self.db,
            class_identity=PU1,
            attendance_date=TODAY,
            period_number=1,
            records=[{'student_id': self.ids['aarav'], 'status': 'present'}],
            actor_id=3,
            time_provider=clock(),
        )
        with self.assertRaises(ConflictError):
            self._complete(
                makeup_period=1,
                records=[{'student_id': self.ids['diya'], 'status': 'present'}],
            )
        self.db.refresh(self.entry)
        self.assertFalse(self.entry.is_completed)
        self.assertEqual(self.db.query(AttendanceLock).count(), 1)

    def test_students_outside_class_roll_back_completion(self):
        with self.assertRaises(ValidationError):
            self._complete(records=[{'student_id': self.ids['ishaan'], 'status': 'present'}])
        self.db.refresh(self.entry)
        self.assertFalse(self.entry.is_completed)

    def test_concurrent_completions_succeed_once(self):
        barrier = threading.Barrier(2)
        outcomes = []
        outcome_lock = threading.Lock()

        def worker(period):
            db = self._session_factory()
            try:
                barrier.wait(timeout=5)
                self._complete(db=db, makeup_period=period)
                result = 'ok'
            except AlreadyCompletedError:
                result = 'already_completed'
            finally:
                db.close()
            with outcome_lock:
                outcomes.append(result)

        threads = [threading.Thread(target=worker, args=(period,)) for period in (5, 6)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join(timeout=20)

        self.assertEqual(sorted(outcomes), ['already_completed', 'ok'])


if __name__ == '__main__':
    unittest.main()
