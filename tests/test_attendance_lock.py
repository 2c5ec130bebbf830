import threading
import unittest
from datetime import datetime

from attendance_engine.core.errors import ConflictError, NotFoundError, ValidationError
from attendance_engine.models import AttendanceLock, AttendanceRecord, DetectionRun, RecordSource
from attendance_engine.services.attendance_lock_service import get_lock, is_locked, lock_history, unlock
from attendance_engine.services.leave_service import create_leave_grant
from attendance_engine.services.missed_session_service import run_daily_detection
from attendance_engine.services.submission_service import submit_period_attendance, submit_prayer_attendance
from reconciliation_seed import FRIDAY, MONDAY, PP3, PU1, TODAY, SqliteTestCase, clock


class AttendanceLockTests(SqliteTestCase):
    db_name = 'test_attendance_lock.db'

    def _submit(self, db=None, *, period=1, day=MONDAY, records=None, **kwargs):
        return submit_period_attendance(
            db or self.db,
            class_identity=PU1,
            attendance_date=day,
            period_number=period,
            records=records
            or [
                {'student_id': self.ids['aarav'], 'status': 'present'},
                {'student_id': self.ids['diya'], 'status': 'absent'},
            ],
            actor_id=7,
            time_provider=clock(),
            **kwargs,
        )

    def test_second_submission_for_same_slot_conflicts(self):
        first = self._submit()
        self.assertEqual(first['recorded'], 2)
        self.assertTrue(is_locked(self.db, MONDAY, 'period', '1', PU1))

        with self.assertRaises(ConflictError) as ctx:
            self._submit(records=[{'student_id': self.ids['aarav'], 'status': 'absent'}])
        self.assertEqual(ctx.exception.existing['id'], first['lock']['id'])

        statuses = {row.student_id: row.status for row in self.db.query(AttendanceRecord).all()}
        self.assertEqual(statuses[self.ids['aarav']], 'present')
        self.assertEqual(self.db.query(AttendanceLock).count(), 1)

    def test_other_periods_and_classes_are_independent(self):
        self._submit(period=1)
        self._submit(period=2)
        self.assertFalse(is_locked(self.db, MONDAY, 'period', '1', PP3))
        self.assertEqual(self.db.query(AttendanceLock).count(), 2)

    def test_concurrent_submissions_record_exactly_once(self):
        barrier = threading.Barrier(2)
        outcomes = []
        outcome_lock = threading.Lock()

        def worker(status):
            db = self._session_factory()
            try:
                barrier.wait(timeout=5)
                self._submit(db, records=[{'student_id': self.ids['aarav'], 'status': status}])
                result = 'ok'
            except ConflictError:
                result = 'conflict'
            finally:
                db.close()
            with outcome_lock:
                outcomes.append(result)

        threads = [threading.Thread(target=worker, args=(status,)) for status in ('present', 'absent')]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join(timeout=20)

        self.assertEqual(sorted(outcomes), ['conflict', 'ok'])
        self.assertEqual(self.db.query(AttendanceLock).count(), 1)
        self.assertEqual(self.db.query(AttendanceRecord).count(), 1)

    def test_submission_validation(self):
        with self.assertRaises(ValidationError):
            self._submit(day=TODAY.replace(day=11))
        with self.assertRaises(ValidationError):
            self._submit(period=4)
        with self.assertRaises(ValidationError):
            self._submit(day=FRIDAY)
        with self.assertRaises(ValidationError):
            self._submit(records=[{'student_id': self.ids['ishaan'], 'status': 'present'}])
        with self.assertRaises(ValidationError):
            self._submit(
                records=[
                    {'student_id': self.ids['aarav'], 'status': 'present'},
                    {'student_id': self.ids['aarav'], 'status': 'absent'},
                ]
            )
        self.assertEqual(self.db.query(AttendanceLock).count(), 0)

    def test_students_on_leave_are_excused(self):
        create_leave_grant(
            self.db,
            student_id=self.ids['aarav'],
            from_date=MONDAY,
            to_date=MONDAY,
            actor_id=1,
            time_provider=clock(),
        )
        result = self._submit()
        self.assertEqual(result['excused_student_ids'], [self.ids['aarav']])
        self.assertEqual(result['recorded'], 1)
        row = (
            self.db.query(AttendanceRecord)
            .filter(AttendanceRecord.student_id == self.ids['aarav'], AttendanceRecord.unit == '1', AttendanceRecord.unit_kind == 'period')
            .one()
        )
        self.assertEqual(row.status, 'on_leave')

    def test_override_leave_records_the_teacher_mark(self):
        create_leave_grant(
            self.db,
            student_id=self.ids['aarav'],
            from_date=MONDAY,
            to_date=MONDAY,
            actor_id=1,
            time_provider=clock(),
        )
        result = self._submit(override_leave=True)
        self.assertEqual(result['excused_student_ids'], [])
        row = (
            self.db.query(AttendanceRecord)
            .filter(AttendanceRecord.student_id == self.ids['aarav'], AttendanceRecord.unit == '1', AttendanceRecord.unit_kind == 'period')
            .one()
        )
        self.assertEqual(row.status, 'present')
        self.assertEqual(row.source, RecordSource.TEACHER.value)

    def test_override_leave_replaces_leave_rows_synced_after_the_mark(self):
        # Leave entered on Tuesday for Monday; the teacher's mark was taken Monday morning.
        create_leave_grant(
            self.db,
            student_id=self.ids['aarav'],
            from_date=MONDAY,
            to_date=MONDAY,
            actor_id=1,
            time_provider=clock(),
        )
        result = self._submit(
            override_leave=True,
            records=[{'student_id': self.ids['aarav'], 'status': 'present', 'recorded_at': datetime(2026, 3, 9, 9, 5)}],
        )
        self.assertEqual(result['recorded'], 1)
        row = (
            self.db.query(AttendanceRecord)
            .filter(AttendanceRecord.student_id == self.ids['aarav'], AttendanceRecord.unit == '1', AttendanceRecord.unit_kind == 'period')
            .one()
        )
        self.assertEqual(row.status, 'present')
        self.assertEqual(row.source, RecordSource.TEACHER.value)
        self.assertEqual(row.recorded_at, datetime(2026, 3, 9, 9, 5))
        self.assertEqual(row.lock_id, result['lock']['id'])

    def test_unlock_removes_records_and_restores_leave(self):
        create_leave_grant(
            self.db,
            student_id=self.ids['aarav'],
            from_date=MONDAY,
            to_date=MONDAY,
            actor_id=1,
            time_provider=clock(),
        )
        self._submit(override_leave=True)
        run_daily_detection(self.db, target_date=MONDAY, time_provider=clock())

        result = unlock(self.db, MONDAY, 'period', '1', PU1, actor_id=99, reason='wrong class', time_provider=clock())
        self.assertEqual(result['records_removed'], 2)
        self.assertEqual(result['leave_records_restored'], 1)
        self.assertEqual(result['detection_runs_marked_stale'], 1)
        self.assertIsNone(get_lock(self.db, MONDAY, 'period', '1', PU1))

        rows = (
            self.db.query(AttendanceRecord)
            .filter(AttendanceRecord.record_date == MONDAY, AttendanceRecord.unit == '1', AttendanceRecord.unit_kind == 'period')
            .all()
        )
        self.assertEqual([(row.student_id, row.status, row.source) for row in rows], [(self.ids['aarav'], 'on_leave', 'leave_sync')])
        self.assertTrue(self.db.query(DetectionRun).one().stale)

        history = lock_history(self.db, MONDAY, 'period', '1', PU1)
        self.assertEqual([row.action for row in history], ['lock', 'unlock'])
        self.assertEqual(history[-1].reason, 'wrong class')

        second = self._submit()
        self.assertEqual(second['recorded'], 1)

    def test_unlock_without_lock_raises(self):
        with self.assertRaises(NotFoundError):
            unlock(self.db, MONDAY, 'period', '1', PU1, actor_id=99, time_provider=clock())
        with self.assertRaises(ValidationError):
            unlock(self.db, MONDAY, 'lecture', '1', PU1, actor_id=99, time_provider=clock())

    def test_prayer_lock_is_school_wide(self):
        result = submit_prayer_attendance(
            self.db,
            attendance_date=MONDAY,
            prayer='Zuhr',
            records=[
                {'student_id': self.ids['aarav'], 'status': 'present'},
                {'student_id': self.ids['ishaan'], 'status': 'absent'},
            ],
            actor_id=5,
            time_provider=clock(),
        )
        self.assertEqual(result['recorded'], 2)
        self.assertEqual(result['lock']['scope'], 'global')
        with self.assertRaises(ConflictError):
            submit_prayer_attendance(
                self.db,
                attendance_date=MONDAY,
                prayer='zuhr',
                records=[{'student_id': self.ids['diya'], 'status': 'present'}],
                actor_id=5,
                time_provider=clock(),
            )
        with self.assertRaises(ValidationError):
            submit_prayer_attendance(
                self.db,
                attendance_date=MONDAY,
                prayer='asr',
                records=[{'student_id': self.ids['diya'], 'status': 'emergency'}],
                actor_id=5,
                time_provider=clock(),
            )


if __name__ == '__main__':
    unittest.main()
