import unittest

from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from attendance_engine.core import router_guard
from attendance_engine.db import get_db
from attendance_engine.main import app
from attendance_engine.models import MissedSession
from reconciliation_seed import MONDAY, SqliteTestCase


ADMIN = {'Authorization': 'Bearer token-admin'}
TEACHER = {'Authorization': 'Bearer token-teacher'}
PU1_QUERY = {'course_type': 'pu', 'year': 1, 'stream': 'science', 'section': 'A'}


class ReconciliationApiTests(SqliteTestCase):
    db_name = 'test_missed_sessions_api.db'

    @classmethod
    def setUpClass(cls):
        super().setUpClass()
        cls._orig_validate = router_guard.validate_session_token

        def fake_validate_session_token(token: str | None):
            if token == 'token-admin':
                return {'user_id': 1, 'role': 'admin'}
            if token == 'token-teacher':
                return {'user_id': 10, 'role': 'teacher'}
            return None

        router_guard.validate_session_token = fake_validate_session_token

        def override_get_db():
            db = cls._session_factory()
            try:
                yield db
            finally:
                db.close()

        cls._orig_overrides = dict(app.dependency_overrides)
        app.dependency_overrides[get_db] = override_get_db
        cls.client = TestClient(app)

    @classmethod
    def tearDownClass(cls):
        router_guard.validate_session_token = cls._orig_validate
        app.dependency_overrides.clear()
        app.dependency_overrides.update(cls._orig_overrides)
        cls.client.close()
        super().tearDownClass()

    def _submit_period(self, period=1, headers=TEACHER, **extra):
        body = {
            'course_type': 'pu',
            'year': 1,
            'stream': 'science',
            'section': 'A',
            'date': MONDAY.isoformat(),
            'period_number': period,
            'records': [
                {'student_id': self.ids['aarav'], 'status': 'present'},
                {'student_id': self.ids['diya'], 'status': 'absent'},
            ],
        }
        body.update(extra)
        return self.client.post('/api/attendance/period', json=body, headers=headers)

    def test_requests_require_a_staff_session(self):
        self.assertEqual(self.client.get('/api/missed-sessions').status_code, 401)
        res = self.client.get('/api/missed-sessions', headers={'Authorization': 'Bearer nope'})
        self.assertEqual(res.status_code, 401)

        cookie_client = TestClient(app, cookies={'auth_session': 'token-teacher'})
        try:
            res = cookie_client.get('/api/missed-sessions/stats')
        finally:
            cookie_client.close()
        self.assertEqual(res.status_code, 200)

    def test_only_admins_trigger_detection(self):
        res = self.client.post('/api/missed-sessions/detect', json={'date': MONDAY.isoformat()}, headers=TEACHER)
        self.assertEqual(res.status_code, 403)

    def test_detect_list_and_complete(self):
        self.assertEqual(self._submit_period(1).status_code, 200)

        res = self.client.post('/api/missed-sessions/detect', json={'date': MONDAY.isoformat()}, headers=ADMIN)
        self.assertEqual(res.status_code, 200)
        self.assertEqual(res.json()['newly_missed'], 4)
        self.assertEqual(res.json()['conducted'], 1)

        res = self.client.get(
            '/api/missed-sessions',
            params={'course_type': 'pu', 'days_since': 3650},
            headers=TEACHER,
        )
        self.assertEqual(res.status_code, 200)
        body = res.json()
        self.assertEqual([item['period_number'] for item in body['items']], [2, 3])
        self.assertEqual(body['summary']['pending'], 2)
        self.assertEqual(body['summary']['high_urgency'], 2)
        entry_id = body['items'][0]['id']

        res = self.client.get(f'/api/missed-sessions/{entry_id}', headers=TEACHER)
        self.assertEqual(res.json()['subject'], 'CHE')

        completion = {
            'makeup_date': MONDAY.isoformat(),
            'makeup_period': 6,
            'records': [{'student_id': self.ids['aarav'], 'status': 'present'}],
        }
        res = self.client.put(f'/api/missed-sessions/{entry_id}/complete', json=completion, headers=TEACHER)
        self.assertEqual(res.status_code, 200)
        self.assertTrue(res.json()['missed_session']['is_completed'])
        self.assertEqual(res.json()['recorded'], 1)

        res = self.client.put(f'/api/missed-sessions/{entry_id}/complete', json=completion, headers=TEACHER)
        self.assertEqual(res.status_code, 409)
        self.assertEqual(res.json()['detail']['error'], 'already_completed')

        stats = self.client.get('/api/missed-sessions/stats', headers=TEACHER).json()
        self.assertEqual(stats['total_pending'], 3)
        self.assertEqual(stats['total_completed'], 1)

        self.assertEqual(self.client.get('/api/missed-sessions/9999', headers=TEACHER).status_code, 404)

    def test_detection_rejects_today_and_bad_filters(self):
        res = self.client.post('/api/missed-sessions/detect', json={'date': '2999-01-01'}, headers=ADMIN)
        self.assertEqual(res.status_code, 400)
        res = self.client.get('/api/missed-sessions', params={'status': 'open'}, headers=TEACHER)
        self.assertEqual(res.status_code, 400)
        res = self.client.get('/api/missed-sessions', params={'course_type': 'diploma'}, headers=TEACHER)
        self.assertEqual(res.status_code, 400)

    def test_duplicate_period_submission_conflicts(self):
        first = self._submit_period(2)
        self.assertEqual(first.status_code, 200)
        second = self._submit_period(2, headers=ADMIN)
        self.assertEqual(second.status_code, 409)
        detail = second.json()['detail']
        self.assertEqual(detail['existing']['id'], first.json()['lock']['id'])

        res = self.client.get(
            '/api/attendance/period',
            params={**PU1_QUERY, 'date': MONDAY.isoformat(), 'period_number': 2},
            headers=TEACHER,
        )
        body = res.json()
        self.assertTrue(body['locked'])
        self.assertEqual([row['status'] for row in body['records']], ['present', 'absent'])

    def test_lock_inspection_and_reset(self):
        self._submit_period(3)
        params = {**PU1_QUERY, 'date': MONDAY.isoformat(), 'unit': '3'}

        res = self.client.get('/api/attendance-locks', params=params, headers=TEACHER)
        self.assertTrue(res.json()['locked'])
        self.assertEqual(self.client.delete('/api/attendance-locks', params=params, headers=TEACHER).status_code, 403)

        res = self.client.delete('/api/attendance-locks', params={**params, 'reason': 'marked twice'}, headers=ADMIN)
        self.assertEqual(res.status_code, 200)
        self.assertEqual(res.json()['records_removed'], 2)

        res = self.client.get('/api/attendance-locks', params=params, headers=TEACHER)
        self.assertFalse(res.json()['locked'])
        self.assertEqual([row['action'] for row in res.json()['history']], ['lock', 'unlock'])
        self.assertEqual(self.client.delete('/api/attendance-locks', params=params, headers=ADMIN).status_code, 404)
        self.assertEqual(self._submit_period(3).status_code, 200)

    def test_holiday_lifecycle(self):
        res = self.client.post(
            '/api/holidays',
            json={'date': MONDAY.isoformat(), 'name': 'Founders Day', 'affected_scope': ['pu']},
            headers=ADMIN,
        )
        self.assertEqual(res.status_code, 200)
        holiday_id = res.json()['id']
        self.assertEqual(self.client.post('/api/holidays', json={'date': MONDAY.isoformat(), 'name': 'x'}, headers=TEACHER).status_code, 403)

        self.assertEqual(self._submit_period(1).status_code, 409)

        detection = self.client.post('/api/missed-sessions/detect', json={'date': MONDAY.isoformat()}, headers=ADMIN).json()
        self.assertEqual(detection['closed'], 3)
        self.assertEqual(detection['newly_missed'], 2)

        res = self.client.delete(f'/api/holidays/{holiday_id}', headers=ADMIN)
        self.assertTrue(res.json()['is_deleted'])
        listing = self.client.get('/api/holidays', headers=TEACHER).json()
        self.assertEqual(listing['holidays'], [])
        res = self.client.post(f'/api/holidays/{holiday_id}/restore', headers=ADMIN)
        self.assertFalse(res.json()['is_deleted'])

    def test_leave_overlap_is_rejected(self):
        body = {'student_id': self.ids['aarav'], 'from_date': MONDAY.isoformat(), 'to_date': MONDAY.isoformat()}
        res = self.client.post('/api/leaves', json=body, headers=ADMIN)
        self.assertEqual(res.status_code, 200)
        self.assertEqual(res.json()['leave']['status'], 'active')
        leave_id = res.json()['leave']['id']

        res = self.client.post('/api/leaves', json=body, headers=ADMIN)
        self.assertEqual(res.status_code, 409)
        self.assertEqual(res.json()['detail']['existing']['leave_id'], leave_id)

        res = self.client.post(f'/api/leaves/{leave_id}/cancel', headers=ADMIN)
        self.assertEqual(res.status_code, 200)
        self.assertEqual(res.json()['leave']['status'], 'cancelled')

    def test_emergency_declaration_round_trip(self):
        body = {**PU1_QUERY, 'date': MONDAY.isoformat(), 'reason': 'Flooding', 'periods': [2, 3]}
        res = self.client.post('/api/emergency-leave/declare', json=body, headers=TEACHER)
        self.assertEqual(res.status_code, 200)
        override_id = res.json()['emergency_leave']['id']
        self.assertEqual(res.json()['records_written'], 4)

        self.assertEqual(self.client.post('/api/emergency-leave/declare', json=body, headers=TEACHER).status_code, 409)
        check = self.client.get('/api/emergency-leave/check', params={**PU1_QUERY, 'date': MONDAY.isoformat()}, headers=TEACHER)
        self.assertEqual(check.json()['emergency_leave']['id'], override_id)

        res = self.client.patch(f'/api/emergency-leave/{override_id}/deactivate', headers=TEACHER)
        self.assertEqual(res.json()['records_removed'], 4)
        listing = self.client.get('/api/emergency-leave', params={'date': MONDAY.isoformat()}, headers=TEACHER)
        self.assertEqual(listing.json()['emergency_leaves'], [])

    def test_unavailable_store_returns_retryable_error(self):
        broken = create_engine('sqlite:////nonexistent-dir/attendance.db')
        broken_factory = sessionmaker(bind=broken)

        def broken_db():
            db = broken_factory()
            try:
                yield db
            finally:
                db.close()

        healthy_db = app.dependency_overrides[get_db]
        app.dependency_overrides[get_db] = broken_db
        try:
            res = self.client.get('/api/missed-sessions/stats', headers=TEACHER)
        finally:
            app.dependency_overrides[get_db] = healthy_db
        self.assertEqual(res.status_code, 503)
        self.assertEqual(res.headers['retry-after'], '5')
        self.assertEqual(self.db.query(MissedSession).count(), 0)


if __name__ == '__main__':
    unittest.main()
