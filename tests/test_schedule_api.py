import tempfile
import unittest
from pathlib import Path

from fastapi import FastAPI
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from mentor_platform.cache import clear_availability_cache
from mentor_platform.db import Base, get_db
from mentor_platform.models import Booking, NotificationLog, ScheduleSettings, TimeSlot, User
from mentor_platform.routers import schedule as schedule_router


WEEK = {'week_start': '2099-05-31', 'week_end': '2099-06-06'}


class ScheduleApiTests(unittest.TestCase):
    @classmethod
    def setUpClass(cls):
        cls._tmpdir = tempfile.TemporaryDirectory()
        db_path = Path(cls._tmpdir.name) / 'test_schedule_api.db'
        cls._engine = create_engine(f"sqlite:///{db_path}", connect_args={'check_same_thread': False})
        cls._session_factory = sessionmaker(autocommit=False, autoflush=False, bind=cls._engine)
        Base.metadata.create_all(bind=cls._engine)

        app = FastAPI()
        app.include_router(schedule_router.router)

        def override_get_db():
            db = cls._session_factory()
            try:
                yield db
            finally:
                db.close()

        app.dependency_overrides[get_db] = override_get_db
        cls.client = TestClient(app)

    @classmethod
    def tearDownClass(cls):
        cls.client.close()
        cls._engine.dispose()
        cls._tmpdir.cleanup()

    def setUp(self):
        clear_availability_cache()
        db = self._session_factory()
        try:
            for table in (NotificationLog, Booking, TimeSlot, ScheduleSettings, User):
                db.query(table).delete()
            db.commit()
            mentor = User(email='mentor@example.com', full_name='Maya Mentor', role='mentor')
            learner = User(email='learner@example.com', full_name='Lee Learner', role='learner')
            admin = User(email='admin@example.com', full_name='Root Admin', role='admin')
            retired = User(email='retired@example.com', full_name='Old Mentor', role='mentor', status='deactivated')
            db.add_all([mentor, learner, admin, retired])
            db.commit()
            self.mentor_id = mentor.id
            self.learner_id = learner.id
            self.admin_id = admin.id
            self.retired_id = retired.id
        finally:
            db.close()

    def _headers(self, user_id):
        return {'X-User-Id': str(user_id)}

    def _body(self, slots):
        return {
            **WEEK,
            'start_time': '09:00',
            'end_time': '12:00',
            'session_duration': 60,
            'buffer_time': 0,
            'available_time_slots': {
                day: [{'start_time': start, 'end_time': end} for start, end in ranges]
                for day, ranges in slots.items()
            },
        }

    def _save(self, slots, user_id=None):
        user_id = user_id or self.mentor_id
        return self.client.post(
            f'/api/schedule/{self.mentor_id}',
            json=self._body(slots),
            headers=self._headers(user_id),
        )

    def test_identity_header_is_required(self):
        self.assertEqual(self.client.get(f'/api/schedule/{self.mentor_id}').status_code, 403)
        self.assertEqual(
            self.client.get(f'/api/schedule/{self.mentor_id}', headers={'X-User-Id': 'abc'}).status_code,
            403,
        )
        self.assertEqual(
            self.client.get(f'/api/schedule/{self.mentor_id}', headers=self._headers(999999)).status_code,
            403,
        )
        self.assertEqual(
            self.client.get(f'/api/schedule/{self.retired_id}', headers=self._headers(self.retired_id)).status_code,
            403,
        )

    def test_save_then_read_schedule(self):
        res = self._save({'2099-06-02': [('09:00', '10:00'), ('11:00', '12:00')]})
        self.assertEqual(res.status_code, 200)
        data = res.json()['data']
        self.assertEqual(data['created'], 2)
        self.assertEqual(data['message'], 'Schedule saved successfully.')

        res = self.client.get(f'/api/schedule/{self.mentor_id}', params=WEEK, headers=self._headers(self.mentor_id))
        self.assertEqual(res.status_code, 200)
        tuesday = res.json()['data']['days']['2099-06-02']
        self.assertEqual([slot['is_selected'] for slot in tuesday], [True, False, True])
        self.assertTrue(all(slot['id'] for slot in tuesday if slot['is_selected']))

    def test_schedule_is_private_to_mentor_and_admin(self):
        res = self.client.get(f'/api/schedule/{self.mentor_id}', params=WEEK, headers=self._headers(self.learner_id))
        self.assertEqual(res.status_code, 403)
        res = self.client.get(f'/api/schedule/{self.mentor_id}', params=WEEK, headers=self._headers(self.admin_id))
        self.assertEqual(res.status_code, 200)

    def test_only_mentors_can_save(self):
        res = self._save({'2099-06-02': [('09:00', '10:00')]}, user_id=self.learner_id)
        self.assertEqual(res.status_code, 403)

    def test_unknown_mentor_maps_to_404(self):
        res = self.client.get('/api/schedule/999999', params=WEEK, headers=self._headers(self.admin_id))
        self.assertEqual(res.status_code, 404)
        self.assertEqual(res.json()['detail']['kind'], 'not_found')

    def test_off_grid_selection_maps_to_400(self):
        res = self._save({'2099-06-02': [('09:30', '10:30')]})
        self.assertEqual(res.status_code, 400)
        self.assertEqual(res.json()['detail']['kind'], 'validation')

    def test_malformed_body_is_rejected_by_schema(self):
        body = self._body({})
        body['session_duration'] = 0
        res = self.client.post(f'/api/schedule/{self.mentor_id}', json=body, headers=self._headers(self.mentor_id))
        self.assertEqual(res.status_code, 422)

    def test_lock_status_and_locked_save(self):
        self._save({'2099-06-02': [('09:00', '10:00')]})
        res = self.client.get(
            f'/api/schedule/{self.mentor_id}/lock-status', params=WEEK, headers=self._headers(self.mentor_id)
        )
        self.assertFalse(res.json()['data']['is_locked'])

        db = self._session_factory()
        try:
            slot = db.query(TimeSlot).first()
            db.add(Booking(time_slot_id=slot.id, learner_id=self.learner_id, status='approved'))
            db.commit()
        finally:
            db.close()

        res = self.client.get(
            f'/api/schedule/{self.mentor_id}/lock-status', params=WEEK, headers=self._headers(self.mentor_id)
        )
        self.assertTrue(res.json()['data']['is_locked'])
        self.assertIn('Contact admin', res.json()['data']['message'])

        res = self._save({'2099-06-02': [('10:00', '11:00')]})
        self.assertEqual(res.status_code, 403)
        self.assertEqual(res.json()['detail']['kind'], 'locked')


if __name__ == '__main__':
    unittest.main()
