import tempfile
import threading
import unittest
from datetime import date, datetime, time, timezone
from pathlib import Path

from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from mentor_platform.cache import clear_availability_cache
from mentor_platform.communication.email_clients import BaseEmailClient
from mentor_platform.core.errors import ConflictError
from mentor_platform.core.time_provider import TimeProvider
from mentor_platform.db import Base
from mentor_platform.models import Booking, NotificationLog, ScheduleSettings, TimeSlot, User
import mentor_platform.services.booking_service as booking_module
import mentor_platform.services.reschedule_service as reschedule_module


class FixedTimeProvider(TimeProvider):
    def now(self) -> datetime:
        return datetime(2026, 6, 1, 8, 0, tzinfo=timezone.utc)


class SilentEmailClient(BaseEmailClient):
    def send_email(self, to: str, subject: str, body: str) -> bool:
        return True


class BookingConcurrencyTests(unittest.TestCase):
    LEARNERS = 6

    @classmethod
    def setUpClass(cls):
        cls._tmpdir = tempfile.TemporaryDirectory()
        db_path = Path(cls._tmpdir.name) / 'test_booking_concurrency.db'
        cls._engine = create_engine(
            f"sqlite:///{db_path}",
            connect_args={'check_same_thread': False, 'timeout': 15},
        )
        cls._session_factory = sessionmaker(autocommit=False, autoflush=False, bind=cls._engine)
        Base.metadata.create_all(bind=cls._engine)

    @classmethod
    def tearDownClass(cls):
        cls._engine.dispose()
        cls._tmpdir.cleanup()

    def setUp(self):
        clear_availability_cache()
        self.clock = FixedTimeProvider()
        db = self._session_factory()
        try:
            for table in (NotificationLog, Booking, TimeSlot, ScheduleSettings, User):
                db.query(table).delete()
            db.commit()
            mentor = User(email='race-mentor@example.com', full_name='Race Mentor', role='mentor')
            learners = [
                User(email=f'race-learner-{idx}@example.com', full_name=f'Learner {idx}', role='learner')
                for idx in range(self.LEARNERS)
            ]
            db.add(mentor)
            db.add_all(learners)
            db.commit()
            schedule = ScheduleSettings(
                mentor_id=mentor.id,
                week_start_date=date(2026, 5, 31),
                week_end_date=date(2026, 6, 6),
            )
            db.add(schedule)
            db.commit()
            slot = TimeSlot(
                mentor_id=mentor.id,
                schedule_id=schedule.id,
                slot_date=date(2026, 6, 2),
                start_time=time(9, 0),
                end_time=time(10, 0),
                start_at_utc=datetime(2026, 6, 2, 9, 0),
                end_at_utc=datetime(2026, 6, 2, 10, 0),
            )
            db.add(slot)
            db.commit()
            self.mentor_id = int(mentor.id)
            self.slot_id = int(slot.id)
            self.booking_ids = [
                booking_module.request_booking(db, self.slot_id, learner.id, time_provider=self.clock)['id']
                for learner in learners
            ]
        finally:
            db.close()

    def test_concurrent_accepts_confirm_at_most_one_booking(self):
        barrier = threading.Barrier(len(self.booking_ids))
        results_lock = threading.Lock()
        accepted: list[int] = []
        conflicts: list[int] = []
        unexpected: list[Exception] = []

        def accept_worker(booking_id: int):
            db = self._session_factory()
            try:
                barrier.wait(timeout=5)
                booking_module.accept_booking(
                    db,
                    booking_id,
                    self.mentor_id,
                    time_provider=self.clock,
                    email_client=SilentEmailClient(),
                )
                with results_lock:
                    accepted.append(booking_id)
            except ConflictError:
                with results_lock:
                    conflicts.append(booking_id)
            except Exception as exc:  # pragma: no cover - test diagnostic path
                with results_lock:
                    unexpected.append(exc)
            finally:
                db.close()

        threads = [threading.Thread(target=accept_worker, args=(booking_id,)) for booking_id in self.booking_ids]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join(timeout=20)

        self.assertFalse(unexpected, f'unexpected={unexpected}')
        self.assertEqual(len(accepted), 1)
        self.assertEqual(len(conflicts), len(self.booking_ids) - 1)

        db = self._session_factory()
        try:
            approved = (
                db.query(Booking)
                .filter(Booking.time_slot_id == self.slot_id, Booking.status == 'approved')
                .all()
            )
            self.assertEqual([row.id for row in approved], accepted)
            pending = db.query(Booking).filter(Booking.status == 'pending').count()
            self.assertEqual(pending, len(self.booking_ids) - 1)
        finally:
            db.close()


class RescheduleConcurrencyTests(unittest.TestCase):
    LEARNERS = 4

    @classmethod
    def setUpClass(cls):
        cls._tmpdir = tempfile.TemporaryDirectory()
        db_path = Path(cls._tmpdir.name) / 'test_reschedule_concurrency.db'
        cls._engine = create_engine(
            f"sqlite:///{db_path}",
            connect_args={'check_same_thread': False, 'timeout': 15},
        )
        cls._session_factory = sessionmaker(autocommit=False, autoflush=False, bind=cls._engine)
        Base.metadata.create_all(bind=cls._engine)

    @classmethod
    def tearDownClass(cls):
        cls._engine.dispose()
        cls._tmpdir.cleanup()

    def _make_slot(self, db, start_hour: int) -> int:
        day = date(2026, 6, 2)
        slot = TimeSlot(
            mentor_id=self.mentor_id,
            schedule_id=self.schedule_id,
            slot_date=day,
            start_time=time(start_hour, 0),
            end_time=time(start_hour + 1, 0),
            start_at_utc=datetime(2026, 6, 2, start_hour, 0),
            end_at_utc=datetime(2026, 6, 2, start_hour + 1, 0),
        )
        db.add(slot)
        db.commit()
        return int(slot.id)

    def setUp(self):
        clear_availability_cache()
        self.clock = FixedTimeProvider()
        db = self._session_factory()
        try:
            for table in (NotificationLog, Booking, TimeSlot, ScheduleSettings, User):
                db.query(table).delete()
            db.commit()
            mentor = User(email='move-mentor@example.com', full_name='Move Mentor', role='mentor')
            learners = [
                User(email=f'move-learner-{idx}@example.com', full_name=f'Mover {idx}', role='learner')
                for idx in range(self.LEARNERS)
            ]
            db.add(mentor)
            db.add_all(learners)
            db.commit()
            schedule = ScheduleSettings(
                mentor_id=mentor.id,
                week_start_date=date(2026, 5, 31),
                week_end_date=date(2026, 6, 6),
            )
            db.add(schedule)
            db.commit()
            self.mentor_id = int(mentor.id)
            self.schedule_id = int(schedule.id)
            self.target_slot_id = self._make_slot(db, 16)

            self.moves: list[tuple[int, int, int]] = []
            for idx, learner in enumerate(learners):
                source_slot_id = self._make_slot(db, 9 + idx)
                booking_id = booking_module.request_booking(
                    db, source_slot_id, learner.id, time_provider=self.clock
                )['id']
                booking_module.accept_booking(
                    db,
                    booking_id,
                    self.mentor_id,
                    time_provider=self.clock,
                    email_client=SilentEmailClient(),
                )
                self.moves.append((booking_id, int(learner.id), source_slot_id))
        finally:
            db.close()

    def test_concurrent_reschedules_onto_one_slot_have_a_single_winner(self):
        barrier = threading.Barrier(len(self.moves))
        results_lock = threading.Lock()
        moved: list[int] = []
        conflicts: list[int] = []
        unexpected: list[Exception] = []

        def reschedule_worker(booking_id: int, learner_id: int):
            db = self._session_factory()
            try:
                barrier.wait(timeout=5)
                reschedule_module.reschedule_booking(
                    db,
                    booking_id,
                    self.target_slot_id,
                    'moving',
                    learner_id,
                    time_provider=self.clock,
                    email_client=SilentEmailClient(),
                )
                with results_lock:
                    moved.append(booking_id)
            except ConflictError:
                with results_lock:
                    conflicts.append(booking_id)
            except Exception as exc:  # pragma: no cover - test diagnostic path
                with results_lock:
                    unexpected.append(exc)
            finally:
                db.close()

        threads = [
            threading.Thread(target=reschedule_worker, args=(booking_id, learner_id))
            for booking_id, learner_id, _ in self.moves
        ]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join(timeout=20)

        self.assertFalse(unexpected, f'unexpected={unexpected}')
        self.assertEqual(len(moved), 1)
        self.assertEqual(len(conflicts), len(self.moves) - 1)

        db = self._session_factory()
        try:
            on_target = (
                db.query(Booking)
                .filter(Booking.time_slot_id == self.target_slot_id, Booking.status == 'approved')
                .all()
            )
            self.assertEqual(len(on_target), 1)
            self.assertEqual(on_target[0].rescheduled_from_id, moved[0])
            self.assertEqual(db.query(Booking).filter(Booking.status == 'rescheduled').count(), 1)
            for booking_id, _, source_slot_id in self.moves:
                if booking_id in moved:
                    continue
                loser = db.get(Booking, booking_id)
                self.assertEqual(loser.status, 'approved')
                self.assertEqual(loser.time_slot_id, source_slot_id)
        finally:
            db.close()


if __name__ == '__main__':
    unittest.main()
