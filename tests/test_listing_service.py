import tempfile
import unittest
from datetime import date, datetime, time, timezone
from pathlib import Path

from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from mentor_platform.cache import clear_availability_cache
from mentor_platform.communication.email_clients import LogEmailClient
from mentor_platform.core.errors import ForbiddenError, NotFoundError, ValidationError
from mentor_platform.core.pagination import clamp_page
from mentor_platform.core.time_provider import TimeProvider
from mentor_platform.db import Base
from mentor_platform.models import Booking, NotificationLog, ScheduleSettings, TimeSlot, User
from mentor_platform.services.booking_service import accept_booking, request_booking
from mentor_platform.services.listing_service import (
    BookingFilter,
    SlotFilter,
    list_available_slots,
    list_bookings_by_learner,
    list_bookings_by_mentor,
    list_bookings_by_slot,
)


class FixedTimeProvider(TimeProvider):
    def __init__(self, frozen_dt: datetime):
        self.frozen_dt = frozen_dt

    def now(self) -> datetime:
        return self.frozen_dt


class ListingServiceTests(unittest.TestCase):
    @classmethod
    def setUpClass(cls):
        cls._tmpdir = tempfile.TemporaryDirectory()
        db_path = Path(cls._tmpdir.name) / 'test_listing_service.db'
        cls._engine = create_engine(f"sqlite:///{db_path}", connect_args={'check_same_thread': False})
        cls._session_factory = sessionmaker(autocommit=False, autoflush=False, bind=cls._engine)
        Base.metadata.create_all(bind=cls._engine)

    @classmethod
    def tearDownClass(cls):
        cls._engine.dispose()
        cls._tmpdir.cleanup()

    def setUp(self):
        clear_availability_cache()
        self.clock = FixedTimeProvider(datetime(2026, 6, 1, 8, 0, tzinfo=timezone.utc))
        self.db = self._session_factory()
        for table in (NotificationLog, Booking, TimeSlot, ScheduleSettings, User):
            self.db.query(table).delete()
        self.db.commit()

        mentor = User(email='mentor@example.com', full_name='Maya Mentor', role='mentor')
        other_mentor = User(email='mentor2@example.com', full_name='Noah Mentor', role='mentor')
        learner = User(email='learner@example.com', full_name='Lee Learner', role='learner')
        other_learner = User(email='other@example.com', full_name='Olu Learner', role='learner')
        self.db.add_all([mentor, other_mentor, learner, other_learner])
        self.db.commit()
        self.mentor_id = mentor.id
        self.other_mentor_id = other_mentor.id
        self.learner_id = learner.id
        self.other_learner_id = other_learner.id

        # Five open hours on Tuesday for the first mentor, one on Wednesday for the second.
        self.tuesday_slots = [
            self._make_slot(self.mentor_id, date(2026, 6, 2), time(hour, 0), time(hour + 1, 0))
            for hour in range(9, 14)
        ]
        self.wednesday_slot = self._make_slot(self.other_mentor_id, date(2026, 6, 3), time(9, 0), time(10, 0))

    def tearDown(self):
        self.db.close()

    def _make_slot(self, mentor_id, day, start, end):
        schedule = self.db.query(ScheduleSettings).filter(ScheduleSettings.mentor_id == mentor_id).first()
        if schedule is None:
            schedule = ScheduleSettings(mentor_id=mentor_id, week_start_date=date(2026, 5, 31), week_end_date=date(2026, 6, 6))
            self.db.add(schedule)
            self.db.commit()
        slot = TimeSlot(
            mentor_id=mentor_id,
            schedule_id=schedule.id,
            slot_date=day,
            start_time=start,
            end_time=end,
            start_at_utc=datetime.combine(day, start),
            end_at_utc=datetime.combine(day, end),
        )
        self.db.add(slot)
        self.db.commit()
        return slot.id

    def _request(self, slot_id, learner_id):
        return request_booking(self.db, slot_id, learner_id, time_provider=self.clock)

    def test_clamp_page(self):
        self.assertEqual(clamp_page(None, None), (1, 10))
        self.assertEqual(clamp_page(0, 0), (1, 10))
        self.assertEqual(clamp_page(-3, 5000), (1, 100))
        self.assertEqual(clamp_page(4, 25), (4, 25))

    def test_available_slots_are_paged_in_start_order(self):
        first = list_available_slots(self.db, page_index=1, page_size=4, time_provider=self.clock)
        self.assertEqual(first.total_count, 6)
        self.assertEqual(first.total_pages, 2)
        self.assertTrue(first.has_next)
        self.assertFalse(first.has_previous)
        self.assertEqual([item['id'] for item in first.items], self.tuesday_slots[:4])

        second = list_available_slots(self.db, page_index=2, page_size=4, time_provider=self.clock)
        self.assertEqual([item['id'] for item in second.items], [self.tuesday_slots[4], self.wednesday_slot])
        self.assertFalse(second.has_next)

        beyond = list_available_slots(self.db, page_index=9, page_size=4, time_provider=self.clock)
        self.assertEqual(beyond.items, [])
        self.assertEqual(beyond.to_dict()['total_count'], 6)

    def test_available_slot_filters(self):
        by_mentor = list_available_slots(self.db, SlotFilter(mentor_id=self.other_mentor_id), time_provider=self.clock)
        self.assertEqual([item['id'] for item in by_mentor.items], [self.wednesday_slot])

        by_date = list_available_slots(
            self.db,
            SlotFilter(date_from=date(2026, 6, 3), date_to=date(2026, 6, 3)),
            time_provider=self.clock,
        )
        self.assertEqual(by_date.total_count, 1)

        with self.assertRaises(ValidationError):
            list_available_slots(
                self.db,
                SlotFilter(date_from=date(2026, 6, 4), date_to=date(2026, 6, 3)),
                time_provider=self.clock,
            )

    def test_confirmed_and_past_slots_are_not_listed(self):
        booking = self._request(self.tuesday_slots[0], self.learner_id)
        accept_booking(self.db, booking['id'], self.mentor_id, time_provider=self.clock, email_client=LogEmailClient())
        self._request(self.tuesday_slots[1], self.other_learner_id)

        self.clock.frozen_dt = datetime(2026, 6, 2, 11, 30, tzinfo=timezone.utc)
        page = list_available_slots(self.db, time_provider=self.clock)
        self.assertEqual(
            [item['id'] for item in page.items],
            [self.tuesday_slots[3], self.tuesday_slots[4], self.wednesday_slot],
        )

    def test_learner_and_mentor_listings_with_status_filter(self):
        first = self._request(self.tuesday_slots[0], self.learner_id)
        self._request(self.tuesday_slots[1], self.learner_id)
        self._request(self.wednesday_slot, self.learner_id)
        accept_booking(self.db, first['id'], self.mentor_id, time_provider=self.clock, email_client=LogEmailClient())

        mine = list_bookings_by_learner(self.db, self.learner_id, time_provider=self.clock)
        self.assertEqual(mine.total_count, 3)
        approved = list_bookings_by_learner(self.db, self.learner_id, BookingFilter(status='approved'), time_provider=self.clock)
        self.assertEqual([item['id'] for item in approved.items], [first['id']])

        incoming = list_bookings_by_mentor(
            self.db, self.mentor_id, BookingFilter(status='pending'), time_provider=self.clock
        )
        self.assertEqual(incoming.total_count, 1)
        self.assertEqual(incoming.items[0]['mentor_id'], self.mentor_id)

        with self.assertRaises(ValidationError):
            list_bookings_by_mentor(self.db, self.mentor_id, BookingFilter(status='lost'), time_provider=self.clock)

    def test_listings_apply_the_overdue_sweep_first(self):
        pending = self._request(self.tuesday_slots[0], self.learner_id)
        self.clock.frozen_dt = datetime(2026, 6, 2, 9, 30, tzinfo=timezone.utc)

        page = list_bookings_by_learner(self.db, self.learner_id, time_provider=self.clock)
        self.assertEqual(page.items[0]['id'], pending['id'])
        self.assertEqual(page.items[0]['status'], 'cancelled')
        self.assertEqual(page.items[0]['cancel_reason'], 'slot_started_without_review')

    def test_requests_by_slot_are_visible_to_the_owner_only(self):
        self._request(self.tuesday_slots[2], self.learner_id)
        self._request(self.tuesday_slots[2], self.other_learner_id)

        rows = list_bookings_by_slot(self.db, self.tuesday_slots[2], acting_user_id=self.mentor_id, time_provider=self.clock)
        self.assertEqual([row['learner_id'] for row in rows], [self.learner_id, self.other_learner_id])

        with self.assertRaises(ForbiddenError):
            list_bookings_by_slot(self.db, self.tuesday_slots[2], acting_user_id=self.other_mentor_id, time_provider=self.clock)
        with self.assertRaises(NotFoundError):
            list_bookings_by_slot(self.db, 999999, time_provider=self.clock)


if __name__ == '__main__':
    unittest.main()
