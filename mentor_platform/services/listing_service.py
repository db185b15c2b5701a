from __future__ import annotations

from dataclasses import dataclass
from datetime import date

from sqlalchemy.orm import Session

from mentor_platform.core.errors import ForbiddenError, NotFoundError, ValidationError
from mentor_platform.core.pagination import Page, clamp_page
from mentor_platform.core.time_provider import TimeProvider, default_time_provider
from mentor_platform.metrics import timed_service
from mentor_platform.models import Booking, BookingStatus, TimeSlot
from mentor_platform.services.availability_service import available_slots_query, slot_to_dict
from mentor_platform.services.booking_service import booking_to_dict, reconcile_overdue_bookings
from mentor_platform.services.user_directory import get_user_by_id

__all__ = [
    'BookingFilter',
    'Page',
    'SlotFilter',
    'list_available_slots',
    'list_bookings_by_learner',
    'list_bookings_by_mentor',
    'list_bookings_by_slot',
]


@dataclass(frozen=True)
class SlotFilter:
    mentor_id: int | None = None
    date_from: date | None = None
    date_to: date | None = None


@dataclass(frozen=True)
class BookingFilter:
    status: str | None = None
    mentor_id: int | None = None
    date_from: date | None = None
    date_to: date | None = None


def _date_predicates(date_from: date | None, date_to: date | None) -> list:
    if date_from is not None and date_to is not None and date_from > date_to:
        raise ValidationError('date_from must not be after date_to')
    predicates = []
    if date_from is not None:
        predicates.append(TimeSlot.slot_date >= date_from)
    if date_to is not None:
        predicates.append(TimeSlot.slot_date <= date_to)
    return predicates


def slot_predicates(slot_filter: SlotFilter) -> list:
    predicates = _date_predicates(slot_filter.date_from, slot_filter.date_to)
    if slot_filter.mentor_id is not None:
        predicates.append(TimeSlot.mentor_id == slot_filter.mentor_id)
    return predicates


def booking_predicates(booking_filter: BookingFilter) -> list:
    predicates = _date_predicates(booking_filter.date_from, booking_filter.date_to)
    if booking_filter.status:
        if booking_filter.status not in {item.value for item in BookingStatus}:
            raise ValidationError(f'Unknown booking status: {booking_filter.status}')
        predicates.append(Booking.status == booking_filter.status)
    if booking_filter.mentor_id is not None:
        predicates.append(TimeSlot.mentor_id == booking_filter.mentor_id)
    return predicates


@timed_service('listing.list_available_slots')
def list_available_slots(
    db: Session,
    slot_filter: SlotFilter | None = None,
    page_index: int | None = 1,
    page_size: int | None = None,
    *,
    time_provider: TimeProvider = default_time_provider,
) -> Page:
    page_index, page_size = clamp_page(page_index, page_size)
    query = available_slots_query(db, time_provider.utc_now_naive()).filter(*slot_predicates(slot_filter or SlotFilter()))
    page = Page(total_count=query.count(), page_index=page_index, page_size=page_size)
    rows = query.order_by(TimeSlot.start_at_utc.asc(), TimeSlot.id.asc()).offset(page.offset).limit(page.page_size).all()
    page.items = [slot_to_dict(row) for row in rows]
    return page


def _paged_bookings(db: Session, predicates: list, page_index: int | None, page_size: int | None) -> Page:
    page_index, page_size = clamp_page(page_index, page_size)
    query = db.query(Booking, TimeSlot).join(TimeSlot, TimeSlot.id == Booking.time_slot_id).filter(*predicates)
    page = Page(total_count=query.count(), page_index=page_index, page_size=page_size)
    rows = (
        query.order_by(TimeSlot.start_at_utc.asc(), Booking.created_at.asc(), Booking.id.asc())
        .offset(page.offset)
        .limit(page.page_size)
        .all()
    )
    page.items = [booking_to_dict(booking, slot) for booking, slot in rows]
    return page


def list_bookings_by_slot(
    db: Session,
    time_slot_id: int,
    *,
    acting_user_id: int | None = None,
    time_provider: TimeProvider = default_time_provider,
) -> list[dict]:
    slot = db.get(TimeSlot, time_slot_id)
    if slot is None:
        raise NotFoundError(f'Time slot {time_slot_id} not found')
    if acting_user_id is not None:
        actor = get_user_by_id(db, acting_user_id)
        if not actor.is_admin and actor.id != slot.mentor_id:
            raise ForbiddenError('Only the mentor who owns this slot can see its requests')
    reconcile_overdue_bookings(db, time_provider=time_provider)
    rows = (
        db.query(Booking)
        .filter(Booking.time_slot_id == time_slot_id)
        .order_by(Booking.created_at.asc(), Booking.id.asc())
        .all()
    )
    return [booking_to_dict(row, slot) for row in rows]


@timed_service('listing.list_bookings_by_learner')
def list_bookings_by_learner(
    db: Session,
    learner_id: int,
    booking_filter: BookingFilter | None = None,
    page_index: int | None = 1,
    page_size: int | None = None,
    *,
    time_provider: TimeProvider = default_time_provider,
) -> Page:
    reconcile_overdue_bookings(db, time_provider=time_provider)
    predicates = [Booking.learner_id == learner_id, *booking_predicates(booking_filter or BookingFilter())]
    return _paged_bookings(db, predicates, page_index, page_size)


@timed_service('listing.list_bookings_by_mentor')
def list_bookings_by_mentor(
    db: Session,
    mentor_id: int,
    booking_filter: BookingFilter | None = None,
    page_index: int | None = 1,
    page_size: int | None = None,
    *,
    time_provider: TimeProvider = default_time_provider,
) -> Page:
    reconcile_overdue_bookings(db, time_provider=time_provider)
    predicates = [TimeSlot.mentor_id == mentor_id, *booking_predicates(booking_filter or BookingFilter())]
    return _paged_bookings(db, predicates, page_index, page_size)
