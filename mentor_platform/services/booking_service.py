from __future__ import annotations

import logging
from datetime import datetime

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from mentor_platform.cache import clear_availability_cache
from mentor_platform.communication.email_clients import BaseEmailClient
from mentor_platform.core.errors import (
    DUPLICATE_REQUEST_MESSAGE,
    SLOT_RACE_MESSAGE,
    ConflictError,
    ForbiddenError,
    NotFoundError,
    SlotUnavailableError,
    ValidationError,
)
from mentor_platform.core.slot_locks import slot_lock
from mentor_platform.core.time_provider import TimeProvider, default_time_provider, to_utc_naive
from mentor_platform.metrics import record_booking_event, timed_service
from mentor_platform.models import CONFIRMED_STATUSES, Booking, BookingStatus, SessionType, TimeSlot
from mentor_platform.services import notification_service
from mentor_platform.services.user_directory import UserSummary, find_user, get_user_by_id


logger = logging.getLogger(__name__)

ALLOWED_TRANSITIONS: dict[str, frozenset[str]] = {
    BookingStatus.PENDING.value: frozenset(
        {BookingStatus.APPROVED.value, BookingStatus.REJECTED.value, BookingStatus.CANCELLED.value}
    ),
    BookingStatus.APPROVED.value: frozenset(
        {BookingStatus.COMPLETED.value, BookingStatus.CANCELLED.value, BookingStatus.RESCHEDULED.value}
    ),
    BookingStatus.REJECTED.value: frozenset(),
    BookingStatus.CANCELLED.value: frozenset(),
    BookingStatus.COMPLETED.value: frozenset(),
    BookingStatus.RESCHEDULED.value: frozenset(),
}

OVERDUE_CANCEL_REASON = 'slot_started_without_review'


def can_transition(current: str, target: str) -> bool:
    return target in ALLOWED_TRANSITIONS.get(current, frozenset())


def apply_transition(booking: Booking, target: str, now: datetime) -> None:
    current = booking.status
    if not can_transition(current, target):
        raise ConflictError(f'Booking cannot move from {current} to {target}')
    booking.status = target
    booking.status_changed_at = now
    logger.info('booking_transition booking_id=%s from=%s to=%s', booking.id, current, target)
    record_booking_event(f'booking_{target}')


def booking_to_dict(booking: Booking, slot: TimeSlot | None = None) -> dict:
    data = {
        'id': booking.id,
        'time_slot_id': booking.time_slot_id,
        'learner_id': booking.learner_id,
        'status': booking.status,
        'session_type': booking.session_type,
        'created_at': booking.created_at.isoformat() if booking.created_at else None,
        'reviewed_at': booking.reviewed_at.isoformat() if booking.reviewed_at else None,
        'status_changed_at': booking.status_changed_at.isoformat() if booking.status_changed_at else None,
        'rescheduled_from_id': booking.rescheduled_from_id,
        'reschedule_reason': booking.reschedule_reason or '',
        'cancel_reason': booking.cancel_reason or '',
    }
    if slot is not None:
        data.update(
            {
                'mentor_id': slot.mentor_id,
                'date': slot.slot_date.isoformat(),
                'start_time': slot.start_time.strftime('%H:%M'),
                'end_time': slot.end_time.strftime('%H:%M'),
                'start_at_utc': slot.start_at_utc.isoformat(),
                'end_at_utc': slot.end_at_utc.isoformat(),
            }
        )
    return data


def _load_booking(db: Session, booking_id: int, *, for_update: bool = False) -> Booking:
    query = db.query(Booking).filter(Booking.id == booking_id)
    if for_update:
        query = query.populate_existing().with_for_update()
    booking = query.first()
    if booking is None:
        raise NotFoundError(f'Booking {booking_id} not found')
    return booking


def _load_slot(db: Session, slot_id: int, *, for_update: bool = False) -> TimeSlot:
    query = db.query(TimeSlot).filter(TimeSlot.id == slot_id)
    if for_update:
        query = query.populate_existing().with_for_update()
    slot = query.first()
    if slot is None:
        raise NotFoundError(f'Time slot {slot_id} not found')
    return slot


def slot_has_confirmed_booking(db: Session, slot_id: int, *, exclude_booking_id: int | None = None) -> bool:
    query = db.query(Booking.id).filter(
        Booking.time_slot_id == slot_id,
        Booking.status.in_(CONFIRMED_STATUSES),
    )
    if exclude_booking_id is not None:
        query = query.filter(Booking.id != exclude_booking_id)
    return query.first() is not None


def learner_has_approved_booking(db: Session, learner_id: int, *, exclude_booking_id: int | None = None) -> bool:
    query = db.query(Booking.id).filter(
        Booking.learner_id == learner_id,
        Booking.status == BookingStatus.APPROVED.value,
    )
    if exclude_booking_id is not None:
        query = query.filter(Booking.id != exclude_booking_id)
    return query.first() is not None


def _require_slot_mentor(actor: UserSummary, slot: TimeSlot) -> None:
    if actor.id != slot.mentor_id:
        raise ForbiddenError('Only the mentor who owns this slot can manage its bookings')


@timed_service('booking.request_booking')
def request_booking(
    db: Session,
    time_slot_id: int,
    learner_id: int,
    session_type: str = SessionType.ONLINE.value,
    *,
    time_provider: TimeProvider = default_time_provider,
) -> dict:
    learner = get_user_by_id(db, learner_id)
    slot = _load_slot(db, time_slot_id)
    if not learner.is_active:
        raise ForbiddenError('Learner account is not active')
    if learner.id == slot.mentor_id:
        raise ForbiddenError('Mentors cannot book their own slots')
    if session_type not in {item.value for item in SessionType}:
        raise ValidationError(f'Unsupported session type: {session_type}')

    mentor = find_user(db, slot.mentor_id)
    if mentor is None or not mentor.is_active:
        raise SlotUnavailableError('Mentor is not available for booking')
    now = time_provider.utc_now_naive()
    if slot.is_archived or slot.start_at_utc <= now:
        raise SlotUnavailableError('Slot is no longer open for booking')
    if slot_has_confirmed_booking(db, slot.id):
        raise SlotUnavailableError(SLOT_RACE_MESSAGE)

    duplicate = (
        db.query(Booking.id)
        .filter(
            Booking.time_slot_id == slot.id,
            Booking.learner_id == learner.id,
            Booking.status == BookingStatus.PENDING.value,
        )
        .first()
    )
    if duplicate is not None:
        record_booking_event('booking_duplicate_request')
        raise ConflictError(DUPLICATE_REQUEST_MESSAGE)

    booking = Booking(
        time_slot_id=slot.id,
        learner_id=learner.id,
        status=BookingStatus.PENDING.value,
        session_type=session_type,
        created_at=now,
        status_changed_at=now,
    )
    db.add(booking)
    try:
        db.commit()
    except IntegrityError as exc:
        db.rollback()
        record_booking_event('booking_duplicate_request')
        raise ConflictError(DUPLICATE_REQUEST_MESSAGE) from exc
    db.refresh(booking)
    record_booking_event('booking_requested')
    logger.info(
        'booking_requested booking_id=%s slot_id=%s learner_id=%s',
        booking.id,
        slot.id,
        learner.id,
    )
    return booking_to_dict(booking, slot)


def _notify_confirmed(
    db: Session,
    booking: Booking,
    slot: TimeSlot,
    mentor: UserSummary,
    *,
    time_provider: TimeProvider,
    email_client: BaseEmailClient | None,
) -> dict:
    learner = find_user(db, booking.learner_id)
    if learner is None:
        return {'sent': False, 'reason': 'learner_not_found'}
    subject, body = notification_service.booking_confirmed_message(
        learner_name=learner.full_name,
        mentor_name=mentor.full_name,
        slot_date=slot.slot_date,
        start_time=slot.start_time,
        end_time=slot.end_time,
    )
    result = notification_service.dispatch_email(
        db,
        event_type=notification_service.EVENT_BOOKING_CONFIRMED,
        recipient_email=learner.email,
        subject=subject,
        body=body,
        entity_type='booking',
        entity_id=booking.id,
        email_client=email_client,
        time_provider=time_provider,
    )
    return {'sent': result['sent'], 'reason': result['reason']}


@timed_service('booking.accept_booking')
def accept_booking(
    db: Session,
    booking_id: int,
    acting_mentor_id: int,
    *,
    time_provider: TimeProvider = default_time_provider,
    email_client: BaseEmailClient | None = None,
) -> dict:
    booking = _load_booking(db, booking_id)
    mentor = get_user_by_id(db, acting_mentor_id)
    slot = _load_slot(db, booking.time_slot_id)
    _require_slot_mentor(mentor, slot)
    if not mentor.is_active:
        raise SlotUnavailableError('Mentor is not active')

    with slot_lock(slot.id):
        slot = _load_slot(db, slot.id, for_update=True)
        booking = _load_booking(db, booking_id, for_update=True)
        if booking.status != BookingStatus.PENDING.value:
            raise ConflictError(f'Only pending bookings can be accepted (current: {booking.status})')
        now = time_provider.utc_now_naive()
        if slot.is_archived or slot.start_at_utc <= now:
            raise SlotUnavailableError('Slot is no longer open for booking')
        # Ended sessions still hold the learner's approved row until swept.
        reconcile_overdue_bookings(db, time_provider=time_provider)
        if slot_has_confirmed_booking(db, slot.id, exclude_booking_id=booking.id):
            record_booking_event('booking_accept_conflict')
            raise ConflictError(SLOT_RACE_MESSAGE)
        if learner_has_approved_booking(db, booking.learner_id, exclude_booking_id=booking.id):
            raise ConflictError('Learner already has an active session')

        apply_transition(booking, BookingStatus.APPROVED.value, now)
        booking.reviewed_at = now
        try:
            db.commit()
        except IntegrityError as exc:
            db.rollback()
            record_booking_event('booking_accept_conflict')
            logger.info('booking_accept_conflict booking_id=%s slot_id=%s', booking_id, slot.id)
            raise ConflictError(SLOT_RACE_MESSAGE) from exc

    clear_availability_cache()
    db.refresh(booking)
    notification = _notify_confirmed(db, booking, slot, mentor, time_provider=time_provider, email_client=email_client)
    return {'booking': booking_to_dict(booking, slot), 'notification': notification}


def reject_booking(
    db: Session,
    booking_id: int,
    acting_mentor_id: int,
    *,
    time_provider: TimeProvider = default_time_provider,
) -> dict:
    booking = _load_booking(db, booking_id)
    mentor = get_user_by_id(db, acting_mentor_id)
    slot = _load_slot(db, booking.time_slot_id)
    _require_slot_mentor(mentor, slot)
    if booking.status != BookingStatus.PENDING.value:
        raise ConflictError(f'Only pending bookings can be rejected (current: {booking.status})')
    now = time_provider.utc_now_naive()
    apply_transition(booking, BookingStatus.REJECTED.value, now)
    booking.reviewed_at = now
    db.commit()
    clear_availability_cache()
    db.refresh(booking)
    return booking_to_dict(booking, slot)


def cancel_booking(
    db: Session,
    booking_id: int,
    acting_user_id: int,
    reason: str = '',
    *,
    time_provider: TimeProvider = default_time_provider,
) -> dict:
    booking = _load_booking(db, booking_id)
    actor = get_user_by_id(db, acting_user_id)
    slot = _load_slot(db, booking.time_slot_id)
    if actor.id not in (booking.learner_id, slot.mentor_id):
        raise ForbiddenError('Only the learner or the mentor of this booking can cancel it')
    if booking.status != BookingStatus.PENDING.value:
        raise ConflictError(f'Only pending bookings can be cancelled (current: {booking.status})')
    apply_transition(booking, BookingStatus.CANCELLED.value, time_provider.utc_now_naive())
    booking.cancel_reason = (reason or '')[:255]
    db.commit()
    clear_availability_cache()
    db.refresh(booking)
    return booking_to_dict(booking, slot)


def _mentor_cancel_approved(
    db: Session,
    booking_id: int,
    acting_mentor_id: int,
    *,
    time_provider: TimeProvider,
) -> dict:
    booking = _load_booking(db, booking_id)
    mentor = get_user_by_id(db, acting_mentor_id)
    slot = _load_slot(db, booking.time_slot_id)
    _require_slot_mentor(mentor, slot)
    apply_transition(booking, BookingStatus.CANCELLED.value, time_provider.utc_now_naive())
    booking.cancel_reason = 'cancelled_by_mentor'
    db.commit()
    clear_availability_cache()
    db.refresh(booking)
    return booking_to_dict(booking, slot)


def complete_booking(
    db: Session,
    booking_id: int,
    acting_mentor_id: int,
    *,
    time_provider: TimeProvider = default_time_provider,
) -> dict:
    booking = _load_booking(db, booking_id)
    mentor = get_user_by_id(db, acting_mentor_id)
    slot = _load_slot(db, booking.time_slot_id)
    _require_slot_mentor(mentor, slot)
    if booking.status != BookingStatus.APPROVED.value:
        raise ConflictError(f'Only approved bookings can be completed (current: {booking.status})')
    now = time_provider.utc_now_naive()
    if slot.end_at_utc > now:
        raise ValidationError('Session cannot be completed before it ends')
    apply_transition(booking, BookingStatus.COMPLETED.value, now)
    db.commit()
    clear_availability_cache()
    db.refresh(booking)
    return booking_to_dict(booking, slot)


def update_booking_status(
    db: Session,
    booking_id: int,
    acting_mentor_id: int,
    status: str,
    *,
    time_provider: TimeProvider = default_time_provider,
    email_client: BaseEmailClient | None = None,
) -> dict:
    """Mentor-driven status edit; routes to the dedicated transition."""
    booking = _load_booking(db, booking_id)
    if status == BookingStatus.RESCHEDULED.value:
        raise ValidationError('Use the reschedule operation to move a booking')
    if status not in ALLOWED_TRANSITIONS:
        raise ValidationError(f'Unknown booking status: {status}')
    if not can_transition(booking.status, status):
        raise ConflictError(f'Booking cannot move from {booking.status} to {status}')

    if status == BookingStatus.APPROVED.value:
        return accept_booking(db, booking_id, acting_mentor_id, time_provider=time_provider, email_client=email_client)
    if status == BookingStatus.REJECTED.value:
        return {'booking': reject_booking(db, booking_id, acting_mentor_id, time_provider=time_provider)}
    if status == BookingStatus.COMPLETED.value:
        return {'booking': complete_booking(db, booking_id, acting_mentor_id, time_provider=time_provider)}
    if booking.status == BookingStatus.APPROVED.value:
        return {'booking': _mentor_cancel_approved(db, booking_id, acting_mentor_id, time_provider=time_provider)}
    return {'booking': cancel_booking(db, booking_id, acting_mentor_id, time_provider=time_provider)}


def get_booking(db: Session, booking_id: int, acting_user_id: int) -> dict:
    booking = _load_booking(db, booking_id)
    actor = get_user_by_id(db, acting_user_id)
    slot = _load_slot(db, booking.time_slot_id)
    if not actor.is_admin and actor.id not in (booking.learner_id, slot.mentor_id):
        raise ForbiddenError('You cannot view this booking')
    return booking_to_dict(booking, slot)


def reconcile_overdue_bookings(
    db: Session,
    now: datetime | None = None,
    *,
    time_provider: TimeProvider = default_time_provider,
) -> dict:
    """Cancel pending requests whose slot has started and complete approved
    sessions whose slot has ended. Safe to call repeatedly."""
    now_utc = time_provider.utc_now_naive() if now is None else to_utc_naive(now)

    stale_pending = (
        db.query(Booking)
        .join(TimeSlot, TimeSlot.id == Booking.time_slot_id)
        .filter(
            Booking.status == BookingStatus.PENDING.value,
            TimeSlot.start_at_utc <= now_utc,
        )
        .with_for_update()
        .all()
    )
    elapsed_approved = (
        db.query(Booking)
        .join(TimeSlot, TimeSlot.id == Booking.time_slot_id)
        .filter(
            Booking.status == BookingStatus.APPROVED.value,
            TimeSlot.end_at_utc <= now_utc,
        )
        .with_for_update()
        .all()
    )
    for booking in stale_pending:
        apply_transition(booking, BookingStatus.CANCELLED.value, now_utc)
        booking.cancel_reason = OVERDUE_CANCEL_REASON
    for booking in elapsed_approved:
        apply_transition(booking, BookingStatus.COMPLETED.value, now_utc)

    cancelled = len(stale_pending)
    completed = len(elapsed_approved)
    if cancelled or completed:
        db.commit()
        clear_availability_cache()
        logger.info(
            'overdue_bookings_reconciled',
            extra={'cancelled': cancelled, 'completed': completed, 'now': now_utc.isoformat()},
        )
    return {'cancelled': cancelled, 'completed': completed}
