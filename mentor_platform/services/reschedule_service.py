from __future__ import annotations

import logging

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from mentor_platform.cache import clear_availability_cache
from mentor_platform.communication.email_clients import BaseEmailClient
from mentor_platform.config import settings
from mentor_platform.core.errors import (
    DUPLICATE_REQUEST_MESSAGE,
    SLOT_RACE_MESSAGE,
    ConflictError,
    ForbiddenError,
    NotFoundError,
    SlotUnavailableError,
    ValidationError,
)
from mentor_platform.core.slot_locks import slot_locks
from mentor_platform.core.time_provider import TimeProvider, default_time_provider
from mentor_platform.metrics import record_booking_event, timed_service
from mentor_platform.models import Booking, BookingStatus, TimeSlot
from mentor_platform.services import notification_service
from mentor_platform.services.booking_service import (
    apply_transition,
    booking_to_dict,
    slot_has_confirmed_booking,
)
from mentor_platform.services.user_directory import UserSummary, find_user, get_user_by_id


logger = logging.getLogger(__name__)


def replacement_status() -> str:
    value = (settings.reschedule_replacement_status or '').strip().lower()
    if value == BookingStatus.PENDING.value:
        return BookingStatus.PENDING.value
    return BookingStatus.APPROVED.value


def _load_for_update(db: Session, model, row_id: int, label: str):
    row = db.query(model).filter(model.id == row_id).populate_existing().with_for_update().first()
    if row is None:
        raise NotFoundError(f'{label} {row_id} not found')
    return row


def _notify_counterparty(
    db: Session,
    actor: UserSummary,
    old_booking: Booking,
    new_booking: Booking,
    old_slot: TimeSlot,
    new_slot: TimeSlot,
    reason: str,
    *,
    time_provider: TimeProvider,
    email_client: BaseEmailClient | None,
) -> dict:
    recipient_id = old_booking.learner_id if actor.id == old_slot.mentor_id else old_slot.mentor_id
    recipient = find_user(db, recipient_id)
    if recipient is None:
        return {'sent': False, 'reason': 'recipient_not_found'}
    subject, body = notification_service.booking_rescheduled_message(
        recipient_name=recipient.full_name,
        actor_name=actor.full_name,
        old_slot=(old_slot.slot_date, old_slot.start_time, old_slot.end_time),
        new_slot=(new_slot.slot_date, new_slot.start_time, new_slot.end_time),
        reason=reason,
    )
    result = notification_service.dispatch_email(
        db,
        event_type=notification_service.EVENT_BOOKING_RESCHEDULED,
        recipient_email=recipient.email,
        subject=subject,
        body=body,
        entity_type='booking',
        entity_id=new_booking.id,
        email_client=email_client,
        time_provider=time_provider,
    )
    return {'sent': result['sent'], 'reason': result['reason'], 'recipient_id': recipient.id}


@timed_service('reschedule.reschedule_booking')
def reschedule_booking(
    db: Session,
    booking_id: int,
    new_time_slot_id: int,
    reason: str,
    acting_user_id: int,
    *,
    time_provider: TimeProvider = default_time_provider,
    email_client: BaseEmailClient | None = None,
) -> dict:
    reason = (reason or '').strip()
    if len(reason) > settings.reschedule_reason_max_length:
        raise ValidationError(f'Reason must be at most {settings.reschedule_reason_max_length} characters')

    booking = db.get(Booking, booking_id)
    if booking is None:
        raise NotFoundError(f'Booking {booking_id} not found')
    if booking.time_slot_id == new_time_slot_id:
        raise ValidationError('Pick a different slot to reschedule to')
    actor = get_user_by_id(db, acting_user_id)
    old_slot = db.get(TimeSlot, booking.time_slot_id)
    if old_slot is None:
        raise NotFoundError(f'Time slot {booking.time_slot_id} not found')
    if db.get(TimeSlot, new_time_slot_id) is None:
        raise NotFoundError(f'Time slot {new_time_slot_id} not found')
    if actor.id not in (booking.learner_id, old_slot.mentor_id):
        raise ForbiddenError('Only the learner or the mentor of this booking can reschedule it')

    with slot_locks([old_slot.id, new_time_slot_id]):
        booking = _load_for_update(db, Booking, booking_id, 'Booking')
        new_slot = _load_for_update(db, TimeSlot, new_time_slot_id, 'Time slot')
        if booking.status != BookingStatus.APPROVED.value:
            raise ConflictError(f'Only approved bookings can be rescheduled (current: {booking.status})')
        if new_slot.mentor_id != old_slot.mentor_id:
            raise ValidationError('Sessions can only be moved to another slot of the same mentor')
        mentor = find_user(db, new_slot.mentor_id)
        now = time_provider.utc_now_naive()
        if new_slot.is_archived:
            raise SlotUnavailableError('Target slot is no longer offered')
        if new_slot.start_at_utc <= now:
            raise SlotUnavailableError('Target slot is in the past')
        if mentor is None or not mentor.is_active:
            raise SlotUnavailableError('Mentor is not available for booking')
        if slot_has_confirmed_booking(db, new_slot.id):
            record_booking_event('booking_reschedule_conflict')
            raise ConflictError(SLOT_RACE_MESSAGE)

        target_status = replacement_status()
        if target_status == BookingStatus.PENDING.value:
            duplicate = (
                db.query(Booking.id)
                .filter(
                    Booking.time_slot_id == new_slot.id,
                    Booking.learner_id == booking.learner_id,
                    Booking.status == BookingStatus.PENDING.value,
                )
                .first()
            )
            if duplicate is not None:
                record_booking_event('booking_duplicate_request')
                raise ConflictError(DUPLICATE_REQUEST_MESSAGE)
        try:
            apply_transition(booking, BookingStatus.RESCHEDULED.value, now)
            booking.reschedule_reason = reason
            # Releases the learner's approved slot before the replacement row is inserted.
            db.flush()
            replacement = Booking(
                time_slot_id=new_slot.id,
                learner_id=booking.learner_id,
                status=target_status,
                session_type=booking.session_type,
                created_at=now,
                reviewed_at=now if target_status == BookingStatus.APPROVED.value else None,
                status_changed_at=now,
                rescheduled_from_id=booking.id,
                reschedule_reason=reason,
            )
            db.add(replacement)
            db.commit()
        except IntegrityError as exc:
            db.rollback()
            record_booking_event('booking_reschedule_conflict')
            logger.info('booking_reschedule_conflict booking_id=%s target_slot_id=%s', booking_id, new_time_slot_id)
            raise ConflictError(SLOT_RACE_MESSAGE) from exc

    db.refresh(booking)
    db.refresh(replacement)
    clear_availability_cache()
    logger.info(
        'booking_rescheduled booking_id=%s new_booking_id=%s from_slot=%s to_slot=%s status=%s',
        booking.id,
        replacement.id,
        old_slot.id,
        new_slot.id,
        replacement.status,
    )
    notification = _notify_counterparty(
        db,
        actor,
        booking,
        replacement,
        old_slot,
        new_slot,
        reason,
        time_provider=time_provider,
        email_client=email_client,
    )
    return {
        'previous_booking': booking_to_dict(booking, old_slot),
        'booking': booking_to_dict(replacement, new_slot),
        'notification': notification,
    }
