from __future__ import annotations

import logging
from collections import defaultdict
from datetime import date, datetime, time, timedelta

from sqlalchemy import and_, exists, func
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Query, Session

from mentor_platform.cache import AVAILABLE_MENTORS_PREFIX, bypass_cache, cache, cache_key, clear_availability_cache
from mentor_platform.communication.email_clients import BaseEmailClient
from mentor_platform.config import settings
from mentor_platform.core.errors import (
    LOCKED_SCHEDULE_MESSAGE,
    ConflictError,
    ForbiddenError,
    LockedError,
    NotFoundError,
    ValidationError,
)
from mentor_platform.core.pagination import Page, clamp_page
from mentor_platform.core.slot_locks import slot_locks
from mentor_platform.core.time_provider import TimeProvider, default_time_provider, local_to_utc_naive
from mentor_platform.metrics import record_booking_event, timed_service
from mentor_platform.models import (
    CONFIRMED_STATUSES,
    LOCKING_STATUSES,
    Booking,
    BookingStatus,
    ScheduleSettings,
    TimeSlot,
    User,
    UserStatus,
)
from mentor_platform.schemas import WeeklyAvailabilityRequest
from mentor_platform.services import notification_service
from mentor_platform.services.slot_generator import GeneratedSlot, generate_window_slots, parse_hhmm
from mentor_platform.services.user_directory import UserSummary, get_user_by_id, get_users_by_ids


logger = logging.getLogger(__name__)

SCHEDULE_SAVED_MESSAGE = 'Schedule saved successfully.'
SCHEDULE_UPDATED_CANCEL_REASON = 'schedule_updated'


def default_window(today: date) -> tuple[date, date]:
    # Weeks start on Sunday.
    start = today - timedelta(days=(today.weekday() + 1) % 7)
    return start, start + timedelta(days=6)


def _validate_window(week_start: date, week_end: date) -> None:
    if week_start > week_end:
        raise ValidationError('Week start must not be after week end')
    if (week_end - week_start).days + 1 > settings.max_schedule_window_days:
        raise ValidationError(f'Schedule window cannot exceed {settings.max_schedule_window_days} days')


def _resolve_window(
    mentor: UserSummary,
    week_start: date | None,
    week_end: date | None,
    time_provider: TimeProvider,
) -> tuple[date, date]:
    if week_start is None and week_end is None:
        return default_window(time_provider.local_now(mentor.timezone).date())
    if week_start is None:
        week_start = week_end - timedelta(days=6)
    if week_end is None:
        week_end = week_start + timedelta(days=6)
    _validate_window(week_start, week_end)
    return week_start, week_end


def _get_mentor(db: Session, mentor_id: int) -> UserSummary:
    mentor = get_user_by_id(db, mentor_id)
    if not mentor.is_mentor:
        raise NotFoundError(f'Mentor {mentor_id} not found')
    return mentor


def slot_to_dict(row: TimeSlot) -> dict:
    return {
        'id': row.id,
        'mentor_id': row.mentor_id,
        'date': row.slot_date.isoformat(),
        'start_time': row.start_time.strftime('%H:%M'),
        'end_time': row.end_time.strftime('%H:%M'),
        'start_at_utc': row.start_at_utc.isoformat(),
        'end_at_utc': row.end_at_utc.isoformat(),
        'is_archived': bool(row.is_archived),
    }


def settings_to_dict(row: ScheduleSettings | None, *, week_start: date, week_end: date) -> dict:
    if row is None:
        return {
            'id': None,
            'week_start': week_start.isoformat(),
            'week_end': week_end.isoformat(),
            'start_time': parse_hhmm(settings.default_work_start).strftime('%H:%M'),
            'end_time': parse_hhmm(settings.default_work_end).strftime('%H:%M'),
            'session_duration': settings.default_session_duration,
            'buffer_time': settings.default_buffer_minutes,
            'is_default': True,
        }
    return {
        'id': row.id,
        'week_start': row.week_start_date.isoformat(),
        'week_end': row.week_end_date.isoformat(),
        'start_time': row.work_start_time.strftime('%H:%M'),
        'end_time': row.work_end_time.strftime('%H:%M'),
        'session_duration': row.session_duration_minutes,
        'buffer_time': row.buffer_minutes,
        'is_default': False,
    }


def _find_settings(db: Session, mentor_id: int, week_start: date, week_end: date) -> ScheduleSettings | None:
    return (
        db.query(ScheduleSettings)
        .filter(
            ScheduleSettings.mentor_id == mentor_id,
            ScheduleSettings.week_start_date == week_start,
            ScheduleSettings.week_end_date == week_end,
        )
        .first()
    )


def _window_slot_rows(db: Session, mentor_id: int, week_start: date, week_end: date) -> list[TimeSlot]:
    return (
        db.query(TimeSlot)
        .filter(
            TimeSlot.mentor_id == mentor_id,
            TimeSlot.slot_date >= week_start,
            TimeSlot.slot_date <= week_end,
        )
        .order_by(TimeSlot.slot_date.asc(), TimeSlot.start_time.asc(), TimeSlot.id.asc())
        .all()
    )


def _booking_statuses_by_slot(db: Session, slot_ids: list[int]) -> dict[int, list[str]]:
    statuses: dict[int, list[str]] = defaultdict(list)
    if not slot_ids:
        return statuses
    rows = db.query(Booking.time_slot_id, Booking.status).filter(Booking.time_slot_id.in_(slot_ids)).all()
    for slot_id, status in rows:
        statuses[slot_id].append(status)
    return statuses


def _existing_generated(rows: list[TimeSlot], statuses: dict[int, list[str]]) -> list[GeneratedSlot]:
    existing: list[GeneratedSlot] = []
    for row in rows:
        booked = any(status in LOCKING_STATUSES for status in statuses.get(row.id, []))
        if row.is_archived and not booked:
            continue
        existing.append(
            GeneratedSlot(
                slot_date=row.slot_date,
                start_time=row.start_time,
                end_time=row.end_time,
                id=row.id,
                is_selected=True,
                is_booked=booked,
            )
        )
    return existing


def has_booked_sessions(db: Session, mentor_id: int, week_start: date, week_end: date) -> bool:
    row = (
        db.query(Booking.id)
        .join(TimeSlot, TimeSlot.id == Booking.time_slot_id)
        .filter(
            TimeSlot.mentor_id == mentor_id,
            TimeSlot.slot_date >= week_start,
            TimeSlot.slot_date <= week_end,
            Booking.status.in_(LOCKING_STATUSES),
        )
        .first()
    )
    return row is not None


def get_lock_status(db: Session, mentor_id: int, week_start: date | None = None, week_end: date | None = None, *, time_provider: TimeProvider = default_time_provider) -> dict:
    mentor = _get_mentor(db, mentor_id)
    week_start, week_end = _resolve_window(mentor, week_start, week_end, time_provider)
    locked = has_booked_sessions(db, mentor_id, week_start, week_end)
    return {
        'mentor_id': mentor_id,
        'week_start': week_start.isoformat(),
        'week_end': week_end.isoformat(),
        'is_locked': locked,
        'message': LOCKED_SCHEDULE_MESSAGE if locked else '',
    }


@timed_service('availability.get_schedule_settings')
def get_schedule_settings(
    db: Session,
    mentor_id: int,
    week_start: date | None = None,
    week_end: date | None = None,
    *,
    time_provider: TimeProvider = default_time_provider,
) -> dict:
    mentor = _get_mentor(db, mentor_id)
    week_start, week_end = _resolve_window(mentor, week_start, week_end, time_provider)
    row = _find_settings(db, mentor_id, week_start, week_end)
    current = settings_to_dict(row, week_start=week_start, week_end=week_end)

    slot_rows = _window_slot_rows(db, mentor_id, week_start, week_end)
    statuses = _booking_statuses_by_slot(db, [slot.id for slot in slot_rows])
    grid = generate_window_slots(
        week_start,
        week_end,
        current['start_time'],
        current['end_time'],
        int(current['session_duration']),
        int(current['buffer_time']),
        _existing_generated(slot_rows, statuses),
        now=time_provider.now(),
        tz=mentor.timezone,
    )
    locked = any(status in LOCKING_STATUSES for values in statuses.values() for status in values)
    return {
        'mentor_id': mentor_id,
        'timezone': mentor.timezone,
        'settings': current,
        'days': {day.isoformat(): [slot.to_dict() for slot in slots] for day, slots in grid.items()},
        'is_locked': locked,
        'lock_message': LOCKED_SCHEDULE_MESSAGE if locked else '',
    }


def _selected_keys(payload: WeeklyAvailabilityRequest) -> list[tuple[date, time, time]]:
    keys = []
    seen = set()
    for day, ranges in sorted(payload.available_time_slots.items()):
        if day < payload.week_start or day > payload.week_end:
            raise ValidationError(f'Selected date {day.isoformat()} is outside the schedule window')
        for item in ranges:
            key = (day, item.start_time.replace(second=0, microsecond=0), item.end_time.replace(second=0, microsecond=0))
            if key in seen:
                continue
            seen.add(key)
            keys.append(key)
    return keys


def _validate_payload(payload: WeeklyAvailabilityRequest) -> None:
    _validate_window(payload.week_start, payload.week_end)
    if payload.start_time >= payload.end_time:
        raise ValidationError('Work start time must be before work end time')
    if payload.session_duration < settings.min_session_duration_minutes:
        raise ValidationError(f'Session duration must be at least {settings.min_session_duration_minutes} minutes')
    if payload.buffer_time < 0:
        raise ValidationError('Buffer time cannot be negative')


def _upsert_settings(db: Session, mentor_id: int, payload: WeeklyAvailabilityRequest, now: datetime) -> ScheduleSettings:
    row = _find_settings(db, mentor_id, payload.week_start, payload.week_end)
    if row is None:
        row = ScheduleSettings(
            mentor_id=mentor_id,
            week_start_date=payload.week_start,
            week_end_date=payload.week_end,
            created_at=now,
        )
        db.add(row)
    row.work_start_time = payload.start_time.replace(second=0, microsecond=0)
    row.work_end_time = payload.end_time.replace(second=0, microsecond=0)
    row.session_duration_minutes = int(payload.session_duration)
    row.buffer_minutes = int(payload.buffer_time)
    row.updated_at = now
    db.flush()
    return row


@timed_service('availability.save_weekly_availability')
def save_weekly_availability(
    db: Session,
    mentor_id: int,
    payload: WeeklyAvailabilityRequest,
    acting_user_id: int,
    *,
    time_provider: TimeProvider = default_time_provider,
    email_client: BaseEmailClient | None = None,
) -> dict:
    actor = get_user_by_id(db, acting_user_id)
    if actor.id != mentor_id:
        raise ForbiddenError('Only the mentor can edit this schedule')
    mentor = _get_mentor(db, mentor_id)
    if not mentor.is_active:
        raise ForbiddenError('Mentor account is not active')
    _validate_payload(payload)
    selected = _selected_keys(payload)

    now = time_provider.now()
    now_utc = time_provider.utc_now_naive()
    candidates = generate_window_slots(
        payload.week_start,
        payload.week_end,
        payload.start_time.replace(second=0, microsecond=0),
        payload.end_time.replace(second=0, microsecond=0),
        payload.session_duration,
        payload.buffer_time,
        now=now,
        tz=mentor.timezone,
    )
    candidate_by_key = {slot.key: slot for slots in candidates.values() for slot in slots}
    skipped: list[dict] = []
    wanted: list[tuple[date, time, time]] = []
    for key in selected:
        candidate = candidate_by_key.get(key)
        if candidate is None:
            raise ValidationError(
                f"Slot {key[0].isoformat()} {key[1].strftime('%H:%M')}-{key[2].strftime('%H:%M')} "
                'does not match the schedule settings'
            )
        if candidate.is_past:
            skipped.append(candidate.to_dict())
            continue
        wanted.append(key)
    wanted_keys = set(wanted)

    existing_rows = _window_slot_rows(db, mentor_id, payload.week_start, payload.week_end)
    cancelled_for_notice: list[tuple[int, TimeSlot]] = []
    created = kept = removed = archived = 0

    with slot_locks(row.id for row in existing_rows):
        if has_booked_sessions(db, mentor_id, payload.week_start, payload.week_end):
            record_booking_event('schedule_save_locked')
            logger.info('schedule_save_locked mentor_id=%s week_start=%s', mentor_id, payload.week_start)
            raise LockedError(LOCKED_SCHEDULE_MESSAGE)
        try:
            schedule = _upsert_settings(db, mentor_id, payload, now_utc)
            rows_by_key = {(row.slot_date, row.start_time, row.end_time): row for row in existing_rows}

            for key in wanted:
                row = rows_by_key.get(key)
                if row is not None:
                    row.is_archived = False
                    row.schedule_id = schedule.id
                    kept += 1
                    continue
                day, start, end = key
                db.add(
                    TimeSlot(
                        mentor_id=mentor_id,
                        schedule_id=schedule.id,
                        slot_date=day,
                        start_time=start,
                        end_time=end,
                        start_at_utc=local_to_utc_naive(day, start, mentor.timezone),
                        end_at_utc=local_to_utc_naive(day, end, mentor.timezone),
                        is_archived=False,
                        created_at=now_utc,
                    )
                )
                created += 1

            for key, row in rows_by_key.items():
                if key in wanted_keys or row.is_archived or row.start_at_utc <= now_utc:
                    continue
                bookings = db.query(Booking).filter(Booking.time_slot_id == row.id).all()
                if not bookings:
                    db.delete(row)
                    removed += 1
                    continue
                for booking in bookings:
                    if booking.status == BookingStatus.PENDING.value:
                        booking.status = BookingStatus.CANCELLED.value
                        booking.cancel_reason = SCHEDULE_UPDATED_CANCEL_REASON
                        booking.status_changed_at = now_utc
                        cancelled_for_notice.append((booking.learner_id, row))
                        logger.info(
                            'booking_transition booking_id=%s from=pending to=cancelled reason=%s',
                            booking.id,
                            SCHEDULE_UPDATED_CANCEL_REASON,
                        )
                row.is_archived = True
                archived += 1
            db.commit()
        except IntegrityError as exc:
            db.rollback()
            logger.warning('schedule_save_conflict mentor_id=%s error=%s', mentor_id, exc.orig)
            raise ConflictError('Schedule was changed concurrently, please retry.') from exc

    clear_availability_cache()
    record_booking_event('schedule_saved')
    logger.info(
        'schedule_saved mentor_id=%s week_start=%s created=%s kept=%s removed=%s archived=%s skipped=%s',
        mentor_id,
        payload.week_start,
        created,
        kept,
        removed,
        archived,
        len(skipped),
    )

    notifications = _notify_schedule_updated(
        db,
        mentor,
        cancelled_for_notice,
        time_provider=time_provider,
        email_client=email_client,
    )
    db.refresh(schedule)
    return {
        'settings': settings_to_dict(schedule, week_start=payload.week_start, week_end=payload.week_end),
        'created': created,
        'kept': kept,
        'removed': removed,
        'archived': archived,
        'skipped': skipped,
        'cancelled_requests': len(cancelled_for_notice),
        'notifications': notifications,
        'message': SCHEDULE_SAVED_MESSAGE,
    }


def _notify_schedule_updated(
    db: Session,
    mentor: UserSummary,
    cancelled: list[tuple[int, TimeSlot]],
    *,
    time_provider: TimeProvider,
    email_client: BaseEmailClient | None,
) -> list[dict]:
    if not cancelled:
        return []
    learners = get_users_by_ids(db, [learner_id for learner_id, _ in cancelled])
    results = []
    for learner_id, slot in cancelled:
        learner = learners.get(learner_id)
        if learner is None:
            continue
        subject, body = notification_service.schedule_updated_message(
            learner_name=learner.full_name,
            mentor_name=mentor.full_name,
            slot_date=slot.slot_date,
            start_time=slot.start_time,
            end_time=slot.end_time,
        )
        result = notification_service.dispatch_email(
            db,
            event_type=notification_service.EVENT_SCHEDULE_UPDATED,
            recipient_email=learner.email,
            subject=subject,
            body=body,
            entity_type='time_slot',
            entity_id=slot.id,
            email_client=email_client,
            time_provider=time_provider,
        )
        results.append({'learner_id': learner_id, 'sent': result['sent'], 'reason': result['reason']})
    return results


def available_slots_query(db: Session, now_utc: datetime) -> Query:
    confirmed = exists().where(
        and_(
            Booking.time_slot_id == TimeSlot.id,
            Booking.status.in_(CONFIRMED_STATUSES),
        )
    )
    return (
        db.query(TimeSlot)
        .join(User, User.id == TimeSlot.mentor_id)
        .filter(
            TimeSlot.is_archived.is_(False),
            TimeSlot.start_at_utc > now_utc,
            User.status == UserStatus.ACTIVE.value,
            ~confirmed,
        )
    )


def get_available_slots(
    db: Session,
    mentor_id: int,
    date_from: date | None = None,
    date_to: date | None = None,
    *,
    time_provider: TimeProvider = default_time_provider,
) -> list[dict]:
    query = available_slots_query(db, time_provider.utc_now_naive()).filter(TimeSlot.mentor_id == mentor_id)
    if date_from is not None:
        query = query.filter(TimeSlot.slot_date >= date_from)
    if date_to is not None:
        query = query.filter(TimeSlot.slot_date <= date_to)
    rows = query.order_by(TimeSlot.start_at_utc.asc(), TimeSlot.id.asc()).all()
    return [slot_to_dict(row) for row in rows]


def _served_slot_started(payload: dict, now_utc: datetime) -> bool:
    return any(
        datetime.fromisoformat(item['slot']['start_at_utc']) <= now_utc
        for item in payload.get('items') or []
    )


@timed_service('availability.get_available_mentors_for_booking')
def get_available_mentors_for_booking(
    db: Session,
    page_index: int | None = 1,
    page_size: int | None = None,
    *,
    bypass: bool | None = None,
    time_provider: TimeProvider = default_time_provider,
) -> dict:
    page_index, page_size = clamp_page(page_index, page_size)
    key = cache_key(AVAILABLE_MENTORS_PREFIX, f'{page_index}:{page_size}')
    now_utc = time_provider.utc_now_naive()
    if not bypass_cache(bypass):
        cached = cache.get_cached(key)
        if cached is not None:
            if not _served_slot_started(cached, now_utc):
                return cached
            # A representative slot started inside the TTL window.
            cache.invalidate(key)

    grouped = (
        available_slots_query(db, now_utc)
        .with_entities(
            TimeSlot.mentor_id.label('mentor_id'),
            func.min(TimeSlot.start_at_utc).label('first_start'),
            func.count(TimeSlot.id).label('slot_count'),
        )
        .group_by(TimeSlot.mentor_id)
        .subquery()
    )
    total = db.query(func.count()).select_from(grouped).scalar() or 0
    page = Page(total_count=int(total), page_index=page_index, page_size=page_size)
    mentor_rows = (
        db.query(grouped.c.mentor_id, grouped.c.first_start, grouped.c.slot_count)
        .order_by(grouped.c.first_start.asc(), grouped.c.mentor_id.asc())
        .offset(page.offset)
        .limit(page.page_size)
        .all()
    )
    mentor_ids = [row.mentor_id for row in mentor_rows]
    mentors = get_users_by_ids(db, mentor_ids)
    first_slots: dict[int, TimeSlot] = {}
    if mentor_ids:
        slots = (
            available_slots_query(db, now_utc)
            .filter(TimeSlot.mentor_id.in_(mentor_ids))
            .order_by(TimeSlot.start_at_utc.asc(), TimeSlot.id.asc())
            .all()
        )
        for slot in slots:
            first_slots.setdefault(slot.mentor_id, slot)

    page.items = [
        {
            'mentor': mentors[row.mentor_id].to_dict(),
            'slot': slot_to_dict(first_slots[row.mentor_id]),
            'available_slot_count': int(row.slot_count),
        }
        for row in mentor_rows
        if row.mentor_id in mentors and row.mentor_id in first_slots
    ]
    result = page.to_dict()
    cache.set_cached(key, result, settings.available_mentors_cache_ttl)
    return result
