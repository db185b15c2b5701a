from __future__ import annotations

from dataclasses import dataclass, replace
from datetime import date, datetime, time, timedelta
from typing import Iterable

from mentor_platform.core.errors import ValidationError
from mentor_platform.core.time_provider import resolve_zone


@dataclass(frozen=True)
class GeneratedSlot:
    slot_date: date
    start_time: time
    end_time: time
    id: int | None = None
    is_selected: bool = False
    is_booked: bool = False
    is_past: bool = False

    @property
    def key(self) -> tuple[date, time, time]:
        return self.slot_date, self.start_time, self.end_time

    def to_dict(self) -> dict:
        return {
            'id': self.id,
            'date': self.slot_date.isoformat(),
            'start_time': self.start_time.strftime('%H:%M'),
            'end_time': self.end_time.strftime('%H:%M'),
            'is_selected': self.is_selected,
            'is_booked': self.is_booked,
            'is_past': self.is_past,
        }


def parse_hhmm(value: str | time) -> time:
    if isinstance(value, time):
        return value
    try:
        hh, mm = str(value).strip().split(':', 1)
        hour = int(hh)
        minute = int(mm[:2])
    except ValueError as exc:
        raise ValidationError(f'Invalid HH:MM time: {value!r}') from exc
    if hour < 0 or hour > 23 or minute < 0 or minute > 59:
        raise ValidationError(f'Invalid HH:MM time: {value!r}')
    return time(hour=hour, minute=minute)


def _overlaps(a_start: datetime, a_end: datetime, b_start: datetime, b_end: datetime) -> bool:
    return a_start < b_end and b_start < a_end


def _is_past(day: date, start: time, now_local: datetime | None) -> bool:
    if now_local is None:
        return False
    return datetime.combine(day, start) <= now_local


def _local_now(now: datetime | None, tz: str | None) -> datetime | None:
    if now is None:
        return None
    if now.tzinfo is None:
        raise ValueError('Naive datetime not allowed in business logic')
    return now.astimezone(resolve_zone(tz)).replace(tzinfo=None)


def _candidate_ranges(day: date, work_start: time, work_end: time, duration_minutes: int, buffer_minutes: int):
    window_end = datetime.combine(day, work_end)
    cursor = datetime.combine(day, work_start)
    step = timedelta(minutes=duration_minutes)
    gap = timedelta(minutes=buffer_minutes)
    while cursor + step <= window_end:
        yield cursor, cursor + step
        cursor = cursor + step + gap


def generate_slots(
    day: date,
    work_start: time | str,
    work_end: time | str,
    duration_minutes: int,
    buffer_minutes: int,
    existing_slots: Iterable[GeneratedSlot] = (),
    *,
    now: datetime | None = None,
    tz: str | None = 'UTC',
) -> list[GeneratedSlot]:
    """Return the ordered candidate slots of one day.

    Booked entries of ``existing_slots`` for ``day`` are returned as the very
    same objects. A fresh candidate overlapping a booked slot is dropped, so the
    result never contains overlapping slots. Non-booked existing slots whose key
    matches a candidate are reported as the saved selection (``id`` kept).
    """
    if duration_minutes <= 0:
        raise ValidationError('Session duration must be positive')
    if buffer_minutes < 0:
        raise ValidationError('Buffer time cannot be negative')
    start = parse_hhmm(work_start)
    end = parse_hhmm(work_end)
    now_local = _local_now(now, tz)

    same_day = [slot for slot in existing_slots if slot.slot_date == day]
    booked = [slot for slot in same_day if slot.is_booked]
    booked_keys = {slot.key for slot in booked}
    saved_by_key = {slot.key: slot for slot in same_day if not slot.is_booked}
    booked_ranges = [
        (datetime.combine(day, slot.start_time), datetime.combine(day, slot.end_time))
        for slot in booked
    ]

    result: list[GeneratedSlot] = list(booked)
    if start < end:
        for slot_start, slot_end in _candidate_ranges(day, start, end, duration_minutes, buffer_minutes):
            key = (day, slot_start.time(), slot_end.time())
            if key in booked_keys:
                continue
            if any(_overlaps(slot_start, slot_end, b_start, b_end) for b_start, b_end in booked_ranges):
                continue
            past = _is_past(day, key[1], now_local)
            saved = saved_by_key.get(key)
            if saved is not None:
                result.append(replace(saved, is_selected=True, is_booked=False, is_past=past))
                continue
            result.append(GeneratedSlot(slot_date=day, start_time=key[1], end_time=key[2], is_past=past))

    result.sort(key=lambda slot: (slot.start_time, slot.end_time))
    return result


def generate_window_slots(
    week_start: date,
    week_end: date,
    work_start: time | str,
    work_end: time | str,
    duration_minutes: int,
    buffer_minutes: int,
    existing_slots: Iterable[GeneratedSlot] = (),
    *,
    now: datetime | None = None,
    tz: str | None = 'UTC',
) -> dict[date, list[GeneratedSlot]]:
    if week_start > week_end:
        raise ValidationError('Window start must not be after window end')
    existing = list(existing_slots)
    days: dict[date, list[GeneratedSlot]] = {}
    cursor = week_start
    while cursor <= week_end:
        days[cursor] = generate_slots(
            cursor,
            work_start,
            work_end,
            duration_minutes,
            buffer_minutes,
            existing,
            now=now,
            tz=tz,
        )
        cursor += timedelta(days=1)
    return days
