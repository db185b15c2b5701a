from __future__ import annotations

from datetime import date, datetime, time, timezone
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from mentor_platform.config import settings


APP_TIMEZONE = settings.app_timezone or "UTC"
APP_ZONEINFO = ZoneInfo(APP_TIMEZONE)


class TimeProvider:
    def now(self) -> datetime:
        return datetime.now(APP_ZONEINFO)

    def today(self) -> date:
        return self.now().date()

    def local_now(self, tz: str) -> datetime:
        return self.now().astimezone(resolve_zone(tz))

    def utc_now_naive(self) -> datetime:
        return self.now().astimezone(timezone.utc).replace(tzinfo=None)


def ensure_aware(dt: datetime) -> datetime:
    if dt.tzinfo is None or dt.tzinfo.utcoffset(dt) is None:
        raise ValueError("Naive datetime not allowed in business logic")
    return dt


def resolve_zone(tz: str | None) -> ZoneInfo:
    # Unknown zone names fall back to UTC rather than failing the request.
    try:
        return ZoneInfo((tz or "").strip() or "UTC")
    except (ZoneInfoNotFoundError, ValueError):
        return ZoneInfo("UTC")


def to_utc_naive(value: datetime) -> datetime:
    return ensure_aware(value).astimezone(timezone.utc).replace(tzinfo=None)


def local_to_utc_naive(day: date, value: time, tz: str | None) -> datetime:
    local_dt = datetime.combine(day, value, tzinfo=resolve_zone(tz))
    return local_dt.astimezone(timezone.utc).replace(tzinfo=None)


default_time_provider = TimeProvider()
