from __future__ import annotations

from datetime import date, datetime, time, timezone
from functools import lru_cache
from zoneinfo import ZoneInfo

from pointage.models import SessionType
from pointage.settings import get_public_holidays, get_settings, parse_hhmm

DEFAULT_TIMEZONE = "Africa/Tunis"
EXPECTED_DAY_MINUTES = 420


def normalize_ts(ts_utc: datetime | None) -> datetime:
    if ts_utc is None:
        return datetime.now(timezone.utc)

    if ts_utc.tzinfo is None:
        return ts_utc.replace(tzinfo=timezone.utc)

    return ts_utc.astimezone(timezone.utc)


@lru_cache
def attendance_timezone() -> ZoneInfo:
    raw_name = (get_settings().attendance_timezone or "").strip() or DEFAULT_TIMEZONE
    try:
        return ZoneInfo(raw_name)
    except Exception:
        return ZoneInfo(DEFAULT_TIMEZONE)


def to_local(ts_utc: datetime) -> datetime:
    return normalize_ts(ts_utc).astimezone(attendance_timezone())


def local_day(ts_utc: datetime) -> date:
    return to_local(ts_utc).date()


def session_window(session_type: SessionType) -> tuple[time, time]:
    settings = get_settings()
    if session_type == SessionType.MORNING:
        return parse_hhmm(settings.morning_start), parse_hhmm(settings.morning_end)
    return parse_hhmm(settings.afternoon_start), parse_hhmm(settings.afternoon_end)


def is_weekend(day: date) -> bool:
    return day.weekday() >= 5


def is_public_holiday(day: date) -> bool:
    return (day.month, day.day) in get_public_holidays()


def minutes_between(start: datetime, end: datetime) -> int:
    return int((normalize_ts(end) - normalize_ts(start)).total_seconds() // 60)
