#!/usr/bin/env python3
"""
Schedule Matcher

Pure clock helpers for the weekly campaign. Every function takes the instant
explicitly so callers (and tests) control "now"; nothing here reads the
system clock except the *_now convenience defaults.

A stage trigger matches only on the exact local minute. The tick must
therefore run at least once per minute: a missed minute skips that stage
until the same weekday and time come around next week.
"""

import re
from datetime import date, datetime, timedelta, timezone
from typing import Optional, Tuple
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

DAYS_OF_WEEK = ["MONDAY", "TUESDAY", "WEDNESDAY", "THURSDAY", "FRIDAY", "SATURDAY", "SUNDAY"]
DOW_INDEX = {name: idx for idx, name in enumerate(DAYS_OF_WEEK)}

HHMM_PATTERN = re.compile(r'^([01]\d|2[0-3]):[0-5]\d$')
YMD_PATTERN = re.compile(r'^\d{4}-\d{2}-\d{2}$')


def get_zone(tz_name: str) -> ZoneInfo:
    """Resolve an IANA timezone name, raising ValueError for unknown zones"""
    try:
        return ZoneInfo(tz_name)
    except (ZoneInfoNotFoundError, ValueError) as e:
        raise ValueError(f"Unknown timezone: {tz_name!r}") from e


def _as_aware(instant: datetime) -> datetime:
    if not isinstance(instant, datetime):
        raise TypeError(f"Expected datetime, got {type(instant).__name__}")
    if instant.tzinfo is None or instant.utcoffset() is None:
        raise ValueError(f"Naive datetime not allowed: {instant.isoformat()}")
    return instant


def to_local(instant: datetime, tz_name: str) -> datetime:
    return _as_aware(instant).astimezone(get_zone(tz_name))


def local_parts(instant: datetime, tz_name: str) -> Tuple[str, str]:
    """Return (WEEKDAY, "HH:MM") of the instant in the given timezone"""
    local = to_local(instant, tz_name)
    return DAYS_OF_WEEK[local.weekday()], local.strftime('%H:%M')


def week_of(instant: datetime, tz_name: str) -> str:
    """
    Monday date (YYYY-MM-DD) of the local week containing the instant.

    Sunday belongs to the week that started six days earlier.
    """
    local_day = to_local(instant, tz_name).date()
    monday = local_day - timedelta(days=local_day.weekday())
    return monday.isoformat()


def is_due(instant: datetime, tz_name: str, trigger) -> bool:
    """
    True iff the local weekday and HH:MM equal the trigger exactly.

    ``trigger`` is any object with ``dow`` and ``time`` attributes
    (see config_loader.StageTrigger).
    """
    dow, hhmm = local_parts(instant, tz_name)
    return dow == trigger.dow and hhmm == trigger.time


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def now_utc_iso(instant: Optional[datetime] = None) -> str:
    """UTC ISO-8601 string with millisecond precision and a Z suffix, for DB writes"""
    instant = _as_aware(instant) if instant is not None else utc_now()
    return instant.astimezone(timezone.utc).isoformat(timespec='milliseconds').replace('+00:00', 'Z')


def now_in_tz_iso(tz_name: str, instant: Optional[datetime] = None) -> str:
    """Local wall-clock time without offset; display and logging only"""
    instant = instant if instant is not None else utc_now()
    return to_local(instant, tz_name).strftime('%Y-%m-%dT%H:%M:%S')


def parse_instant(value: str) -> datetime:
    """
    Parse an ISO-8601 instant. A trailing Z is accepted; values without an
    offset are rejected rather than guessed.
    """
    text = (value or '').strip()
    if text.endswith('Z'):
        text = text[:-1] + '+00:00'
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError as e:
        raise ValueError(f"Invalid instant {value!r}; expected ISO date-time") from e
    if parsed.tzinfo is None:
        raise ValueError(f"Instant {value!r} has no UTC offset")
    return parsed


def local_datetime_to_utc(ymd: str, hhmm: str, tz_name: str) -> datetime:
    """Convert a local date plus HH:MM in tz_name to an aware UTC datetime"""
    local = datetime.strptime(f"{ymd} {hhmm}", '%Y-%m-%d %H:%M').replace(tzinfo=get_zone(tz_name))
    return local.astimezone(timezone.utc)


def date_in_week(week_of_ymd: str, dow: str) -> str:
    """Date of the given weekday inside the week starting on week_of_ymd"""
    monday = date.fromisoformat(week_of_ymd)
    return (monday + timedelta(days=DOW_INDEX[dow.upper()])).isoformat()


def add_days(ymd: str, days: int) -> str:
    return (date.fromisoformat(ymd) + timedelta(days=days)).isoformat()


def is_ymd(value) -> bool:
    return isinstance(value, str) and bool(YMD_PATTERN.match(value))


def is_hhmm(value) -> bool:
    return isinstance(value, str) and bool(HHMM_PATTERN.match(value))
