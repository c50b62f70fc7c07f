from datetime import date, datetime, timezone, timedelta
from typing import Optional
from zoneinfo import ZoneInfo
from loguru import logger

from ..config import settings


def resolve_zone(tz_name: Optional[str] = None) -> ZoneInfo:
    """
    Returns the ZoneInfo for tz_name (or the configured USER_TIMEZONE).
    Falls back to UTC when the name is unknown.
    """
    name = tz_name or settings.USER_TIMEZONE
    try:
        return ZoneInfo(name)
    except Exception as e:
        logger.warning("Unknown timezone '{}', using UTC: {}", name, e)
        return ZoneInfo("UTC")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def local_date(now: Optional[datetime] = None, tz_name: Optional[str] = None) -> date:
    """Local calendar date of `now` in the user's zone."""
    now = now or utcnow()
    if now.tzinfo is None:
        now = now.replace(tzinfo=timezone.utc)
    return now.astimezone(resolve_zone(tz_name)).date()


def sunday_index(day: date) -> int:
    """Weekday with Sunday = 0 ... Saturday = 6."""
    return (day.weekday() + 1) % 7


def end_of_week(day: date) -> date:
    """The Saturday closing the Sunday-first week containing `day`."""
    return day + timedelta(days=6 - sunday_index(day))


def days_between(earlier: date, later: date) -> int:
    return (later - earlier).days


def as_utc(value: datetime) -> datetime:
    """Naive datetimes read back from sqlite are UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value
