import logging
from datetime import date, datetime, time, timedelta, timezone as dt_timezone
from typing import Optional, Tuple
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from medreminders.reminders.config import settings

logger = logging.getLogger(__name__)


def get_zoneinfo(tz_name: Optional[str] = None) -> ZoneInfo:
    """
    Resolve a TZ database name to a ZoneInfo, falling back to settings.DEFAULT_TIMEZONE
    when the name is empty or unknown. Nothing is cached here beyond what zoneinfo
    itself caches (zone rules, not offsets), so each call reflects the current instant.
    """
    name = (tz_name or "").strip() or settings.DEFAULT_TIMEZONE
    try:
        return ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError):
        logger.warning(f"Unknown timezone {name!r}, falling back to {settings.DEFAULT_TIMEZONE}")
        return ZoneInfo(settings.DEFAULT_TIMEZONE)


def utc_now() -> datetime:
    return datetime.now(dt_timezone.utc)


def to_utc_aware(dt: datetime | None) -> datetime | None:
    """
    Normalize any datetime to UTC-aware (tzinfo=UTC).
    - Aware datetimes are converted to UTC
    - Naive datetimes are assumed UTC and tz attached (SQLite hands them back naive)
    """
    if dt is None:
        return None
    if dt.tzinfo is None:
        return dt.replace(tzinfo=dt_timezone.utc)
    return dt.astimezone(dt_timezone.utc)


def to_millis(dt: datetime | None) -> Optional[int]:
    dt = to_utc_aware(dt)
    if dt is None:
        return None
    return int(dt.timestamp() * 1000)


def local_hhmm(now: datetime, tz_name: str) -> str:
    """Current wall-clock time as HH:MM (24h) in the given zone."""
    return to_utc_aware(now).astimezone(get_zoneinfo(tz_name)).strftime("%H:%M")


def local_date(now: datetime, tz_name: str) -> date:
    return to_utc_aware(now).astimezone(get_zoneinfo(tz_name)).date()


def day_bounds(day: date, tz_name: str) -> Tuple[datetime, datetime]:
    """
    UTC instants bounding the calendar day `day` in tz_name.
    The end bound is exclusive (next local midnight), so 23h and 25h DST days
    come out right.
    """
    tz = get_zoneinfo(tz_name)
    start = datetime.combine(day, time.min, tzinfo=tz)
    end = datetime.combine(day + timedelta(days=1), time.min, tzinfo=tz)
    return start.astimezone(dt_timezone.utc), end.astimezone(dt_timezone.utc)
