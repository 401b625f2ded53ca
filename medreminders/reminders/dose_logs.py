"""
Per-day dose state folded from a user's medication logs.
"""
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from typing import Dict, Iterable, Set

from medreminders.utils.timezone import day_bounds, get_zoneinfo, local_date, to_millis, to_utc_aware
from .repository import list_medication_logs
from .schemas import SnoozeState

RESOLVED_ACTIONS = ("taken", "skipped")
ADJACENT_DAY_OFFSETS = (-1, 0, 1)


def dose_key(medication_id: str, scheduled_time: str) -> str:
    return f"{medication_id}_{scheduled_time}"


def log_calendar_date(log, tz_name: str) -> str:
    """Explicit scheduled_date wins, otherwise the local date of logged_at."""
    if log.scheduled_date:
        return str(log.scheduled_date)
    logged_at = to_utc_aware(log.logged_at)
    if logged_at is None:
        return ""
    return logged_at.astimezone(get_zoneinfo(tz_name)).date().isoformat()


@dataclass
class DoseLogIndex:
    logged_dose_keys: Set[str] = field(default_factory=set)
    snoozed_dose_states: Dict[str, SnoozeState] = field(default_factory=dict)

    def is_resolved(self, key: str) -> bool:
        return key in self.logged_dose_keys

    def snooze_state(self, key: str):
        return self.snoozed_dose_states.get(key)

    @classmethod
    def build(cls, logs: Iterable, day: date, tz_name: str) -> "DoseLogIndex":
        index = cls()
        target = day.isoformat()
        for log in logs:
            if not log.medication_id or not log.scheduled_time:
                continue
            if log_calendar_date(log, tz_name) != target:
                continue

            key = dose_key(log.medication_id, log.scheduled_time)
            if log.action in RESOLVED_ACTIONS:
                index.logged_dose_keys.add(key)
                continue
            if log.action != "snoozed":
                continue

            snooze_until_ms = to_millis(log.snooze_until)
            logged_at_ms = to_millis(log.logged_at)
            if snooze_until_ms is None or logged_at_ms is None:
                continue

            existing = index.snoozed_dose_states.get(key)
            # Latest snooze wins; equal timestamps keep the later row
            if existing is None or logged_at_ms >= existing.logged_at_ms:
                index.snoozed_dose_states[key] = SnoozeState(
                    snooze_until_ms=snooze_until_ms,
                    logged_at_ms=logged_at_ms,
                )
        return index


@dataclass
class DoseLogCalendar:
    """
    Per-day dose state around today. The time window wraps at midnight, so a
    slot matched just after midnight belongs to yesterday and one matched just
    before midnight belongs to tomorrow.
    """
    today: date
    days: Dict[date, DoseLogIndex] = field(default_factory=dict)

    def for_day(self, day_offset: int = 0) -> DoseLogIndex:
        return self.days.get(self.today + timedelta(days=day_offset)) or DoseLogIndex()

    @classmethod
    def build(cls, logs: Iterable, today: date, tz_name: str) -> "DoseLogCalendar":
        logs = list(logs)
        calendar = cls(today=today)
        for offset in ADJACENT_DAY_OFFSETS:
            day = today + timedelta(days=offset)
            calendar.days[day] = DoseLogIndex.build(logs, day, tz_name)
        return calendar


def build_dose_log_calendar(db, user_id: str, now: datetime, tz_name: str) -> DoseLogCalendar:
    """Fetch the user's logs from yesterday through tomorrow in tz_name and fold them per day."""
    today = local_date(now, tz_name)
    start, _ = day_bounds(today + timedelta(days=ADJACENT_DAY_OFFSETS[0]), tz_name)
    _, end = day_bounds(today + timedelta(days=ADJACENT_DAY_OFFSETS[-1]), tz_name)
    logs = list_medication_logs(db, user_id, start, end)
    return DoseLogCalendar.build(logs, today, tz_name)
