import logging
from datetime import datetime, timedelta
from typing import Optional

from medreminders.utils.timezone import local_hhmm, to_millis, to_utc_aware
from .config import settings
from .dose_logs import DoseLogCalendar, dose_key
from .schemas import DueCandidate
from .timing import is_within_window, parse_hhmm, slot_day_offset

logger = logging.getLogger(__name__)


def was_recently_sent(last_sent_at: Optional[datetime], now: datetime) -> bool:
    if last_sent_at is None:
        return False
    cutoff = to_utc_aware(now) - timedelta(minutes=settings.RECENT_SEND_MINUTES)
    return to_utc_aware(last_sent_at) > cutoff


def evaluate_due_dose(
    reminder,
    evaluation_timezone: str,
    dose_logs: DoseLogCalendar,
    now: datetime,
) -> Optional[DueCandidate]:
    """
    Pick at most one due dose for the reminder this cycle. Each slot is checked
    against the logs of the day its nearest occurrence falls on.

    An expired snooze that has not been re-notified wins immediately; otherwise
    the first scheduled time inside the window (and outside the recent-send
    suppression) is returned.
    """
    now_ms = to_millis(now)
    last_sent_ms = to_millis(reminder.last_sent_at)
    current_time = local_hhmm(now, evaluation_timezone)
    schedule_candidate: Optional[DueCandidate] = None

    for scheduled_time in reminder.times or []:
        if parse_hhmm(scheduled_time) is None:
            logger.warning(f"[MedReminders] Ignoring malformed time {scheduled_time!r} on reminder {reminder.id}")
            continue

        # Logs of the day this slot occurrence belongs to
        dose_index = dose_logs.for_day(slot_day_offset(scheduled_time, current_time))
        key = dose_key(reminder.medication_id, scheduled_time)
        if dose_index.is_resolved(key):
            continue

        snooze = dose_index.snooze_state(key)
        if snooze is not None:
            if snooze.snooze_until_ms > now_ms:
                # Still resting
                continue
            if last_sent_ms is None or last_sent_ms < snooze.logged_at_ms:
                return DueCandidate(
                    reminder_id=reminder.id,
                    scheduled_time=scheduled_time,
                    due_reason="snooze",
                    evaluation_timezone=evaluation_timezone,
                )

        if schedule_candidate is not None:
            continue
        if not is_within_window(scheduled_time, current_time):
            continue
        if was_recently_sent(reminder.last_sent_at, now):
            continue
        schedule_candidate = DueCandidate(
            reminder_id=reminder.id,
            scheduled_time=scheduled_time,
            due_reason="schedule",
            evaluation_timezone=evaluation_timezone,
        )

    return schedule_candidate
