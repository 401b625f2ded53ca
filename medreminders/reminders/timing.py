"""
Time-of-day matching, evaluation timezone resolution and reminder timing policy.

All functions here are pure functions of their inputs: "now" and the zone are
resolved by the caller on every cycle and never cached across cycles.
"""
import re
from typing import Optional

from .config import settings
from .schemas import TimingPolicy

MINUTES_PER_DAY = 1440

_HHMM_RE = re.compile(r"^([01]?\d|2[0-3]):([0-5]\d)$")

# Medications where a dose taken hours late is clinically meaningful. Reminders
# for these stay pinned to the zone they were set up in.
TIME_SENSITIVE_MEDICATIONS = frozenset({
    "tacrolimus",
    "cyclosporine",
    "mycophenolate",
    "sirolimus",
    "everolimus",
    "insulin",
    "levetiracetam",
    "lamotrigine",
    "phenytoin",
    "carbamazepine",
    "valproate",
    "dolutegravir",
    "bictegravir",
    "pyridostigmine",
    "levodopa",
    "carbidopa/levodopa",
})


def parse_hhmm(value: str) -> Optional[int]:
    """HH:MM -> minutes since midnight, or None when malformed."""
    if not isinstance(value, str):
        return None
    match = _HHMM_RE.match(value.strip())
    if not match:
        return None
    return int(match.group(1)) * 60 + int(match.group(2))


def is_within_window(scheduled: str, current: str, window_minutes: Optional[int] = None) -> bool:
    """True when `scheduled` is within the window of `current`, wrapping at midnight."""
    if window_minutes is None:
        window_minutes = settings.TIME_WINDOW_MINUTES
    scheduled_minutes = parse_hhmm(scheduled)
    current_minutes = parse_hhmm(current)
    if scheduled_minutes is None or current_minutes is None:
        return False
    diff = abs(scheduled_minutes - current_minutes)
    adjusted = min(diff, MINUTES_PER_DAY - diff)
    return adjusted <= window_minutes


def slot_day_offset(scheduled: str, current: str) -> int:
    """
    Day of the slot occurrence nearest to `current`, relative to today: -1 for
    yesterday ("23:58" seen at "00:03"), +1 for tomorrow ("00:02" seen at
    "23:58"), otherwise 0.
    """
    scheduled_minutes = parse_hhmm(scheduled)
    current_minutes = parse_hhmm(current)
    if scheduled_minutes is None or current_minutes is None:
        return 0
    diff = scheduled_minutes - current_minutes
    if diff > MINUTES_PER_DAY // 2:
        return -1
    if diff < -(MINUTES_PER_DAY // 2):
        return 1
    return 0


def resolve_evaluation_timezone(reminder, user_timezone: Optional[str]) -> str:
    """
    Anchor reminders fire when the anchor zone reaches the scheduled time, wherever
    the user is. Everything else follows the user's current profile timezone.
    """
    if getattr(reminder, "timing_mode", None) == "anchor" and reminder.anchor_timezone:
        return reminder.anchor_timezone
    return user_timezone or settings.DEFAULT_TIMEZONE


def is_time_sensitive_medication(medication_name: Optional[str]) -> bool:
    name = (medication_name or "").strip().lower()
    if not name:
        return False
    if name in TIME_SENSITIVE_MEDICATIONS:
        return True
    # "Tacrolimus 1mg", "insulin glargine"
    return any(re.search(rf"\b{re.escape(med)}\b", name) for med in TIME_SENSITIVE_MEDICATIONS)


def resolve_reminder_timing_policy(medication_name: Optional[str], user_timezone: Optional[str]) -> TimingPolicy:
    if is_time_sensitive_medication(medication_name):
        return TimingPolicy(
            timing_mode="anchor",
            anchor_timezone=user_timezone or settings.DEFAULT_TIMEZONE,
            criticality="time_sensitive",
        )
    return TimingPolicy(timing_mode="local", anchor_timezone=None, criticality="standard")


def needs_timing_backfill(reminder) -> bool:
    timing_mode = getattr(reminder, "timing_mode", None)
    if timing_mode not in ("local", "anchor"):
        return True
    if getattr(reminder, "criticality", None) not in ("standard", "time_sensitive"):
        return True
    return timing_mode == "anchor" and not getattr(reminder, "anchor_timezone", None)


def effective_timing_policy(reminder, user_timezone: Optional[str]) -> TimingPolicy:
    """
    The policy a reminder is evaluated under this cycle. Fields a legacy row is
    missing get the deterministic default for its medication; fields it already
    carries are kept.
    """
    default = resolve_reminder_timing_policy(reminder.medication_name, user_timezone)

    timing_mode = reminder.timing_mode if reminder.timing_mode in ("local", "anchor") else default.timing_mode
    criticality = reminder.criticality if reminder.criticality in ("standard", "time_sensitive") else default.criticality
    anchor_timezone = None
    if timing_mode == "anchor":
        anchor_timezone = (
            reminder.anchor_timezone
            or default.anchor_timezone
            or user_timezone
            or settings.DEFAULT_TIMEZONE
        )
    return TimingPolicy(timing_mode=timing_mode, anchor_timezone=anchor_timezone, criticality=criticality)
