"""
Scheduled jobs of the medication reminder processor.

process_and_notify_due_reminders runs every few minutes and sends at most one
notification per reminder per cycle. The maintenance jobs (orphan
reconciliation, retention purge, timing backfill) run on their own schedules
and report paginated progress so they can resume across invocations.
"""
import logging
from collections import defaultdict
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from sqlalchemy.exc import SQLAlchemyError

from medreminders.db.session import SessionLocal
from medreminders.utils.timezone import to_utc_aware, utc_now
from .config import settings
from .dispatcher import DEVICE_NOT_REGISTERED, NotificationService, get_notification_service
from .dose_logs import DoseLogCalendar, build_dose_log_calendar
from .evaluator import evaluate_due_dose
from .metrics import (
    orphans_disabled_total,
    processor_candidates_total,
    processor_lock_skipped_total,
    processor_scans_total,
    processor_user_errors_total,
    reminders_backfilled_total,
    reminders_purged_total,
)
from .models import MedicationReminder
from .repository import (
    acquire_send_lock,
    apply_reminder_updates,
    delete_reminder_ids,
    get_maintenance_state,
    get_medication_state,
    get_user_timezone_value,
    list_enabled_reminders,
    list_soft_deleted_page,
    list_timing_backfill_page,
    record_send_result,
    set_maintenance_state,
    soft_disable_reminder,
)
from .schemas import (
    BackfillResult,
    BackfillStatusRead,
    DueCandidate,
    MedicationState,
    OrphanScanResult,
    ProcessingStats,
    PurgeResult,
    PushPayload,
    TimingPolicy,
)
from .timing import effective_timing_policy, needs_timing_backfill, resolve_evaluation_timezone

logger = logging.getLogger(__name__)

SYSTEM_ACTOR = "system:medication-reminder-processor"
TIMING_BACKFILL_JOB = "medicationReminderTimingPolicyBackfill"
MAX_PURGE_PAGE_SIZE = 100
MAX_BACKFILL_PAGE_SIZE = 500


@dataclass
class _DueReminder:
    reminder: MedicationReminder
    candidate: DueCandidate
    policy: TimingPolicy


def _iso(dt: Optional[datetime]) -> Optional[str]:
    return to_utc_aware(dt).isoformat() if dt else None


def _parse_iso(value: Any) -> Optional[datetime]:
    if not value:
        return None
    if isinstance(value, datetime):
        return to_utc_aware(value)
    try:
        return to_utc_aware(datetime.fromisoformat(str(value).replace("Z", "+00:00")))
    except ValueError:
        return None


def build_reminder_payloads(
    reminder: MedicationReminder,
    candidate: DueCandidate,
    policy: TimingPolicy,
    tokens: List[Dict[str, str]],
) -> List[PushPayload]:
    dose_text = f" ({reminder.medication_dose})" if reminder.medication_dose else ""
    body = f"Time to take your {reminder.medication_name}{dose_text}"
    data = {
        "type": "medication_reminder",
        "reminderId": reminder.id,
        "medicationId": reminder.medication_id,
        "medicationName": reminder.medication_name,
        "scheduledTime": candidate.scheduled_time,
        "dueReason": candidate.due_reason,
        "evaluationTimezone": candidate.evaluation_timezone,
        "criticality": policy.criticality,
    }
    return [
        PushPayload(to=token["token"], title="Medication Reminder", body=body, data=data)
        for token in tokens
    ]


# --- Due reminder processing ---

def process_and_notify_due_reminders(
    now: Optional[datetime] = None,
    session_factory=None,
    notification_service: Optional[NotificationService] = None,
    max_workers: Optional[int] = None,
) -> ProcessingStats:
    """Evaluate every enabled reminder and send the ones that are due. Returns {processed, sent, errors}."""
    now = to_utc_aware(now) or utc_now()
    session_factory = session_factory or SessionLocal
    max_workers = max_workers or settings.PROCESSING_MAX_WORKERS
    stats = ProcessingStats()

    processor_scans_total.inc()
    logger.info(f"[MedReminders] Starting notification processor at {now.isoformat()}")

    db = session_factory()
    try:
        reminders = list_enabled_reminders(db)
    finally:
        db.close()

    if not reminders:
        logger.info("[MedReminders] No enabled reminders found")
        return stats

    reminders_by_user: Dict[str, List[MedicationReminder]] = defaultdict(list)
    for reminder in reminders:
        reminders_by_user[reminder.user_id].append(reminder)

    notifier = notification_service or get_notification_service(session_factory)
    users = list(reminders_by_user.items())

    if max_workers <= 1 or len(users) <= 1:
        for user_id, user_reminders in users:
            stats.merge(_process_user_safe(user_id, user_reminders, now, session_factory, notifier))
    else:
        with ThreadPoolExecutor(max_workers=min(max_workers, len(users))) as executor:
            futures = [
                executor.submit(_process_user_safe, user_id, user_reminders, now, session_factory, notifier)
                for user_id, user_reminders in users
            ]
            for future in as_completed(futures):
                stats.merge(future.result())

    logger.info(f"[MedReminders] Processing complete {stats.model_dump()}")
    return stats


def _process_user_safe(user_id, reminders, now, session_factory, notifier) -> ProcessingStats:
    stats = ProcessingStats()
    try:
        _process_user(stats, user_id, reminders, now, session_factory, notifier)
    except Exception:
        logger.exception(f"[MedReminders] Error processing user {user_id}")
        processor_user_errors_total.inc()
        stats.errors += 1
    return stats


def _process_user(
    stats: ProcessingStats,
    user_id: str,
    reminders: List[MedicationReminder],
    now: datetime,
    session_factory,
    notifier: NotificationService,
) -> None:
    db = session_factory()
    try:
        try:
            user_timezone = get_user_timezone_value(db, user_id) or settings.DEFAULT_TIMEZONE
        except SQLAlchemyError as e:
            db.rollback()
            logger.warning(f"[MedReminders] Could not fetch timezone for user {user_id}, skipping this cycle: {e!r}")
            return

        dose_calendars: Dict[str, Optional[DoseLogCalendar]] = {}
        due: List[_DueReminder] = []

        for reminder in reminders:
            policy = effective_timing_policy(reminder, user_timezone)
            evaluation_timezone = resolve_evaluation_timezone(policy, user_timezone)

            if evaluation_timezone not in dose_calendars:
                try:
                    dose_calendars[evaluation_timezone] = build_dose_log_calendar(db, user_id, now, evaluation_timezone)
                except SQLAlchemyError as e:
                    db.rollback()
                    dose_calendars[evaluation_timezone] = None
                    logger.warning(
                        f"[MedReminders] Could not load dose logs for user {user_id} in {evaluation_timezone}: {e!r}"
                    )
            dose_logs = dose_calendars[evaluation_timezone]
            if dose_logs is None:
                continue

            candidate = evaluate_due_dose(reminder, evaluation_timezone, dose_logs, now)
            if candidate is None:
                logger.debug(
                    f"[MedReminders] Nothing due for {reminder.id} | times={reminder.times} tz={evaluation_timezone}"
                )
                continue
            due.append(_DueReminder(reminder=reminder, candidate=candidate, policy=policy))

        for item in due:
            _handle_due_reminder(db, stats, user_id, item, now, notifier)
    finally:
        db.close()


def _handle_due_reminder(
    db,
    stats: ProcessingStats,
    user_id: str,
    item: _DueReminder,
    now: datetime,
    notifier: NotificationService,
) -> None:
    reminder, candidate = item.reminder, item.candidate

    try:
        medication = get_medication_state(db, reminder.medication_id)
    except SQLAlchemyError as e:
        db.rollback()
        logger.warning(f"[MedReminders] Medication lookup failed for {reminder.id}, leaving it for next cycle: {e!r}")
        return

    if medication.is_orphaning:
        soft_disable_reminder(db, reminder.id, now, SYSTEM_ACTOR)
        orphans_disabled_total.inc()
        stats.processed += 1
        logger.info(
            f"[MedReminders] Soft-disabled orphaned reminder {reminder.id} "
            f"(medication {reminder.medication_id} exists={medication.exists} active={medication.active})"
        )
        return

    lock_until = now + timedelta(minutes=settings.SEND_LOCK_TTL_MINUTES)
    if not acquire_send_lock(db, reminder.id, now, lock_until, evaluated_last_sent_at=reminder.last_sent_at):
        processor_lock_skipped_total.inc()
        logger.debug(f"[MedReminders] Send lock held elsewhere for {reminder.id}, skipping")
        return

    processor_candidates_total.labels(reason=candidate.due_reason).inc()

    policy_updates: Dict[str, Any] = {}
    if needs_timing_backfill(reminder):
        policy_updates = item.policy.model_dump()

    mark_sent = False
    try:
        tokens = notifier.get_user_push_tokens(user_id)
        if not tokens:
            logger.info(f"[MedReminders] No tokens for user {user_id}, marking {reminder.id} handled")
            mark_sent = True
            stats.processed += 1
            return

        payloads = build_reminder_payloads(reminder, candidate, item.policy, tokens)
        responses = notifier.send_notifications(payloads)
        success_count = sum(1 for response in responses if response.status == "ok")

        for response, token in zip(responses, tokens):
            if response.status == "ok":
                continue
            if response.error == DEVICE_NOT_REGISTERED:
                notifier.remove_invalid_token(user_id, token["token"])
            else:
                logger.warning(
                    f"[MedReminders] Push failed for {reminder.id} ({token.get('platform')}): "
                    f"{response.error or response.message}"
                )

        stats.processed += 1
        if success_count > 0:
            stats.sent += 1
            mark_sent = True

        logger.info(
            f"[MedReminders] Dispatched {reminder.id} | medication={reminder.medication_name} "
            f"time={candidate.scheduled_time} reason={candidate.due_reason} "
            f"tz={candidate.evaluation_timezone} success={success_count}/{len(payloads)}"
        )
    finally:
        # Always release the lock so the next due event (or a retry) is not blocked
        record_send_result(db, reminder.id, now, mark_sent, policy_updates)


# --- Orphan reconciliation ---

def reconcile_orphaned_reminders(now: Optional[datetime] = None, session_factory=None) -> OrphanScanResult:
    """Soft-disable enabled reminders whose medication is missing, inactive or deleted."""
    now = to_utc_aware(now) or utc_now()
    session_factory = session_factory or SessionLocal
    result = OrphanScanResult()

    db = session_factory()
    try:
        reminders = list_enabled_reminders(db)
        states: Dict[str, MedicationState] = {}
        for reminder in reminders:
            result.scanned += 1
            medication_id = reminder.medication_id
            if medication_id not in states:
                try:
                    states[medication_id] = get_medication_state(db, medication_id)
                except SQLAlchemyError as e:
                    db.rollback()
                    result.errors += 1
                    logger.warning(f"[MedReminders] Medication lookup failed for {reminder.id}: {e!r}")
                    continue
            if not states[medication_id].is_orphaning:
                continue
            soft_disable_reminder(db, reminder.id, now, SYSTEM_ACTOR)
            orphans_disabled_total.inc()
            result.disabled += 1
    finally:
        db.close()

    logger.info(f"[MedReminders] Orphan reconciliation complete {result.model_dump()}")
    return result


# --- Retention purge ---

def purge_soft_deleted_reminders(
    retention_days: Optional[int] = None,
    page_size: Optional[int] = None,
    now: Optional[datetime] = None,
    session_factory=None,
) -> PurgeResult:
    """Hard-delete one page of reminders soft-deleted longer than retention_days ago."""
    retention_days = settings.RETENTION_DAYS if retention_days is None else int(retention_days)
    if retention_days < 0:
        raise ValueError("retention_days must be >= 0")
    page_size = settings.PURGE_PAGE_SIZE if page_size is None else int(page_size)
    page_size = min(max(1, page_size), MAX_PURGE_PAGE_SIZE)
    now = to_utc_aware(now) or utc_now()
    cutoff = now - timedelta(days=retention_days)
    session_factory = session_factory or SessionLocal

    db = session_factory()
    try:
        page = list_soft_deleted_page(db, page_size)
        expired_ids = [
            reminder.id for reminder in page
            if to_utc_aware(reminder.deleted_at) <= cutoff
        ]
        purged = delete_reminder_ids(db, expired_ids)
    finally:
        db.close()

    reminders_purged_total.inc(purged)
    # Oldest first, so a page with anything still inside the window ends the backlog
    has_more = len(page) == page_size and len(expired_ids) == len(page)
    result = PurgeResult(scanned=len(page), purged=purged, has_more=has_more)
    logger.info(f"[Retention] Purge complete {result.model_dump(by_alias=True)} cutoff={cutoff.isoformat()}")
    return result


# --- Timing policy backfill ---

def backfill_timing_policy(
    page_size: Optional[int] = None,
    now: Optional[datetime] = None,
    session_factory=None,
) -> BackfillResult:
    """Assign explicit timing fields to one page of legacy reminders, resuming from the stored cursor."""
    page_size = settings.BACKFILL_PAGE_SIZE if page_size is None else int(page_size)
    page_size = min(max(1, page_size), MAX_BACKFILL_PAGE_SIZE)
    now = to_utc_aware(now) or utc_now()
    session_factory = session_factory or SessionLocal

    db = session_factory()
    try:
        state = get_maintenance_state(db, TIMING_BACKFILL_JOB)
        cursor = state.get("cursor_doc_id")
        set_maintenance_state(db, TIMING_BACKFILL_JOB, {
            "last_run_started_at": _iso(now),
            "last_run_status": "running",
        })

        try:
            items, has_more, next_cursor = list_timing_backfill_page(db, cursor, page_size)
            user_timezones: Dict[str, str] = {}
            updates = []
            for reminder in items:
                if not needs_timing_backfill(reminder):
                    continue
                if reminder.user_id not in user_timezones:
                    user_timezones[reminder.user_id] = (
                        get_user_timezone_value(db, reminder.user_id) or settings.DEFAULT_TIMEZONE
                    )
                policy = effective_timing_policy(reminder, user_timezones[reminder.user_id])
                updates.append((reminder.id, {**policy.model_dump(), "updated_at": now}))
            updated = apply_reminder_updates(db, updates)
        except Exception as e:
            db.rollback()
            set_maintenance_state(db, TIMING_BACKFILL_JOB, {
                "last_run_status": "error",
                "last_run_finished_at": _iso(now),
                "last_run_error_at": _iso(now),
                "last_run_error_message": str(e),
            })
            logger.error(f"[Backfill] Timing policy backfill failed at cursor {cursor!r}: {e!r}")
            raise

        set_maintenance_state(db, TIMING_BACKFILL_JOB, {
            "cursor_doc_id": next_cursor,
            "last_processed_at": _iso(now),
            "last_processed": len(items),
            "last_updated": updated,
            "completed_at": None if has_more else _iso(now),
            "last_run_finished_at": _iso(now),
            "last_run_status": "success",
            "last_run_error_at": None,
            "last_run_error_message": None,
        })
    finally:
        db.close()

    reminders_backfilled_total.inc(updated)
    result = BackfillResult(processed=len(items), updated=updated, has_more=has_more, next_cursor=next_cursor)
    logger.info(f"[Backfill] Timing policy backfill page complete {result.model_dump(by_alias=True)}")
    return result


def get_timing_backfill_status(now: Optional[datetime] = None, session_factory=None) -> BackfillStatusRead:
    now = to_utc_aware(now) or utc_now()
    session_factory = session_factory or SessionLocal

    db = session_factory()
    try:
        state = get_maintenance_state(db, TIMING_BACKFILL_JOB)
    finally:
        db.close()

    cursor = state.get("cursor_doc_id")
    has_more = bool(cursor)
    last_processed_at = _parse_iso(state.get("last_processed_at"))
    stale_after = timedelta(hours=settings.BACKFILL_STALE_HOURS)
    stale = has_more and (last_processed_at is None or now - last_processed_at > stale_after)
    last_run_status = state.get("last_run_status")

    return BackfillStatusRead(
        cursor_doc_id=cursor,
        has_more=has_more,
        stale=stale,
        needs_attention=stale or last_run_status == "error",
        last_processed_at=last_processed_at,
        last_processed_count=int(state.get("last_processed") or 0),
        last_updated_count=int(state.get("last_updated") or 0),
        completed_at=_parse_iso(state.get("completed_at")),
        last_run_started_at=_parse_iso(state.get("last_run_started_at")),
        last_run_finished_at=_parse_iso(state.get("last_run_finished_at")),
        last_run_status=last_run_status,
        last_run_error_at=_parse_iso(state.get("last_run_error_at")),
        last_run_error_message=state.get("last_run_error_message"),
    )
