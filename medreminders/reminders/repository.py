from datetime import datetime
from typing import Any, Dict, List, Optional, Sequence, Tuple
from sqlalchemy.orm import Session
from sqlalchemy import select, update, delete

from .models import (
    DeviceToken,
    MaintenanceState,
    Medication,
    MedicationLog,
    MedicationReminder,
    UserProfile,
)
from .schemas import MedicationState
from medreminders.utils.timezone import to_utc_aware

MAX_BATCH_SIZE = 500


def _chunks(items: Sequence, size: int = MAX_BATCH_SIZE):
    for index in range(0, len(items), size):
        yield items[index:index + size]


# --- Reminders ---

def list_enabled_reminders(db: Session) -> List[MedicationReminder]:
    stmt = (
        select(MedicationReminder)
        .where(MedicationReminder.enabled == True)  # noqa: E712
        .where(MedicationReminder.deleted_at.is_(None))
        .order_by(MedicationReminder.user_id.asc(), MedicationReminder.id.asc())
    )
    return list(db.execute(stmt).scalars())


def acquire_send_lock(
    db: Session,
    reminder_id: str,
    now: datetime,
    lock_until: datetime,
    evaluated_last_sent_at: Optional[datetime] = None,
) -> bool:
    """
    Claim the right to send for this reminder. The read and the conditional write
    happen in one transaction under a row lock, so two overlapping processor runs
    cannot both win.

    evaluated_last_sent_at is the last_sent_at the caller based its due decision on.
    If the row has been sent since then, another run already handled this dose and
    the lock is refused even though that run has released it.
    """
    try:
        reminder = db.execute(
            select(MedicationReminder)
            .where(MedicationReminder.id == reminder_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        ).scalar_one_or_none()
        if reminder is None:
            db.rollback()
            return False

        existing_lock = to_utc_aware(reminder.last_sent_lock_until)
        if existing_lock is not None and existing_lock > to_utc_aware(now):
            db.rollback()
            return False

        current_sent = to_utc_aware(reminder.last_sent_at)
        seen_sent = to_utc_aware(evaluated_last_sent_at)
        if current_sent is not None and (seen_sent is None or current_sent > seen_sent):
            db.rollback()
            return False

        reminder.last_sent_lock_until = lock_until
        reminder.last_sent_lock_at = now
        reminder.updated_at = now
        db.commit()
        return True
    except Exception:
        db.rollback()
        raise


def record_send_result(
    db: Session,
    reminder_id: str,
    now: datetime,
    mark_sent: bool,
    extra_updates: Optional[Dict[str, Any]] = None,
) -> None:
    """Release the send lock; stamp last_sent_at when the dose counts as notified."""
    values: Dict[str, Any] = {
        "last_sent_lock_until": None,
        "last_sent_lock_at": None,
        "updated_at": now,
    }
    if mark_sent:
        values["last_sent_at"] = now
    if extra_updates:
        values.update(extra_updates)
    db.execute(
        update(MedicationReminder)
        .where(MedicationReminder.id == reminder_id)
        .values(**values)
    )
    db.commit()


def soft_disable_reminder(db: Session, reminder_id: str, now: datetime, deleted_by: str) -> None:
    db.execute(
        update(MedicationReminder)
        .where(MedicationReminder.id == reminder_id)
        .values(enabled=False, deleted_at=now, deleted_by=deleted_by, updated_at=now)
    )
    db.commit()


def apply_reminder_updates(db: Session, updates: List[Tuple[str, Dict[str, Any]]]) -> int:
    if not updates:
        return 0
    updated = 0
    for chunk in _chunks(updates):
        for reminder_id, values in chunk:
            db.execute(
                update(MedicationReminder)
                .where(MedicationReminder.id == reminder_id)
                .values(**values)
            )
        db.commit()
        updated += len(chunk)
    return updated


def list_soft_deleted_page(db: Session, limit: int) -> List[MedicationReminder]:
    """Oldest soft-deleted reminders first."""
    stmt = (
        select(MedicationReminder)
        .where(MedicationReminder.deleted_at.isnot(None))
        .order_by(MedicationReminder.deleted_at.asc(), MedicationReminder.id.asc())
        .limit(max(1, int(limit)))
    )
    return list(db.execute(stmt).scalars())


def delete_reminder_ids(db: Session, reminder_ids: List[str]) -> int:
    if not reminder_ids:
        return 0
    deleted = 0
    for chunk in _chunks(reminder_ids):
        db.execute(delete(MedicationReminder).where(MedicationReminder.id.in_(chunk)))
        db.commit()
        deleted += len(chunk)
    return deleted


def list_timing_backfill_page(
    db: Session,
    cursor_doc_id: Optional[str],
    limit: int,
) -> Tuple[List[MedicationReminder], bool, Optional[str]]:
    """One page ordered by id, starting after cursor_doc_id. Returns (items, has_more, next_cursor)."""
    query_limit = max(1, int(limit))
    stmt = select(MedicationReminder).order_by(MedicationReminder.id.asc()).limit(query_limit)
    cursor = cursor_doc_id.strip() if isinstance(cursor_doc_id, str) else None
    if cursor:
        stmt = stmt.where(MedicationReminder.id > cursor)
    items = list(db.execute(stmt).scalars())
    has_more = len(items) == query_limit
    next_cursor = items[-1].id if has_more and items else None
    return items, has_more, next_cursor


# --- Collaborator lookups ---

def get_user_timezone_value(db: Session, user_id: str) -> Optional[str]:
    profile = db.get(UserProfile, user_id)
    if profile is None:
        return None
    tz = profile.timezone
    return tz.strip() if isinstance(tz, str) and tz.strip() else None


def get_medication_state(db: Session, medication_id: str) -> MedicationState:
    medication = db.get(Medication, medication_id)
    if medication is None:
        return MedicationState(id=medication_id, exists=False, active=False, deleted_at=None)
    return MedicationState(
        id=medication_id,
        exists=True,
        active=medication.active is not False,
        deleted_at=to_utc_aware(medication.deleted_at),
    )


def list_medication_logs(db: Session, user_id: str, start: datetime, end: datetime) -> List[MedicationLog]:
    """Logs with start <= logged_at < end."""
    stmt = (
        select(MedicationLog)
        .where(MedicationLog.user_id == user_id)
        .where(MedicationLog.logged_at >= start)
        .where(MedicationLog.logged_at < end)
        .order_by(MedicationLog.logged_at.asc())
    )
    return list(db.execute(stmt).scalars())


def list_user_push_tokens(db: Session, user_id: str) -> List[Dict[str, str]]:
    """Distinct tokens for the user, newest registration wins the platform."""
    rows = (
        db.query(DeviceToken)
        .filter(DeviceToken.user_id == user_id)
        .order_by(DeviceToken.created_at.asc())
        .all()
    )
    tokens: Dict[str, Dict[str, str]] = {}
    for row in rows:
        if not row.token:
            continue
        tokens[row.token] = {"token": row.token, "platform": row.platform or "ios"}
    return list(tokens.values())


def remove_push_token(db: Session, user_id: str, token: str) -> int:
    result = db.execute(
        delete(DeviceToken)
        .where(DeviceToken.user_id == user_id)
        .where(DeviceToken.token == token)
    )
    db.commit()
    return result.rowcount or 0


# --- Maintenance state ---

def get_maintenance_state(db: Session, job_name: str) -> Dict[str, Any]:
    row = db.get(MaintenanceState, job_name)
    return dict(row.state or {}) if row else {}


def set_maintenance_state(db: Session, job_name: str, updates: Dict[str, Any]) -> Dict[str, Any]:
    """Merge updates into the job's state document."""
    row = db.get(MaintenanceState, job_name)
    if row is None:
        row = MaintenanceState(job_name=job_name, state={})
        db.add(row)
    merged = {**(row.state or {}), **updates}
    row.state = merged
    db.commit()
    return merged
