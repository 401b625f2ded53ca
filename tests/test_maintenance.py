from datetime import timedelta

import pytest
from sqlalchemy.exc import OperationalError

from medreminders.reminders import processing
from medreminders.reminders.models import MedicationReminder
from medreminders.reminders.processing import (
    SYSTEM_ACTOR,
    TIMING_BACKFILL_JOB,
    backfill_timing_policy,
    get_timing_backfill_status,
    purge_soft_deleted_reminders,
    reconcile_orphaned_reminders,
)
from medreminders.reminders.repository import get_maintenance_state, set_maintenance_state
from conftest import utc

NOW = utc("2026-03-15T12:00:00Z")


# --- Orphan reconciliation ---

def test_orphans_are_soft_disabled_not_deleted(session_factory, seed, db):
    seed.medication("med-ok")
    seed.medication("med-inactive", active=False)
    seed.medication("med-deleted", deleted_at=NOW - timedelta(days=1))
    seed.reminder("r-ok", medication_id="med-ok")
    seed.reminder("r-inactive", medication_id="med-inactive")
    seed.reminder("r-deleted", medication_id="med-deleted")
    seed.reminder("r-missing", medication_id="med-missing")

    result = reconcile_orphaned_reminders(now=NOW, session_factory=session_factory)

    assert result.model_dump() == {"scanned": 4, "disabled": 3, "errors": 0}
    db.expire_all()
    rows = {r.id: r for r in db.query(MedicationReminder).all()}
    assert len(rows) == 4
    assert rows["r-ok"].enabled is True
    assert rows["r-ok"].deleted_at is None
    for reminder_id in ("r-inactive", "r-deleted", "r-missing"):
        assert rows[reminder_id].enabled is False
        assert rows[reminder_id].deleted_by == SYSTEM_ACTOR


def test_orphan_lookup_failure_leaves_reminder_alone(session_factory, seed, db, monkeypatch):
    seed.reminder("r-1", medication_id="med-missing")

    def broken_lookup(db, medication_id):
        raise OperationalError("SELECT", {}, Exception("connection reset"))

    monkeypatch.setattr(processing, "get_medication_state", broken_lookup)

    result = reconcile_orphaned_reminders(now=NOW, session_factory=session_factory)

    assert result.model_dump() == {"scanned": 1, "disabled": 0, "errors": 1}
    db.expire_all()
    assert db.get(MedicationReminder, "r-1").enabled is True


# --- Retention purge ---

def test_purge_removes_only_expired_soft_deletes(session_factory, seed, db):
    seed.reminder("r-old", deleted_at=NOW - timedelta(days=120))
    seed.reminder("r-recent", deleted_at=NOW - timedelta(days=10))
    seed.reminder("r-active")

    result = purge_soft_deleted_reminders(now=NOW, session_factory=session_factory)

    assert result.model_dump(by_alias=True) == {"scanned": 2, "purged": 1, "hasMore": False}
    db.expire_all()
    assert sorted(r.id for r in db.query(MedicationReminder).all()) == ["r-active", "r-recent"]


def test_purge_pages_through_backlog(session_factory, seed, db):
    for day in (200, 150, 100):
        seed.reminder(f"r-{day}", deleted_at=NOW - timedelta(days=day))

    first = purge_soft_deleted_reminders(page_size=2, now=NOW, session_factory=session_factory)
    second = purge_soft_deleted_reminders(page_size=2, now=NOW, session_factory=session_factory)

    assert first.model_dump(by_alias=True) == {"scanned": 2, "purged": 2, "hasMore": True}
    assert second.model_dump(by_alias=True) == {"scanned": 1, "purged": 1, "hasMore": False}
    db.expire_all()
    assert db.query(MedicationReminder).count() == 0


def test_purge_zero_retention_removes_everything_soft_deleted(session_factory, seed):
    seed.reminder("r-1", deleted_at=NOW)
    result = purge_soft_deleted_reminders(retention_days=0, now=NOW, session_factory=session_factory)
    assert result.purged == 1


def test_purge_rejects_negative_retention(session_factory):
    with pytest.raises(ValueError):
        purge_soft_deleted_reminders(retention_days=-1, now=NOW, session_factory=session_factory)


# --- Timing policy backfill ---

def test_backfill_resumes_from_cursor(session_factory, seed, db):
    seed.user("user-1", "America/New_York")
    seed.reminder("r-1", medication_name="Tacrolimus")
    seed.reminder("r-2", medication_name="Vitamin D", timing_mode="local", criticality="standard")
    seed.reminder("r-3", user_id="user-2", medication_name="Insulin")

    first = backfill_timing_policy(page_size=2, now=NOW, session_factory=session_factory)
    assert first.model_dump(by_alias=True) == {
        "processed": 2, "updated": 1, "hasMore": True, "nextCursor": "r-2",
    }
    state = get_maintenance_state(db, TIMING_BACKFILL_JOB)
    assert state["cursor_doc_id"] == "r-2"
    assert state["last_run_status"] == "success"
    assert state["completed_at"] is None

    later = NOW + timedelta(hours=2)
    second = backfill_timing_policy(page_size=2, now=later, session_factory=session_factory)
    assert second.model_dump(by_alias=True) == {
        "processed": 1, "updated": 1, "hasMore": False, "nextCursor": None,
    }

    db.expire_all()
    state = get_maintenance_state(db, TIMING_BACKFILL_JOB)
    assert state["cursor_doc_id"] is None
    assert state["completed_at"] == later.isoformat()

    r1 = db.get(MedicationReminder, "r-1")
    assert (r1.timing_mode, r1.anchor_timezone, r1.criticality) == ("anchor", "America/New_York", "time_sensitive")
    r3 = db.get(MedicationReminder, "r-3")
    # No profile timezone for user-2
    assert (r3.timing_mode, r3.anchor_timezone, r3.criticality) == ("anchor", "America/Chicago", "time_sensitive")


def test_backfill_failure_is_recorded(session_factory, seed, db, monkeypatch):
    seed.reminder("r-1")

    def broken_page(db, cursor, limit):
        raise OperationalError("SELECT", {}, Exception("statement timeout"))

    monkeypatch.setattr(processing, "list_timing_backfill_page", broken_page)

    with pytest.raises(OperationalError):
        backfill_timing_policy(now=NOW, session_factory=session_factory)

    db.expire_all()
    state = get_maintenance_state(db, TIMING_BACKFILL_JOB)
    assert state["last_run_status"] == "error"
    assert "statement timeout" in state["last_run_error_message"]

    status = get_timing_backfill_status(now=NOW, session_factory=session_factory)
    assert status.needs_attention
    assert not status.stale


def test_backfill_status_goes_stale(session_factory, db):
    set_maintenance_state(db, TIMING_BACKFILL_JOB, {
        "cursor_doc_id": "r-9",
        "last_processed_at": (NOW - timedelta(hours=7)).isoformat(),
        "last_processed": 200,
        "last_updated": 12,
        "last_run_status": "success",
    })

    status = get_timing_backfill_status(now=NOW, session_factory=session_factory)
    assert status.has_more
    assert status.stale
    assert status.needs_attention
    assert status.last_processed_count == 200
    assert status.last_updated_count == 12

    fresh = get_timing_backfill_status(now=NOW - timedelta(hours=5), session_factory=session_factory)
    assert not fresh.stale
    assert not fresh.needs_attention


def test_backfill_status_before_first_run(session_factory):
    status = get_timing_backfill_status(now=NOW, session_factory=session_factory)
    assert not status.has_more
    assert not status.stale
    assert status.last_run_status is None
