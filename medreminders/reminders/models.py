"""
Reminder service models - medication reminders plus the read-only projections
the processor needs (medications, user profiles, dose logs, device tokens).
"""
from datetime import datetime, timezone as dt_timezone
from sqlalchemy import Column, String, DateTime, Boolean, Index, JSON
import uuid

from medreminders.db.base import Base


def _utcnow() -> datetime:
    return datetime.now(dt_timezone.utc)


def _new_id() -> str:
    return uuid.uuid4().hex


class MedicationReminder(Base):
    """One medication's notification schedule for one user"""
    __tablename__ = "medication_reminders"

    id = Column(String, primary_key=True, default=_new_id)
    user_id = Column(String, nullable=False, index=True)
    medication_id = Column(String, nullable=False, index=True)
    medication_name = Column(String, nullable=False)
    medication_dose = Column(String, nullable=True)
    times = Column(JSON, nullable=False, default=list)  # ["08:00", "21:00"]
    enabled = Column(Boolean, nullable=False, default=True)

    # Timing policy (NULL on legacy rows until backfilled)
    timing_mode = Column(String, nullable=True)  # local | anchor
    anchor_timezone = Column(String, nullable=True)
    criticality = Column(String, nullable=True)  # standard | time_sensitive

    # Send bookkeeping
    last_sent_at = Column(DateTime(timezone=True), nullable=True)
    last_sent_lock_until = Column(DateTime(timezone=True), nullable=True)
    last_sent_lock_at = Column(DateTime(timezone=True), nullable=True)

    # Soft delete
    deleted_at = Column(DateTime(timezone=True), nullable=True, index=True)
    deleted_by = Column(String, nullable=True)

    created_at = Column(DateTime(timezone=True), default=_utcnow, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow, nullable=False)

    __table_args__ = (
        Index("ix_medication_reminders_enabled_deleted", "enabled", "deleted_at"),
    )


class Medication(Base):
    """Owned by the medication subsystem; read-only here"""
    __tablename__ = "medications"

    id = Column(String, primary_key=True, default=_new_id)
    user_id = Column(String, nullable=False, index=True)
    name = Column(String, nullable=False)
    active = Column(Boolean, nullable=True, default=True)
    deleted_at = Column(DateTime(timezone=True), nullable=True)


class UserProfile(Base):
    __tablename__ = "user_profiles"

    user_id = Column(String, primary_key=True)
    timezone = Column(String, nullable=True)


class MedicationLog(Base):
    """A user's action on one scheduled dose"""
    __tablename__ = "medication_logs"

    id = Column(String, primary_key=True, default=_new_id)
    user_id = Column(String, nullable=False)
    medication_id = Column(String, nullable=False)
    scheduled_time = Column(String, nullable=True)  # HH:MM
    scheduled_date = Column(String, nullable=True)  # YYYY-MM-DD
    action = Column(String, nullable=True)  # taken | skipped | snoozed
    logged_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)
    snooze_until = Column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        Index("ix_medication_logs_user_logged_at", "user_id", "logged_at"),
    )


class DeviceToken(Base):
    __tablename__ = "device_tokens"

    id = Column(String, primary_key=True, default=_new_id)
    user_id = Column(String, nullable=False, index=True)
    platform = Column(String, nullable=False, default="ios")  # ios, android, web
    token = Column(String, nullable=False, index=True)
    created_at = Column(DateTime(timezone=True), default=_utcnow, nullable=False)

    __table_args__ = (
        Index("ix_device_tokens_user_platform", "user_id", "platform"),
    )


class MaintenanceState(Base):
    """Resumable state for paginated maintenance jobs, one row per job"""
    __tablename__ = "maintenance_state"

    job_name = Column(String, primary_key=True)
    state = Column(JSON, nullable=False, default=dict)
    updated_at = Column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow, nullable=False)
