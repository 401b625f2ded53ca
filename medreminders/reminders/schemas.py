"""
Value schemas passed between the reminder processor stages and returned by the jobs
"""
from datetime import datetime
from typing import Any, Dict, Literal, Optional
from pydantic import BaseModel, ConfigDict, Field


TimingMode = Literal["local", "anchor"]
Criticality = Literal["standard", "time_sensitive"]
DueReason = Literal["schedule", "snooze"]


class TimingPolicy(BaseModel):
    timing_mode: TimingMode
    anchor_timezone: Optional[str] = None
    criticality: Criticality


class MedicationState(BaseModel):
    """Projection of a medication record used for orphan detection"""
    id: str
    exists: bool
    active: bool
    deleted_at: Optional[datetime] = None

    @property
    def is_orphaning(self) -> bool:
        return not self.exists or not self.active or self.deleted_at is not None


class SnoozeState(BaseModel):
    snooze_until_ms: int
    logged_at_ms: int


class DueCandidate(BaseModel):
    reminder_id: str
    scheduled_time: str
    due_reason: DueReason
    evaluation_timezone: str


class PushPayload(BaseModel):
    to: str
    title: str
    body: str
    data: Dict[str, Any] = Field(default_factory=dict)
    sound: Optional[str] = "default"
    priority: Literal["default", "normal", "high"] = "high"


class PushResult(BaseModel):
    status: Literal["ok", "error"]
    id: Optional[str] = None
    message: Optional[str] = None
    error: Optional[str] = None  # DeviceNotRegistered, MessageRateExceeded, ...


class ProcessingStats(BaseModel):
    processed: int = 0
    sent: int = 0
    errors: int = 0

    def merge(self, other: "ProcessingStats") -> None:
        self.processed += other.processed
        self.sent += other.sent
        self.errors += other.errors


class OrphanScanResult(BaseModel):
    scanned: int = 0
    disabled: int = 0
    errors: int = 0


class PurgeResult(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    scanned: int
    purged: int
    has_more: bool = Field(alias="hasMore")


class BackfillResult(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    processed: int
    updated: int
    has_more: bool = Field(alias="hasMore")
    next_cursor: Optional[str] = Field(default=None, alias="nextCursor")


class BackfillStatusRead(BaseModel):
    """Operator view of the timing backfill progress"""
    model_config = ConfigDict(populate_by_name=True)

    cursor_doc_id: Optional[str] = Field(default=None, alias="cursorDocId")
    has_more: bool = Field(alias="hasMore")
    stale: bool
    needs_attention: bool = Field(alias="needsAttention")
    last_processed_at: Optional[datetime] = Field(default=None, alias="lastProcessedAt")
    last_processed_count: int = Field(default=0, alias="lastProcessedCount")
    last_updated_count: int = Field(default=0, alias="lastUpdatedCount")
    completed_at: Optional[datetime] = Field(default=None, alias="completedAt")
    last_run_started_at: Optional[datetime] = Field(default=None, alias="lastRunStartedAt")
    last_run_finished_at: Optional[datetime] = Field(default=None, alias="lastRunFinishedAt")
    last_run_status: Optional[str] = Field(default=None, alias="lastRunStatus")
    last_run_error_at: Optional[datetime] = Field(default=None, alias="lastRunErrorAt")
    last_run_error_message: Optional[str] = Field(default=None, alias="lastRunErrorMessage")
