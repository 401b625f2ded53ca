from typing import Optional
from celery import shared_task
from celery.utils.log import get_task_logger

from .processing import (
    backfill_timing_policy,
    process_and_notify_due_reminders,
    purge_soft_deleted_reminders,
    reconcile_orphaned_reminders,
)

logger = get_task_logger(__name__)


@shared_task(name="reminders.process_due_medication_reminders")
def process_due_medication_reminders_task() -> dict:
    """Send due medication reminders. Returns {processed, sent, errors}."""
    logger.info("[Scheduler] Running medication reminder processor")
    try:
        result = process_and_notify_due_reminders()
    except Exception:
        logger.exception("[Scheduler] Error processing med reminders")
        raise
    return result.model_dump()


@shared_task(name="reminders.reconcile_orphaned")
def reconcile_orphaned_reminders_task() -> dict:
    logger.info("[Scheduler] Running orphaned reminder reconciliation")
    try:
        result = reconcile_orphaned_reminders()
    except Exception:
        logger.exception("[Scheduler] Error reconciling orphaned reminders")
        raise
    return result.model_dump()


@shared_task(name="reminders.purge_soft_deleted")
def purge_soft_deleted_reminders_task(retention_days: Optional[int] = None, page_size: Optional[int] = None) -> dict:
    """Returns {scanned, purged, hasMore}."""
    logger.info("[Scheduler] Running soft-deleted reminder purge")
    try:
        result = purge_soft_deleted_reminders(retention_days=retention_days, page_size=page_size)
    except Exception:
        logger.exception("[Scheduler] Error in soft-deleted reminder purge")
        raise
    return result.model_dump(by_alias=True)


@shared_task(name="reminders.backfill_timing_policy")
def backfill_timing_policy_task(page_size: Optional[int] = None) -> dict:
    """Returns {processed, updated, hasMore, nextCursor}."""
    logger.info("[Scheduler] Running medication reminder timing backfill")
    try:
        result = backfill_timing_policy(page_size=page_size)
    except Exception:
        logger.exception("[Scheduler] Error in medication reminder timing backfill")
        raise
    return result.model_dump(by_alias=True)
