from prometheus_client import Counter


processor_scans_total = Counter(
    "medication_reminder_processor_scans_total",
    "Total reminder processing cycles",
)

processor_candidates_total = Counter(
    "medication_reminder_candidates_total",
    "Due dose candidates selected, by due reason",
    ["reason"],
)

processor_lock_skipped_total = Counter(
    "medication_reminder_lock_skipped_total",
    "Candidates skipped because another run holds the send lock",
)

processor_user_errors_total = Counter(
    "medication_reminder_user_errors_total",
    "Users whose reminders failed to process in a cycle",
)

reminders_dispatch_success_total = Counter(
    "medication_reminders_dispatch_success_total",
    "Total push payloads accepted by the transport",
)

reminders_dispatch_failed_total = Counter(
    "medication_reminders_dispatch_failed_total",
    "Total push payloads rejected by the transport",
)

reminders_invalid_tokens_total = Counter(
    "medication_reminders_invalid_tokens_total",
    "Push tokens removed after DeviceNotRegistered",
)

orphans_disabled_total = Counter(
    "medication_reminders_orphans_disabled_total",
    "Reminders soft-disabled because their medication is gone",
)

reminders_purged_total = Counter(
    "medication_reminders_purged_total",
    "Soft-deleted reminders hard-deleted after retention",
)

reminders_backfilled_total = Counter(
    "medication_reminders_backfilled_total",
    "Reminders updated by the timing policy backfill",
)
