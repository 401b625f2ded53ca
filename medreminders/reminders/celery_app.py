from celery import Celery
from kombu import Exchange, Queue
from .config import settings


celery_app = Celery(
    "medreminders",
    broker=settings.CELERY_BROKER_URL,
    backend=settings.CELERY_RESULT_BACKEND or None,
)

exchange = Exchange(settings.CELERY_EXCHANGE, type="direct", durable=True)

celery_app.conf.update(
    task_acks_late=True,
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    worker_prefetch_multiplier=1,
    worker_concurrency=settings.WORKER_CONCURRENCY,
    task_default_queue=settings.CELERY_QUEUE,
    task_default_exchange=settings.CELERY_EXCHANGE,
    task_default_routing_key=settings.CELERY_ROUTING_KEY,
    include=["medreminders.reminders.tasks"],
    task_queues=(
        Queue(settings.CELERY_QUEUE, exchange=exchange, routing_key=settings.CELERY_ROUTING_KEY, durable=True),
    ),
    # Overlapping runs are tolerated (send lock), but a run older than the next
    # tick is pointless work
    task_time_limit=max(60, settings.PROCESS_INTERVAL_SECONDS),
)

# Celery Beat schedule for the processor and its maintenance jobs
celery_app.conf.beat_schedule = {
    "process-due-medication-reminders": {
        "task": "reminders.process_due_medication_reminders",
        "schedule": settings.PROCESS_INTERVAL_SECONDS,
    },
    "reconcile-orphaned-reminders": {
        "task": "reminders.reconcile_orphaned",
        "schedule": settings.ORPHAN_SCAN_INTERVAL_SECONDS,
    },
    "purge-soft-deleted-reminders": {
        "task": "reminders.purge_soft_deleted",
        "schedule": settings.PURGE_INTERVAL_SECONDS,
    },
    "backfill-reminder-timing-policy": {
        "task": "reminders.backfill_timing_policy",
        "schedule": settings.BACKFILL_INTERVAL_SECONDS,
    },
}
