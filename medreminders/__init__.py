"""Medication reminder reconciliation service.

Runs as a separate worker container: Celery beat triggers the reminder
processing and maintenance jobs, and a small FastAPI app exposes health,
metrics and operator status endpoints.
"""
