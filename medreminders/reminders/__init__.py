"""Medication reminder processor (Celery jobs, push dispatcher, ops API).

The processor decides once per cycle which scheduled doses are due, sends at
most one notification per reminder, and keeps reminder records tidy through
orphan reconciliation, retention purge and the timing policy backfill.
"""
