"""Celery tasks for the CareSlot engine."""
