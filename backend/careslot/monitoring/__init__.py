"""Prometheus instrumentation for the CareSlot engine."""
