"""Observations, the shared registry and ingestion-time routing."""
