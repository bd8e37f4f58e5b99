"""Workflow registry, trigger routing, callback ingestion and polling."""
