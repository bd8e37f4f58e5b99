"""HTTP API for triggering workflows, ingesting callbacks, and querying runs."""
