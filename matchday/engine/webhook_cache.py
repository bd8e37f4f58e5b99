"""Webhook URL cache.

Holds the trigger URL and engine-side workflow id for each synced
workflow. It is filled by sync at startup and read by the router; it is
never the source of truth and may be cleared at any time.
"""

from __future__ import annotations

import threading
from dataclasses import dataclass


@dataclass(frozen=True)
class CachedWebhook:
    url: str | None = None
    engine_workflow_id: str | None = None


class WebhookUrlCache:
    """Thread-safe map of workflow id to its engine webhook details."""

    def __init__(self) -> None:
        self._entries: dict[str, CachedWebhook] = {}
        self._lock = threading.Lock()

    def set(self, workflow_id: str, *, url: str | None = None, engine_workflow_id: str | None = None) -> None:
        """Store details for a workflow; None leaves the existing value."""
        with self._lock:
            current = self._entries.get(workflow_id, CachedWebhook())
            self._entries[workflow_id] = CachedWebhook(
                url=url if url is not None else current.url,
                engine_workflow_id=engine_workflow_id if engine_workflow_id is not None else current.engine_workflow_id,
            )

    def get_url(self, workflow_id: str) -> str | None:
        with self._lock:
            entry = self._entries.get(workflow_id)
        return entry.url if entry else None

    def get_engine_id(self, workflow_id: str) -> str | None:
        with self._lock:
            entry = self._entries.get(workflow_id)
        return entry.engine_workflow_id if entry else None

    def snapshot(self) -> dict[str, CachedWebhook]:
        with self._lock:
            return dict(self._entries)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)
