"""Dedup ledger of headlines already used by each workflow.

Headlines are compared by a digest of their trimmed, lower-cased text,
so case and surrounding whitespace never defeat duplicate detection.
"""

from __future__ import annotations

import hashlib
import logging
from datetime import UTC, datetime, timedelta
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession

from matchday.dal.used_topics import UsedTopicRepository
from matchday.storage.entities.used_topic import UsedTopic

logger = logging.getLogger(__name__)

DEFAULT_FRESHNESS_HOURS = 24
DEFAULT_RETENTION_HOURS = 48


def hash_headline(headline: str) -> str:
    """First 16 hex chars of sha256 over the normalized headline."""
    return hashlib.sha256(headline.strip().lower().encode("utf-8")).hexdigest()[:16]


def format_avoid_clause(headlines: list[str]) -> str:
    """Prompt fragment asking the model not to reuse recent headlines."""
    if not headlines:
        return ""
    lines = "\n".join(f"- {h}" for h in headlines)
    return f"Avoid repeating these recently covered topics:\n{lines}"


class DedupLedger:
    """Records used headlines and answers freshness queries."""

    def __init__(self, session: AsyncSession, repository: UsedTopicRepository | None = None):
        self.session = session
        self.repository = repository or UsedTopicRepository(session)

    async def record(
        self,
        workflow_id: str,
        headline: str,
        metadata: dict[str, Any] | None = None,
    ) -> UsedTopic:
        headline = headline.strip()
        return await self.repository.add(
            workflow_id=workflow_id,
            headline=headline,
            headline_hash=hash_headline(headline),
            metadata=metadata,
        )

    async def recent_topics(
        self, workflow_id: str, hours_back: int = DEFAULT_FRESHNESS_HOURS
    ) -> list[UsedTopic]:
        since = datetime.now(UTC) - timedelta(hours=hours_back)
        return await self.repository.list_since(workflow_id, since)

    async def recent_headlines(
        self, workflow_id: str, hours_back: int = DEFAULT_FRESHNESS_HOURS
    ) -> list[str]:
        """Distinct recent headlines, newest first."""
        seen: set[str] = set()
        headlines: list[str] = []
        for topic in await self.recent_topics(workflow_id, hours_back):
            if topic.headline_hash not in seen:
                seen.add(topic.headline_hash)
                headlines.append(topic.headline)
        return headlines

    async def is_recent(
        self, workflow_id: str, headline: str, hours_back: int = DEFAULT_FRESHNESS_HOURS
    ) -> bool:
        since = datetime.now(UTC) - timedelta(hours=hours_back)
        return await self.repository.hash_exists_since(workflow_id, hash_headline(headline), since)

    async def cleanup(self, hours_old: int = DEFAULT_RETENTION_HOURS) -> int:
        """Delete entries older than the retention window; returns the count."""
        cutoff = datetime.now(UTC) - timedelta(hours=hours_old)
        deleted = await self.repository.delete_older_than(cutoff)
        if deleted:
            logger.info("Removed %d used topics older than %dh", deleted, hours_old)
        return deleted
