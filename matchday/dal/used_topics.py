"""Used-topic data access."""

from __future__ import annotations

from datetime import UTC, datetime
from typing import Any

from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession

from matchday.storage.entities.used_topic import UsedTopic


class UsedTopicRepository:
    """Repository for the used-topic ledger table."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def add(
        self,
        workflow_id: str,
        headline: str,
        headline_hash: str,
        metadata: dict[str, Any] | None = None,
    ) -> UsedTopic:
        topic = UsedTopic(
            workflow_id=workflow_id,
            headline=headline,
            headline_hash=headline_hash,
            used_at=datetime.now(UTC),
            topic_metadata=metadata,
        )
        self.session.add(topic)
        await self.session.flush()
        return topic

    async def list_since(self, workflow_id: str, since: datetime) -> list[UsedTopic]:
        result = await self.session.execute(
            select(UsedTopic)
            .where(UsedTopic.workflow_id == workflow_id, UsedTopic.used_at >= since)
            .order_by(UsedTopic.used_at.desc())
        )
        return list(result.scalars().all())

    async def hash_exists_since(self, workflow_id: str, headline_hash: str, since: datetime) -> bool:
        result = await self.session.execute(
            select(UsedTopic.id)
            .where(
                UsedTopic.workflow_id == workflow_id,
                UsedTopic.headline_hash == headline_hash,
                UsedTopic.used_at >= since,
            )
            .limit(1)
        )
        return result.scalar_one_or_none() is not None

    async def delete_older_than(self, cutoff: datetime) -> int:
        result = await self.session.execute(delete(UsedTopic).where(UsedTopic.used_at < cutoff))
        return result.rowcount or 0
