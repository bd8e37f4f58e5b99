"""UsedTopic model: headlines already published, for freshness checks."""

from __future__ import annotations

from datetime import datetime
from typing import Any

from sqlalchemy import DateTime, Index, String, Text, func
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column

from matchday.storage.models import Base, UUIDMixin


class UsedTopic(UUIDMixin, Base):
    """A headline a workflow has produced.

    ``headline_hash`` is the normalized-headline digest used for
    duplicate detection (see ``matchday.workflows.dedup.hash_headline``).
    """

    __tablename__ = "used_topic"
    __table_args__ = (Index("ix_used_topic_workflow_used_at", "workflow_id", "used_at"),)

    workflow_id: Mapped[str] = mapped_column(String(100), nullable=False, index=True)
    headline: Mapped[str] = mapped_column(Text, nullable=False)
    headline_hash: Mapped[str] = mapped_column(String(16), nullable=False, index=True)
    used_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=func.now(), index=True
    )
    # "metadata" is reserved on declarative classes
    topic_metadata: Mapped[dict[str, Any] | None] = mapped_column("metadata", JSONB, nullable=True)

    def __repr__(self) -> str:
        return f"<UsedTopic(workflow={self.workflow_id!r}, hash={self.headline_hash!r})>"
