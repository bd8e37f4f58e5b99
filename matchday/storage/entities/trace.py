"""Trace model: one row per workflow lifecycle event.

Rows sharing a ``trace_id`` form the timeline of a single run: the
triggering request, every step callback, and any poll reports.
"""

from __future__ import annotations

import enum
from datetime import datetime
from typing import Any

from sqlalchemy import DateTime, Index, Integer, String, Text, func
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column

from matchday.storage.models import Base, UUIDMixin


class TraceStatus(str, enum.Enum):
    IN_PROGRESS = "in_progress"
    SUCCESS = "success"
    FAILED = "failed"


class Trace(UUIDMixin, Base):
    """A single request/response event within a run."""

    __tablename__ = "workflow_trace"
    __table_args__ = (
        Index("ix_workflow_trace_trace_id_attempt", "trace_id", "attempt_number"),
        Index("ix_workflow_trace_requested_at", "requested_at"),
    )

    trace_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    execution_id: Mapped[str | None] = mapped_column(String(36), nullable=True, index=True)
    attempt_number: Mapped[int] = mapped_column(Integer, nullable=False, default=1)

    source_service: Mapped[str] = mapped_column(String(50), nullable=False)
    destination_service: Mapped[str] = mapped_column(String(50), nullable=False)
    workflow_id: Mapped[str] = mapped_column(String(100), nullable=False, index=True)
    action: Mapped[str] = mapped_column(String(200), nullable=False)
    user_id: Mapped[str] = mapped_column(String(100), nullable=False, default="system")

    requested_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=func.now()
    )
    responded_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    duration_ms: Mapped[int | None] = mapped_column(Integer, nullable=True)

    request_payload: Mapped[dict[str, Any]] = mapped_column(JSONB, nullable=False, default=dict)
    response_payload: Mapped[Any | None] = mapped_column(JSONB, nullable=True)
    details: Mapped[dict[str, Any] | None] = mapped_column(JSONB, nullable=True)

    overall_status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=TraceStatus.IN_PROGRESS.value
    )
    error_code: Mapped[str | None] = mapped_column(String(100), nullable=True)
    error_detail: Mapped[str | None] = mapped_column(Text, nullable=True)
    external_execution_id: Mapped[str | None] = mapped_column(String(100), nullable=True)

    def __repr__(self) -> str:
        return (
            f"<Trace(trace_id={self.trace_id!r}, attempt={self.attempt_number}, "
            f"action={self.action!r}, status={self.overall_status!r})>"
        )
