"""Execution model: the run-level record for one triggered workflow."""

from __future__ import annotations

import enum
from datetime import datetime
from typing import Any

from sqlalchemy import DateTime, Index, String, func
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column

from matchday.storage.models import Base, UUIDMixin


class ExecutionStatus(str, enum.Enum):
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


TERMINAL_STATUSES = frozenset({ExecutionStatus.COMPLETED.value, ExecutionStatus.FAILED.value})


class Execution(UUIDMixin, Base):
    """One run of a workflow, keyed by the trace id that triggered it.

    ``status`` only moves forward: once completed or failed it is never
    rewritten (see ``ExecutionRepository.apply_status``).
    """

    __tablename__ = "workflow_execution"
    __table_args__ = (Index("ix_workflow_execution_workflow_started", "workflow_id", "started_at"),)

    workflow_id: Mapped[str] = mapped_column(String(100), nullable=False, index=True)
    trigger_trace_id: Mapped[str] = mapped_column(String(64), nullable=False, unique=True)
    external_execution_id: Mapped[str | None] = mapped_column(String(100), nullable=True)
    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=ExecutionStatus.RUNNING.value
    )
    started_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=func.now()
    )
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    final_output: Mapped[Any | None] = mapped_column(JSONB, nullable=True)
    user_id: Mapped[str] = mapped_column(String(100), nullable=False, default="system")

    def __repr__(self) -> str:
        return f"<Execution(id={self.id!r}, workflow={self.workflow_id!r}, status={self.status!r})>"
