"""Execution data access with the status-priority merge.

Callbacks and poll reports for one run may arrive in any order. Every
status write goes through :func:`merge_status` semantics, enforced in SQL
as a conditional update, so a late ``running`` never overwrites
``completed`` or ``failed`` and concurrent writers converge.
"""

from __future__ import annotations

from datetime import UTC, datetime
from typing import Any

from sqlalchemy import select, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import defer

from matchday.storage.entities.execution import TERMINAL_STATUSES, Execution, ExecutionStatus


def merge_status(current: ExecutionStatus | str, incoming: ExecutionStatus | str) -> ExecutionStatus:
    """Resolve the status after applying ``incoming`` on top of ``current``.

    Terminal statuses are absorbing: the first terminal write wins and
    everything after it is history only.
    """
    current = ExecutionStatus(current)
    incoming = ExecutionStatus(incoming)
    if current.value in TERMINAL_STATUSES:
        return current
    return incoming


class ExecutionRepository:
    """Repository for workflow executions."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def create(
        self,
        *,
        workflow_id: str,
        trigger_trace_id: str,
        user_id: str = "system",
        external_execution_id: str | None = None,
    ) -> Execution:
        execution = Execution(
            workflow_id=workflow_id,
            trigger_trace_id=trigger_trace_id,
            user_id=user_id,
            external_execution_id=external_execution_id,
            status=ExecutionStatus.RUNNING.value,
            started_at=datetime.now(UTC),
        )
        self.session.add(execution)
        await self.session.flush()
        return execution

    async def get(self, execution_id: str) -> Execution | None:
        result = await self.session.execute(select(Execution).where(Execution.id == execution_id))
        return result.scalar_one_or_none()

    async def get_by_trigger_trace(self, trace_id: str) -> Execution | None:
        result = await self.session.execute(
            select(Execution).where(Execution.trigger_trace_id == trace_id)
        )
        return result.scalar_one_or_none()

    async def get_or_create_for_trace(
        self,
        trace_id: str,
        workflow_id: str,
        user_id: str = "system",
    ) -> Execution:
        """Return the execution for ``trace_id``, creating it if absent.

        Uses INSERT .. ON CONFLICT DO NOTHING on the unique trigger trace
        id so concurrent callers resolve to the same row.
        """
        existing = await self.get_by_trigger_trace(trace_id)
        if existing is not None:
            return existing

        await self.session.execute(
            pg_insert(Execution)
            .values(
                workflow_id=workflow_id,
                trigger_trace_id=trace_id,
                user_id=user_id,
                status=ExecutionStatus.RUNNING.value,
                started_at=datetime.now(UTC),
            )
            .on_conflict_do_nothing(index_elements=[Execution.trigger_trace_id])
        )
        execution = await self.get_by_trigger_trace(trace_id)
        if execution is None:  # pragma: no cover - insert or conflict guarantees a row
            raise LookupError(f"Execution for trace {trace_id} vanished after insert")
        return execution

    async def list_for_workflow(self, workflow_id: str, limit: int = 20) -> list[Execution]:
        """Recent executions of a workflow, newest first, without final output."""
        result = await self.session.execute(
            select(Execution)
            .options(defer(Execution.final_output))
            .where(Execution.workflow_id == workflow_id)
            .order_by(Execution.started_at.desc())
            .limit(limit)
        )
        return list(result.scalars().all())

    async def list_running(self, workflow_id: str, limit: int = 50) -> list[Execution]:
        result = await self.session.execute(
            select(Execution)
            .where(
                Execution.workflow_id == workflow_id,
                Execution.status == ExecutionStatus.RUNNING.value,
            )
            .order_by(Execution.started_at.desc())
            .limit(limit)
        )
        return list(result.scalars().all())

    async def apply_status(
        self,
        execution_id: str,
        status: ExecutionStatus | str,
        *,
        final_output: Any = None,
        completed_at: datetime | None = None,
    ) -> bool:
        """Apply a status write under the priority merge.

        The update only matches rows that are not yet terminal, which makes
        the outcome independent of arrival order. Returns True when the
        write changed the row.
        """
        status = ExecutionStatus(status)
        values: dict[str, Any] = {"status": status.value}
        if status.value in TERMINAL_STATUSES:
            values["completed_at"] = completed_at or datetime.now(UTC)
            if final_output is not None:
                values["final_output"] = final_output

        result = await self.session.execute(
            update(Execution)
            .where(
                Execution.id == execution_id,
                Execution.status.notin_(TERMINAL_STATUSES),
            )
            .values(**values)
            .execution_options(synchronize_session="fetch")
        )
        return result.rowcount > 0

    async def set_external_execution_id(self, execution_id: str, external_execution_id: str) -> bool:
        """Record the engine-side execution id if none is stored yet."""
        result = await self.session.execute(
            update(Execution)
            .where(Execution.id == execution_id, Execution.external_execution_id.is_(None))
            .values(external_execution_id=external_execution_id)
            .execution_options(synchronize_session="fetch")
        )
        return result.rowcount > 0
