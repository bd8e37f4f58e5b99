"""Trace data access.

Traces are append-only. The single exception is the row written for the
triggering request, which is finalized once via ``finalize_trigger``.
"""

from __future__ import annotations

from datetime import UTC, datetime
from typing import Any

from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from matchday.storage.entities.trace import Trace, TraceStatus


class TraceRepository:
    """Repository for workflow trace rows."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def create(
        self,
        *,
        trace_id: str,
        workflow_id: str,
        action: str,
        source_service: str,
        destination_service: str,
        attempt_number: int = 1,
        user_id: str = "system",
        execution_id: str | None = None,
        request_payload: dict[str, Any] | None = None,
        response_payload: Any = None,
        details: dict[str, Any] | None = None,
        overall_status: TraceStatus | str = TraceStatus.IN_PROGRESS,
        error_code: str | None = None,
        error_detail: str | None = None,
        external_execution_id: str | None = None,
        requested_at: datetime | None = None,
        responded_at: datetime | None = None,
        duration_ms: int | None = None,
    ) -> Trace:
        trace = Trace(
            trace_id=trace_id,
            workflow_id=workflow_id,
            action=action,
            source_service=source_service,
            destination_service=destination_service,
            attempt_number=attempt_number,
            user_id=user_id,
            execution_id=execution_id,
            request_payload=request_payload or {},
            response_payload=response_payload,
            details=details,
            overall_status=TraceStatus(overall_status).value,
            error_code=error_code,
            error_detail=error_detail,
            external_execution_id=external_execution_id,
            requested_at=requested_at or datetime.now(UTC),
            responded_at=responded_at,
            duration_ms=duration_ms,
        )
        self.session.add(trace)
        await self.session.flush()
        return trace

    async def get(self, record_id: str) -> Trace | None:
        result = await self.session.execute(select(Trace).where(Trace.id == record_id))
        return result.scalar_one_or_none()

    async def list_for_trace(self, trace_id: str) -> list[Trace]:
        """All rows of one run, in attempt order."""
        result = await self.session.execute(
            select(Trace)
            .where(Trace.trace_id == trace_id)
            .order_by(Trace.attempt_number.asc(), Trace.requested_at.asc())
        )
        return list(result.scalars().all())

    async def list_recent(self, limit: int = 50, offset: int = 0) -> list[Trace]:
        result = await self.session.execute(
            select(Trace).order_by(Trace.requested_at.desc()).limit(limit).offset(offset)
        )
        return list(result.scalars().all())

    async def count(self) -> int:
        result = await self.session.execute(select(func.count()).select_from(Trace))
        return result.scalar_one()

    async def next_attempt_number(self, trace_id: str) -> int:
        result = await self.session.execute(
            select(func.max(Trace.attempt_number)).where(Trace.trace_id == trace_id)
        )
        return (result.scalar_one_or_none() or 0) + 1

    async def finalize_trigger(
        self,
        record_id: str,
        *,
        overall_status: TraceStatus | str,
        duration_ms: int,
        response_payload: Any = None,
        error_code: str | None = None,
        error_detail: str | None = None,
        external_execution_id: str | None = None,
        execution_id: str | None = None,
    ) -> bool:
        """Record the outcome of the triggering request.

        Applies only while ``responded_at`` is unset, so the row is
        written at most once. Returns True when the update applied.
        """
        values: dict[str, Any] = {
            "responded_at": datetime.now(UTC),
            "duration_ms": duration_ms,
            "response_payload": response_payload,
            "overall_status": TraceStatus(overall_status).value,
            "error_code": error_code,
            "error_detail": error_detail,
        }
        if external_execution_id is not None:
            values["external_execution_id"] = external_execution_id
        if execution_id is not None:
            values["execution_id"] = execution_id

        result = await self.session.execute(
            update(Trace)
            .where(Trace.id == record_id, Trace.responded_at.is_(None))
            .values(**values)
            .execution_options(synchronize_session="fetch")
        )
        return result.rowcount > 0
