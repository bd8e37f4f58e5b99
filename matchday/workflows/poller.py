"""Polling fallback for runs whose callbacks never arrive.

The poller asks the engine for recent executions of a workflow, picks
the one belonging to our trigger, and reconciles the store with what it
finds. It is bounded by both an attempt count and a wall-clock budget,
and writes nothing until polling has finished.
"""

from __future__ import annotations

import asyncio
import enum
import logging
import time
from collections.abc import Awaitable, Callable, Sequence
from contextlib import AbstractAsyncContextManager
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Protocol

from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from matchday.dal.executions import ExecutionRepository
from matchday.dal.traces import TraceRepository
from matchday.engine.client import EngineClient, EngineExecution
from matchday.exceptions import EngineClientError
from matchday.settings import Settings
from matchday.storage import get_committing_session
from matchday.storage.entities.execution import ExecutionStatus
from matchday.storage.entities.trace import TraceStatus

logger = logging.getLogger(__name__)

POLLER_SERVICE = "poller"
POLL_REPORT_ACTION = "poll-report"


class ExecutionMatcher(Protocol):
    """Chooses which engine execution belongs to a trigger."""

    def match(self, candidates: Sequence[EngineExecution], triggered_at: datetime) -> EngineExecution | None: ...


@dataclass(frozen=True)
class TimeWindowMatcher:
    """Matches the execution that started closest to the trigger time.

    Only executions within ``window_seconds`` of the trigger qualify.
    Two triggers of the same workflow inside the window are
    indistinguishable to this matcher.
    """

    window_seconds: float = 10.0

    def match(self, candidates: Sequence[EngineExecution], triggered_at: datetime) -> EngineExecution | None:
        best: EngineExecution | None = None
        best_gap: float | None = None
        for candidate in candidates:
            if candidate.started_at is None:
                continue
            gap = abs((_aware(candidate.started_at) - _aware(triggered_at)).total_seconds())
            if gap < self.window_seconds and (best_gap is None or gap < best_gap):
                best, best_gap = candidate, gap
        return best


@dataclass(frozen=True)
class ExecutionIdMatcher:
    """Matches by the engine execution id returned in the trigger ack."""

    engine_execution_id: str

    def match(self, candidates: Sequence[EngineExecution], triggered_at: datetime) -> EngineExecution | None:
        return next((c for c in candidates if c.id == self.engine_execution_id), None)


def _aware(value: datetime) -> datetime:
    return value if value.tzinfo else value.replace(tzinfo=UTC)


@dataclass(frozen=True)
class PollOptions:
    max_attempts: int = 10
    interval_ms: int = 3000
    timeout_ms: int = 60000
    fetch_limit: int = 5


class ReportStatus(str, enum.Enum):
    SUCCESS = "success"
    ERROR = "error"
    RUNNING = "running"
    TIMEOUT = "timeout"


class ExecutionReport(BaseModel):
    status: ReportStatus
    engine_execution_id: str | None = None
    last_node_executed: str | None = None
    error_message: str | None = None
    error_node: str | None = None
    started_at: datetime | None = None
    stopped_at: datetime | None = None
    duration_ms: int | None = None
    attempts: int = 0
    message: str | None = None

    @property
    def failure_detail(self) -> str:
        if self.error_node:
            return f'Failed at node "{self.error_node}": {self.error_message or "unknown error"}'
        return self.error_message or self.message or "Execution failed"


def report_from_execution(execution: EngineExecution, attempts: int = 0) -> ExecutionReport:
    if execution.is_finished:
        status = ReportStatus.SUCCESS if execution.status == "success" else ReportStatus.ERROR
    else:
        status = ReportStatus.RUNNING
    return ExecutionReport(
        status=status,
        engine_execution_id=execution.id,
        last_node_executed=execution.last_node_executed,
        error_message=execution.error_message,
        error_node=execution.error_node,
        started_at=execution.started_at,
        stopped_at=execution.stopped_at,
        duration_ms=execution.duration_ms,
        attempts=attempts,
    )


async def get_execution_report(client: EngineClient, engine_execution_id: str) -> ExecutionReport | None:
    """Report on a single engine execution by id."""
    execution = await client.get_execution(engine_execution_id)
    return report_from_execution(execution) if execution else None


class ExecutionPoller:
    """Bounded engine polling plus store reconciliation."""

    def __init__(
        self,
        client: EngineClient,
        *,
        session_factory: Callable[[], AbstractAsyncContextManager[AsyncSession]] = get_committing_session,
        matcher: ExecutionMatcher | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.client = client
        self.session_factory = session_factory
        self.matcher = matcher or TimeWindowMatcher()
        self._sleep = sleep
        self._clock = clock

    async def watch(
        self,
        engine_workflow_id: str,
        triggered_at: datetime,
        options: PollOptions | None = None,
    ) -> ExecutionReport:
        """Poll until a matching execution finishes or the budget runs out."""
        options = options or PollOptions()
        deadline = self._clock() + options.timeout_ms / 1000
        attempts = 0
        running: EngineExecution | None = None

        while attempts < options.max_attempts and self._clock() < deadline:
            await self._sleep(options.interval_ms / 1000)
            attempts += 1
            try:
                candidates = await self.client.list_recent_executions(engine_workflow_id, options.fetch_limit)
            except EngineClientError as e:
                logger.warning("Poll %d for workflow %s failed: %s", attempts, engine_workflow_id, e)
                continue

            match = self.matcher.match(candidates, triggered_at)
            if match is None:
                continue
            if match.is_finished:
                return report_from_execution(match, attempts)
            running = match

        if running is not None:
            report = report_from_execution(running, attempts)
            report.message = "Execution still running after polling timeout"
            return report
        return ExecutionReport(
            status=ReportStatus.TIMEOUT,
            attempts=attempts,
            message=f"No matching execution after {attempts} attempts",
        )

    async def poll(
        self,
        *,
        workflow_id: str,
        engine_workflow_id: str,
        trace_id: str,
        execution_id: str,
        triggered_at: datetime,
        options: PollOptions | None = None,
    ) -> ExecutionReport:
        report = await self.watch(engine_workflow_id, triggered_at, options)
        await self.reconcile(report, workflow_id=workflow_id, trace_id=trace_id, execution_id=execution_id)
        logger.info("Poll of %s finished: %s after %d attempts", trace_id, report.status.value, report.attempts)
        return report

    async def reconcile(
        self,
        report: ExecutionReport,
        *,
        workflow_id: str,
        trace_id: str,
        execution_id: str,
    ) -> bool:
        """Append a poll-report trace and merge the execution status.

        ``running`` and ``timeout`` reports leave the execution open so a
        late callback can still settle it. Returns True if the execution
        status changed.
        """
        trace_status, execution_status, error_code, error_detail = {
            ReportStatus.SUCCESS: (TraceStatus.SUCCESS, ExecutionStatus.COMPLETED, None, None),
            ReportStatus.ERROR: (TraceStatus.FAILED, ExecutionStatus.FAILED, "EXECUTION_FAILED", report.failure_detail),
            ReportStatus.RUNNING: (TraceStatus.IN_PROGRESS, None, None, report.message),
            ReportStatus.TIMEOUT: (TraceStatus.IN_PROGRESS, None, "MONITORING_TIMEOUT", report.message),
        }[report.status]

        async with self.session_factory() as session:
            traces = TraceRepository(session)
            await traces.create(
                trace_id=trace_id,
                workflow_id=workflow_id,
                action=POLL_REPORT_ACTION,
                source_service=POLLER_SERVICE,
                destination_service="orchestrator",
                attempt_number=await traces.next_attempt_number(trace_id),
                execution_id=execution_id,
                request_payload={"attempts": report.attempts},
                response_payload=report.model_dump(mode="json"),
                overall_status=trace_status,
                error_code=error_code,
                error_detail=error_detail,
                external_execution_id=report.engine_execution_id,
                duration_ms=report.duration_ms,
            )
            executions = ExecutionRepository(session)
            if report.engine_execution_id:
                await executions.set_external_execution_id(execution_id, report.engine_execution_id)
            if execution_status is None:
                return False
            return await executions.apply_status(execution_id, execution_status)

    async def reconcile_failures(
        self,
        *,
        workflow_id: str,
        engine_workflow_id: str,
        window_seconds: float = 5.0,
        limit: int = 10,
    ) -> int:
        """Fail local runs whose engine execution errored without a callback.

        Returns the number of executions marked failed.
        """
        failed_runs = [
            e
            for e in await self.client.list_recent_executions(engine_workflow_id, limit, status="error")
            if e.status == "error"
        ]
        if not failed_runs:
            return 0

        async with self.session_factory() as session:
            running = await ExecutionRepository(session).list_running(workflow_id)

        matcher = TimeWindowMatcher(window_seconds)
        updated = 0
        for execution in running:
            match = matcher.match(failed_runs, execution.started_at)
            if match is None:
                continue
            report = report_from_execution(match)
            if await self.reconcile(
                report,
                workflow_id=workflow_id,
                trace_id=execution.trigger_trace_id,
                execution_id=execution.id,
            ):
                updated += 1
        if updated:
            logger.info("Marked %d %s executions failed from engine errors", updated, workflow_id)
        return updated


def poll_options_from_settings(settings: Settings) -> PollOptions:
    return PollOptions(
        max_attempts=settings.poll_max_attempts,
        interval_ms=settings.poll_interval_ms,
        timeout_ms=settings.poll_timeout_ms,
    )
