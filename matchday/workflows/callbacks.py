"""Ingestion of step callbacks posted by the engine.

Every callback becomes a Trace row. The terminal callback also settles
the Execution status (under the status-priority merge), stores the final
output, and records the run's headline in the dedup ledger.
"""

from __future__ import annotations

import logging
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from matchday.dal.executions import ExecutionRepository
from matchday.dal.traces import TraceRepository
from matchday.settings import get_settings
from matchday.storage.entities.execution import Execution, ExecutionStatus
from matchday.workflows.dedup import DedupLedger, hash_headline

logger = logging.getLogger(__name__)

FINAL_MARKERS = frozenset({"final", "final-output"})
ENGINE_SERVICE = "engine"
ORCHESTRATOR_SERVICE = "orchestrator"

_FINAL_STATUS = {
    "success": ExecutionStatus.COMPLETED,
    "failed": ExecutionStatus.FAILED,
    "in_progress": ExecutionStatus.RUNNING,
}


class CallbackPayload(BaseModel):
    """Body of ``POST /api/workflows/callback``."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore")

    workflow_id: str = Field(..., min_length=1)
    step: str = Field(..., min_length=1)
    step_index: int = Field(..., ge=1)
    trace_id: str = Field(..., min_length=1)
    output: Any = None
    execution_id: str | None = None
    status: Literal["success", "failed", "in_progress"] = "success"
    error_message: str | None = None
    details: dict[str, Any] | None = None

    @property
    def is_final(self) -> bool:
        return self.step in FINAL_MARKERS


class CallbackReceipt(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    success: bool = True
    trace_id: str
    execution_id: str
    trace_record_id: str


def extract_headline(output: Any) -> str | None:
    """Find the run's source headline in a final output, if any."""
    if not isinstance(output, dict):
        return None
    candidates: list[Any] = []
    topic = output.get("selectedTopic")
    if isinstance(topic, dict):
        candidates += [topic.get("sourceHeadline"), topic.get("headline")]
    data = output.get("data")
    if isinstance(data, dict):
        candidates.append(data.get("sourceHeadline"))
        nested = data.get("selectedTopic")
        if isinstance(nested, dict):
            candidates.append(nested.get("sourceHeadline"))
    candidates.append(output.get("sourceHeadline"))

    for value in candidates:
        if isinstance(value, str) and value.strip():
            return value.strip()
    return None


class CallbackIngestor:
    """Applies one engine callback to the store."""

    def __init__(
        self,
        session: AsyncSession,
        *,
        traces: TraceRepository | None = None,
        executions: ExecutionRepository | None = None,
        ledger: DedupLedger | None = None,
    ) -> None:
        self.session = session
        self.traces = traces or TraceRepository(session)
        self.executions = executions or ExecutionRepository(session)
        self.ledger = ledger or DedupLedger(session)

    async def ingest(self, payload: CallbackPayload) -> CallbackReceipt:
        execution = await self.executions.get_or_create_for_trace(payload.trace_id, payload.workflow_id)

        trace = await self.traces.create(
            trace_id=payload.trace_id,
            workflow_id=payload.workflow_id,
            action=payload.step,
            source_service=ENGINE_SERVICE,
            destination_service=ORCHESTRATOR_SERVICE,
            attempt_number=payload.step_index,
            execution_id=execution.id,
            request_payload={"step": payload.step, "stepIndex": payload.step_index},
            response_payload=payload.output,
            details=payload.details,
            overall_status=payload.status,
            error_code="STEP_FAILED" if payload.status == "failed" else None,
            error_detail=payload.error_message,
            external_execution_id=payload.execution_id,
        )

        if payload.execution_id:
            await self.executions.set_external_execution_id(execution.id, payload.execution_id)

        if payload.is_final:
            await self._settle(execution, payload)

        logger.debug(
            "Callback %s step=%s index=%d status=%s",
            payload.trace_id,
            payload.step,
            payload.step_index,
            payload.status,
        )
        return CallbackReceipt(trace_id=payload.trace_id, execution_id=execution.id, trace_record_id=trace.id)

    async def _settle(self, execution: Execution, payload: CallbackPayload) -> None:
        target = _FINAL_STATUS[payload.status]
        if target == ExecutionStatus.RUNNING:
            logger.warning("Final callback for %s reported in_progress; run stays open", payload.trace_id)

        applied = await self.executions.apply_status(execution.id, target, final_output=payload.output)
        if not applied:
            logger.info(
                "Execution %s already settled; %s kept as history only",
                execution.id,
                payload.status,
            )

        if payload.status == "success":
            await self._record_headline(execution, payload)

    async def _record_headline(self, execution: Execution, payload: CallbackPayload) -> None:
        headline = extract_headline(payload.output)
        if headline is None:
            logger.warning("Final output of %s carries no headline; nothing recorded", payload.trace_id)
            return

        freshness = get_settings().topic_freshness_hours
        try:
            async with self.session.begin_nested():
                if await self.ledger.is_recent(payload.workflow_id, headline, freshness):
                    return
                await self.ledger.record(
                    payload.workflow_id,
                    headline,
                    metadata={
                        "traceId": payload.trace_id,
                        "executionId": execution.id,
                        "analyzedHeadline": headline,
                        "sourceHeadlineHash": hash_headline(headline),
                    },
                )
        except SQLAlchemyError:
            logger.exception("Could not record used topic for %s", payload.trace_id)
