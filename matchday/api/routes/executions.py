"""Execution history and per-run timelines."""

import logging
from typing import Any
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Query

from matchday.api.deps import get_engine
from matchday.dal import ExecutionRepository, TraceRepository
from matchday.engine.client import EngineClient
from matchday.storage import get_session
from matchday.workflows.poller import get_execution_report

logger = logging.getLogger(__name__)

router = APIRouter(tags=["Executions"])


@router.get("/workflows/{workflow_id}/executions")
async def list_workflow_executions(
    workflow_id: str,
    limit: int = Query(default=20, ge=1, le=100),
) -> dict[str, Any]:
    """Most recent runs of a workflow, newest first, without final outputs."""
    async with get_session() as session:
        executions = await ExecutionRepository(session).list_for_workflow(workflow_id, limit=limit)
    return {
        "workflowId": workflow_id,
        "executions": [e.to_dict() for e in executions],
        "total": len(executions),
    }


@router.get("/executions/{execution_id}")
async def get_execution(execution_id: UUID) -> dict[str, Any]:
    """One run with every trace recorded under its trace id."""
    async with get_session() as session:
        execution = await ExecutionRepository(session).get(str(execution_id))
        if execution is None:
            raise HTTPException(status_code=404, detail="Execution not found")
        traces = await TraceRepository(session).list_for_trace(execution.trigger_trace_id)
    return {
        "execution": execution.to_dict(),
        "traces": [t.to_dict() for t in traces],
    }


@router.get("/executions/{execution_id}/engine-report")
async def get_engine_report(
    execution_id: UUID,
    engine: EngineClient | None = Depends(get_engine),
) -> dict[str, Any]:
    """What the engine itself says about this run."""
    if engine is None:
        raise HTTPException(status_code=503, detail="Engine API is not configured")

    async with get_session() as session:
        execution = await ExecutionRepository(session).get(str(execution_id))
    if execution is None:
        raise HTTPException(status_code=404, detail="Execution not found")
    if not execution.external_execution_id:
        raise HTTPException(status_code=404, detail="Execution has no engine execution id yet")

    report = await get_execution_report(engine, execution.external_execution_id)
    if report is None:
        raise HTTPException(status_code=404, detail="Engine has no record of this execution")
    return report.model_dump(mode="json")
