"""Workflow catalogue and trigger endpoints."""

import logging
from datetime import UTC, datetime
from typing import Any

from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from matchday.api.deps import get_engine, get_registry, get_webhook_cache, get_workflow_router
from matchday.api.rate_limit import limiter
from matchday.engine.client import EngineClient
from matchday.engine.webhook_cache import WebhookUrlCache
from matchday.settings import get_settings
from matchday.workflows.poller import (
    ExecutionIdMatcher,
    ExecutionPoller,
    TimeWindowMatcher,
    poll_options_from_settings,
)
from matchday.workflows.registry import WorkflowDefinition, WorkflowRegistry
from matchday.workflows.router import WorkflowRouter
from matchday.workflows.types import ErrorCode, WorkflowResult

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/workflows", tags=["Workflows"])


class ExecuteRequest(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    action: str = "execute"
    payload: dict[str, Any] = Field(default_factory=dict)
    user_id: str = "system"


def _describe(definition: WorkflowDefinition) -> dict[str, Any]:
    return definition.model_dump(by_alias=True, mode="json", exclude={"endpoint"})


@router.get("")
async def list_workflows(registry: WorkflowRegistry = Depends(get_registry)) -> dict[str, Any]:
    workflows = [_describe(d) for d in registry.list()]
    return {"workflows": workflows, "total": len(workflows)}


@router.get("/{workflow_id}")
async def get_workflow(
    workflow_id: str,
    registry: WorkflowRegistry = Depends(get_registry),
    cache: WebhookUrlCache = Depends(get_webhook_cache),
) -> dict[str, Any]:
    definition = registry.get(workflow_id)
    if definition is None:
        raise HTTPException(status_code=404, detail=f"Workflow '{workflow_id}' not found")
    return {**_describe(definition), "engineWorkflowId": cache.get_engine_id(workflow_id)}


def _status_code(result: WorkflowResult) -> int:
    if result.success:
        return 202 if (result.data or {}).get("status") == "running" else 200
    if result.error is None:
        return 500
    if result.error.code == ErrorCode.WORKFLOW_NOT_FOUND.value:
        return 404
    if result.error.code in (
        ErrorCode.WEBHOOK_NOT_CONFIGURED.value,
        ErrorCode.WEBHOOK_INVALID.value,
        ErrorCode.HANDLER_NOT_FOUND.value,
    ):
        return 503
    if result.error.retryable or result.error.code.startswith("HTTP_"):
        return 502
    return 500


async def _poll_in_background(
    client: EngineClient,
    *,
    workflow_id: str,
    engine_workflow_id: str,
    trace_id: str,
    execution_id: str,
    engine_execution_id: str | None,
    triggered_at: datetime,
) -> None:
    settings = get_settings()
    matcher = (
        ExecutionIdMatcher(engine_execution_id)
        if engine_execution_id
        else TimeWindowMatcher(settings.poll_match_window_seconds)
    )
    try:
        await ExecutionPoller(client, matcher=matcher).poll(
            workflow_id=workflow_id,
            engine_workflow_id=engine_workflow_id,
            trace_id=trace_id,
            execution_id=execution_id,
            triggered_at=triggered_at,
            options=poll_options_from_settings(settings),
        )
    except Exception:
        logger.exception("Background poll for %s failed", trace_id)


@router.post("/{workflow_id}/execute")
@limiter.limit("10/minute")
async def execute_workflow(
    request: Request,
    workflow_id: str,
    background_tasks: BackgroundTasks,
    body: ExecuteRequest | None = None,
    workflow_router: WorkflowRouter = Depends(get_workflow_router),
    cache: WebhookUrlCache = Depends(get_webhook_cache),
    engine: EngineClient | None = Depends(get_engine),
) -> JSONResponse:
    """Trigger a workflow.

    External workflows answer 202 once the engine accepts the run; the
    outcome arrives through callbacks (or the polling fallback).
    """
    body = body or ExecuteRequest()
    triggered_at = datetime.now(UTC)
    result = await workflow_router.route(
        workflow_id,
        body.action,
        body.payload,
        user_id=body.user_id,
        source_service="api",
        request_host=request.headers.get("X-Forwarded-Host"),
    )

    data = result.data or {}
    engine_workflow_id = cache.get_engine_id(workflow_id)
    if (
        result.success
        and data.get("status") == "running"
        and get_settings().poll_after_trigger
        and engine is not None
        and engine_workflow_id
    ):
        background_tasks.add_task(
            _poll_in_background,
            engine,
            workflow_id=workflow_id,
            engine_workflow_id=engine_workflow_id,
            trace_id=data["traceId"],
            execution_id=data["executionId"],
            engine_execution_id=data.get("engineExecutionId"),
            triggered_at=triggered_at,
        )

    return JSONResponse(status_code=_status_code(result), content=result.to_json())
