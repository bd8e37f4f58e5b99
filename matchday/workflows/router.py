"""Workflow trigger and router.

Resolves a workflow from the registry and either runs its local handler
or fires the engine's trigger webhook. For engine runs the Execution and
its trigger Trace are committed before any outbound I/O so that every
trigger attempt is queryable, whatever happens next.
"""

from __future__ import annotations

import logging
import os
import time
import uuid
from collections.abc import Callable
from contextlib import AbstractAsyncContextManager
from datetime import UTC, datetime
from typing import Any

import httpx
from sqlalchemy.ext.asyncio import AsyncSession

from matchday.dal.executions import ExecutionRepository
from matchday.dal.traces import TraceRepository
from matchday.engine.webhook_cache import WebhookUrlCache
from matchday.settings import Settings, get_settings
from matchday.storage import get_committing_session
from matchday.storage.entities.execution import ExecutionStatus
from matchday.storage.entities.trace import TraceStatus
from matchday.workflows.callback_url import resolve_callback_url
from matchday.workflows.dedup import DedupLedger
from matchday.workflows.handlers import HandlerRegistry
from matchday.workflows.registry import WorkflowDefinition, WorkflowMode, WorkflowRegistry
from matchday.workflows.types import (
    ErrorCode,
    ResultMetadata,
    WorkflowContext,
    WorkflowError,
    WorkflowRequest,
    WorkflowResult,
)

logger = logging.getLogger(__name__)

SessionFactory = Callable[[], AbstractAsyncContextManager[AsyncSession]]

ORCHESTRATOR_SERVICE = "orchestrator"
ENGINE_SERVICE = "engine"
LOCAL_SERVICE = "local"


def generate_trace_id() -> str:
    return f"trace_{uuid.uuid4().hex[:16]}"


def _elapsed_ms(started: float) -> int:
    return int((time.perf_counter() - started) * 1000)


def _engine_execution_id(body: Any) -> str | None:
    if not isinstance(body, dict):
        return None
    for candidate in (
        body.get("executionId"),
        (body.get("data") or {}).get("executionId") if isinstance(body.get("data"), dict) else None,
        (body.get("metadata") or {}).get("executionId") if isinstance(body.get("metadata"), dict) else None,
    ):
        if candidate is not None:
            return str(candidate)
    return None


class WorkflowRouter:
    """Routes workflow requests to local handlers or the engine."""

    def __init__(
        self,
        *,
        registry: WorkflowRegistry,
        cache: WebhookUrlCache,
        handlers: HandlerRegistry,
        session_factory: SessionFactory = get_committing_session,
        settings: Settings | None = None,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        self.registry = registry
        self.cache = cache
        self.handlers = handlers
        self.session_factory = session_factory
        self.settings = settings or get_settings()
        self._http_client = http_client

    async def route(
        self,
        workflow_id: str,
        action: str,
        payload: dict[str, Any] | None = None,
        *,
        user_id: str = "system",
        source_service: str = "api",
        request_host: str | None = None,
    ) -> WorkflowResult:
        started = time.perf_counter()
        definition = self.registry.get(workflow_id)
        if definition is None:
            return self._failure(
                workflow_id,
                ErrorCode.WORKFLOW_NOT_FOUND,
                f"Workflow '{workflow_id}' not found",
                started=started,
            )

        request = WorkflowRequest(
            action=action,
            payload=payload or {},
            context=WorkflowContext(
                user_id=user_id,
                trace_id=generate_trace_id(),
                source_service=source_service,
            ),
        )
        if definition.mode == WorkflowMode.LOCAL:
            return await self._run_local(definition, request, started)
        return await self._run_external(definition, request, started, request_host)

    # Local

    async def _run_local(
        self, definition: WorkflowDefinition, request: WorkflowRequest, started: float
    ) -> WorkflowResult:
        ctx = request.context
        async with self.session_factory() as session:
            trace = await TraceRepository(session).create(
                trace_id=ctx.trace_id,
                workflow_id=definition.id,
                action=request.action,
                source_service=ctx.source_service,
                destination_service=LOCAL_SERVICE,
                user_id=ctx.user_id,
                request_payload=request.to_json(),
            )

        handler = self.handlers.get(definition.handler)
        if handler is None:
            result = self._failure(
                definition.id,
                ErrorCode.HANDLER_NOT_FOUND,
                f"No local handler '{definition.handler}'",
                started=started,
                trace_id=ctx.trace_id,
            )
        else:
            try:
                data = await handler(request)
                result = WorkflowResult(
                    success=True,
                    data=data,
                    metadata=ResultMetadata(
                        workflow_id=definition.id, trace_id=ctx.trace_id, duration_ms=_elapsed_ms(started)
                    ),
                )
            except Exception as e:
                logger.exception("Local workflow %s failed", definition.id)
                result = self._failure(
                    definition.id,
                    ErrorCode.EXECUTION_ERROR,
                    str(e) or type(e).__name__,
                    started=started,
                    trace_id=ctx.trace_id,
                )

        async with self.session_factory() as session:
            await TraceRepository(session).finalize_trigger(
                trace.id,
                overall_status=TraceStatus.SUCCESS if result.success else TraceStatus.FAILED,
                duration_ms=result.metadata.duration_ms,
                response_payload=result.to_json(),
                error_code=result.error.code if result.error else None,
                error_detail=result.error.message if result.error else None,
            )
        return result

    # External

    def resolve_webhook_url(self, definition: WorkflowDefinition) -> str | None:
        """Cache first, then configured URLs, then the registry's environment key."""
        url = self.cache.get_url(definition.id) or self.settings.workflow_webhook_urls.get(definition.id)
        if url:
            return url
        if definition.endpoint:
            return os.environ.get(definition.endpoint) or None
        return None

    def _build_headers(self, request: WorkflowRequest) -> dict[str, str]:
        ctx = request.context
        return {
            "Content-Type": "application/json",
            "X-Request-Id": str(uuid.uuid4()),
            "X-Trace-Id": ctx.trace_id,
            "X-User-Id": ctx.user_id,
            "X-Timestamp": ctx.requested_at.isoformat(),
            "X-Attempt": str(ctx.attempt),
        }

    async def _run_external(
        self,
        definition: WorkflowDefinition,
        request: WorkflowRequest,
        started: float,
        request_host: str | None,
    ) -> WorkflowResult:
        ctx = request.context
        async with self.session_factory() as session:
            trace = await TraceRepository(session).create(
                trace_id=ctx.trace_id,
                workflow_id=definition.id,
                action=request.action,
                source_service=ctx.source_service,
                destination_service=ENGINE_SERVICE,
                user_id=ctx.user_id,
                request_payload=request.to_json(),
            )
            execution = await ExecutionRepository(session).create(
                workflow_id=definition.id,
                trigger_trace_id=ctx.trace_id,
                user_id=ctx.user_id,
            )
            recent_topics: list[str] = []
            if definition.dedup:
                recent_topics = await DedupLedger(session).recent_headlines(
                    definition.id, self.settings.topic_freshness_hours
                )

        url = self.resolve_webhook_url(definition)
        if not url:
            result = self._failure(
                definition.id,
                ErrorCode.WEBHOOK_NOT_CONFIGURED,
                f"No trigger webhook configured for '{definition.id}'",
                started=started,
                trace_id=ctx.trace_id,
                execution_id=execution.id,
            )
            await self._finish_external(trace.id, execution.id, result, response_payload=None)
            return result

        body = {
            **request.to_json(),
            "secrets": {"providerApiKey": self.settings.provider_api_key.get_secret_value()},
            "traceId": ctx.trace_id,
            "executionId": execution.id,
            "callbackUrl": resolve_callback_url(self.settings, request_host=request_host),
            "recentTopics": recent_topics,
        }

        response_payload: Any = None
        engine_execution_id: str | None = None
        try:
            response = await self._post(url, body, self._build_headers(request))
        except (httpx.UnsupportedProtocol, httpx.InvalidURL) as e:
            result = self._failure(
                definition.id,
                ErrorCode.WEBHOOK_INVALID,
                f"Trigger webhook URL for '{definition.id}' is invalid: {e}",
                retryable=False,
                started=started,
                trace_id=ctx.trace_id,
                execution_id=execution.id,
            )
        except httpx.TimeoutException:
            result = self._failure(
                definition.id,
                ErrorCode.TIMEOUT,
                f"Trigger webhook timed out after {self.settings.trigger_timeout_seconds:g}s",
                retryable=True,
                started=started,
                trace_id=ctx.trace_id,
                execution_id=execution.id,
            )
        except httpx.HTTPError as e:
            result = self._failure(
                definition.id,
                ErrorCode.NETWORK_ERROR,
                f"Trigger webhook unreachable: {type(e).__name__}",
                retryable=True,
                started=started,
                trace_id=ctx.trace_id,
                execution_id=execution.id,
            )
        else:
            try:
                response_payload = response.json() if response.content else None
            except ValueError:
                response_payload = {"body": response.text[:2000]}
            engine_execution_id = _engine_execution_id(response_payload)
            result = self._interpret_response(
                definition,
                response,
                response_payload,
                started,
                ctx.trace_id,
                execution.id,
                engine_execution_id,
            )

        await self._finish_external(
            trace.id,
            execution.id,
            result,
            response_payload=response_payload,
            engine_execution_id=engine_execution_id,
        )
        return result

    async def _post(self, url: str, body: dict[str, Any], headers: dict[str, str]) -> httpx.Response:
        timeout = self.settings.trigger_timeout_seconds
        if self._http_client is not None:
            return await self._http_client.post(url, json=body, headers=headers, timeout=timeout)
        async with httpx.AsyncClient(timeout=timeout) as client:
            return await client.post(url, json=body, headers=headers)

    def _interpret_response(
        self,
        definition: WorkflowDefinition,
        response: httpx.Response,
        payload: Any,
        started: float,
        trace_id: str,
        execution_id: str,
        engine_execution_id: str | None,
    ) -> WorkflowResult:
        rejected = isinstance(payload, dict) and payload.get("success") is False
        if response.is_success and not rejected:
            return WorkflowResult(
                success=True,
                data={
                    "status": ExecutionStatus.RUNNING.value,
                    "executionId": execution_id,
                    "traceId": trace_id,
                    "engineExecutionId": engine_execution_id,
                },
                metadata=ResultMetadata(
                    workflow_id=definition.id,
                    execution_id=execution_id,
                    trace_id=trace_id,
                    duration_ms=_elapsed_ms(started),
                ),
            )

        error = payload.get("error") if isinstance(payload, dict) else None
        if isinstance(error, dict):
            code = str(error.get("code") or f"HTTP_{response.status_code}")
            message = str(error.get("message") or response.reason_phrase)
        else:
            code = ErrorCode.ENGINE_REJECTED.value if response.is_success else f"HTTP_{response.status_code}"
            message = str(error) if error else f"Engine responded with HTTP {response.status_code}"
        return self._failure(
            definition.id,
            code,
            message,
            retryable=response.status_code >= 500,
            started=started,
            trace_id=trace_id,
            execution_id=execution_id,
            details={"status": response.status_code},
        )

    async def _finish_external(
        self,
        trace_record_id: str,
        execution_id: str,
        result: WorkflowResult,
        *,
        response_payload: Any,
        engine_execution_id: str | None = None,
    ) -> None:
        async with self.session_factory() as session:
            await TraceRepository(session).finalize_trigger(
                trace_record_id,
                overall_status=TraceStatus.SUCCESS if result.success else TraceStatus.FAILED,
                duration_ms=result.metadata.duration_ms,
                response_payload=response_payload,
                error_code=result.error.code if result.error else None,
                error_detail=result.error.message if result.error else None,
                external_execution_id=engine_execution_id,
                execution_id=execution_id,
            )
            executions = ExecutionRepository(session)
            if engine_execution_id:
                await executions.set_external_execution_id(execution_id, engine_execution_id)
            if not result.success:
                await executions.apply_status(execution_id, ExecutionStatus.FAILED)

        if result.success:
            logger.info("Triggered %s (execution %s)", result.metadata.workflow_id, execution_id)
        else:
            logger.warning(
                "Trigger of %s failed: %s %s",
                result.metadata.workflow_id,
                result.error.code if result.error else "?",
                result.error.message if result.error else "",
            )

    @staticmethod
    def _failure(
        workflow_id: str,
        code: ErrorCode | str,
        message: str,
        *,
        started: float,
        retryable: bool = False,
        trace_id: str | None = None,
        execution_id: str | None = None,
        details: dict[str, Any] | None = None,
    ) -> WorkflowResult:
        return WorkflowResult(
            success=False,
            error=WorkflowError(
                code=code.value if isinstance(code, ErrorCode) else code,
                message=message,
                retryable=retryable,
                details=details,
            ),
            metadata=ResultMetadata(
                workflow_id=workflow_id,
                execution_id=execution_id,
                trace_id=trace_id,
                duration_ms=_elapsed_ms(started),
            ),
        )
