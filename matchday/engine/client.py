"""REST client for the external automation engine.

Covers workflow management (used by sync) and execution lookups (used
by the poller and reconciliation). Failures surface as
``EngineClientError``.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any

import httpx
from pydantic import BaseModel, ConfigDict, Field, ValidationError
from pydantic.alias_generators import to_camel

from matchday.exceptions import EngineClientError
from matchday.settings import Settings, get_settings

logger = logging.getLogger(__name__)


class EngineClientConfig(BaseModel):
    """Connection settings for the engine API."""

    api_url: str = Field(..., description="Engine REST API base URL")
    api_key: str = Field(..., description="Engine API key")
    api_key_header: str = "X-N8N-API-KEY"
    webhook_base_url: str | None = Field(None, description="Base URL for production webhooks")
    timeout: float = 10.0

    @property
    def webhook_base(self) -> str:
        if self.webhook_base_url:
            return self.webhook_base_url.rstrip("/")
        # API URLs look like https://host/api/v1
        base = self.api_url.rstrip("/")
        if "/api/" in base + "/":
            base = base[: (base + "/").index("/api/")]
        return base


class EngineExecution(BaseModel):
    """One execution as reported by the engine."""

    # The engine reports numeric ids
    model_config = ConfigDict(
        alias_generator=to_camel, populate_by_name=True, extra="ignore", coerce_numbers_to_str=True
    )

    id: str
    workflow_id: str | None = None
    finished: bool = False
    status: str | None = None
    mode: str | None = None
    started_at: datetime | None = None
    stopped_at: datetime | None = None
    data: dict[str, Any] | None = None

    @property
    def result_data(self) -> dict[str, Any]:
        value = (self.data or {}).get("resultData")
        return value if isinstance(value, dict) else {}

    @property
    def last_node_executed(self) -> str | None:
        return self.result_data.get("lastNodeExecuted")

    @property
    def error_message(self) -> str | None:
        error = self.result_data.get("error")
        return error.get("message") if isinstance(error, dict) else None

    @property
    def error_node(self) -> str | None:
        error = self.result_data.get("error")
        if isinstance(error, dict) and isinstance(error.get("node"), dict):
            return error["node"].get("name")
        return None

    @property
    def is_finished(self) -> bool:
        return self.finished or self.status in ("success", "error", "crashed", "canceled")

    @property
    def duration_ms(self) -> int | None:
        if self.started_at and self.stopped_at:
            return int((self.stopped_at - self.started_at).total_seconds() * 1000)
        return None


class EngineClient:
    """Async HTTP client for the engine REST API."""

    def __init__(self, config: EngineClientConfig, *, http_client: httpx.AsyncClient | None = None):
        self.config = config
        self._http_client = http_client

    @classmethod
    def from_settings(cls, settings: Settings | None = None) -> EngineClient | None:
        settings = settings or get_settings()
        if not settings.engine_configured:
            return None
        return cls(
            EngineClientConfig(
                api_url=settings.engine_api_url or "",
                api_key=settings.engine_api_key.get_secret_value(),
                api_key_header=settings.engine_api_key_header,
                webhook_base_url=settings.engine_webhook_base_url,
                timeout=settings.engine_api_timeout_seconds,
            )
        )

    def _get_http_client(self) -> httpx.AsyncClient:
        if self._http_client is None:
            self._http_client = httpx.AsyncClient(
                timeout=self.config.timeout,
                limits=httpx.Limits(max_keepalive_connections=10, max_connections=50),
            )
        return self._http_client

    async def close(self) -> None:
        if self._http_client is not None:
            await self._http_client.aclose()
            self._http_client = None

    async def _request(
        self,
        method: str,
        path: str,
        json: dict | None = None,
        params: dict | None = None,
    ) -> Any:
        url = f"{self.config.api_url.rstrip('/')}{path}"
        try:
            response = await self._get_http_client().request(
                method,
                url,
                headers={self.config.api_key_header: self.config.api_key, "Accept": "application/json"},
                json=json,
                params=params,
            )
        except httpx.TimeoutException as e:
            raise EngineClientError(f"Engine request timed out: {method} {path}") from e
        except httpx.HTTPError as e:
            raise EngineClientError(f"Engine request failed: {method} {path}: {type(e).__name__}") from e

        if response.status_code == 404:
            return None
        if response.status_code >= 400:
            try:
                detail = response.json()
            except ValueError:
                detail = {"body": response.text[:500]}
            raise EngineClientError(
                f"Engine returned HTTP {response.status_code} for {method} {path}",
                detail if isinstance(detail, dict) else {"body": detail},
                status_code=response.status_code,
            )
        if not response.content:
            return {}
        try:
            return response.json()
        except ValueError as e:
            raise EngineClientError(
                f"Engine returned a non-JSON body for {method} {path}",
                {"body": response.text[:500]},
            ) from e

    # Workflows

    async def list_workflows(self) -> list[dict[str, Any]]:
        data = await self._request("GET", "/workflows")
        return list((data or {}).get("data", []))

    async def get_workflow(self, workflow_id: str) -> dict[str, Any] | None:
        return await self._request("GET", f"/workflows/{workflow_id}")

    async def find_workflow_by_name(self, name: str) -> dict[str, Any] | None:
        for workflow in await self.list_workflows():
            if workflow.get("name") == name:
                return workflow
        return None

    async def create_workflow(self, definition: dict[str, Any]) -> dict[str, Any]:
        body = {
            "name": definition["name"],
            "nodes": definition.get("nodes", []),
            "connections": definition.get("connections", {}),
            "settings": definition.get("settings") or {"executionOrder": "v1"},
        }
        created = await self._request("POST", "/workflows", json=body)
        if not created:
            raise EngineClientError(f"Engine did not return the created workflow '{body['name']}'")
        logger.info("Created engine workflow %s (%s)", created.get("id"), body["name"])
        return created

    async def update_workflow(self, workflow_id: str, definition: dict[str, Any]) -> dict[str, Any]:
        updated = await self._request("PUT", f"/workflows/{workflow_id}", json=definition)
        if updated is None:
            raise EngineClientError(f"Engine workflow {workflow_id} not found", status_code=404)
        return updated

    async def activate_workflow(self, workflow_id: str) -> bool:
        return await self._request("POST", f"/workflows/{workflow_id}/activate") is not None

    async def deactivate_workflow(self, workflow_id: str) -> bool:
        return await self._request("POST", f"/workflows/{workflow_id}/deactivate") is not None

    # Executions

    async def list_recent_executions(
        self,
        workflow_id: str,
        limit: int = 5,
        *,
        status: str | None = None,
    ) -> list[EngineExecution]:
        """Most recent executions of a workflow, newest first."""
        params: dict[str, Any] = {"workflowId": workflow_id, "limit": limit, "includeData": "true"}
        if status:
            params["status"] = status
        data = await self._request("GET", "/executions", params=params)
        return [_parse_execution(item) for item in (data or {}).get("data", [])]

    async def get_execution(self, execution_id: str) -> EngineExecution | None:
        data = await self._request("GET", f"/executions/{execution_id}", params={"includeData": "true"})
        return _parse_execution(data) if data else None

    def webhook_url(self, path: str) -> str:
        return f"{self.config.webhook_base}/webhook/{path.lstrip('/')}"


def _parse_execution(item: Any) -> EngineExecution:
    try:
        return EngineExecution.model_validate(item)
    except ValidationError as e:
        raise EngineClientError(
            f"Unexpected execution shape from engine: {e.error_count()} errors", {"body": item}
        ) from e


_engine_client: EngineClient | None = None


def get_engine_client() -> EngineClient | None:
    """Shared client built from settings, or None when the engine is not configured."""
    global _engine_client
    if _engine_client is None:
        _engine_client = EngineClient.from_settings()
    return _engine_client


async def reset_engine_client() -> None:
    global _engine_client
    if _engine_client is not None:
        await _engine_client.close()
    _engine_client = None
