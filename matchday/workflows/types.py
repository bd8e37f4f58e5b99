"""Request and result models shared by the router and its handlers."""

from __future__ import annotations

import enum
from datetime import UTC, datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class ErrorCode(str, enum.Enum):
    WORKFLOW_NOT_FOUND = "WORKFLOW_NOT_FOUND"
    WEBHOOK_NOT_CONFIGURED = "WEBHOOK_NOT_CONFIGURED"
    WEBHOOK_INVALID = "WEBHOOK_INVALID"
    HANDLER_NOT_FOUND = "HANDLER_NOT_FOUND"
    EXECUTION_ERROR = "EXECUTION_ERROR"
    TIMEOUT = "TIMEOUT"
    NETWORK_ERROR = "NETWORK_ERROR"
    ENGINE_REJECTED = "ENGINE_REJECTED"


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_json(self) -> dict[str, Any]:
        return self.model_dump(by_alias=True, mode="json", exclude_none=True)


class WorkflowContext(CamelModel):
    user_id: str = "system"
    trace_id: str
    requested_at: datetime = Field(default_factory=lambda: datetime.now(UTC))
    source_service: str = "api"
    attempt: int = 1


class WorkflowRequest(CamelModel):
    action: str
    payload: dict[str, Any] = Field(default_factory=dict)
    context: WorkflowContext


class WorkflowError(CamelModel):
    code: str
    message: str
    retryable: bool = False
    details: dict[str, Any] | None = None


class ResultMetadata(CamelModel):
    workflow_id: str
    execution_id: str | None = None
    trace_id: str | None = None
    executed_at: datetime = Field(default_factory=lambda: datetime.now(UTC))
    duration_ms: int = 0


class WorkflowResult(CamelModel):
    """Outcome of routing one workflow request.

    For external workflows a successful result only means the engine
    accepted the run; ``data.status`` is then ``"running"``.
    """

    success: bool
    data: dict[str, Any] | None = None
    error: WorkflowError | None = None
    metadata: ResultMetadata
