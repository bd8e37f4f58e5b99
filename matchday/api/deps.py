"""Shared FastAPI dependencies."""

from fastapi import Request

from matchday.engine.client import EngineClient, get_engine_client
from matchday.engine.webhook_cache import WebhookUrlCache
from matchday.storage import get_committing_session
from matchday.workflows.handlers import HandlerRegistry, default_handlers
from matchday.workflows.registry import WorkflowRegistry, get_workflow_registry
from matchday.workflows.router import WorkflowRouter


def get_webhook_cache(request: Request) -> WebhookUrlCache:
    cache = getattr(request.app.state, "webhook_cache", None)
    if cache is None:
        cache = request.app.state.webhook_cache = WebhookUrlCache()
    return cache


def get_handler_registry(request: Request) -> HandlerRegistry:
    handlers = getattr(request.app.state, "handlers", None)
    if handlers is None:
        handlers = request.app.state.handlers = default_handlers()
    return handlers


def get_registry() -> WorkflowRegistry:
    return get_workflow_registry()


def get_engine() -> EngineClient | None:
    return get_engine_client()


def get_workflow_router(request: Request) -> WorkflowRouter:
    return WorkflowRouter(
        registry=get_registry(),
        cache=get_webhook_cache(request),
        handlers=get_handler_registry(request),
        session_factory=get_committing_session,
    )
