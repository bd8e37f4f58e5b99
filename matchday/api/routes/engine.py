"""Engine connection status and workflow sync."""

import logging
from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Request

from matchday.api.auth import verify_admin_key
from matchday.api.deps import get_engine, get_registry, get_webhook_cache
from matchday.api.rate_limit import limiter
from matchday.compiler import ManifestCompiler
from matchday.engine.client import EngineClient
from matchday.engine.sync import WorkflowSyncService
from matchday.engine.webhook_cache import WebhookUrlCache
from matchday.settings import get_settings
from matchday.workflows.callback_url import resolve_callback_url
from matchday.workflows.registry import WorkflowRegistry

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/engine", tags=["Engine"])


def _service(
    engine: EngineClient | None,
    cache: WebhookUrlCache,
    registry: WorkflowRegistry,
) -> WorkflowSyncService:
    if engine is None:
        raise HTTPException(status_code=503, detail="Engine API is not configured")
    settings = get_settings()
    return WorkflowSyncService(
        engine,
        cache,
        registry,
        ManifestCompiler(resolve_callback_url(settings)),
        manifests_dir=settings.manifests_dir,
    )


@router.get("/status")
async def engine_status(
    engine: EngineClient | None = Depends(get_engine),
    cache: WebhookUrlCache = Depends(get_webhook_cache),
    registry: WorkflowRegistry = Depends(get_registry),
) -> dict[str, Any]:
    if engine is None:
        return {"configured": False, "workflows": []}
    workflows = await _service(engine, cache, registry).status()
    return {"configured": True, "workflows": workflows}


@router.post("/sync", dependencies=[Depends(verify_admin_key)])
@limiter.limit("5/minute")
async def sync_engine(
    request: Request,
    engine: EngineClient | None = Depends(get_engine),
    cache: WebhookUrlCache = Depends(get_webhook_cache),
    registry: WorkflowRegistry = Depends(get_registry),
) -> dict[str, Any]:
    """Create missing engine workflows and refresh the webhook cache."""
    outcomes = await _service(engine, cache, registry).sync()
    return {
        "results": [o.to_dict() for o in outcomes],
        "failed": sum(1 for o in outcomes if o.action == "failed"),
    }
