"""Registry to engine synchronization.

For every external workflow the engine either already has a workflow of
the same name (left untouched; its webhook is cached) or gets one
compiled from the workflow's manifest, created and activated.
"""

from __future__ import annotations

import logging
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Any, Literal

from matchday.compiler import ManifestCompiler, load_manifest
from matchday.engine.client import EngineClient
from matchday.engine.webhook_cache import WebhookUrlCache
from matchday.exceptions import EngineClientError, ManifestError
from matchday.workflows.registry import WorkflowDefinition, WorkflowRegistry

logger = logging.getLogger(__name__)

WEBHOOK_NODE_TYPE = "n8n-nodes-base.webhook"


@dataclass
class SyncOutcome:
    workflow_id: str
    action: Literal["existing", "created", "skipped", "failed"]
    engine_workflow_id: str | None = None
    webhook_url: str | None = None
    detail: str = ""

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


def webhook_path_from(engine_workflow: dict[str, Any]) -> str | None:
    for node in engine_workflow.get("nodes") or []:
        if node.get("type") == WEBHOOK_NODE_TYPE:
            path = (node.get("parameters") or {}).get("path")
            if path:
                return str(path)
    return None


class WorkflowSyncService:
    """Pushes external registry workflows to the engine and fills the cache."""

    def __init__(
        self,
        client: EngineClient,
        cache: WebhookUrlCache,
        registry: WorkflowRegistry,
        compiler: ManifestCompiler,
        *,
        manifests_dir: str | Path | None = None,
    ) -> None:
        self.client = client
        self.cache = cache
        self.registry = registry
        self.compiler = compiler
        self.manifests_dir = manifests_dir

    async def sync(self) -> list[SyncOutcome]:
        outcomes = []
        for definition in self.registry.external():
            try:
                outcome = await self._sync_one(definition)
            except (EngineClientError, ManifestError) as e:
                logger.warning("Sync of workflow %s failed: %s", definition.id, e)
                outcome = SyncOutcome(definition.id, "failed", detail=str(e))
            outcomes.append(outcome)

        logger.info(
            "Engine sync finished: %s",
            ", ".join(f"{o.workflow_id}={o.action}" for o in outcomes) or "nothing to sync",
        )
        return outcomes

    async def _sync_one(self, definition: WorkflowDefinition) -> SyncOutcome:
        existing = await self.client.find_workflow_by_name(definition.name)
        if existing is not None:
            engine_id = str(existing.get("id")) if existing.get("id") is not None else None
            if engine_id and not existing.get("nodes"):
                existing = await self.client.get_workflow(engine_id) or existing
            url = self._cache(definition, existing, engine_id)
            return SyncOutcome(definition.id, "existing", engine_id, url)

        if not definition.manifest_id:
            return SyncOutcome(definition.id, "skipped", detail="no manifest to build from")

        manifest = load_manifest(definition.manifest_id, self.manifests_dir)
        if manifest is None:
            return SyncOutcome(definition.id, "skipped", detail=f"manifest '{definition.manifest_id}' not found")

        graph = self.compiler.compile(manifest)
        created = await self.client.create_workflow(graph.to_engine_workflow(definition.name))
        engine_id = str(created["id"])
        await self.client.activate_workflow(engine_id)
        url = self._cache(definition, created, engine_id)
        return SyncOutcome(definition.id, "created", engine_id, url)

    def _cache(self, definition: WorkflowDefinition, engine_workflow: dict[str, Any], engine_id: str | None) -> str | None:
        path = webhook_path_from(engine_workflow) or definition.webhook_path
        url = self.client.webhook_url(path) if path else None
        self.cache.set(definition.id, url=url, engine_workflow_id=engine_id)
        return url

    async def status(self) -> list[dict[str, Any]]:
        """Registry workflows alongside what the engine currently has."""
        engine_by_name = {w.get("name"): w for w in await self.client.list_workflows()}
        report = []
        for definition in self.registry.external():
            engine = engine_by_name.get(definition.name)
            report.append(
                {
                    "workflow_id": definition.id,
                    "name": definition.name,
                    "in_engine": engine is not None,
                    "engine_workflow_id": engine.get("id") if engine else None,
                    "active": bool(engine.get("active")) if engine else False,
                    "cached_webhook_url": self.cache.get_url(definition.id),
                }
            )
        return report
