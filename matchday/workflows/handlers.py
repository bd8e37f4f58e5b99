"""In-process handlers for ``local`` workflows."""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable
from typing import Any

from matchday.compiler import CompileOptions, ManifestCompiler, NodeKind, load_manifest
from matchday.exceptions import ValidationError
from matchday.workflows.callback_url import resolve_callback_url
from matchday.workflows.types import WorkflowRequest

logger = logging.getLogger(__name__)

Handler = Callable[[WorkflowRequest], Awaitable[dict[str, Any]]]


class HandlerRegistry:
    """Name to coroutine mapping for local workflow handlers."""

    def __init__(self) -> None:
        self._handlers: dict[str, Handler] = {}

    def register(self, name: str, handler: Handler) -> None:
        if name in self._handlers:
            logger.warning("Replacing local handler %s", name)
        self._handlers[name] = handler

    def get(self, name: str | None) -> Handler | None:
        return self._handlers.get(name) if name else None

    def names(self) -> list[str]:
        return sorted(self._handlers)


async def manifest_audit(request: WorkflowRequest) -> dict[str, Any]:
    """Compile a manifest and report its warnings and graph shape."""
    manifest_id = request.payload.get("manifestId")
    if not isinstance(manifest_id, str) or not manifest_id:
        raise ValidationError("payload.manifestId is required")

    manifest = load_manifest(manifest_id)
    if manifest is None:
        raise ValidationError(f"Manifest '{manifest_id}' not found")

    compiler = ManifestCompiler(resolve_callback_url())
    graph = compiler.compile(
        manifest,
        CompileOptions(
            up_to_step=request.payload.get("upToStep"),
            troubleshoot=bool(request.payload.get("troubleshoot", False)),
        ),
    )
    return {
        "manifestId": manifest.id,
        "version": manifest.version,
        "warnings": compiler.validate(manifest),
        "stepsBuilt": graph.steps_built,
        "nodeCount": len(graph.nodes),
        "delayNodes": len(graph.nodes_of_kind(NodeKind.DELAY)),
        "callbackNodes": len(graph.nodes_of_kind(NodeKind.CALLBACK)),
    }


def default_handlers() -> HandlerRegistry:
    handlers = HandlerRegistry()
    handlers.register("manifestAudit", manifest_audit)
    return handlers
