"""Manifest inspection, compilation and run validation."""

from typing import Any

from fastapi import APIRouter, HTTPException, Query, Request

from matchday.compiler import (
    CompileOptions,
    ManifestCompiler,
    WorkflowManifest,
    list_manifests,
    load_manifest,
    validate_step_traces,
)
from matchday.dal import TraceRepository
from matchday.settings import get_settings
from matchday.storage import get_session
from matchday.workflows.callback_url import resolve_callback_url

router = APIRouter(prefix="/manifests", tags=["Manifests"])


def _load(manifest_id: str) -> WorkflowManifest:
    manifest = load_manifest(manifest_id, get_settings().manifests_dir)
    if manifest is None:
        raise HTTPException(status_code=404, detail=f"Manifest '{manifest_id}' not found")
    return manifest


@router.get("")
async def get_manifests() -> dict[str, Any]:
    manifests = [_load(manifest_id) for manifest_id in list_manifests(get_settings().manifests_dir)]
    return {
        "manifests": [
            {
                "id": m.id,
                "name": m.name,
                "version": m.version,
                "steps": [s.id for s in m.steps],
            }
            for m in manifests
        ]
    }


@router.get("/{manifest_id}")
async def get_manifest(manifest_id: str) -> dict[str, Any]:
    return _load(manifest_id).model_dump(by_alias=True, mode="json", exclude_none=True)


@router.get("/{manifest_id}/compile")
async def compile_manifest(
    request: Request,
    manifest_id: str,
    up_to_step: str | None = Query(default=None, alias="upToStep"),
    troubleshoot: bool = False,
) -> dict[str, Any]:
    """Compile a manifest to an engine graph without deploying it."""
    manifest = _load(manifest_id)
    compiler = ManifestCompiler(
        resolve_callback_url(request_host=request.headers.get("X-Forwarded-Host"))
    )
    graph = compiler.compile(manifest, CompileOptions(up_to_step=up_to_step, troubleshoot=troubleshoot))
    return {
        "manifestId": manifest.id,
        "version": manifest.version,
        "warnings": compiler.validate(manifest),
        "graph": graph.to_dict(),
        "workflow": graph.to_engine_workflow(manifest.name),
    }


@router.get("/{manifest_id}/validate")
async def validate_run(
    manifest_id: str,
    trace_id: str = Query(..., alias="traceId"),
    up_to_step: str | None = Query(default=None, alias="upToStep"),
) -> dict[str, Any]:
    """Check a run's recorded step outputs against the manifest rules."""
    manifest = _load(manifest_id)
    async with get_session() as session:
        traces = await TraceRepository(session).list_for_trace(trace_id)
    if not traces:
        raise HTTPException(status_code=404, detail="Trace not found")

    report = validate_step_traces(manifest, traces, up_to_step)
    return {**report.model_dump(mode="json"), "ok": report.ok}
