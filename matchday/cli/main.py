"""CLI entry point.

Commands:
- serve: run the API server
- workflows / manifests: list what is registered
- compile: compile a manifest to an engine workflow JSON
- trigger: route one workflow request
- sync: push registry workflows to the engine
- cleanup-topics: apply the used-topic retention window
- validate: check a run's step outputs against its manifest
"""

import asyncio
import json
from pathlib import Path
from typing import Annotated, Optional

import typer
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from matchday import __version__
from matchday.logging_config import configure_logging

app = typer.Typer(
    name="matchday",
    help="Workflow orchestration for the football newsletter pipeline",
    add_completion=False,
    no_args_is_help=True,
)

console = Console()


@app.callback()
def main(
    log_level: Annotated[
        Optional[str],  # noqa: UP007
        typer.Option("--log-level", help="Override LOG_LEVEL"),
    ] = None,
) -> None:
    configure_logging(log_level.upper() if log_level else None)  # type: ignore[arg-type]


@app.command()
def version() -> None:
    """Print the installed version."""
    console.print(f"matchday {__version__}")


@app.command()
def serve(
    host: Annotated[str, typer.Option("--host", "-h", help="Host to bind to")] = "0.0.0.0",  # noqa: S104
    port: Annotated[int, typer.Option("--port", "-p", help="Port to bind to")] = 8000,
    reload: Annotated[bool, typer.Option("--reload", "-r", help="Enable auto-reload for development")] = False,
) -> None:
    """Start the API server with uvicorn."""
    import uvicorn

    console.print(
        Panel(
            f"[bold green]Starting Matchday API Server[/bold green]\nHost: {host}\nPort: {port}\nReload: {reload}",
            title="Matchday",
            border_style="green",
        )
    )
    uvicorn.run("matchday.api.main:get_app", factory=True, host=host, port=port, reload=reload, log_level="info")


@app.command()
def workflows() -> None:
    """List registered workflows."""
    from matchday.workflows.registry import get_workflow_registry

    table = Table(title="Workflows", show_header=True)
    table.add_column("ID", style="cyan")
    table.add_column("Name")
    table.add_column("Mode")
    table.add_column("Manifest")
    table.add_column("Dedup", justify="center")
    for definition in get_workflow_registry().list():
        table.add_row(
            definition.id,
            definition.name,
            definition.mode.value,
            definition.manifest_id or "-",
            "yes" if definition.dedup else "",
        )
    console.print(table)


@app.command()
def manifests() -> None:
    """List available manifests and their warnings."""
    from matchday.compiler import ManifestCompiler, list_manifests, load_manifest
    from matchday.settings import get_settings
    from matchday.workflows.callback_url import resolve_callback_url

    directory = get_settings().manifests_dir
    compiler = ManifestCompiler(resolve_callback_url())
    table = Table(title="Manifests", show_header=True)
    table.add_column("ID", style="cyan")
    table.add_column("Version")
    table.add_column("Steps")
    table.add_column("Warnings", style="yellow")
    for manifest_id in list_manifests(directory):
        manifest = load_manifest(manifest_id, directory)
        if manifest is None:
            continue
        table.add_row(
            manifest.id,
            manifest.version,
            ", ".join(s.id for s in manifest.steps),
            "\n".join(compiler.validate(manifest)),
        )
    console.print(table)


@app.command(name="compile")
def compile_manifest(
    manifest_id: Annotated[str, typer.Argument(help="Manifest id")],
    up_to_step: Annotated[
        Optional[str],  # noqa: UP007
        typer.Option("--up-to", help="Stop after this step"),
    ] = None,
    troubleshoot: Annotated[bool, typer.Option("--troubleshoot", "-t", help="Add diagnostic callbacks")] = False,
    output: Annotated[
        Optional[Path],  # noqa: UP007
        typer.Option("--output", "-o", help="Write the engine workflow JSON here"),
    ] = None,
) -> None:
    """Compile a manifest into an engine workflow."""
    from matchday.compiler import CompileOptions, ManifestCompiler, load_manifest
    from matchday.exceptions import ManifestError
    from matchday.settings import get_settings
    from matchday.workflows.callback_url import resolve_callback_url

    try:
        manifest = load_manifest(manifest_id, get_settings().manifests_dir)
    except ManifestError as e:
        console.print(f"[red]{e}[/red]")
        raise typer.Exit(code=1) from e
    if manifest is None:
        console.print(f"[red]Manifest '{manifest_id}' not found[/red]")
        raise typer.Exit(code=1)

    compiler = ManifestCompiler(resolve_callback_url())
    graph = compiler.compile(manifest, CompileOptions(up_to_step=up_to_step, troubleshoot=troubleshoot))
    document = json.dumps(graph.to_engine_workflow(manifest.name), indent=2)

    if output is None:
        console.print_json(document)
    else:
        output.write_text(document + "\n", encoding="utf-8")
        console.print(
            f"[green]Wrote {len(graph.nodes)} nodes ({', '.join(graph.steps_built)}) to {output}[/green]"
        )


@app.command()
def trigger(
    workflow_id: Annotated[str, typer.Argument(help="Workflow id")],
    action: Annotated[str, typer.Option("--action", "-a")] = "execute",
    payload: Annotated[str, typer.Option("--payload", help="JSON object payload")] = "{}",
) -> None:
    """Route one workflow request and print the result."""
    try:
        body = json.loads(payload)
    except json.JSONDecodeError as e:
        console.print(f"[red]--payload is not valid JSON: {e}[/red]")
        raise typer.Exit(code=2) from e
    if not isinstance(body, dict):
        console.print("[red]--payload must be a JSON object[/red]")
        raise typer.Exit(code=2)

    result = asyncio.run(_trigger(workflow_id, action, body))
    console.print_json(json.dumps(result.to_json()))
    if not result.success:
        raise typer.Exit(code=1)


async def _trigger(workflow_id: str, action: str, payload: dict):
    from matchday.engine.webhook_cache import WebhookUrlCache
    from matchday.storage import close_db
    from matchday.workflows.handlers import default_handlers
    from matchday.workflows.registry import get_workflow_registry
    from matchday.workflows.router import WorkflowRouter

    cache = WebhookUrlCache()
    await _warm_cache(cache)
    router = WorkflowRouter(registry=get_workflow_registry(), cache=cache, handlers=default_handlers())
    try:
        return await router.route(workflow_id, action, payload, user_id="cli", source_service="cli")
    finally:
        await close_db()


async def _warm_cache(cache) -> list:
    from matchday.compiler import ManifestCompiler
    from matchday.engine.client import get_engine_client, reset_engine_client
    from matchday.engine.sync import WorkflowSyncService
    from matchday.settings import get_settings
    from matchday.workflows.callback_url import resolve_callback_url
    from matchday.workflows.registry import get_workflow_registry

    client = get_engine_client()
    if client is None:
        return []
    settings = get_settings()
    try:
        return await WorkflowSyncService(
            client,
            cache,
            get_workflow_registry(),
            ManifestCompiler(resolve_callback_url(settings)),
            manifests_dir=settings.manifests_dir,
        ).sync()
    finally:
        await reset_engine_client()


@app.command()
def sync() -> None:
    """Create missing engine workflows from their manifests."""
    from matchday.engine.webhook_cache import WebhookUrlCache
    from matchday.settings import get_settings

    if not get_settings().engine_configured:
        console.print("[yellow]ENGINE_API_URL / ENGINE_API_KEY not set; nothing to sync.[/yellow]")
        raise typer.Exit(code=1)

    outcomes = asyncio.run(_warm_cache(WebhookUrlCache()))
    table = Table(title="Engine Sync", show_header=True)
    table.add_column("Workflow", style="cyan")
    table.add_column("Action")
    table.add_column("Engine ID")
    table.add_column("Webhook")
    table.add_column("Detail", style="dim")
    colors = {"created": "green", "existing": "blue", "skipped": "yellow", "failed": "red"}
    for o in outcomes:
        color = colors.get(o.action, "white")
        table.add_row(
            o.workflow_id,
            f"[{color}]{o.action}[/{color}]",
            o.engine_workflow_id or "-",
            o.webhook_url or "-",
            o.detail,
        )
    console.print(table)
    if any(o.action == "failed" for o in outcomes):
        raise typer.Exit(code=1)


@app.command(name="cleanup-topics")
def cleanup_topics(
    hours_old: Annotated[
        Optional[int],  # noqa: UP007
        typer.Option("--hours-old", help="Retention window (defaults to TOPIC_RETENTION_HOURS)"),
    ] = None,
) -> None:
    """Delete used topics older than the retention window."""
    from matchday.settings import get_settings

    hours = hours_old or get_settings().topic_retention_hours
    deleted = asyncio.run(_cleanup_topics(hours))
    console.print(f"[green]Deleted {deleted} used topics older than {hours}h[/green]")


async def _cleanup_topics(hours: int) -> int:
    from matchday.storage import close_db, get_committing_session
    from matchday.workflows.dedup import DedupLedger

    try:
        async with get_committing_session() as session:
            return await DedupLedger(session).cleanup(hours)
    finally:
        await close_db()


@app.command()
def validate(
    manifest_id: Annotated[str, typer.Argument(help="Manifest id")],
    trace_id: Annotated[str, typer.Argument(help="Trace id of a troubleshoot run")],
    up_to_step: Annotated[
        Optional[str],  # noqa: UP007
        typer.Option("--up-to", help="Only check steps up to this one"),
    ] = None,
) -> None:
    """Check a run's recorded step outputs against the manifest rules."""
    from matchday.compiler import load_manifest, validate_step_traces
    from matchday.settings import get_settings

    manifest = load_manifest(manifest_id, get_settings().manifests_dir)
    if manifest is None:
        console.print(f"[red]Manifest '{manifest_id}' not found[/red]")
        raise typer.Exit(code=1)

    traces = asyncio.run(_load_traces(trace_id))
    if not traces:
        console.print(f"[yellow]No traces recorded for {trace_id}[/yellow]")
        raise typer.Exit(code=1)

    report = validate_step_traces(manifest, traces, up_to_step)
    table = Table(title=f"Step validation for {trace_id}", show_header=True)
    table.add_column("Step", style="cyan")
    table.add_column("Status")
    table.add_column("Source")
    table.add_column("Checks")
    colors = {"pass": "green", "fail": "red", "missing": "yellow"}
    for step in report.steps:
        color = colors[step.status]
        table.add_row(
            step.step_id,
            f"[{color}]{step.status}[/{color}]",
            step.source,
            "\n".join(f"{'ok' if c.passed else 'FAIL'} {c.check} {c.detail}".rstrip() for c in step.checks),
        )
    console.print(table)
    if not report.ok:
        raise typer.Exit(code=1)


async def _load_traces(trace_id: str) -> list:
    from matchday.dal import TraceRepository
    from matchday.storage import close_db, get_session

    try:
        async with get_session() as session:
            return await TraceRepository(session).list_for_trace(trace_id)
    finally:
        await close_db()


if __name__ == "__main__":
    app()
