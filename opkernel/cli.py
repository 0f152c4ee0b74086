from __future__ import annotations

"""Command line entrypoints for the operation kernel."""

import asyncio
import json
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

import typer
import uvicorn
from jsonschema import Draft202012Validator
from pydantic import ValidationError

from opkernel.src.admin.server import create_app
from opkernel.src.core.record import RunRecord, load_record_schema
from opkernel.src.core.registry import InMemoryRegistry
from opkernel.src.core.settings import KernelSettings, load_settings
from opkernel.src.core.telemetry import EventLogSink, JsonLinesSink
from opkernel.src.core.transport import HttpTransport, RemoteExecutionError
from opkernel.src.core.types import ExecutionState, TaskDescriptor
from opkernel.src.kernel import build_kernel


app = typer.Typer(help="Run and inspect operation kernel tasks.")
operations_app = typer.Typer(help="Inspect operation catalogs.")
record_app = typer.Typer(help="Work with exported run records.")
admin_app = typer.Typer(help="Administrative HTTP surface.")
app.add_typer(operations_app, name="operations")
app.add_typer(record_app, name="record")
app.add_typer(admin_app, name="admin")


def _load_json_file(path: Path) -> Any:
    try:
        content = path.read_text(encoding="utf-8")
    except OSError as exc:
        typer.secho(f"Failed to read {path}: {exc}", err=True, fg=typer.colors.RED)
        raise typer.Exit(code=1) from exc
    try:
        return json.loads(content)
    except json.JSONDecodeError as exc:
        typer.secho(f"Invalid JSON in {path}: {exc}", err=True, fg=typer.colors.RED)
        raise typer.Exit(code=1) from exc


def _load_registry(path: Optional[Path]) -> InMemoryRegistry:
    registry = InMemoryRegistry()
    if path is None:
        return registry
    payload = _load_json_file(path)
    if isinstance(payload, dict):
        payload = payload.get("operations", [])
    if not isinstance(payload, list):
        typer.secho(f"{path} must contain a list of operation definitions", err=True, fg=typer.colors.RED)
        raise typer.Exit(code=1)
    try:
        registry.register_many(payload)
    except (TypeError, ValueError) as exc:
        typer.secho(f"Invalid operation definition in {path}: {exc}", err=True, fg=typer.colors.RED)
        raise typer.Exit(code=1) from exc
    return registry


def _load_task(path: Path, goal: Optional[str]) -> TaskDescriptor:
    payload = _load_json_file(path)
    context: Dict[str, Any] = {}
    if isinstance(payload, dict):
        goal = goal or payload.get("goal")
        context = payload.get("context") or {}
        payload = payload.get("script", [])
    if not isinstance(payload, list):
        typer.secho(f"{path} must contain a list of operation calls", err=True, fg=typer.colors.RED)
        raise typer.Exit(code=1)
    try:
        return TaskDescriptor.scripted(goal or path.stem, payload, context=context)
    except (TypeError, ValueError) as exc:
        typer.secho(f"Invalid script in {path}: {exc}", err=True, fg=typer.colors.RED)
        raise typer.Exit(code=1) from exc


def _load_settings(path: Optional[Path], **overrides: Any) -> KernelSettings:
    try:
        return load_settings(path, overrides)
    except (OSError, ValueError) as exc:
        typer.secho(f"Invalid settings: {exc}", err=True, fg=typer.colors.RED)
        raise typer.Exit(code=1) from exc


def _load_record(path: Path, *, return_raw: bool = False) -> RunRecord | Tuple[RunRecord, Dict[str, Any]]:
    raw_payload = _load_json_file(path)
    try:
        record = RunRecord.model_validate(raw_payload)
    except ValidationError as exc:
        typer.secho("Run record validation failed:", err=True, fg=typer.colors.RED)
        typer.echo(exc)
        raise typer.Exit(code=1) from exc
    if return_raw:
        return record, raw_payload
    return record


def _validate_against_schema(data: Dict[str, Any], schema_path: Path | None = None) -> None:
    schema = load_record_schema() if schema_path is None else _load_json_file(schema_path)
    validator = Draft202012Validator(schema)
    errors = sorted(validator.iter_errors(data), key=lambda err: list(err.path))
    if errors:
        typer.secho("Run record failed JSON schema validation:", err=True, fg=typer.colors.RED)
        for error in errors[:5]:
            location = "/".join(str(part) for part in error.path) or "<root>"
            typer.secho(f"- {location}: {error.message}", err=True, fg=typer.colors.RED)
        if len(errors) > 5:
            typer.secho(f"... {len(errors) - 5} additional errors omitted", err=True, fg=typer.colors.RED)
        raise typer.Exit(code=1)


@app.command("run")
def run_script(
    script: Path = typer.Argument(..., exists=True, resolve_path=True, help="JSON list of operation calls"),
    operations: Optional[Path] = typer.Option(
        None, "--operations", "-o", exists=True, resolve_path=True, help="JSON list of operation definitions"
    ),
    goal: Optional[str] = typer.Option(None, "--goal", "-g", help="Goal text recorded for the task"),
    settings_path: Optional[Path] = typer.Option(
        None, "--settings", exists=True, resolve_path=True, help="JSON settings file"
    ),
    record: Optional[Path] = typer.Option(None, "--record", resolve_path=True, help="Write a run record here"),
    remote_url: Optional[str] = typer.Option(None, "--remote-url", help="Remote execution service base URL"),
    fetch_catalog: bool = typer.Option(False, "--fetch-catalog", help="Merge the remote operation catalog"),
    events: Optional[Path] = typer.Option(None, "--events", resolve_path=True, help="Append telemetry as JSONL"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Print the event log to stderr"),
) -> None:
    """Execute a scripted task and print its outcome summary."""

    settings = _load_settings(settings_path, remote_url=remote_url)
    registry = _load_registry(operations)
    task = _load_task(script, goal)

    event_log = EventLogSink(limit=settings.event_log_limit)
    sinks: List[Any] = [event_log]
    if events is not None:
        sinks.append(JsonLinesSink(events))
    orchestrator = build_kernel(registry, settings=settings, sinks=sinks)

    async def _run() -> None:
        if fetch_catalog and isinstance(orchestrator.dispatcher.transport, HttpTransport):
            try:
                remote = await orchestrator.dispatcher.transport.fetch_catalog()
            except RemoteExecutionError as exc:
                typer.secho(f"Failed to fetch remote catalog: {exc}", err=True, fg=typer.colors.RED)
                raise typer.Exit(code=1) from exc
            registry.merge_remote(remote)
        await orchestrator.run(task)

    asyncio.run(_run())

    run_record = RunRecord.build(orchestrator)
    if record is not None:
        try:
            run_record.write(record)
        except OSError as exc:
            typer.secho(f"Failed to write run record: {exc}", err=True, fg=typer.colors.RED)
            raise typer.Exit(code=1) from exc
    if verbose:
        for line in event_log.lines:
            typer.echo(line, err=True)
    typer.echo(json.dumps(run_record.summary(), indent=2, ensure_ascii=True))
    if orchestrator.state is not ExecutionState.FINISHED:
        raise typer.Exit(code=1)


@operations_app.command("list")
def list_operations(
    operations: Optional[Path] = typer.Option(
        None, "--operations", "-o", exists=True, resolve_path=True, help="JSON list of operation definitions"
    ),
) -> None:
    """Print the catalog visible to planners."""

    registry = _load_registry(operations)
    typer.echo(json.dumps(registry.catalog(), indent=2, ensure_ascii=True))


@record_app.command("validate")
def validate_record(
    path: Path = typer.Argument(..., exists=True, resolve_path=True, help="Path to a run record"),
    schema: Path | None = typer.Option(
        None,
        "--schema",
        "-s",
        help="Optional JSON schema to validate against (defaults to the bundled schema).",
        dir_okay=False,
        resolve_path=True,
    ),
) -> None:
    """Validate run records written by ``opkernel run --record``."""

    run_record, payload = _load_record(path, return_raw=True)
    _validate_against_schema(payload, schema)
    typer.secho(
        f"Run record {path} conforms to schema version {run_record.schema_version}",
        fg=typer.colors.GREEN,
    )


@record_app.command("schema")
def write_record_schema(
    output: Path = typer.Argument(..., resolve_path=True, help="Destination for the run record JSON schema."),
) -> None:
    try:
        RunRecord.write_schema(output)
    except OSError as exc:
        typer.secho(f"Failed to write schema: {exc}", err=True, fg=typer.colors.RED)
        raise typer.Exit(code=1) from exc
    typer.secho(f"Wrote run record schema to {output}", fg=typer.colors.GREEN)


@record_app.command("summary")
def record_summary(
    path: Path = typer.Argument(..., exists=True, resolve_path=True, help="Path to a run record"),
) -> None:
    """Emit a condensed JSON summary of a run record."""

    run_record = _load_record(path)
    typer.echo(json.dumps(run_record.summary(), indent=2, ensure_ascii=True))


@admin_app.command()
def serve(
    operations: Optional[Path] = typer.Option(
        None, "--operations", "-o", exists=True, resolve_path=True, help="JSON list of operation definitions"
    ),
    settings_path: Optional[Path] = typer.Option(
        None, "--settings", exists=True, resolve_path=True, help="JSON settings file"
    ),
    script: Optional[Path] = typer.Option(
        None, "--script", exists=True, resolve_path=True, help="Scripted task to start when the server starts"
    ),
    goal: Optional[str] = typer.Option(None, "--goal", "-g", help="Goal text recorded for the task"),
    paused: bool = typer.Option(False, "--paused", help="Pause the task before its first step"),
    host: str = typer.Option("127.0.0.1", help="Host interface to bind"),
    port: int = typer.Option(8080, help="Port for the administrative server"),
) -> None:
    """Launch the administrative surface as a FastAPI service."""

    settings = _load_settings(settings_path)
    registry = _load_registry(operations)
    task = _load_task(script, goal) if script is not None else None
    if paused and task is None:
        typer.secho("--paused requires --script", err=True, fg=typer.colors.RED)
        raise typer.Exit(code=1)
    event_log = EventLogSink(limit=settings.event_log_limit)
    orchestrator = build_kernel(registry, settings=settings, sinks=[event_log])
    app_obj = create_app(orchestrator, event_log=event_log, task=task, start_paused=paused)
    typer.echo(f"Serving administration API on http://{host}:{port}")
    uvicorn.run(app_obj, host=host, port=port, log_level="info")


def main() -> None:
    """Entrypoint for ``python -m opkernel.cli``."""

    app()


if __name__ == "__main__":  # pragma: no cover
    main()
