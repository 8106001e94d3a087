"""Command line interface for managing flowmark definitions, instances and workers."""

from __future__ import annotations

import asyncio
import importlib
import json
import logging
from pathlib import Path
from typing import List, Optional

import typer

from flowmark.config import load_config
from flowmark.design import (
    deserialize_design,
    export_design,
    import_design,
    to_design_model,
    to_executable_definition,
)
from flowmark.design.models import WorkflowDesignModel
from flowmark.engine import StartOptions, WorkflowEngine
from flowmark.exceptions import FlowmarkError, WorkflowValidationError
from flowmark.model import validate_definition
from flowmark.persistence import InstanceQuery, WorkflowStatus, get_stores
from flowmark.workers import run_workers

app = typer.Typer(help="CLI for flowmark workflows")

# Command groups
definition_app = typer.Typer(help="Commands for managing workflow definitions")
instance_app = typer.Typer(help="Commands for inspecting and driving instances")
worker_app = typer.Typer(help="Commands for running background workers")

app.add_typer(definition_app, name="definition")
app.add_typer(instance_app, name="instance")
app.add_typer(worker_app, name="worker")


@app.callback()
def main(
    log_level: str = typer.Option("WARNING", help="Logging level for flowmark loggers"),
) -> None:
    """flowmark CLI entry point."""
    logging.basicConfig(
        level=getattr(logging, log_level.upper(), logging.WARNING),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def _engine() -> WorkflowEngine:
    config = load_config()
    return WorkflowEngine(
        get_stores(),
        settings=config.engine,
        job_max_attempts=config.workers.job_max_attempts,
    )


def _fail(message: str) -> None:
    typer.secho(message, fg=typer.colors.RED)
    raise typer.Exit(code=1)


def _read_design(path: Path) -> tuple[WorkflowDesignModel, Optional[str]]:
    """Load a design from an export package or a bare design document."""
    text = path.read_text()
    if '"exportVersion"' in text:
        package = import_design(text)
        return package.model, package.key
    model = deserialize_design(text)
    if model is None:
        raise WorkflowValidationError(f"{path} is empty")
    return model, None


def _parse_json(raw: Optional[str]) -> dict:
    if not raw:
        return {}
    try:
        data = json.loads(raw)
    except json.JSONDecodeError as exc:
        _fail(f"Invalid JSON: {exc}")
    if not isinstance(data, dict):
        _fail("JSON input must be an object")
    return data


# ----------------------------------------------------------------------
# Definitions
@definition_app.command("import")
def definition_import(
    path: Path,
    publish: bool = typer.Option(False, help="Publish the imported version"),
    key: Optional[str] = typer.Option(None, help="Catalog key (defaults to the package key)"),
) -> None:
    """
    Compile a design (or export package) and store it as a new version.

    Example:
        flowmark definition import ./approval.json --publish
    """
    if not path.exists():
        _fail("Specified path does not exist")
    stores = get_stores()
    try:
        model, package_key = _read_design(path)
        definition = to_executable_definition(model)
        version = asyncio.run(
            stores.definitions.save(definition, key=key or package_key)
        )
        if publish:
            asyncio.run(stores.definitions.publish(definition.id, version.version))
    except FlowmarkError as exc:
        _fail(str(exc))
    state = "published" if publish else "draft"
    typer.echo(f"Imported {definition.id} version {version.version} ({state})")


@definition_app.command("export")
def definition_export(
    definition_id: str,
    version: Optional[int] = typer.Option(None, help="Version to export (default: published)"),
    output: Optional[Path] = typer.Option(None, help="Write to file instead of stdout"),
) -> None:
    """Export a stored definition as a portable JSON package."""
    stores = get_stores()
    entry = asyncio.run(stores.definitions.get_definition(definition_id))
    if entry is None:
        _fail("Definition not found")
    number = version or entry.published_version or entry.latest_version
    process = asyncio.run(stores.definitions.get(definition_id, number))
    if process is None:
        _fail(f"Version {number} not found")
    text = export_design(to_design_model(process), key=entry.key)
    if output:
        output.write_text(text)
        typer.echo(f"Exported {definition_id} version {number} to {output}")
    else:
        typer.echo(text)


@definition_app.command("validate")
def definition_validate(path: Path) -> None:
    """Compile a design file and report errors and warnings."""
    if not path.exists():
        _fail("Specified path does not exist")
    try:
        model, _ = _read_design(path)
        definition = to_executable_definition(model)
    except WorkflowValidationError as exc:
        typer.secho(exc.message, fg=typer.colors.RED)
        for issue in exc.issues:
            typer.echo(f"  error {issue}")
        raise typer.Exit(code=1)
    result = validate_definition(definition)
    for warning in result.warnings:
        typer.echo(f"  warning {warning}")
    typer.secho(f"{definition.id} is valid", fg=typer.colors.GREEN)


@definition_app.command("publish")
def definition_publish(
    definition_id: str,
    version: Optional[int] = typer.Option(None, help="Version to publish (default: latest)"),
) -> None:
    """Validate and publish a stored version."""
    stores = get_stores()
    try:
        entry = asyncio.run(stores.definitions.publish(definition_id, version))
    except FlowmarkError as exc:
        _fail(str(exc))
    typer.echo(f"Published {entry.id} version {entry.published_version}")


@definition_app.command("list")
def definition_list() -> None:
    """List stored definitions with their status and versions."""
    stores = get_stores()
    entries = asyncio.run(stores.definitions.list_definitions())
    if not entries:
        typer.echo("No definitions found")
        return
    for entry in entries:
        published = entry.published_version if entry.published_version is not None else "-"
        typer.echo(
            f"{entry.id}\t{entry.key}\t{entry.status.value}\t"
            f"latest={entry.latest_version}\tpublished={published}"
        )


# ----------------------------------------------------------------------
# Instances
@instance_app.command("start")
def instance_start(
    workflow_id: str,
    input: Optional[str] = typer.Option(None, "--input", help="JSON object of input values"),
    correlation_id: Optional[str] = typer.Option(None, help="Correlation id"),
) -> None:
    """Start a new instance of a published definition."""
    engine = _engine()
    try:
        result = asyncio.run(
            engine.start_new(
                workflow_id, _parse_json(input), StartOptions(correlation_id=correlation_id)
            )
        )
    except FlowmarkError as exc:
        _fail(str(exc))
    typer.echo(f"{result.instance_id}\t{result.status.value}")


@instance_app.command("resume")
def instance_resume(
    instance_id: str,
    bookmark: str,
    input: Optional[str] = typer.Option(None, "--input", help="JSON object merged into variables"),
) -> None:
    """Resume a suspended instance at a bookmark."""
    engine = _engine()
    try:
        result = asyncio.run(engine.resume(instance_id, bookmark, _parse_json(input)))
    except FlowmarkError as exc:
        _fail(str(exc))
    typer.echo(f"{result.instance_id}\t{result.status.value}")


@instance_app.command("cancel")
def instance_cancel(
    instance_id: str,
    reason: Optional[str] = typer.Option(None, help="Reason recorded in the audit trail"),
) -> None:
    """Cancel a running or suspended instance."""
    engine = _engine()
    try:
        result = asyncio.run(engine.cancel(instance_id, reason))
    except FlowmarkError as exc:
        _fail(str(exc))
    typer.echo(f"{result.instance_id}\t{result.status.value}")


@instance_app.command("list")
def instance_list(
    workflow: Optional[str] = typer.Option(None, help="Only instances of this definition"),
    status: Optional[List[WorkflowStatus]] = typer.Option(None, help="Filter by status"),
) -> None:
    """
    List instances with their current status.

    Example:
        flowmark instance list --status suspended
        # Output: 3f2a...    approval    suspended
    """
    stores = get_stores()
    result = asyncio.run(
        stores.instances.query(InstanceQuery(workflow_id=workflow, statuses=status or []))
    )
    if not result.items:
        typer.echo("No instances found")
        return
    for inst in result.items:
        typer.echo(f"{inst.id}\t{inst.workflow_id}\t{inst.status.value}")


@instance_app.command("show")
def instance_show(instance_id: str) -> None:
    """Show status, variables, bookmarks and fault of one instance."""
    stores = get_stores()
    inst = asyncio.run(stores.instances.get(instance_id))
    if inst is None:
        typer.echo("Instance not found")
        raise typer.Exit(code=1)

    typer.echo(f"Instance {inst.id}: {inst.status.value}")
    typer.echo(f"Workflow: {inst.workflow_id} v{inst.version}")
    typer.echo(f"Variables: {json.dumps(inst.variables, default=str)}")
    if inst.output:
        typer.echo(f"Output: {json.dumps(inst.output, default=str)}")
    for bookmark in inst.bookmarks:
        typer.echo(f"- waiting on {bookmark.name} at {bookmark.activity_id}")
    if inst.fault:
        typer.echo(f"Fault: {inst.fault.code} {inst.fault.message} at {inst.fault.activity_id}")


@instance_app.command("history")
def instance_history(instance_id: str) -> None:
    """Print the execution history of an instance."""
    stores = get_stores()
    if asyncio.run(stores.instances.get(instance_id)) is None:
        typer.echo("Instance not found")
        raise typer.Exit(code=1)
    records = asyncio.run(stores.instances.get_history(instance_id))
    for record in records:
        line = f"{record.timestamp.isoformat()}\t{record.activity_id}\t{record.kind.value}"
        if record.error:
            line += f"\t{record.error}"
        typer.echo(line)


# ----------------------------------------------------------------------
# Workers
@worker_app.command("run")
def worker_run(
    lifespan: Optional[float] = typer.Option(None, help="Stop after this many seconds"),
    handlers: Optional[List[str]] = typer.Option(
        None, help="Module(s) to import so their handlers get registered"
    ),
) -> None:
    """
    Run the timer and job workers.

    Example:
        flowmark worker run --handlers myapp.handlers --lifespan 300
    """
    for module in handlers or []:
        importlib.import_module(module)
    config = load_config()
    engine = _engine()
    typer.echo("Starting workers")
    asyncio.run(run_workers(engine, config.workers, lifespan=lifespan))
