"""Command line interface for inspecting fieldflow state."""

from __future__ import annotations

import asyncio
from pathlib import Path
from typing import Optional

import typer
import yaml
from pydantic import ValidationError

from fieldflow import get_repository, get_upload_store
from fieldflow.contracts import WorkflowTemplate

app = typer.Typer(help="CLI for fieldflow workflow executions")

execution_app = typer.Typer(help="Commands for inspecting executions")
template_app = typer.Typer(help="Commands for workflow templates")
uploads_app = typer.Typer(help="Commands for chunked upload sessions")

app.add_typer(execution_app, name="execution")
app.add_typer(template_app, name="template")
app.add_typer(uploads_app, name="uploads")


@app.callback()
def main() -> None:
    """fieldflow CLI entry point."""
    pass


@execution_app.command("list")
def execution_list(
    organization_id: str,
    work_item: Optional[str] = typer.Option(None, help="Only show this work item"),
) -> None:
    """
    List executions of an organization, newest first.

    Example:
        fieldflow execution list org-1
        fieldflow execution list org-1 --work-item wi-42
        # Output: 3f1c...    wi-42    in_progress    2024-01-01 10:00:00+00:00
    """
    repo = get_repository()
    executions = asyncio.run(repo.list_executions(organization_id, work_item))
    if not executions:
        typer.echo("No executions found")
        return
    for execution in executions:
        typer.echo(
            f"{execution.id}\t{execution.work_item_id}\t"
            f"{execution.status.value}\t{execution.started_at}"
        )


@execution_app.command("steps")
def execution_steps(organization_id: str, work_item_id: str) -> None:
    """
    Show the steps of a work item with their status.

    Example:
        fieldflow execution steps org-1 wi-42
        # Output: 0. Site photos: completed (required)
        #         1. Sign-off: not_started
    """
    repo = get_repository()
    steps = asyncio.run(repo.list_work_item_steps(work_item_id, organization_id))
    if not steps:
        typer.echo("No steps found")
        raise typer.Exit(code=1)
    for step in steps:
        typer.echo(
            f"{step.step_index}. {step.title}: {step.status.value}"
            + (" (required)" if step.is_required else "")
            + (f" [{len(step.evidence.photos)} photo(s)]" if step.evidence.photos else "")
        )


@template_app.command("validate")
def template_validate(path: Path) -> None:
    """
    Validate a YAML or JSON workflow template file.

    Example:
        fieldflow template validate ./templates/inspection.yaml
        # Output: Template inspection (Site inspection): 4 step(s), 1 callback(s)
    """
    if not path.exists():
        typer.secho("Specified path does not exist", fg=typer.colors.RED)
        raise typer.Exit(code=1)

    try:
        data = yaml.safe_load(path.read_text()) or {}
        template = WorkflowTemplate.model_validate(data)
    except (yaml.YAMLError, ValidationError) as exc:
        typer.secho(f"Invalid template: {exc}", fg=typer.colors.RED)
        raise typer.Exit(code=1)

    typer.echo(
        f"Template {template.id} ({template.name or 'unnamed'}): "
        f"{len(template.steps)} step(s), "
        f"{len(template.completion_callbacks)} callback(s)"
    )
    for index, step in enumerate(template.steps):
        typer.echo(
            f"  {index}. {step.display_title(index)} [{step.type}]"
            + (" required" if step.required else "")
        )
    for callback in template.completion_callbacks:
        typer.echo(
            f"  -> {callback.integration_name}: "
            f"{len(callback.field_mappings)} field mapping(s)"
        )


async def _with_store(action):
    store = get_upload_store()
    await store.connect()
    try:
        return await action(store)
    finally:
        await store.disconnect()


@uploads_app.command("show")
def uploads_show(organization_id: str, upload_id: str) -> None:
    """Show progress of a chunked upload session."""
    session = asyncio.run(_with_store(lambda s: s.get(organization_id, upload_id)))
    if session is None:
        typer.echo("Upload session not found")
        raise typer.Exit(code=1)
    missing = [i for i, chunk in enumerate(session.chunks) if chunk is None]
    typer.echo(
        f"Upload {session.upload_id}: {session.received_chunks}/{session.total_chunks} chunks"
    )
    typer.echo(f"Step: {session.step_id} (work item {session.work_item_id})")
    if session.file_name:
        typer.echo(f"File: {session.file_name} ({session.file_type})")
    if missing:
        typer.echo(f"Missing chunks: {', '.join(str(i) for i in missing)}")


@uploads_app.command("discard")
def uploads_discard(organization_id: str, upload_id: str) -> None:
    """Delete an abandoned upload session."""
    deleted = asyncio.run(_with_store(lambda s: s.delete(organization_id, upload_id)))
    if not deleted:
        typer.echo("Upload session not found")
        raise typer.Exit(code=1)
    typer.echo(f"Discarded upload {upload_id}")


if __name__ == "__main__":  # pragma: no cover - CLI entry point
    app()
